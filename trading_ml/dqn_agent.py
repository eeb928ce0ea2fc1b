"""
DQN Agent

Value-based agent over three discrete actions (HOLD, BUY, SELL):
- Live Q-network trained every call, plus a lagged target network that
  is deep-copied from the live one every `target_update_freq` train calls
- Epsilon-greedy action selection with multiplicative decay to a floor
- Bounded FIFO experience replay sampled without replacement
- Manual delta-rule backpropagation toward the TD target of the taken action
"""

import time
import uuid
import logging
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import IntEnum
from typing import List, Optional, Sequence

import numpy as np
from pydantic import BaseModel

from .agent_config import DQNConfig
from .networks import FeedForwardNetwork

logger = logging.getLogger(__name__)


class DQNAction(IntEnum):
    """Discrete action space"""
    HOLD = 0
    BUY = 1
    SELL = 2


@dataclass(frozen=True)
class Experience:
    """One transition for replay"""
    state: np.ndarray
    action: int
    reward: float
    next_state: np.ndarray
    done: bool


class ReplayBuffer:
    """Bounded ring buffer; the oldest experience is evicted first"""

    def __init__(self, capacity: int):
        self.capacity = capacity
        self._buffer: deque = deque(maxlen=capacity)

    def push(self, experience: Experience) -> None:
        self._buffer.append(experience)

    def sample(self, batch_size: int, rng: np.random.Generator) -> List[Experience]:
        """Uniform sample of unique experiences"""
        size = min(batch_size, len(self._buffer))
        indices = rng.choice(len(self._buffer), size=size, replace=False)
        return [self._buffer[i] for i in indices]

    def __len__(self) -> int:
        return len(self._buffer)

    def __getitem__(self, index: int) -> Experience:
        return self._buffer[index]


class TrainingMetrics(BaseModel):
    """Per-episode training summary"""
    episode: int
    total_reward: float
    avg_q: float
    epsilon: float
    loss: float
    sharpe_reward: float = 0.0
    pnl_reward: float = 0.0
    drawdown_penalty: float = 0.0


class DQNModel(BaseModel):
    """Serializable snapshot of a DQN agent"""
    id: str
    symbol: str
    config: DQNConfig
    weights: List[List[List[float]]]
    biases: List[List[float]]
    target_weights: List[List[List[float]]]
    target_biases: List[List[float]]
    created_at: datetime
    training_metrics: List[TrainingMetrics] = []


class DQNAgent:
    """Deep Q-Network agent with experience replay and a target network"""

    def __init__(self, config: Optional[DQNConfig] = None):
        self.config = config or DQNConfig()
        self._rng = np.random.default_rng(self.config.seed)

        sizes = [self.config.state_size, *self.config.hidden_layers, self.config.action_size]
        self.q_network = FeedForwardNetwork(sizes, hidden_activation="relu", rng=self._rng)
        self.target_network = self.q_network.copy()

        self.memory = ReplayBuffer(self.config.memory_size)
        self.epsilon = self.config.epsilon_start
        self.step_count = 0
        self.training_metrics: List[TrainingMetrics] = []

    def get_q_values(self, state: Sequence[float]) -> np.ndarray:
        """Q-values of the live network"""
        return self.q_network.forward(np.asarray(state, dtype=float))

    def select_action(self, state: Sequence[float]) -> int:
        """Epsilon-greedy action index"""
        if self._rng.random() < self.epsilon:
            return int(self._rng.integers(self.config.action_size))
        return int(np.argmax(self.get_q_values(state)))

    def store_experience(self, experience: Experience) -> None:
        self.memory.push(Experience(
            state=np.asarray(experience.state, dtype=float),
            action=int(experience.action),
            reward=float(experience.reward),
            next_state=np.asarray(experience.next_state, dtype=float),
            done=bool(experience.done),
        ))

    def train(self) -> float:
        """
        One replay update.

        Returns:
            Mean squared TD error over the sampled batch, or 0.0 when the
            buffer holds fewer than `batch_size` experiences
        """
        cfg = self.config
        if len(self.memory) < cfg.batch_size:
            return 0.0

        batch = self.memory.sample(cfg.batch_size, self._rng)
        total_loss = 0.0

        for exp in batch:
            target = self.get_q_values(exp.state).copy()
            if exp.done:
                target[exp.action] = exp.reward
            else:
                next_q = self.target_network.forward(exp.next_state)
                target[exp.action] = exp.reward + cfg.gamma * float(np.max(next_q))

            error = self.q_network.delta_rule_update(exp.state, target, cfg.learning_rate)
            total_loss += float(error[exp.action] ** 2)

        self.step_count += 1
        if self.step_count % cfg.target_update_freq == 0:
            self.target_network = self.q_network.copy()
            logger.debug(f"Target network synced at step {self.step_count}")

        self.epsilon = max(cfg.epsilon_end, self.epsilon * cfg.epsilon_decay)

        return total_loss / len(batch)

    @property
    def memory_size(self) -> int:
        return len(self.memory)

    def get_model(self, symbol: str) -> DQNModel:
        q = self.q_network.to_dict()
        target = self.target_network.to_dict()
        return DQNModel(
            id=f"dqn_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}",
            symbol=symbol,
            config=self.config,
            weights=q["weights"],
            biases=q["biases"],
            target_weights=target["weights"],
            target_biases=target["biases"],
            created_at=datetime.now(timezone.utc),
            training_metrics=list(self.training_metrics),
        )

    def load_model(self, model: DQNModel) -> None:
        self.config = model.config
        sizes = [model.config.state_size, *model.config.hidden_layers, model.config.action_size]
        self.q_network = FeedForwardNetwork.from_dict({
            "layer_sizes": sizes, "weights": model.weights, "biases": model.biases,
        })
        self.target_network = FeedForwardNetwork.from_dict({
            "layer_sizes": sizes, "weights": model.target_weights, "biases": model.target_biases,
        })
        self.training_metrics = list(model.training_metrics)
