"""
PPO Agent

Continuous-action policy-gradient agent emitting ``[direction, sizing]``
in [-1, 1]^2:
- Policy network: first half of the output is tanh-squashed into means,
  second half goes through softplus + 0.01 into standard deviations
- Value network: scalar state-value estimate
- Generalized Advantage Estimation over the trajectory buffer, followed
  by batch-wide advantage normalization
- Clipped surrogate objective and squared-error value loss, with
  gradients from central finite differences, averaged per minibatch,
  clipped to a global norm and applied with plain gradient descent

The trajectory buffer is drained by every `train()` call.
"""

import math
import time
import uuid
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import List, NamedTuple, Optional, Sequence, Tuple

import numpy as np
from pydantic import BaseModel

from .agent_config import PPOConfig
from .networks import FeedForwardNetwork, Gradients, softplus

logger = logging.getLogger(__name__)

MIN_STD = 0.01
MAX_LOG_RATIO = 20.0


@dataclass(frozen=True)
class PPOExperience:
    """One step of a trajectory"""
    state: np.ndarray
    action: np.ndarray
    reward: float
    value: float
    log_prob: float
    done: bool


@dataclass
class GAEResult:
    returns: np.ndarray
    advantages: np.ndarray
    raw_advantages: np.ndarray


class ActionSample(NamedTuple):
    action: np.ndarray
    log_prob: float
    value: float


class PPOTrainStats(BaseModel):
    """Averages over the minibatch updates of one train() call"""
    policy_loss: float = 0.0
    value_loss: float = 0.0
    entropy: float = 0.0
    total_loss: float = 0.0
    updates: int = 0


class PPOTrainingStats(BaseModel):
    total_episodes: int = 0
    avg_reward: float = 0.0
    avg_entropy: float = 0.0
    policy_loss: float = 0.0
    value_loss: float = 0.0


class PPOModel(BaseModel):
    """Serializable snapshot of a PPO agent"""
    id: str
    config: PPOConfig
    policy_weights: List[List[List[float]]]
    policy_biases: List[List[float]]
    value_weights: List[List[List[float]]]
    value_biases: List[List[float]]
    training_stats: PPOTrainingStats
    created_at: datetime


def gaussian_log_prob(action: np.ndarray, mean: np.ndarray, std: np.ndarray) -> np.ndarray:
    """Element-wise log density of N(mean, std^2)"""
    variance = std * std
    return -0.5 * ((action - mean) ** 2 / variance + 2 * np.log(std) + math.log(2 * math.pi))


class PPOAgent:
    """Proximal Policy Optimization agent with separate policy and value networks"""

    def __init__(self, config: Optional[PPOConfig] = None):
        self.config = config or PPOConfig()
        self._rng = np.random.default_rng(self.config.seed)

        hidden = list(self.config.hidden_layers)
        self.policy_network = FeedForwardNetwork(
            [self.config.state_size, *hidden, self.config.action_size * 2],
            hidden_activation=self.config.hidden_activation,
            rng=self._rng,
        )
        self.value_network = FeedForwardNetwork(
            [self.config.state_size, *hidden, 1],
            hidden_activation=self.config.hidden_activation,
            rng=self._rng,
        )

        self.buffer: List[PPOExperience] = []
        self.training_stats = PPOTrainingStats()

    def _split_policy_output(self, output: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        n = self.config.action_size
        means = np.tanh(output[..., :n])
        stds = softplus(output[..., n:2 * n]) + MIN_STD
        return means, stds

    def get_policy(self, state: Sequence[float]) -> Tuple[np.ndarray, np.ndarray]:
        """Per-dimension means and standard deviations"""
        return self._split_policy_output(self.policy_network.forward(np.asarray(state, dtype=float)))

    def get_value(self, state: Sequence[float]) -> float:
        return float(self.value_network.forward(np.asarray(state, dtype=float))[0])

    def select_action(self, state: Sequence[float]) -> ActionSample:
        """Sample a clamped action and return it with its log-probability and value"""
        means, stds = self.get_policy(state)
        value = self.get_value(state)

        raw = self._rng.normal(means, stds)
        action = np.clip(raw, -1.0, 1.0)
        log_prob = float(np.sum(gaussian_log_prob(action, means, stds)))

        return ActionSample(action=action, log_prob=log_prob, value=value)

    def get_action(self, state: Sequence[float]) -> np.ndarray:
        """Deterministic action (policy means)"""
        means, _ = self.get_policy(state)
        return means

    def store_experience(self, experience: PPOExperience) -> None:
        self.buffer.append(PPOExperience(
            state=np.asarray(experience.state, dtype=float),
            action=np.asarray(experience.action, dtype=float),
            reward=float(experience.reward),
            value=float(experience.value),
            log_prob=float(experience.log_prob),
            done=bool(experience.done),
        ))

    @property
    def buffer_size(self) -> int:
        return len(self.buffer)

    def compute_gae(self, experiences: Sequence[PPOExperience]) -> GAEResult:
        """
        Generalized Advantage Estimation, computed backward.

        ``delta_t = r_t + gamma * V(s_t+1) - V(s_t)`` and
        ``A_t = delta_t + gamma * lambda * A_t+1``; both the bootstrap value
        and the running advantage are zeroed at terminal steps and after the
        last step. Advantages are then normalized to zero mean / unit std.
        """
        gamma = self.config.gamma
        lam = self.config.gae_lambda
        n = len(experiences)
        returns = np.zeros(n)
        advantages = np.zeros(n)

        last_gae = 0.0
        for t in range(n - 1, -1, -1):
            exp = experiences[t]
            if t == n - 1 or exp.done:
                next_value = 0.0
            else:
                next_value = experiences[t + 1].value

            delta = exp.reward + gamma * next_value - exp.value
            last_gae = delta + gamma * lam * (0.0 if exp.done else last_gae)
            advantages[t] = last_gae
            returns[t] = last_gae + exp.value

        raw = advantages.copy()
        if n > 0:
            mean = advantages.mean()
            std = np.sqrt(np.mean((advantages - mean) ** 2)) + 1e-8
            advantages = (advantages - mean) / std

        return GAEResult(returns=returns, advantages=advantages, raw_advantages=raw)

    def _surrogate_losses(
        self,
        outputs: np.ndarray,
        action: np.ndarray,
        old_log_prob: float,
        advantage: float,
    ) -> np.ndarray:
        """Clipped PPO loss for a batch of policy-network outputs"""
        clip = self.config.clip_ratio
        means, stds = self._split_policy_output(outputs)
        new_log_prob = gaussian_log_prob(action, means, stds).sum(axis=-1)
        ratio = np.exp(np.minimum(new_log_prob - old_log_prob, MAX_LOG_RATIO))
        clipped = np.clip(ratio, 1 - clip, 1 + clip)
        return -np.minimum(ratio * advantage, clipped * advantage)

    def train(self) -> PPOTrainStats:
        """
        Run `epochs` passes of shuffled minibatch updates over the buffer.

        No-op below `mini_batch_size` entries. The buffer is emptied either way.
        """
        cfg = self.config
        experiences = self.buffer
        try:
            if len(experiences) < cfg.mini_batch_size:
                return PPOTrainStats()
            stats = self._train_on(experiences)
        finally:
            self.buffer = []

        self.training_stats.policy_loss = stats.policy_loss
        self.training_stats.value_loss = stats.value_loss
        self.training_stats.avg_entropy = stats.entropy
        return stats

    def _train_on(self, experiences: List[PPOExperience]) -> PPOTrainStats:
        cfg = self.config
        gae = self.compute_gae(experiences)
        n = len(experiences)

        total_policy = total_value = total_entropy = 0.0
        updates = 0

        for _ in range(cfg.epochs):
            indices = self._rng.permutation(n)

            for start in range(0, n, cfg.mini_batch_size):
                batch = indices[start:start + cfg.mini_batch_size]
                if len(batch) < cfg.mini_batch_size:
                    continue

                policy_grads = Gradients.zeros_like(self.policy_network)
                value_grads = Gradients.zeros_like(self.value_network)
                batch_policy = batch_value = batch_entropy = 0.0

                for idx in batch:
                    exp = experiences[idx]
                    advantage = float(gae.advantages[idx])
                    target = float(gae.returns[idx])

                    policy_out = self.policy_network.forward(exp.state)
                    _, stds = self._split_policy_output(policy_out)
                    batch_policy += float(self._surrogate_losses(
                        policy_out[None, :], exp.action, exp.log_prob, advantage
                    )[0])
                    batch_value += (self.get_value(exp.state) - target) ** 2
                    batch_entropy += float(np.sum(np.log(stds * math.sqrt(2 * math.pi * math.e))))

                    policy_grads.accumulate(self.policy_network.finite_difference_gradients(
                        exp.state,
                        lambda out, e=exp, a=advantage: self._surrogate_losses(out, e.action, e.log_prob, a),
                        cfg.fd_epsilon,
                    ))
                    value_grads.accumulate(self.value_network.finite_difference_gradients(
                        exp.state,
                        lambda out, r=target: (out[:, 0] - r) ** 2,
                        cfg.fd_epsilon,
                    ))

                size = len(batch)
                self.policy_network.apply_gradients(
                    policy_grads.scaled(1.0 / size), cfg.learning_rate, cfg.max_grad_norm
                )
                self.value_network.apply_gradients(
                    value_grads.scaled(1.0 / size), cfg.learning_rate, cfg.max_grad_norm
                )

                total_policy += batch_policy / size
                total_value += batch_value / size
                total_entropy += batch_entropy / size
                updates += 1

        if updates == 0:
            return PPOTrainStats()

        policy_loss = total_policy / updates
        value_loss = total_value / updates
        entropy = total_entropy / updates
        return PPOTrainStats(
            policy_loss=policy_loss,
            value_loss=value_loss,
            entropy=entropy,
            total_loss=policy_loss + cfg.value_coeff * value_loss - cfg.entropy_coeff * entropy,
            updates=updates,
        )

    def record_episode(self, episode_reward: float) -> None:
        """Fold an episode's reward into the running statistics"""
        stats = self.training_stats
        stats.total_episodes += 1
        stats.avg_reward += (episode_reward - stats.avg_reward) / stats.total_episodes

    def get_stats(self) -> PPOTrainingStats:
        return self.training_stats.model_copy()

    def export_model(self) -> PPOModel:
        policy = self.policy_network.to_dict()
        value = self.value_network.to_dict()
        return PPOModel(
            id=f"ppo_{int(time.time() * 1000)}_{uuid.uuid4().hex[:8]}",
            config=self.config.model_copy(),
            policy_weights=policy["weights"],
            policy_biases=policy["biases"],
            value_weights=value["weights"],
            value_biases=value["biases"],
            training_stats=self.training_stats.model_copy(),
            created_at=datetime.now(timezone.utc),
        )

    def load_model(self, model: PPOModel) -> None:
        cfg = model.config
        hidden = list(cfg.hidden_layers)
        self.config = cfg.model_copy()
        self.policy_network = FeedForwardNetwork.from_dict({
            "layer_sizes": [cfg.state_size, *hidden, cfg.action_size * 2],
            "hidden_activation": cfg.hidden_activation,
            "weights": model.policy_weights,
            "biases": model.policy_biases,
        })
        self.value_network = FeedForwardNetwork.from_dict({
            "layer_sizes": [cfg.state_size, *hidden, 1],
            "hidden_activation": cfg.hidden_activation,
            "weights": model.value_weights,
            "biases": model.value_biases,
        })
        self.training_stats = model.training_stats.model_copy()
