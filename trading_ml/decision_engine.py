"""
RL Decision Engine

Routes live bar windows to per-bot RL agents and turns their raw output
into typed trading decisions:
- One DQN and one PPO agent per bot, created lazily with fixed presets
- Each agent is guarded by its own lock; different bots never contend
- DQN: argmax/epsilon-greedy action, confidence from the Q-value range
- PPO: direction thresholds at +/-0.3, size from |sizing|, logistic confidence
- Every decision is appended to a bounded in-memory action log
"""

import math
import logging
import threading
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

import numpy as np

from .agent_config import (
    AgentType,
    DecisionEngineConfig,
    ENGINE_DQN_CONFIG,
    ENGINE_PPO_CONFIG,
)
from .dqn_agent import DQNAction, DQNAgent, Experience
from .market_data import Bar
from .ppo_agent import PPOAgent, PPOExperience
from .state_encoder import StateEncoder

logger = logging.getLogger(__name__)

PPO_DIRECTION_THRESHOLD = 0.3


class TradeAction(str, Enum):
    HOLD = "HOLD"
    BUY = "BUY"
    SELL = "SELL"


DQN_ACTIONS = {
    DQNAction.HOLD: TradeAction.HOLD,
    DQNAction.BUY: TradeAction.BUY,
    DQNAction.SELL: TradeAction.SELL,
}


@dataclass(frozen=True)
class RLDecision:
    """Trading decision produced by an RL agent"""
    action: TradeAction
    position_size: int
    confidence: float
    agent_type: AgentType
    reasoning: str
    timestamp: datetime
    q_values: Optional[Tuple[float, ...]] = None
    policy_prob: Optional[float] = None
    policy_mean: Optional[Tuple[float, ...]] = None
    policy_std: Optional[Tuple[float, ...]] = None
    # Non-HOLD and at or above the engine's minimum confidence
    actionable: bool = False
    trace_id: Optional[str] = None


@dataclass(frozen=True)
class RLActionLog:
    bot_id: str
    symbol: str
    agent_type: AgentType
    action: TradeAction
    position_size: int
    confidence: float
    state_vector: Tuple[float, ...]
    timestamp: datetime
    q_values: Optional[Tuple[float, ...]] = None
    policy_log_prob: Optional[float] = None
    trace_id: Optional[str] = None


@dataclass
class AgentSlot:
    """An agent plus the lock serializing inference and training on it"""
    agent: Union[DQNAgent, PPOAgent]
    lock: threading.Lock = field(default_factory=threading.Lock)


class AgentRegistry:
    """Lazily constructed agents keyed by (bot id, agent type)"""

    def __init__(self, state_size: int = 30):
        self.state_size = state_size
        self._slots: Dict[Tuple[str, AgentType], AgentSlot] = {}
        self._lock = threading.Lock()

    def _create(self, agent_type: AgentType) -> Union[DQNAgent, PPOAgent]:
        if agent_type == AgentType.DQN:
            return DQNAgent(ENGINE_DQN_CONFIG.model_copy(update={"state_size": self.state_size}))
        return PPOAgent(ENGINE_PPO_CONFIG.model_copy(update={"state_size": self.state_size}))

    def get(self, bot_id: str, agent_type: AgentType) -> AgentSlot:
        key = (bot_id, agent_type)
        with self._lock:
            slot = self._slots.get(key)
            if slot is None:
                slot = AgentSlot(agent=self._create(agent_type))
                self._slots[key] = slot
                logger.info(f"Created {agent_type.value} agent for bot {bot_id}")
            return slot

    def find(self, bot_id: str, agent_type: AgentType) -> Optional[AgentSlot]:
        with self._lock:
            return self._slots.get((bot_id, agent_type))

    def bot_ids(self) -> List[str]:
        with self._lock:
            return list(dict.fromkeys(bot_id for bot_id, _ in self._slots))

    def __len__(self) -> int:
        with self._lock:
            return len(self._slots)


def _coerce_agent_type(agent_type: Union[AgentType, str]) -> AgentType:
    try:
        return AgentType(agent_type)
    except ValueError:
        raise ValueError(f"Unknown agent type: {agent_type}") from None


class RLDecisionEngine:
    """
    Per-bot decision routing over DQN and PPO agents.

    Usage:
        engine = RLDecisionEngine()
        decision = engine.get_decision("bot-1", "AAPL", bars, current_position=2)
    """

    def __init__(
        self,
        config: Optional[DecisionEngineConfig] = None,
        registry: Optional[AgentRegistry] = None,
    ):
        self.config = config or DecisionEngineConfig()
        self.registry = registry or AgentRegistry(self.config.state_size)
        self.encoder = StateEncoder(self.config.state_size, self.config.max_position_size)

        self._action_logs: List[RLActionLog] = []
        self._log_lock = threading.Lock()

    def get_dqn_agent(self, bot_id: str) -> DQNAgent:
        return self.registry.get(bot_id, AgentType.DQN).agent

    def get_ppo_agent(self, bot_id: str) -> PPOAgent:
        return self.registry.get(bot_id, AgentType.PPO).agent

    def extract_state(self, bars: Sequence[Bar], current_position: float = 0) -> np.ndarray:
        return self.encoder.encode(bars, current_position)

    def get_decision(
        self,
        bot_id: str,
        symbol: str,
        bars: Sequence[Bar],
        current_position: float = 0,
        agent_type: Optional[Union[AgentType, str]] = None,
        trace_id: Optional[str] = None,
    ) -> RLDecision:
        """
        Decide HOLD / BUY / SELL for a bot from its latest bars.

        Raises:
            ValueError: unknown agent type
        """
        kind = _coerce_agent_type(agent_type or self.config.default_agent_type)
        state = self.extract_state(bars, current_position)
        timestamp = datetime.now(timezone.utc)

        if kind == AgentType.DQN:
            decision, log = self._dqn_decision(bot_id, symbol, state, timestamp)
        else:
            decision, log = self._ppo_decision(bot_id, symbol, state, timestamp)

        decision = replace(
            decision,
            trace_id=trace_id,
            actionable=(
                decision.action != TradeAction.HOLD
                and decision.confidence >= self.config.min_confidence
            ),
        )
        self._log_action(replace(log, trace_id=trace_id))

        logger.info(
            f"trace_id={trace_id or 'none'} bot={bot_id} agent={kind.value} "
            f"action={decision.action.value} size={decision.position_size} "
            f"conf={decision.confidence * 100:.1f}%"
        )
        return decision

    def _dqn_decision(
        self,
        bot_id: str,
        symbol: str,
        state: np.ndarray,
        timestamp: datetime,
    ) -> Tuple[RLDecision, RLActionLog]:
        slot = self.registry.get(bot_id, AgentType.DQN)
        with slot.lock:
            q_values = slot.agent.get_q_values(state)
            action = slot.agent.select_action(state)

        q_max, q_min = float(q_values.max()), float(q_values.min())
        q_range = q_max - q_min or 1.0
        confidence = (float(q_values[action]) - q_min) / q_range

        label = DQN_ACTIONS[DQNAction(action)]
        size = 0 if label == TradeAction.HOLD else 1
        q_list = tuple(float(q) for q in q_values)

        decision = RLDecision(
            action=label,
            position_size=size,
            confidence=confidence,
            agent_type=AgentType.DQN,
            reasoning=(
                f"DQN Q-values: [HOLD={q_list[0]:.3f}, BUY={q_list[1]:.3f}, SELL={q_list[2]:.3f}]"
            ),
            timestamp=timestamp,
            q_values=q_list,
        )
        log = RLActionLog(
            bot_id=bot_id,
            symbol=symbol,
            agent_type=AgentType.DQN,
            action=label,
            position_size=size,
            confidence=confidence,
            state_vector=tuple(state.tolist()),
            timestamp=timestamp,
            q_values=q_list,
        )
        return decision, log

    def _ppo_decision(
        self,
        bot_id: str,
        symbol: str,
        state: np.ndarray,
        timestamp: datetime,
    ) -> Tuple[RLDecision, RLActionLog]:
        slot = self.registry.get(bot_id, AgentType.PPO)
        with slot.lock:
            sample = slot.agent.select_action(state)
            means, stds = slot.agent.get_policy(state)

        direction = float(sample.action[0])
        sizing = abs(float(sample.action[1]))

        label = TradeAction.HOLD
        if direction > PPO_DIRECTION_THRESHOLD:
            label = TradeAction.BUY
        elif direction < -PPO_DIRECTION_THRESHOLD:
            label = TradeAction.SELL

        max_size = self.config.max_position_size
        size = 0
        if label != TradeAction.HOLD:
            size = max(1, min(int(math.floor(sizing * max_size)), max_size))

        confidence = 1 / (1 + math.exp(-abs(direction) * 3))

        decision = RLDecision(
            action=label,
            position_size=size,
            confidence=confidence,
            agent_type=AgentType.PPO,
            reasoning=(
                f"PPO output: direction={direction:.3f}, sizing={sizing:.3f}, value={sample.value:.3f}"
            ),
            timestamp=timestamp,
            policy_prob=math.exp(sample.log_prob),
            policy_mean=tuple(float(m) for m in means),
            policy_std=tuple(float(s) for s in stds),
        )
        log = RLActionLog(
            bot_id=bot_id,
            symbol=symbol,
            agent_type=AgentType.PPO,
            action=label,
            position_size=size,
            confidence=confidence,
            state_vector=tuple(state.tolist()),
            timestamp=timestamp,
            policy_log_prob=sample.log_prob,
        )
        return decision, log

    def _log_action(self, log: RLActionLog) -> None:
        with self._log_lock:
            self._action_logs.append(log)
            if len(self._action_logs) > self.config.max_logs:
                self._action_logs = self._action_logs[-(self.config.max_logs // 2):]

    def store_experience(
        self,
        bot_id: str,
        agent_type: Union[AgentType, str],
        state: Sequence[float],
        action: Union[int, Sequence[float]],
        reward: float,
        next_state: Sequence[float],
        done: bool,
        log_prob: Optional[float] = None,
        value: Optional[float] = None,
    ) -> None:
        """Feed an observed transition back to a bot's agent"""
        kind = _coerce_agent_type(agent_type)
        slot = self.registry.get(bot_id, kind)
        with slot.lock:
            if kind == AgentType.DQN:
                slot.agent.store_experience(Experience(
                    state=np.asarray(state, dtype=float),
                    action=int(action),
                    reward=reward,
                    next_state=np.asarray(next_state, dtype=float),
                    done=done,
                ))
            else:
                slot.agent.store_experience(PPOExperience(
                    state=np.asarray(state, dtype=float),
                    action=np.asarray(action, dtype=float),
                    reward=reward,
                    value=value if value is not None else 0.0,
                    log_prob=log_prob if log_prob is not None else 0.0,
                    done=done,
                ))

    def train(self, bot_id: str, agent_type: Union[AgentType, str]) -> Dict[str, float]:
        """One training step on a bot's agent; PPO reports policy + value loss"""
        kind = _coerce_agent_type(agent_type)
        slot = self.registry.get(bot_id, kind)
        with slot.lock:
            if kind == AgentType.DQN:
                return {"loss": slot.agent.train()}
            stats = slot.agent.train()
        return {
            "loss": stats.policy_loss + stats.value_loss,
            "policy_loss": stats.policy_loss,
            "value_loss": stats.value_loss,
        }

    def get_action_logs(self, bot_id: Optional[str] = None, limit: int = 100) -> List[RLActionLog]:
        """Most recent action logs, optionally for one bot"""
        with self._log_lock:
            logs = list(self._action_logs)
        if bot_id:
            logs = [log for log in logs if log.bot_id == bot_id]
        return logs[-limit:] if limit > 0 else []

    def get_agent_stats(self, bot_id: str) -> Dict[str, Optional[Dict[str, Any]]]:
        dqn_slot = self.registry.find(bot_id, AgentType.DQN)
        ppo_slot = self.registry.find(bot_id, AgentType.PPO)

        dqn_stats = None
        if dqn_slot is not None:
            with dqn_slot.lock:
                dqn_stats = {
                    "memory_size": dqn_slot.agent.memory_size,
                    "epsilon": dqn_slot.agent.epsilon,
                    "trained": dqn_slot.agent.memory_size > 0,
                }

        ppo_stats = None
        if ppo_slot is not None:
            with ppo_slot.lock:
                ppo_stats = {
                    "buffer_size": ppo_slot.agent.buffer_size,
                    "trained": True,
                }

        return {"dqn": dqn_stats, "ppo": ppo_stats}

    def get_all_agent_stats(self) -> Dict[str, Dict[str, Optional[Dict[str, Any]]]]:
        return {bot_id: self.get_agent_stats(bot_id) for bot_id in self.registry.bot_ids()}
