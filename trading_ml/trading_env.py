"""
Trading Environments for Reinforcement Learning

Gymnasium-compatible market replays used to train the agents offline:
- DiscreteTradingEnv: HOLD / BUY / SELL with a unit long/short position,
  rewarded on step P&L with a drawdown penalty (DQN)
- ContinuousTradingEnv: ``[direction, sizing]`` actions that move a
  position of up to `max_position` units, with a 2 bp trading cost (PPO)

Both emit 30-wide observations and terminate on the last bar.
"""

import math
import logging
from datetime import timezone
from typing import Any, Dict, List, Optional, Sequence, Tuple

import gymnasium as gym
import numpy as np
from gymnasium import spaces
from pydantic import BaseModel

from .agent_config import DQNConfig, PPOConfig
from .dqn_agent import DQNAction, DQNAgent, Experience, TrainingMetrics
from .market_data import Bar
from .ppo_agent import PPOAgent, PPOExperience

logger = logging.getLogger(__name__)

OBSERVATION_SIZE = 30
TRADING_COST_RATE = 0.0002


def _pad(features: List[float], size: int = OBSERVATION_SIZE) -> np.ndarray:
    obs = np.zeros(size)
    values = np.asarray(features[:size], dtype=float)
    obs[:len(values)] = values
    obs[~np.isfinite(obs)] = 0.0
    return obs


def _tail_mean(values: np.ndarray, period: int) -> float:
    """Mean of the last `period` values, or the last value when there are fewer"""
    if len(values) < period:
        return float(values[-1]) if len(values) else 0.0
    return float(values[-period:].mean())


def _safe_ratio(numerator: float, denominator: float) -> float:
    if denominator == 0 or not math.isfinite(denominator):
        return 0.0
    return numerator / denominator


class DiscreteTradingEnv(gym.Env):
    """
    Unit-position market replay for the DQN agent.

    Observation (30 values clipped to [-3, 3]):
    - 10 lagged close returns
    - Deviation from SMA5 / SMA10 / SMA20
    - Centered RSI(14), volume deviation from its 10-bar mean, 10-bar volatility
    - Position and unrealized return
    - Hour-of-day sine / cosine, zero padding

    Reward: ``0.01 * step_pnl - 0.001 * drawdown``
    """

    metadata = {"render_modes": []}

    def __init__(self, bars: Sequence[Bar], lookback: int = 50):
        super().__init__()
        if len(bars) < lookback + 2:
            raise ValueError(f"Need at least {lookback + 2} bars, got {len(bars)}")

        self.bars = list(bars)
        self.lookback = lookback
        self.closes = np.array([b.close for b in self.bars], dtype=float)
        self.volumes = np.array([b.volume for b in self.bars], dtype=float)

        self.action_space = spaces.Discrete(len(DQNAction))
        self.observation_space = spaces.Box(
            low=-3.0, high=3.0, shape=(OBSERVATION_SIZE,), dtype=np.float64
        )

        self._obs_cache: Dict[int, np.ndarray] = {}
        self._reset_state()

    def _reset_state(self) -> None:
        self.current_step = self.lookback
        self.position = 0
        self.entry_price = 0.0
        self.pnl = 0.0
        self.max_equity = 0.0

    def reset(
        self,
        seed: Optional[int] = None,
        options: Optional[Dict[str, Any]] = None,
    ) -> Tuple[np.ndarray, Dict[str, Any]]:
        super().reset(seed=seed)
        self._reset_state()
        return self._get_observation(), self._get_info(0.0)

    def step(self, action: int) -> Tuple[np.ndarray, float, bool, bool, Dict[str, Any]]:
        close = self.closes[self.current_step]
        prev_close = self.closes[self.current_step - 1]

        step_pnl = 0.0
        if self.position != 0:
            step_pnl = self.position * (close - prev_close)
            self.pnl += step_pnl

        if action == DQNAction.BUY and self.position <= 0:
            if self.position < 0:
                step_pnl += self.position * (self.entry_price - close)
            self.position = 1
            self.entry_price = close
        elif action == DQNAction.SELL and self.position >= 0:
            if self.position > 0:
                step_pnl += self.position * (close - self.entry_price)
            self.position = -1
            self.entry_price = close

        self.max_equity = max(self.max_equity, self.pnl)
        drawdown = self.max_equity - self.pnl
        reward = step_pnl * 0.01 - (drawdown * 0.001 if drawdown > 0 else 0.0)

        self.current_step += 1
        terminated = self.current_step >= len(self.bars) - 1

        return self._get_observation(), float(reward), terminated, False, self._get_info(drawdown)

    def _get_info(self, drawdown: float) -> Dict[str, Any]:
        return {"pnl": self.pnl, "position": self.position, "drawdown": drawdown}

    def _get_observation(self) -> np.ndarray:
        step = self.current_step
        # Position-dependent tail is appended after the cached market part
        if step not in self._obs_cache:
            self._obs_cache[step] = self._market_features(step)
        market = self._obs_cache[step]

        close = self.closes[step]
        unrealized = _safe_ratio(close - self.entry_price, self.entry_price) if self.position != 0 else 0.0
        hour = self.bars[step].timestamp.astimezone(timezone.utc).hour

        features = list(market) + [
            float(self.position),
            unrealized,
            math.sin(2 * math.pi * hour / 24),
            math.cos(2 * math.pi * hour / 24),
        ]
        return np.clip(_pad(features), -3.0, 3.0)

    def _market_features(self, step: int) -> List[float]:
        close = self.closes[step]
        features = []
        for lag in range(1, 11):
            if step - lag >= 0:
                features.append(_safe_ratio(close - self.closes[step - lag], self.closes[step - lag]))
            else:
                features.append(0.0)

        start = max(0, step - self.lookback)
        window = self.closes[start:step + 1]
        for period in (5, 10, 20):
            avg = _tail_mean(window, period)
            features.append(_safe_ratio(close - avg, avg))

        features.append((self._window_rsi(window, 14) - 50) / 50)

        volume_window = self.volumes[start:step + 1]
        avg_volume = _tail_mean(volume_window, 10)
        features.append(_safe_ratio(self.volumes[step] - avg_volume, avg_volume))

        if len(window) >= 10:
            recent = window[-10:]
            features.append(_safe_ratio(float(recent.std()), float(recent.mean())))
        else:
            features.append(0.0)
        return features

    @staticmethod
    def _window_rsi(closes: np.ndarray, period: int) -> float:
        """Simple-average RSI over the last `period` changes; neutral 50 when too short"""
        if len(closes) < period + 1:
            return 50.0
        changes = np.diff(closes[-(period + 1):])
        gains = changes[changes > 0].sum()
        losses = -changes[changes < 0].sum()
        if losses == 0:
            return 100.0
        return 100 - 100 / (1 + gains / losses)


class ContinuousTradingEnv(gym.Env):
    """
    Sized-position market replay for the PPO agent.

    The first action component moves the position by
    ``direction * max_position`` (clamped to +/-max_position). Each trade
    costs 2 bp of its notional. Open positions are closed on the last bar.

    Reward: ``position * price_return * 100 - 0.1 * trade_cost``
    """

    metadata = {"render_modes": []}

    def __init__(self, bars: Sequence[Bar], max_position: int = 10, lookback: int = 20):
        super().__init__()
        if lookback < 2:
            raise ValueError(f"lookback must be at least 2, got {lookback}")
        if lookback + 6 > OBSERVATION_SIZE:
            raise ValueError(
                f"lookback {lookback} leaves no room in a {OBSERVATION_SIZE}-wide observation, max is {OBSERVATION_SIZE - 6}"
            )
        if len(bars) < lookback + 2:
            raise ValueError(f"Need at least {lookback + 2} bars, got {len(bars)}")

        self.bars = list(bars)
        self.max_position = max_position
        self.lookback = lookback
        self.closes = np.array([b.close for b in self.bars], dtype=float)
        self.highs = np.array([b.high for b in self.bars], dtype=float)
        self.lows = np.array([b.low for b in self.bars], dtype=float)
        self.volumes = np.array([b.volume for b in self.bars], dtype=float)

        self.action_space = spaces.Box(low=-1.0, high=1.0, shape=(2,), dtype=np.float64)
        self.observation_space = spaces.Box(
            low=-np.inf, high=np.inf, shape=(OBSERVATION_SIZE,), dtype=np.float64
        )
        self._reset_state()

    def _reset_state(self) -> None:
        self.current_step = self.lookback
        self.position = 0.0
        self.entry_price = 0.0
        self.unrealized_pnl = 0.0
        self.realized_pnl = 0.0

    def reset(
        self,
        seed: Optional[int] = None,
        options: Optional[Dict[str, Any]] = None,
    ) -> Tuple[np.ndarray, Dict[str, Any]]:
        super().reset(seed=seed)
        self._reset_state()
        return self._get_observation(), self._get_info()

    def step(self, action: Sequence[float]) -> Tuple[np.ndarray, float, bool, bool, Dict[str, Any]]:
        direction = float(np.clip(action[0], -1.0, 1.0))
        target = float(np.clip(self.position + direction * self.max_position,
                               -self.max_position, self.max_position))

        close = self.closes[self.current_step]
        prev_close = self.closes[self.current_step - 1]

        if self.position != 0:
            self.unrealized_pnl = (close - self.entry_price) * self.position

        trade_cost = abs(target - self.position) * close * TRADING_COST_RATE

        if target != self.position:
            if self.position != 0 and np.sign(target) != np.sign(self.position):
                self.realized_pnl += (close - self.entry_price) * self.position
                self.unrealized_pnl = 0.0
            if target != 0:
                self.entry_price = close
            self.position = target
            self.realized_pnl -= trade_cost

        self.current_step += 1
        terminated = self.current_step >= len(self.bars) - 1

        if terminated and self.position != 0:
            final_close = self.closes[self.current_step]
            self.realized_pnl += (final_close - self.entry_price) * self.position
            self.unrealized_pnl = 0.0
            self.position = 0.0

        price_return = _safe_ratio(close - prev_close, prev_close)
        reward = self.position * price_return * 100 - trade_cost * 0.1

        return self._get_observation(), float(reward), terminated, False, self._get_info()

    def _get_info(self) -> Dict[str, Any]:
        return {
            "position": self.position,
            "realized_pnl": self.realized_pnl,
            "unrealized_pnl": self.unrealized_pnl,
            "total_pnl": self.realized_pnl + self.unrealized_pnl,
        }

    @property
    def final_pnl(self) -> float:
        return self.realized_pnl + self.unrealized_pnl

    def _get_observation(self) -> np.ndarray:
        step = self.current_step
        lookback = self.lookback
        price = self.closes[step]

        # Closes relative to the current price, oldest first
        window = self.closes[step - lookback + 1:step + 1]
        features = list((window - price) / price) if price != 0 else [0.0] * lookback

        prev = self.closes[step - lookback:step]
        returns = np.divide(
            window - prev, prev, out=np.zeros_like(window), where=prev != 0
        )
        variance = max(float(np.mean(returns ** 2) - np.mean(returns) ** 2), 0.0)
        features.append(min(math.sqrt(variance) * math.sqrt(252), 1.0))

        features.append(self.position / self.max_position)
        features.append(self.unrealized_pnl / 1000)

        avg_volume = float(self.volumes[step - lookback:step].mean())
        features.append((self.volumes[step] - avg_volume) / (avg_volume + 1))

        sma = float(self.closes[step - lookback:step].mean())
        features.append(_safe_ratio(price - sma, sma))

        span = min(14, lookback)
        highest = float(self.highs[step - span:step].max())
        lowest = float(self.lows[step - span:step].min())
        features.append((price - lowest) / (highest - lowest + 0.0001) - 0.5)

        return _pad(features)


class PPOTrainingHistory(BaseModel):
    episode_rewards: List[float] = []
    policy_losses: List[float] = []
    value_losses: List[float] = []


def _check_state_size(state_size: int) -> None:
    if state_size != OBSERVATION_SIZE:
        raise ValueError(
            f"Agent state_size {state_size} does not match environment observation size {OBSERVATION_SIZE}"
        )


def train_dqn_agent(
    bars: Sequence[Bar],
    num_episodes: int = 100,
    config: Optional[DQNConfig] = None,
) -> Tuple[DQNAgent, List[TrainingMetrics]]:
    """
    Train a DQN agent by replaying the bars for `num_episodes` episodes.

    The agent stores every transition and runs one replay update per step.
    """
    config = config or DQNConfig()
    _check_state_size(config.state_size)
    logger.info(f"🚀 Starting DQN training with {len(bars)} bars for {num_episodes} episodes")

    agent = DQNAgent(config)
    env = DiscreteTradingEnv(bars)
    metrics: List[TrainingMetrics] = []

    for episode in range(num_episodes):
        state, _ = env.reset()
        total_reward = total_q = total_loss = 0.0
        steps = 0

        while True:
            action = agent.select_action(state)
            total_q += float(np.max(agent.get_q_values(state)))

            next_state, reward, terminated, truncated, _ = env.step(action)
            done = terminated or truncated
            agent.store_experience(Experience(state, action, reward, next_state, done))
            total_loss += agent.train()

            total_reward += reward
            state = next_state
            steps += 1
            if done:
                break

        episode_metrics = TrainingMetrics(
            episode=episode,
            total_reward=total_reward,
            avg_q=total_q / steps,
            epsilon=agent.epsilon,
            loss=total_loss / steps,
            pnl_reward=env.pnl,
        )
        metrics.append(episode_metrics)
        agent.training_metrics.append(episode_metrics)

        if (episode + 1) % 10 == 0:
            logger.info(
                f"Episode {episode + 1}/{num_episodes}, reward={total_reward:.2f}, "
                f"pnl={env.pnl:.2f}, epsilon={agent.epsilon:.4f}"
            )

    logger.info(f"✅ DQN training complete. Final epsilon={agent.epsilon:.4f}")
    return agent, metrics


def train_ppo_agent(
    bars: Sequence[Bar],
    config: Optional[PPOConfig] = None,
    episodes: int = 10,
    steps_per_episode: int = 500,
) -> Tuple[PPOAgent, PPOTrainingHistory]:
    """
    Train a PPO agent: collect up to `steps_per_episode` steps, then run
    one `train()` over the collected trajectory, per episode.
    """
    config = config or PPOConfig()
    _check_state_size(config.state_size)
    logger.info(f"🚀 Starting PPO training with {len(bars)} bars for {episodes} episodes")

    agent = PPOAgent(config)
    env = ContinuousTradingEnv(bars)
    history = PPOTrainingHistory()

    for episode in range(episodes):
        state, _ = env.reset()
        episode_reward = 0.0

        for _ in range(steps_per_episode):
            sample = agent.select_action(state)
            next_state, reward, terminated, truncated, _ = env.step(sample.action)
            done = terminated or truncated

            agent.store_experience(PPOExperience(
                state=state,
                action=sample.action,
                reward=reward,
                value=sample.value,
                log_prob=sample.log_prob,
                done=done,
            ))
            episode_reward += reward
            state = next_state
            if done:
                break

        stats = agent.train()
        agent.record_episode(episode_reward)

        history.episode_rewards.append(episode_reward)
        history.policy_losses.append(stats.policy_loss)
        history.value_losses.append(stats.value_loss)

        if (episode + 1) % 10 == 0:
            logger.info(
                f"Episode {episode + 1}/{episodes}, reward={episode_reward:.2f}, "
                f"policy_loss={stats.policy_loss:.4f}, value_loss={stats.value_loss:.4f}"
            )

    logger.info(f"✅ PPO training complete after {episodes} episodes")
    return agent, history
