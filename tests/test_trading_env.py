"""Tests for the gymnasium trading environments and offline training loops."""

import numpy as np
import pytest

from trading_ml.agent_config import DQNConfig, PPOConfig
from trading_ml.dqn_agent import DQNAction
from trading_ml.trading_env import (
    OBSERVATION_SIZE,
    ContinuousTradingEnv,
    DiscreteTradingEnv,
    train_dqn_agent,
    train_ppo_agent,
)

from conftest import make_bars, make_linear_bars


def run_to_end(env, action):
    steps = 0
    while True:
        _, _, terminated, truncated, info = env.step(action)
        steps += 1
        if terminated or truncated:
            return steps, info


class TestDiscreteTradingEnv:
    """Unit-position replay."""

    def test_spaces_and_reset(self, bars):
        env = DiscreteTradingEnv(bars)
        obs, info = env.reset(seed=0)
        assert env.action_space.n == 3
        assert obs.shape == (OBSERVATION_SIZE,)
        assert env.observation_space.contains(obs)
        assert info["position"] == 0

    def test_requires_lookback_plus_two(self):
        with pytest.raises(ValueError):
            DiscreteTradingEnv(make_bars(51))

    def test_episode_length(self, bars):
        env = DiscreteTradingEnv(bars)
        env.reset()
        steps, _ = run_to_end(env, DQNAction.HOLD)
        assert steps == len(bars) - 50 - 1

    def test_long_position_rewarded_on_rise(self):
        env = DiscreteTradingEnv(make_linear_bars(60))
        env.reset()
        _, reward, _, _, info = env.step(DQNAction.BUY)
        assert reward == 0.0
        assert info["position"] == 1
        _, reward, _, _, info = env.step(DQNAction.HOLD)
        assert reward == pytest.approx(0.01)
        assert info["pnl"] == pytest.approx(1.0)

    def test_flip_to_short(self):
        env = DiscreteTradingEnv(make_linear_bars(60))
        env.reset()
        env.step(DQNAction.BUY)
        _, _, _, _, info = env.step(DQNAction.SELL)
        assert info["position"] == -1
        _, _, _, _, info = env.step(DQNAction.HOLD)
        assert info["drawdown"] == pytest.approx(1.0)

    def test_observation_carries_position(self):
        env = DiscreteTradingEnv(make_linear_bars(60))
        env.reset()
        obs, *_ = env.step(DQNAction.BUY)
        assert obs[16] == 1.0
        assert np.all(np.abs(obs) <= 3.0)

    def test_reset_restores_state(self, bars):
        env = DiscreteTradingEnv(bars)
        first, _ = env.reset()
        env.step(DQNAction.BUY)
        again, info = env.reset()
        np.testing.assert_array_equal(first, again)
        assert info["pnl"] == 0.0


class TestContinuousTradingEnv:
    """Sized-position replay with trading costs."""

    def test_spaces(self):
        env = ContinuousTradingEnv(make_linear_bars(40))
        obs, _ = env.reset()
        assert env.action_space.shape == (2,)
        assert obs.shape == (OBSERVATION_SIZE,)
        assert np.all(obs[26:] == 0.0)

    def test_requires_enough_bars(self):
        with pytest.raises(ValueError):
            ContinuousTradingEnv(make_linear_bars(21))

    def test_lookback_must_fit_observation(self):
        with pytest.raises(ValueError, match="max is 24"):
            ContinuousTradingEnv(make_linear_bars(60), lookback=25)
        env = ContinuousTradingEnv(make_linear_bars(60), lookback=24)
        obs, _ = env.reset()
        # Position is the 26th feature, right after the closes and volatility
        assert obs[25] == 0.0
        obs, _, _, _, _ = env.step(np.array([1.0, 0.0]))
        assert obs[25] == pytest.approx(1.0)

    def test_first_step_reward(self):
        env = ContinuousTradingEnv(make_linear_bars(40))
        env.reset()
        _, reward, _, _, info = env.step(np.array([1.0, 0.0]))
        expected = 10 * (1 / 119) * 100 - 0.1 * (10 * 120 * 0.0002)
        assert reward == pytest.approx(expected)
        assert info["position"] == 10.0

    def test_position_clamped(self):
        env = ContinuousTradingEnv(make_linear_bars(40))
        env.reset()
        env.step(np.array([1.0, 0.0]))
        _, _, _, _, info = env.step(np.array([1.0, 0.0]))
        assert info["position"] == 10.0

    def test_position_closed_at_end(self):
        env = ContinuousTradingEnv(make_linear_bars(30))
        env.reset()
        steps, info = run_to_end(env, np.array([1.0, 0.0]))
        assert steps == 9
        assert info["position"] == 0.0
        assert env.final_pnl == pytest.approx(10 * (129 - 120) - 10 * 120 * 0.0002)

    def test_flat_action_costs_nothing(self):
        env = ContinuousTradingEnv(make_linear_bars(40))
        env.reset()
        _, reward, _, _, info = env.step(np.array([0.0, 0.0]))
        assert reward == 0.0
        assert info["total_pnl"] == 0.0


class TestTrainingLoops:

    def test_train_dqn_agent(self):
        config = DQNConfig(hidden_layers=[8], batch_size=4, seed=0)
        agent, metrics = train_dqn_agent(make_bars(60), num_episodes=3, config=config)
        assert len(metrics) == 3
        assert [m.episode for m in metrics] == [0, 1, 2]
        assert agent.memory_size == 27
        assert agent.training_metrics == metrics
        assert agent.epsilon < 1.0

    def test_train_ppo_agent(self):
        config = PPOConfig(hidden_layers=[8], mini_batch_size=8, epochs=1, seed=0)
        agent, history = train_ppo_agent(make_bars(40), config=config, episodes=2)
        assert len(history.episode_rewards) == 2
        assert len(history.policy_losses) == 2
        assert agent.get_stats().total_episodes == 2
        assert agent.buffer_size == 0

    def test_state_size_mismatch(self, bars):
        with pytest.raises(ValueError):
            train_dqn_agent(bars, num_episodes=1, config=DQNConfig(state_size=10))
        with pytest.raises(ValueError):
            train_ppo_agent(bars, config=PPOConfig(state_size=10), episodes=1)
