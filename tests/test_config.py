"""Tests for service settings and agent/model configuration."""

import pytest
from pydantic import ValidationError

from trading_ml.config import Settings, settings
from trading_ml.decision_engine import RLDecisionEngine
from trading_ml.features import FeatureEngineer
from trading_ml.agent_config import (
    AgentType,
    DecisionEngineConfig,
    DQNConfig,
    ENGINE_DQN_CONFIG,
    ENGINE_PPO_CONFIG,
    FeatureConfig,
    GBModelConfig,
    PPOConfig,
    RetrainingConfig,
)

from conftest import make_bars


class TestSettings:
    """Env-backed service settings."""

    def test_defaults(self, monkeypatch):
        for var in ("MIN_TRAINING_VECTORS", "MIN_TRAINING_BARS", "TARGET_LOOKFORWARD", "ACTION_LOG_SIZE"):
            monkeypatch.delenv(var, raising=False)
        fresh = Settings()
        assert fresh.min_training_vectors == 500
        assert fresh.min_training_bars == 100
        assert fresh.target_lookforward == 5
        assert fresh.action_log_size == 10000

    def test_service_name(self):
        assert Settings().service_name == "daytrader-trading-ml"

    def test_env_override(self, monkeypatch):
        monkeypatch.setenv("MIN_TRAINING_VECTORS", "250")
        assert Settings().min_training_vectors == 250

    def test_malformed_env_rejected(self, monkeypatch):
        monkeypatch.setenv("MIN_TRAINING_VECTORS", "not-a-number")
        with pytest.raises(ValidationError):
            Settings()

    def test_decision_engine_follows_settings(self, monkeypatch):
        monkeypatch.setattr(settings, "action_log_size", 4)
        monkeypatch.setattr(settings, "default_agent_type", "dqn")
        cfg = DecisionEngineConfig()
        assert cfg.max_logs == 4
        assert cfg.default_agent_type == AgentType.DQN
        assert RLDecisionEngine().config.max_logs == 4

    def test_feature_engineer_follows_min_bars(self, monkeypatch):
        monkeypatch.setattr(settings, "min_training_bars", 130)
        assert FeatureEngineer().extract_features(make_bars(120)) == []
        monkeypatch.setattr(settings, "min_training_bars", 60)
        assert len(FeatureEngineer().extract_features(make_bars(70))) == 70 - 50 - 5


class TestFeatureConfig:
    """Indicator windows."""

    def test_default_max_lookback(self):
        assert FeatureConfig().max_lookback == 50

    def test_lookback_follows_windows(self):
        cfg = FeatureConfig(sma_windows=[5, 100])
        assert cfg.max_lookback == 100

    def test_rejects_non_positive_window(self):
        with pytest.raises(ValidationError):
            FeatureConfig(lagged_returns=[1, 0])


class TestModelConfigs:
    """Hyperparameter defaults and bounds."""

    def test_gb_defaults(self):
        cfg = GBModelConfig()
        assert cfg.num_trees == 100
        assert cfg.max_depth == 5
        assert cfg.learning_rate == 0.1
        assert cfg.min_samples_leaf == 10
        assert cfg.subsample_ratio == 0.8
        assert cfg.seed is None

    def test_gb_rejects_zero_subsample(self):
        with pytest.raises(ValidationError):
            GBModelConfig(subsample_ratio=0)

    def test_dqn_defaults(self):
        cfg = DQNConfig()
        assert cfg.action_size == 3
        assert cfg.hidden_layers == [64, 32]
        assert cfg.epsilon_start == 1.0
        assert cfg.epsilon_end == 0.01
        assert cfg.memory_size == 10000

    def test_dqn_rejects_empty_layer(self):
        with pytest.raises(ValidationError):
            DQNConfig(hidden_layers=[0])

    def test_ppo_defaults(self):
        cfg = PPOConfig()
        assert cfg.action_size == 2
        assert cfg.clip_ratio == 0.2
        assert cfg.max_grad_norm == 0.5
        assert cfg.hidden_activation == "relu"

    def test_ppo_rejects_unknown_activation(self):
        with pytest.raises(ValidationError):
            PPOConfig(hidden_activation="sigmoid")

    def test_decision_engine_needs_room_for_state(self):
        with pytest.raises(ValidationError):
            DecisionEngineConfig(state_size=20)

    def test_decision_engine_defaults(self):
        cfg = DecisionEngineConfig()
        assert cfg.default_agent_type == AgentType.PPO
        assert cfg.min_confidence == 0.6
        assert cfg.max_position_size == 10

    def test_retraining_defaults(self):
        cfg = RetrainingConfig()
        assert cfg.retraining_interval_days == 7
        assert cfg.psi_threshold == 0.2
        assert cfg.kl_divergence_threshold == 0.1
        assert cfg.min_bars_for_retraining == 1000
        assert cfg.auto_retrain is False


class TestEnginePresets:
    """Fixed presets for lazily created agents."""

    def test_dqn_preset_explores_less(self):
        assert ENGINE_DQN_CONFIG.epsilon_start == 0.1
        assert ENGINE_DQN_CONFIG.target_update_freq == 100

    def test_ppo_preset_batch(self):
        assert ENGINE_PPO_CONFIG.mini_batch_size == 64
        assert ENGINE_PPO_CONFIG.learning_rate == 0.0003

    def test_agent_type_from_string(self):
        assert AgentType("DQN") == AgentType.DQN
