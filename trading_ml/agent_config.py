"""
Model & Agent Configuration

Defines the hyperparameter schemas for every learner in the engine:
feature extraction, gradient boosting, DQN, PPO, the decision engine
and the retraining scheduler. All fields carry documented defaults and
may be overridden per instantiation.
"""

from pydantic import BaseModel, Field, field_validator
from typing import Optional, List, Literal
from enum import Enum

from .config import settings


class AgentType(str, Enum):
    """Reinforcement learning agent families"""
    DQN = "DQN"
    PPO = "PPO"


def _check_positive_sizes(values: List[int], field_name: str) -> List[int]:
    if any(v <= 0 for v in values):
        raise ValueError(f"{field_name} entries must be positive, got {values}")
    return values


class FeatureConfig(BaseModel):
    """Indicator windows used by the feature engineer"""

    lagged_returns: List[int] = Field(
        default=[1, 2, 3, 5, 10, 20],
        min_length=1,
        description="Horizons (in bars) of lagged returns"
    )
    sma_windows: List[int] = Field(default=[5, 10, 20, 50], min_length=1)
    ema_windows: List[int] = Field(default=[9, 21, 50], min_length=1)
    rsi_window: int = Field(default=14, ge=2, description="RSI period (Wilder smoothing)")
    bb_window: int = Field(default=20, ge=2, description="Bollinger band window")
    bb_std: float = Field(default=2.0, gt=0, description="Bollinger band width in std devs")
    atr_window: int = Field(default=14, ge=2, description="ATR period (Wilder smoothing)")
    volume_windows: List[int] = Field(default=[5, 10, 20], min_length=1)
    macd_fast: int = Field(default=12, ge=1)
    macd_slow: int = Field(default=26, ge=2)
    macd_signal: int = Field(default=9, ge=1)

    @field_validator("lagged_returns", "sma_windows", "ema_windows", "volume_windows")
    @classmethod
    def _windows_positive(cls, v, info):
        return _check_positive_sizes(v, info.field_name)

    @property
    def max_lookback(self) -> int:
        """Largest lookback any indicator needs before it is fully formed"""
        return max(
            *self.lagged_returns,
            *self.sma_windows,
            *self.ema_windows,
            self.rsi_window,
            self.bb_window,
            self.atr_window,
            self.macd_slow + self.macd_signal,
            *self.volume_windows,
        )


class GBModelConfig(BaseModel):
    """Gradient boosting hyperparameters"""

    num_trees: int = Field(default=100, ge=1, description="Boosting rounds")
    max_depth: int = Field(default=5, ge=1, le=16, description="Maximum tree depth")
    learning_rate: float = Field(default=0.1, gt=0, le=1.0, description="Shrinkage per tree")
    min_samples_leaf: int = Field(default=10, ge=1, description="Minimum rows per leaf")
    subsample_ratio: float = Field(default=0.8, gt=0, le=1.0, description="Row subsample per round")
    seed: Optional[int] = Field(default=None, description="Random seed for subsampling")


class DQNConfig(BaseModel):
    """Deep Q-Network hyperparameters"""

    state_size: int = Field(default=30, ge=1)
    action_size: int = Field(default=3, ge=2, description="HOLD, BUY, SELL")
    hidden_layers: List[int] = Field(default=[64, 32], min_length=1)
    learning_rate: float = Field(default=0.001, gt=0, le=1.0)
    gamma: float = Field(default=0.99, ge=0.0, le=1.0, description="Discount factor")
    epsilon_start: float = Field(default=1.0, ge=0.0, le=1.0)
    epsilon_end: float = Field(default=0.01, ge=0.0, le=1.0)
    epsilon_decay: float = Field(default=0.995, gt=0.0, le=1.0)
    batch_size: int = Field(default=32, ge=1)
    memory_size: int = Field(default=10000, ge=1)
    target_update_freq: int = Field(default=100, ge=1, description="Train calls between target syncs")
    seed: Optional[int] = None

    @field_validator("hidden_layers")
    @classmethod
    def _layers_positive(cls, v, info):
        return _check_positive_sizes(v, info.field_name)


class PPOConfig(BaseModel):
    """Proximal Policy Optimization hyperparameters"""

    state_size: int = Field(default=30, ge=1)
    action_size: int = Field(default=2, ge=1, description="direction, sizing")
    hidden_layers: List[int] = Field(default=[64, 32], min_length=1)
    hidden_activation: Literal["relu", "tanh"] = "relu"
    learning_rate: float = Field(default=0.0003, gt=0, le=1.0)
    gamma: float = Field(default=0.99, ge=0.0, le=1.0)
    gae_lambda: float = Field(default=0.95, ge=0.0, le=1.0)
    clip_ratio: float = Field(default=0.2, gt=0.0, lt=1.0)
    entropy_coeff: float = Field(default=0.01, ge=0.0)
    value_coeff: float = Field(default=0.5, ge=0.0)
    max_grad_norm: float = Field(default=0.5, gt=0.0)
    epochs: int = Field(default=4, ge=1)
    mini_batch_size: int = Field(default=32, ge=1)
    fd_epsilon: float = Field(default=1e-5, gt=0.0, description="Finite-difference step")
    seed: Optional[int] = None

    @field_validator("hidden_layers")
    @classmethod
    def _layers_positive(cls, v, info):
        return _check_positive_sizes(v, info.field_name)


class DecisionEngineConfig(BaseModel):
    """Decision engine settings"""

    default_agent_type: AgentType = Field(
        default_factory=lambda: AgentType(settings.default_agent_type.upper()),
        description="Agent family used when a decision call names none (DEFAULT_AGENT_TYPE)"
    )
    min_confidence: float = Field(default=0.6, ge=0.0, le=1.0)
    max_position_size: int = Field(default=10, ge=1)
    state_size: int = Field(default=30, ge=28, description="State vector width (zero padded)")
    max_logs: int = Field(
        default_factory=lambda: settings.action_log_size,
        ge=2,
        description="Action log capacity (ACTION_LOG_SIZE)"
    )


class RetrainingConfig(BaseModel):
    """Drift detection and retraining cadence"""

    retraining_interval_days: int = Field(default=7, ge=1)
    psi_threshold: float = Field(default=0.2, gt=0.0)
    kl_divergence_threshold: float = Field(default=0.1, gt=0.0)
    min_bars_for_retraining: int = Field(default=1000, ge=1)
    auto_retrain: bool = False


# Fixed hyperparameters for agents created lazily by the decision engine
ENGINE_DQN_CONFIG = DQNConfig(
    hidden_layers=[64, 32],
    learning_rate=0.001,
    gamma=0.99,
    epsilon_start=0.1,
    epsilon_end=0.01,
    epsilon_decay=0.995,
    memory_size=10000,
    batch_size=32,
    target_update_freq=100,
)

ENGINE_PPO_CONFIG = PPOConfig(
    hidden_layers=[64, 32],
    learning_rate=0.0003,
    gamma=0.99,
    gae_lambda=0.95,
    clip_ratio=0.2,
    epochs=4,
    mini_batch_size=64,
    value_coeff=0.5,
    entropy_coeff=0.01,
    max_grad_norm=0.5,
)
