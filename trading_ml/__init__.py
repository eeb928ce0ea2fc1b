"""
Trading ML - Decision and Learning Engine for Trading Bots

Turns a rolling window of market bars into a trading action and trains
the models that produce those actions:
- Feature engineering on OHLCV bars
- Gradient-boosted tree classifier (direction prediction)
- DQN agent (discrete HOLD/BUY/SELL)
- PPO agent (continuous direction + sizing)
- Per-bot decision engine and versioned model training service
"""

__version__ = "1.0.0"
