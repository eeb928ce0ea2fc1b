"""
State Encoder: converts a bar window plus the current position into the
fixed-width state vector the RL agents see.

State layout (28 values, zero padded to `state_size`):
- RSI, stochastic %K / %D (centered)
- MACD line, signal and histogram (tanh-compressed)
- Bollinger position and width
- ATR and volume relative to their 20-bar means
- 10 lagged close returns (tanh-compressed)
- Position relative to the maximum position size
- Trend strength, up / down momentum
- Distance from VWAP
- Volume concentration in the upper / lower third of the price range
- Volatility regime
"""

import math
import logging
from typing import List, Sequence

import numpy as np
import pandas as pd

from .market_data import Bar, bars_to_frame
from . import indicators

logger = logging.getLogger(__name__)

MIN_STATE_BARS = 50
BASE_STATE_SIZE = 28


def _last(series: pd.Series) -> float:
    return float(series.iloc[-1]) if len(series) else float("nan")


def _ratio_to_mean(series: pd.Series, window: int) -> float:
    """Last value over the mean of the last `window` values"""
    tail = series.dropna().tail(window)
    if tail.empty:
        return float("nan")
    mean = float(tail.mean())
    return float(tail.iloc[-1]) / mean if mean != 0 else float("nan")


class StateEncoder:
    """
    Encodes market state for the decision engine.

    Indicators are computed on the supplied bars, so a window of at least
    50 bars is enough; shorter windows encode to all zeros.
    """

    def __init__(self, state_size: int = 30, max_position_size: int = 10):
        if state_size < BASE_STATE_SIZE:
            raise ValueError(f"state_size must be at least {BASE_STATE_SIZE}, got {state_size}")
        self.state_size = state_size
        self.max_position_size = max_position_size

    def encode(self, bars: Sequence[Bar], current_position: float = 0) -> np.ndarray:
        if len(bars) < MIN_STATE_BARS:
            logger.debug(f"Only {len(bars)} bars for state encoding, returning zero state")
            return np.zeros(self.state_size)

        df = bars_to_frame(bars)
        close, high, low, volume = df['close'], df['high'], df['low'], df['volume']

        state: List[float] = []

        state.append(_last(indicators.rsi(close, 14)) / 100 - 0.5)
        stoch_k, stoch_d = indicators.stochastic(high, low, close, 14, 3)
        state.append(_last(stoch_k) / 100 - 0.5)
        state.append(_last(stoch_d) / 100 - 0.5)

        macd_line, macd_signal, macd_hist = indicators.macd(close, 12, 26, 9)
        state.append(math.tanh(_last(macd_line) / 10))
        state.append(math.tanh(_last(macd_signal) / 10))
        state.append(math.tanh(_last(macd_hist) / 5))

        upper, middle, lower = (_last(s) for s in indicators.bollinger_bands(close, 20, 2.0))
        band = upper - lower
        last_close = float(close.iloc[-1])
        state.append((last_close - lower) / band - 0.5 if band else float("nan"))
        state.append(math.tanh(band / middle * 10) if middle else float("nan"))

        atr = indicators.atr(high, low, close, 14)
        state.append(math.tanh(_ratio_to_mean(atr, 20) - 1))
        state.append(math.tanh(_ratio_to_mean(volume, 20) - 1))

        closes = close.to_numpy(dtype=float)
        for i in range(1, 11):
            prev = closes[-i - 1]
            ret = (closes[-i] - prev) / prev if prev else 0.0
            state.append(math.tanh(ret * 100))

        state.append(current_position / self.max_position_size)
        state.append(self._trend_strength(close) - 0.5)
        up, down = self._momentum(closes)
        state.append(up - 0.5)
        state.append(down - 0.5)

        vwap = _last(indicators.vwap(high, low, close, volume))
        state.append(math.tanh((last_close - vwap) / vwap * 10) if vwap else float("nan"))

        high_share, low_share = self._volume_profile(df.tail(MIN_STATE_BARS))
        state.append(math.tanh(high_share * 3 - 1))
        state.append(math.tanh(low_share * 3 - 1))

        state.append(self._volatility_regime(close) - 0.5)

        encoded = np.zeros(self.state_size)
        values = np.array(state, dtype=float)
        values[~np.isfinite(values)] = 0.0
        encoded[:len(values)] = values
        return encoded

    @staticmethod
    def _trend_strength(close: pd.Series, window: int = 20) -> float:
        """Share of the last `window` closes above their SMA"""
        average = indicators.sma(close, window)
        recent = (close > average)[average.notna()].tail(window)
        return float(recent.mean()) if len(recent) else 0.5

    @staticmethod
    def _momentum(closes: np.ndarray, window: int = 10):
        changes = np.diff(closes[-(window + 1):])
        return float(np.mean(changes > 0)), float(np.mean(changes < 0))

    @staticmethod
    def _volume_profile(df: pd.DataFrame):
        """Volume shares traded in the upper and lower third of the close range"""
        closes = df['close'].to_numpy(dtype=float)
        volumes = df['volume'].to_numpy(dtype=float)
        total = volumes.sum()
        lo, hi = closes.min(), closes.max()
        if total <= 0 or hi == lo:
            return 1 / 3, 1 / 3
        third = (hi - lo) / 3
        upper = volumes[closes >= hi - third].sum() / total
        lower = volumes[closes <= lo + third].sum() / total
        return float(upper), float(lower)

    @staticmethod
    def _volatility_regime(close: pd.Series, window: int = 10, history: int = 50) -> float:
        """Percentile of the current rolling return volatility within recent history"""
        vol = close.pct_change().rolling(window=window).std().dropna().tail(history)
        if vol.empty:
            return 0.5
        return float((vol <= vol.iloc[-1]).mean())
