"""
Technical Indicators Calculator

Thin wrappers over the `ta` indicator classes, returning pandas series
aligned with a positional (RangeIndex) price frame. Values are NaN until
an indicator's window is fully formed; callers decide whether to skip or
coerce them.
"""

import pandas as pd
import numpy as np
from typing import Tuple
from ta.trend import SMAIndicator, EMAIndicator, MACD
from ta.momentum import RSIIndicator, StochasticOscillator
from ta.volatility import BollingerBands, AverageTrueRange


def sma(series: pd.Series, window: int) -> pd.Series:
    """Simple moving average (NaN until `window` values are available)"""
    return SMAIndicator(close=series.astype(float), window=window).sma_indicator()


def ema(series: pd.Series, window: int) -> pd.Series:
    """Exponential moving average, alpha = 2 / (window + 1)"""
    return EMAIndicator(close=series.astype(float), window=window).ema_indicator()


def rsi(close: pd.Series, window: int = 14) -> pd.Series:
    """Relative Strength Index with Wilder smoothing, 0..100"""
    return RSIIndicator(close=close.astype(float), window=window).rsi()


def bollinger_bands(
    close: pd.Series,
    window: int = 20,
    num_std: float = 2.0,
) -> Tuple[pd.Series, pd.Series, pd.Series]:
    """Bollinger bands (upper, middle, lower) using population std"""
    bb = BollingerBands(close=close.astype(float), window=window, window_dev=num_std)
    return bb.bollinger_hband(), bb.bollinger_mavg(), bb.bollinger_lband()


def atr(high: pd.Series, low: pd.Series, close: pd.Series, window: int = 14) -> pd.Series:
    """Average True Range with Wilder smoothing"""
    if len(close) < window:
        return pd.Series(np.nan, index=close.index)
    values = AverageTrueRange(
        high=high.astype(float), low=low.astype(float), close=close.astype(float), window=window
    ).average_true_range()
    # ta fills the incomplete window with zeros
    values.iloc[:window - 1] = np.nan
    return values


def macd(
    close: pd.Series,
    fast: int = 12,
    slow: int = 26,
    signal: int = 9,
) -> Tuple[pd.Series, pd.Series, pd.Series]:
    """MACD line, signal line and histogram"""
    m = MACD(close=close.astype(float), window_slow=slow, window_fast=fast, window_sign=signal)
    return m.macd(), m.macd_signal(), m.macd_diff()


def stochastic(
    high: pd.Series,
    low: pd.Series,
    close: pd.Series,
    window: int = 14,
    smooth_window: int = 3,
) -> Tuple[pd.Series, pd.Series]:
    """Stochastic oscillator %K and %D, 0..100 (NaN over a flat range)"""
    stoch = StochasticOscillator(
        high=high.astype(float),
        low=low.astype(float),
        close=close.astype(float),
        window=window,
        smooth_window=smooth_window,
    )
    k = stoch.stoch().replace([np.inf, -np.inf], np.nan)
    d = stoch.stoch_signal().replace([np.inf, -np.inf], np.nan)
    return k, d


def vwap(high: pd.Series, low: pd.Series, close: pd.Series, volume: pd.Series) -> pd.Series:
    """Cumulative volume-weighted average price over the given frame"""
    typical = (high + low + close) / 3
    cum_volume = volume.cumsum().replace(0, np.nan)
    return (typical * volume).cumsum() / cum_volume
