"""
Feature Engineering

Converts time-ordered OHLCV bars into labeled feature vectors for the
gradient boosting classifier:
- Lagged returns at multiple horizons
- SMA / EMA price ratios
- RSI (Wilder), Bollinger position and width, ATR ratio
- MACD line, signal and histogram
- Volume ratios
- Candle geometry and a 3-bar green streak
- Sinusoidal hour-of-day / day-of-week encodings

Only bars with a fully formed lookback window and a label `h` bars
ahead are emitted. Indicators with a zero or undefined denominator are
left out of a vector rather than emitted as NaN.
"""

import math
import logging
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np
from pydantic import BaseModel, ConfigDict

from .agent_config import FeatureConfig
from .config import settings
from .market_data import Bar, bars_to_frame
from . import indicators

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FeatureVector:
    """Named indicator values for one bar, with an optional direction label"""
    timestamp: datetime
    symbol: str
    features: Dict[str, float] = field(default_factory=dict)
    target: Optional[int] = None


class NormalizationStats(BaseModel):
    """Per-feature mean/std frozen from a training split"""
    mean: float
    std: float

    model_config = ConfigDict(frozen=True)


def _usable(value: float) -> bool:
    """True for a finite, non-zero denominator"""
    return value is not None and math.isfinite(value) and value != 0


def _finite(value: float) -> bool:
    return value is not None and math.isfinite(value)


class FeatureEngineer:
    """Builds feature vectors from bar windows"""

    def __init__(self, config: Optional[FeatureConfig] = None):
        self.config = config or FeatureConfig()

    def extract_features(self, bars: Sequence[Bar], target_lookforward: int = 5) -> List[FeatureVector]:
        """
        Extract labeled feature vectors from a bar sequence.

        Args:
            bars: Time-ordered bars (at least `settings.min_training_bars`, 100 by default)
            target_lookforward: Horizon `h` of the direction label

        Returns:
            One FeatureVector per bar index in [max_lookback, len(bars) - h),
            or an empty list when too few bars are supplied
        """
        min_bars = settings.min_training_bars
        if len(bars) < min_bars:
            logger.warning(
                f"Insufficient bars for feature extraction: {len(bars)}, need at least {min_bars}"
            )
            return []

        cfg = self.config
        df = bars_to_frame(bars)
        closes = df['close'].to_numpy(dtype=float)
        opens = df['open'].to_numpy(dtype=float)
        highs = df['high'].to_numpy(dtype=float)
        lows = df['low'].to_numpy(dtype=float)
        volumes = df['volume'].to_numpy(dtype=float)

        # Indicator series computed once over the full sequence
        sma_cache = {w: indicators.sma(df['close'], w).to_numpy() for w in cfg.sma_windows}
        ema_cache = {w: indicators.ema(df['close'], w).to_numpy() for w in cfg.ema_windows}
        rsi = indicators.rsi(df['close'], cfg.rsi_window).to_numpy()
        bb_upper, bb_middle, bb_lower = (
            s.to_numpy() for s in indicators.bollinger_bands(df['close'], cfg.bb_window, cfg.bb_std)
        )
        atr = indicators.atr(df['high'], df['low'], df['close'], cfg.atr_window).to_numpy()
        macd_line, macd_signal, macd_hist = (
            s.to_numpy() for s in indicators.macd(df['close'], cfg.macd_fast, cfg.macd_slow, cfg.macd_signal)
        )
        volume_sma_cache = {w: indicators.sma(df['volume'], w).to_numpy() for w in cfg.volume_windows}

        min_index = cfg.max_lookback
        vectors: List[FeatureVector] = []

        for i in range(min_index, len(bars) - target_lookforward):
            bar = bars[i]
            fmap: Dict[str, float] = {}
            close = closes[i]

            for lag in cfg.lagged_returns:
                if i >= lag and _usable(closes[i - lag]):
                    fmap[f"return_{lag}"] = (close - closes[i - lag]) / closes[i - lag]

            for w in cfg.sma_windows:
                if _usable(sma_cache[w][i]) and close != 0:
                    fmap[f"sma_{w}_ratio"] = close / sma_cache[w][i] - 1

            for w in cfg.ema_windows:
                if _usable(ema_cache[w][i]) and close != 0:
                    fmap[f"ema_{w}_ratio"] = close / ema_cache[w][i] - 1

            if _finite(rsi[i]):
                fmap["rsi"] = rsi[i] / 100

            band = bb_upper[i] - bb_lower[i]
            if _finite(bb_upper[i]) and _finite(bb_lower[i]) and band != 0:
                fmap["bb_position"] = (close - bb_lower[i]) / band
                if _usable(bb_middle[i]):
                    fmap["bb_width"] = band / bb_middle[i]

            if _usable(atr[i]) and close != 0:
                fmap["atr_ratio"] = atr[i] / close

            if _finite(macd_line[i]):
                fmap["macd"] = macd_line[i]
                fmap["macd_signal"] = macd_signal[i] if _finite(macd_signal[i]) else 0.0
                fmap["macd_histogram"] = macd_hist[i] if _finite(macd_hist[i]) else 0.0

            for w in cfg.volume_windows:
                if _usable(volume_sma_cache[w][i]):
                    fmap[f"volume_{w}_ratio"] = volumes[i] / volume_sma_cache[w][i]

            candle_range = highs[i] - lows[i]
            if candle_range != 0:
                fmap["body_ratio"] = abs(close - opens[i]) / candle_range
                fmap["upper_shadow"] = (highs[i] - max(opens[i], close)) / candle_range
                fmap["lower_shadow"] = (min(opens[i], close) - lows[i]) / candle_range

            fmap["is_green"] = 1.0 if close > opens[i] else 0.0

            if i >= 3:
                green = sum(1 for j in range(i - 2, i + 1) if closes[j] > opens[j])
                fmap["green_streak_3"] = green / 3

            ts = bar.timestamp.astimezone(timezone.utc)
            hour = ts.hour
            day_of_week = ts.isoweekday() % 7  # Sunday = 0
            fmap["hour_sin"] = math.sin(2 * math.pi * hour / 24)
            fmap["hour_cos"] = math.cos(2 * math.pi * hour / 24)
            fmap["dow_sin"] = math.sin(2 * math.pi * day_of_week / 7)
            fmap["dow_cos"] = math.cos(2 * math.pi * day_of_week / 7)

            # Drop anything that still came out non-finite
            fmap = {k: float(v) for k, v in fmap.items() if _finite(v)}

            target = 1 if closes[i + target_lookforward] > close else 0
            vectors.append(FeatureVector(
                timestamp=bar.timestamp,
                symbol=bar.symbol,
                features=fmap,
                target=target,
            ))

        n_features = len(vectors[0].features) if vectors else 0
        logger.info(f"Extracted {len(vectors)} feature vectors with {n_features} features each")
        return vectors

    def feature_names(self) -> List[str]:
        """Every feature name this engineer can emit, in canonical order"""
        cfg = self.config
        names = [f"return_{lag}" for lag in cfg.lagged_returns]
        names += [f"sma_{w}_ratio" for w in cfg.sma_windows]
        names += [f"ema_{w}_ratio" for w in cfg.ema_windows]
        names += ["rsi", "bb_position", "bb_width", "atr_ratio"]
        names += ["macd", "macd_signal", "macd_histogram"]
        names += [f"volume_{w}_ratio" for w in cfg.volume_windows]
        names += ["body_ratio", "upper_shadow", "lower_shadow", "is_green", "green_streak_3"]
        names += ["hour_sin", "hour_cos", "dow_sin", "dow_cos"]
        return names


def _collect_names(vectors: Sequence[FeatureVector]) -> List[str]:
    names: Dict[str, None] = {}
    for v in vectors:
        for name in v.features:
            names.setdefault(name, None)
    return list(names)


def normalize_features(
    vectors: Sequence[FeatureVector],
) -> Tuple[List[FeatureVector], Dict[str, NormalizationStats]]:
    """
    Z-score every feature over the batch.

    Stats ignore non-finite values. A zero std is replaced by 1. Any
    normalized value that is missing or non-finite becomes 0, so every
    returned vector carries the same feature names.

    Returns:
        Tuple of (normalized vectors, stats per feature name)
    """
    if not vectors:
        return [], {}

    names = _collect_names(vectors)
    stats: Dict[str, NormalizationStats] = {}

    for name in names:
        values = np.array(
            [v.features.get(name, np.nan) for v in vectors], dtype=float
        )
        values = values[np.isfinite(values)]
        if len(values) == 0:
            stats[name] = NormalizationStats(mean=0.0, std=1.0)
            continue
        mean = float(values.mean())
        std = float(values.std())
        stats[name] = NormalizationStats(mean=mean, std=std if std > 0 else 1.0)

    normalized = [
        replace(v, features=apply_normalization(v.features, stats, names))
        for v in vectors
    ]
    return normalized, stats


def apply_normalization(
    features: Dict[str, float],
    stats: Dict[str, NormalizationStats],
    names: Optional[Sequence[str]] = None,
) -> Dict[str, float]:
    """Normalize a raw feature map with frozen stats; unknown or bad values map to 0"""
    result = {}
    for name in (names if names is not None else stats.keys()):
        stat = stats.get(name)
        value = features.get(name)
        if stat is None or value is None:
            result[name] = 0.0
            continue
        norm = (value - stat.mean) / stat.std
        result[name] = norm if math.isfinite(norm) else 0.0
    return result


def split_train_test(
    vectors: Sequence[FeatureVector],
    train_ratio: float = 0.8,
) -> Tuple[List[FeatureVector], List[FeatureVector]]:
    """Order-preserving prefix/suffix split (no shuffling)"""
    split_idx = int(math.floor(len(vectors) * train_ratio))
    return list(vectors[:split_idx]), list(vectors[split_idx:])
