"""Shared synthetic market data for the test suite."""

from datetime import datetime, timedelta, timezone
from typing import List

import numpy as np
import pytest

from trading_ml.market_data import Bar


def make_bars(
    n: int = 200,
    seed: int = 42,
    drift: float = 0.0,
    volatility: float = 0.5,
    symbol: str = "TEST",
    start: datetime = datetime(2024, 1, 7, tzinfo=timezone.utc),
    step: timedelta = timedelta(hours=1),
) -> List[Bar]:
    """Random-walk OHLCV bars with an optional per-bar drift."""
    rng = np.random.RandomState(seed)
    close = 100.0 + np.cumsum(drift + rng.randn(n) * volatility)
    close = np.maximum(close, 1.0)
    open_ = close + rng.randn(n) * 0.2
    high = np.maximum(open_, close) + np.abs(rng.randn(n)) * 0.3
    low = np.minimum(open_, close) - np.abs(rng.randn(n)) * 0.3
    volume = rng.randint(100_000, 1_000_000, n).astype(float)

    return [
        Bar(
            timestamp=start + i * step,
            symbol=symbol,
            open=float(open_[i]),
            high=float(high[i]),
            low=float(low[i]),
            close=float(close[i]),
            volume=float(volume[i]),
        )
        for i in range(n)
    ]


def make_linear_bars(n: int, start_price: float = 100.0, increment: float = 1.0) -> List[Bar]:
    """Deterministic bars whose close rises by `increment` every bar."""
    t0 = datetime(2024, 1, 1, tzinfo=timezone.utc)
    bars = []
    for i in range(n):
        close = start_price + i * increment
        bars.append(Bar(
            timestamp=t0 + timedelta(hours=i),
            symbol="LIN",
            open=close - increment / 2,
            high=close + 0.5,
            low=close - increment / 2 - 0.5,
            close=close,
            volume=1000.0,
        ))
    return bars


@pytest.fixture
def bars() -> List[Bar]:
    return make_bars(200)


@pytest.fixture
def training_bars() -> List[Bar]:
    """Enough bars for 500+ labeled feature vectors"""
    return make_bars(600, seed=7, symbol="AAPL")


@pytest.fixture
def uptrend_bars() -> List[Bar]:
    return make_bars(60, seed=3, drift=0.8, volatility=0.1, symbol="UP")
