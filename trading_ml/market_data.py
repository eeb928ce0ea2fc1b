"""
Market Bars

Immutable OHLCV bar records and helpers to convert raw OHLCV payloads
into time-ordered bars and DataFrames.
"""

import numbers
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import List, Dict, Any, Sequence, Union

import pandas as pd


@dataclass(frozen=True)
class Bar:
    """Single OHLCV bar"""
    timestamp: datetime
    symbol: str
    open: float
    high: float
    low: float
    close: float
    volume: float


def _to_datetime(value: Union[int, float, str, datetime]) -> datetime:
    """Convert ms-epoch, ISO strings or datetimes to an aware UTC datetime"""
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, numbers.Real):
        return datetime.fromtimestamp(value / 1000.0, tz=timezone.utc)
    parsed = pd.Timestamp(value)
    if parsed.tzinfo is None:
        parsed = parsed.tz_localize("UTC")
    return parsed.to_pydatetime()


def prepare_bars(
    ohlcv_data: List[Dict[str, Any]],
    symbol: str,
    timestamp_key: str = 'timestamp',
) -> List[Bar]:
    """
    Convert OHLCV dictionaries into time-ordered bars.

    Args:
        ohlcv_data: List of OHLCV dictionaries
        symbol: Symbol the bars belong to
        timestamp_key: Key for timestamp in data (ms epoch, ISO string or datetime)

    Returns:
        Bars sorted by timestamp
    """
    column_mapping = {
        'Open': 'open', 'High': 'high', 'Low': 'low',
        'Close': 'close', 'Volume': 'volume',
        'Timestamp': 'timestamp', timestamp_key: 'timestamp'
    }

    bars = []
    for row in ohlcv_data:
        row = {column_mapping.get(k, k): v for k, v in row.items()}
        for col in ('timestamp', 'open', 'high', 'low', 'close', 'volume'):
            if col not in row:
                raise ValueError(f"Missing required column: {col}")
        bars.append(Bar(
            timestamp=_to_datetime(row['timestamp']),
            symbol=row.get('symbol', symbol),
            open=float(row['open']),
            high=float(row['high']),
            low=float(row['low']),
            close=float(row['close']),
            volume=float(row['volume']),
        ))

    bars.sort(key=lambda b: b.timestamp)
    return bars


def bars_to_frame(bars: Sequence[Bar]) -> pd.DataFrame:
    """Columnar view of a bar sequence with a positional RangeIndex"""
    return pd.DataFrame({
        'timestamp': [b.timestamp for b in bars],
        'open': [b.open for b in bars],
        'high': [b.high for b in bars],
        'low': [b.low for b in bars],
        'close': [b.close for b in bars],
        'volume': [b.volume for b in bars],
    })
