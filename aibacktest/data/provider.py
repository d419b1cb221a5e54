"""
Market data provider contract.

Every provider returns candles in ascending timestamp order and has
validated them before returning.  An empty result or a malformed bar
is reported as `DataFetchError`.
"""

from __future__ import annotations

from typing import List, Protocol, Sequence
import pandas as pd

from ..errors import DataFetchError
from ..execution.models import Candle, candle_from_row


class MarketDataProvider(Protocol):
    def fetch(
        self,
        symbol: str,
        resolution: str,
        start: pd.Timestamp,
        end: pd.Timestamp,
    ) -> List[Candle]:
        ...


def frame_to_candles(df: pd.DataFrame) -> List[Candle]:
    """Convert an OHLCV DataFrame indexed by timestamp into candles."""
    return [candle_from_row(ts, row) for ts, row in df.sort_index().iterrows()]


def validate_candles(candles: Sequence[Candle], symbol: str, resolution: str) -> List[Candle]:
    """Check ordering and ``low <= open, close <= high`` for every bar."""
    if not candles:
        raise DataFetchError(f"No {resolution} data returned for {symbol}")
    previous = None
    for candle in candles:
        if not candle.is_valid():
            raise DataFetchError(
                f"Malformed {resolution} bar for {symbol} at {candle.timestamp.isoformat()}: "
                f"O={candle.open} H={candle.high} L={candle.low} C={candle.close}"
            )
        if previous is not None and candle.timestamp <= previous:
            raise DataFetchError(
                f"{resolution} bars for {symbol} are not in ascending order at {candle.timestamp.isoformat()}"
            )
        previous = candle.timestamp
    return list(candles)
