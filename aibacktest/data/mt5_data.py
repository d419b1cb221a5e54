"""
MetaTrader 5 data feed.

This module wraps the `MetaTrader5` Python package to fetch historical
rates directly from a terminal.  If the package is not installed or
initialisation fails, the code raises a clear exception.  Users can
skip installing MetaTrader5 when replaying CSV files.
"""

from __future__ import annotations

from typing import List
import pandas as pd

from ..config.schema import MT5Config
from ..errors import DataFetchError
from ..execution.models import Candle
from ..utils.timeutils import add_minutes, normalize_resolution, resolution_minutes, to_utc
from .provider import frame_to_candles, validate_candles

# Attempt to import MetaTrader5.  If unavailable, mt5 will be None.
try:
    import MetaTrader5 as mt5  # type: ignore
except ImportError:
    mt5 = None  # Will be checked at runtime


class MT5DataFeed:
    """Handle connection to MetaTrader 5 and retrieval of rates."""

    def __init__(self, config: MT5Config, base_resolution: str = "M15") -> None:
        self.config = config
        self.base_resolution = normalize_resolution(base_resolution)
        self._connected = False

    def connect(self) -> None:
        """Initialise the MetaTrader 5 terminal.

        Raises
        ------
        DataFetchError
            If the MetaTrader5 package is not installed or initialisation fails.
        """
        if mt5 is None:
            raise DataFetchError(
                "MetaTrader5 package is not installed.  Install it with 'pip install MetaTrader5' to use the mt5 data source."
            )
        if not mt5.initialize(path=self.config.path, login=self.config.login, password=self.config.password, server=self.config.server):
            raise DataFetchError(f"MT5 initialisation failed: {mt5.last_error()}")
        self._connected = True

    def shutdown(self) -> None:
        """Shutdown the MT5 connection if it was opened."""
        if mt5 and self._connected:
            mt5.shutdown()
            self._connected = False

    def _get_mt5_timeframe(self, resolution: str) -> int:
        """Map a resolution code to the MetaTrader5 timeframe constant."""
        if mt5 is None:
            raise DataFetchError("MetaTrader5 package is not installed.")
        timeframe_map = {
            'M1': mt5.TIMEFRAME_M1,
            'M5': mt5.TIMEFRAME_M5,
            'M15': mt5.TIMEFRAME_M15,
            'M30': mt5.TIMEFRAME_M30,
            'H1': mt5.TIMEFRAME_H1,
            'H4': mt5.TIMEFRAME_H4,
            'D1': mt5.TIMEFRAME_D1,
        }
        return timeframe_map[normalize_resolution(resolution)]

    def fetch(self, symbol: str, resolution: str, start: pd.Timestamp, end: pd.Timestamp) -> List[Candle]:
        """Retrieve validated candles between `start` and `end` (UTC).

        MT5 returns history bars complete, so a bar is only kept once it
        has closed by the close of the base bar starting at `end`.
        """
        if not self._connected:
            self.connect()
        tf = self._get_mt5_timeframe(resolution)
        end = to_utc(end)
        utc_from = to_utc(start).to_pydatetime()
        utc_to = end.to_pydatetime()
        rates = mt5.copy_rates_range(symbol, tf, utc_from, utc_to)
        if rates is None or len(rates) == 0:
            raise DataFetchError(f"No {resolution} data returned by MT5 for {symbol}: {mt5.last_error()}")
        df = pd.DataFrame(rates)
        df['time'] = pd.to_datetime(df['time'], unit='s', utc=True)
        df = df.set_index('time').sort_index()
        known_until = add_minutes(end, resolution_minutes(self.base_resolution))
        closes = df.index + pd.Timedelta(minutes=resolution_minutes(resolution))
        df = df.loc[closes <= known_until]
        return validate_candles(frame_to_candles(df), symbol, normalize_resolution(resolution))
