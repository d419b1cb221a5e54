"""
CSV data loader.

This module provides a class to load historical OHLCV data from CSV
files.  The expected schema for each CSV is:

```
time,open,high,low,close,tick_volume,real_volume,spread
```

Only the `time`, `open`, `high`, `low` and `close` columns are
required.  MetaTrader 5 tab-separated exports (`<DATE>`, `<TIME>`,
`<OPEN>` ...) are recognised as well.  Naive timestamps are interpreted
in the configured timezone and converted to UTC.

A file holds a single resolution (normally the finest one available);
coarser resolutions are produced by resampling it.
"""

from __future__ import annotations

from pathlib import Path
from typing import Dict, List
import pandas as pd

from ..errors import DataFetchError
from ..execution.models import Candle
from ..utils.timeutils import normalize_resolution, resolution_minutes, resolution_to_offset, to_utc
from .provider import frame_to_candles, validate_candles


_OHLC = ["open", "high", "low", "close"]
_EXTRA = ["tick_volume", "real_volume", "spread"]

_MT5_COLUMNS = {
    "<OPEN>": "open",
    "<HIGH>": "high",
    "<LOW>": "low",
    "<CLOSE>": "close",
    "<TICKVOL>": "tick_volume",
    "<VOL>": "real_volume",
    "<SPREAD>": "spread",
}


class CSVDataLoader:
    """Load OHLCV data from CSV files for backtesting.

    Parameters
    ----------
    csv_dir : str
        Directory where the CSV files are located.  Each symbol's file
        must be named `{SYMBOL}.csv`.
    timezone : str
        IANA timezone used to localise naive timestamps.
    """

    def __init__(self, csv_dir: str, timezone: str = "UTC") -> None:
        self.csv_dir = Path(csv_dir)
        self.timezone = timezone
        self._frames: Dict[str, pd.DataFrame] = {}

    def load(self, symbol: str) -> pd.DataFrame:
        """Read `{symbol}.csv` into a UTC-indexed DataFrame (cached per symbol)."""
        if symbol in self._frames:
            return self._frames[symbol]

        file_path = self.csv_dir / f"{symbol}.csv"
        if not file_path.exists():
            raise DataFetchError(f"CSV file not found for symbol {symbol}: {file_path}")

        with file_path.open("r", encoding="utf-8") as fh:
            header = fh.readline()
        if "<DATE>" in header:
            df = self._read_mt5(file_path, symbol)
        else:
            df = self._read_standard(file_path, symbol)

        for column in _EXTRA:
            if column not in df.columns:
                df[column] = 0.0
        df[_EXTRA] = df[_EXTRA].fillna(0.0)
        df = df[_OHLC + _EXTRA].sort_index()
        df = df[~df.index.duplicated(keep="first")]

        self._frames[symbol] = df
        return df

    def _localise(self, index: pd.DatetimeIndex) -> pd.DatetimeIndex:
        if index.tz is None:
            index = index.tz_localize(self.timezone)
        return index.tz_convert("UTC")

    def _read_standard(self, file_path: Path, symbol: str) -> pd.DataFrame:
        df = pd.read_csv(file_path)
        df.columns = [str(c).strip().lower() for c in df.columns]
        missing = [c for c in ["time"] + _OHLC if c not in df.columns]
        if missing:
            raise DataFetchError(
                f"Unrecognized CSV format for {symbol}. Missing columns: {missing}. "
                f"Found columns: {list(df.columns)}"
            )
        try:
            times = pd.to_datetime(df["time"], errors="raise")
        except (ValueError, TypeError) as exc:
            raise DataFetchError(f"Could not parse timestamps for {symbol}: {exc}") from exc
        df = df.drop(columns=["time"])
        df.index = self._localise(pd.DatetimeIndex(times))
        return df.astype({c: float for c in _OHLC})

    def _read_mt5(self, file_path: Path, symbol: str) -> pd.DataFrame:
        df = pd.read_csv(file_path, sep="\t", engine="python")
        df.columns = [c.strip() for c in df.columns]

        required = ["<DATE>", "<TIME>", "<OPEN>", "<HIGH>", "<LOW>", "<CLOSE>"]
        missing = [c for c in required if c not in df.columns]
        if missing:
            raise DataFetchError(
                f"Unrecognized CSV format for {symbol}. Missing columns: {missing}. "
                f"Found columns: {list(df.columns)}"
            )

        dt = df["<DATE>"].astype(str).str.strip() + " " + df["<TIME>"].astype(str).str.strip()
        ts = pd.to_datetime(dt, format="%Y.%m.%d %H:%M:%S", errors="coerce")
        if ts.isna().any():
            # fallback if format differs
            ts = pd.to_datetime(dt, errors="coerce")
        if ts.isna().any():
            bad = dt[ts.isna()].head(5).tolist()
            raise DataFetchError(f"Could not parse MT5 DATE/TIME for {symbol}. Examples: {bad}")

        out = pd.DataFrame(
            {target: df[source].astype(float) for source, target in _MT5_COLUMNS.items() if source in df.columns},
        )
        out.index = self._localise(pd.DatetimeIndex(ts))
        return out

    @staticmethod
    def _native_minutes(df: pd.DataFrame) -> float:
        if len(df) < 2:
            return 0.0
        return df.index.to_series().diff().dropna().min().total_seconds() / 60

    def frame(self, symbol: str, resolution: str, start: pd.Timestamp, end: pd.Timestamp) -> pd.DataFrame:
        """Return bars of `resolution` whose timestamps lie in ``[start, end]``.

        Base bars after `end` are dropped before resampling, so the last
        coarse bar only aggregates data known at `end`.
        """
        resolution = normalize_resolution(resolution)
        df = self.load(symbol)
        native = self._native_minutes(df)
        target = resolution_minutes(resolution)
        if native and target < native:
            raise DataFetchError(
                f"{symbol} data has {native:g}-minute bars; cannot serve {resolution}"
            )
        start, end = to_utc(start), to_utc(end)
        df = df.loc[df.index <= end]
        if native and target > native:
            df = (
                df.resample(resolution_to_offset(resolution), label="left", closed="left")
                .agg({
                    "open": "first",
                    "high": "max",
                    "low": "min",
                    "close": "last",
                    "tick_volume": "sum",
                    "real_volume": "sum",
                    "spread": "mean",
                })
                .dropna(subset=_OHLC)
            )
        return df.loc[df.index >= start]

    def fetch(self, symbol: str, resolution: str, start: pd.Timestamp, end: pd.Timestamp) -> List[Candle]:
        """Return validated candles for ``[start, end]`` at `resolution`."""
        df = self.frame(symbol, resolution, start, end)
        return validate_candles(frame_to_candles(df), symbol, normalize_resolution(resolution))
