"""
Time and resolution utilities.

All timestamps handled by the engine are timezone-aware
``pandas.Timestamp`` objects in UTC.  This module centralises the
conversions from user input, the trailing analysis window calculation
and the mapping between resolution codes (``M15``, ``H1`` ...) and
their length in minutes.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, List, Optional
import pandas as pd


RESOLUTION_MINUTES = {
    'M1': 1,
    'M5': 5,
    'M15': 15,
    'M30': 30,
    'H1': 60,
    'H4': 240,
    'D1': 1440,
}


@dataclass(frozen=True)
class TimeWindow:
    """A closed time interval ``[start, end]``."""
    start: pd.Timestamp
    end: pd.Timestamp


def to_utc(value: Any) -> pd.Timestamp:
    """Convert a datetime-like value to a UTC ``pandas.Timestamp``.

    Naive values are assumed to already be in UTC.
    """
    ts = value if isinstance(value, pd.Timestamp) else pd.Timestamp(value)
    if ts.tzinfo is None:
        return ts.tz_localize("UTC")
    return ts.tz_convert("UTC")


def utc_now() -> pd.Timestamp:
    return pd.Timestamp.now(tz="UTC")


def iso(ts: Optional[pd.Timestamp]) -> Optional[str]:
    """Serialise a timestamp to ISO 8601, passing ``None`` through."""
    if ts is None:
        return None
    return to_utc(ts).isoformat()


def parse_iso(value: Optional[str]) -> Optional[pd.Timestamp]:
    if value is None:
        return None
    return to_utc(value)


def normalize_resolution(raw: str) -> str:
    """Return the canonical resolution code, e.g. ``"m15"`` -> ``"M15"``."""
    code = str(raw).strip().upper()
    if code == 'D':
        code = 'D1'
    if code not in RESOLUTION_MINUTES:
        raise ValueError(f"Unsupported resolution: {raw}")
    return code


def resolution_minutes(resolution: str) -> int:
    return RESOLUTION_MINUTES[normalize_resolution(resolution)]


def resolution_to_offset(resolution: str) -> str:
    """Map a resolution code to a pandas offset alias for resampling."""
    return f"{resolution_minutes(resolution)}min"


def analysis_window(end_time: pd.Timestamp, window_hours: int) -> TimeWindow:
    """Return the trailing window of ``window_hours`` ending at ``end_time``."""
    end = to_utc(end_time)
    return TimeWindow(start=end - pd.Timedelta(hours=window_hours), end=end)


def add_minutes(ts: pd.Timestamp, minutes: float) -> pd.Timestamp:
    return ts + pd.Timedelta(minutes=minutes)


def validate_date_range(
    start: pd.Timestamp,
    end: pd.Timestamp,
    now: pd.Timestamp,
    min_days: int = 1,
    max_days: int = 365,
) -> List[str]:
    """Check a backtest date range and return a list of problems (empty if valid)."""
    if start >= end:
        return ["Start date must be before end date"]
    errors: List[str] = []
    if end > now:
        errors.append("End date cannot be in the future")
    span_days = (end - start).days
    if span_days > max_days:
        errors.append(f"Date range cannot exceed {max_days} days")
    if span_days < min_days:
        errors.append(f"Date range must be at least {min_days} day" + ("s" if min_days != 1 else ""))
    return errors
