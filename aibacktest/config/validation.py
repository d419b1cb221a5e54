"""Validation of backtest requests before a session is created."""

from __future__ import annotations

from typing import List, Optional
import math
import pandas as pd

from ..errors import ConfigurationError
from ..utils.timeutils import utc_now, validate_date_range
from .instruments import is_valid_symbol
from .schema import BacktestRequest, LimitsConfig


def collect_request_errors(
    request: BacktestRequest,
    limits: Optional[LimitsConfig] = None,
    now: Optional[pd.Timestamp] = None,
) -> List[str]:
    """Return every problem found in `request` (empty when valid)."""
    limits = limits or LimitsConfig()
    now = now if now is not None else utc_now()
    errors: List[str] = []

    if not is_valid_symbol(request.symbol):
        errors.append("Invalid symbol format")

    if request.start_date is None or request.end_date is None:
        errors.append("Start and end dates are required")
    else:
        errors.extend(validate_date_range(
            request.start_date,
            request.end_date,
            now,
            min_days=limits.min_range_days,
            max_days=limits.max_range_days,
        ))

    balance = request.initial_balance
    if balance is None or not math.isfinite(balance) or balance <= 0:
        errors.append("Initial balance must be positive")

    if not limits.min_skip_candles <= request.skip_candles <= limits.max_skip_candles:
        errors.append(
            f"Skip candles must be between {limits.min_skip_candles} and {limits.max_skip_candles}"
        )

    if not limits.min_window_hours <= request.analysis_window_hours <= limits.max_window_hours:
        errors.append(
            f"Analysis window must be between {limits.min_window_hours} and {limits.max_window_hours} hours"
        )

    min_len = limits.min_prompt_length
    if not request.prompts.analysis_prompt or len(request.prompts.analysis_prompt) < min_len:
        errors.append(f"Analysis prompt is required and must be at least {min_len} characters")
    if not request.prompts.extractor_prompt or len(request.prompts.extractor_prompt) < min_len:
        errors.append(f"Extractor prompt is required and must be at least {min_len} characters")

    return errors


def validate_request(
    request: BacktestRequest,
    limits: Optional[LimitsConfig] = None,
    now: Optional[pd.Timestamp] = None,
) -> None:
    """Raise `ConfigurationError` listing all violations, if any."""
    errors = collect_request_errors(request, limits, now)
    if errors:
        raise ConfigurationError(errors)
