"""
Per-trade accounting.

Pure functions used by the order engine when a position closes.  P&L is
measured in pips (price difference divided by the instrument's pip
size), scaled by the pip value and the lot size.
"""

from __future__ import annotations

import math
import pandas as pd

from .models import Side, TradeOutcome

DEFAULT_PIP_SIZE = 0.0001


def calculate_pnl(
    side: Side,
    entry_price: float,
    exit_price: float,
    lot_size: float,
    pip_value: float = 1.0,
    pip_size: float = DEFAULT_PIP_SIZE,
) -> float:
    """Signed P&L of a position.

    Parameters
    ----------
    side : Side
        ``BUY`` profits when price rises, ``SELL`` when it falls.
    entry_price, exit_price : float
        Fill prices.
    lot_size : float
        Position size multiplier.
    pip_value : float
        Account-currency value of one pip per lot.
    pip_size : float
        Price increment of one pip for the instrument.
    """
    if Side(side) is Side.BUY:
        pips = (exit_price - entry_price) / pip_size
    else:
        pips = (entry_price - exit_price) / pip_size
    return pips * pip_value * lot_size


def calculate_pnl_percent(net_pnl: float, reference_balance: float) -> float:
    """Return `net_pnl` as a percentage of `reference_balance` (0 if the balance is 0)."""
    if reference_balance == 0:
        return 0.0
    return net_pnl / reference_balance * 100


def determine_outcome(pnl: float) -> TradeOutcome:
    if pnl > 0:
        return TradeOutcome.WIN
    if pnl < 0:
        return TradeOutcome.LOSS
    return TradeOutcome.BREAKEVEN


def calculate_duration(opened_at: pd.Timestamp, closed_at: pd.Timestamp) -> int:
    """Whole minutes between open and close, floored and never negative."""
    seconds = (closed_at - opened_at).total_seconds()
    return max(0, int(math.floor(seconds / 60)))


def calculate_commission(lot_size: float, commission_per_lot: float) -> float:
    return lot_size * commission_per_lot


def calculate_swap(
    side: Side,
    lot_size: float,
    opened_at: pd.Timestamp,
    closed_at: pd.Timestamp,
    buy_rate: float,
    sell_rate: float,
) -> float:
    """Holding cost charged per lot for every full day a position was open.

    Nothing accrues until 24 hours have elapsed.
    """
    hours = (closed_at - opened_at).total_seconds() / 3600
    if hours < 24:
        return 0.0
    days = math.floor(hours / 24)
    rate = buy_rate if Side(side) is Side.BUY else sell_rate
    return lot_size * rate * days
