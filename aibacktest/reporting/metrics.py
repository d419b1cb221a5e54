"""
Performance metrics calculations.

This module provides helpers to compute common performance statistics
from a list of trades and an equity curve.  They back both the session
performance summary, which is recomputed after every trade, and the
risk-adjusted ratios calculated when a session completes.
"""

from __future__ import annotations

from dataclasses import dataclass, asdict
from typing import Dict, List, Sequence, Tuple
import math
import pandas as pd

from ..execution.models import Trade, TradeOutcome


@dataclass
class TradeMetrics:
    """Aggregate statistics over a set of trades."""
    total_trades: int = 0
    winning_trades: int = 0
    losing_trades: int = 0
    win_rate: float = 0.0
    profit_factor: float = 0.0
    average_win: float = 0.0
    average_loss: float = 0.0
    largest_win: float = 0.0
    largest_loss: float = 0.0
    max_consecutive_wins: int = 0
    max_consecutive_losses: int = 0
    average_trade_duration: float = 0.0
    total_pnl: float = 0.0
    total_commission: float = 0.0
    total_swap: float = 0.0
    net_pnl: float = 0.0

    def to_dict(self) -> Dict[str, float]:
        return asdict(self)


def consecutive_wins_losses(trades: Sequence[Trade]) -> Tuple[int, int]:
    """Return the longest win streak and the longest loss streak.

    A breakeven trade ends both streaks.
    """
    max_wins = max_losses = 0
    current_wins = current_losses = 0
    for trade in trades:
        if trade.outcome is TradeOutcome.WIN:
            current_wins += 1
            current_losses = 0
            max_wins = max(max_wins, current_wins)
        elif trade.outcome is TradeOutcome.LOSS:
            current_losses += 1
            current_wins = 0
            max_losses = max(max_losses, current_losses)
        else:
            current_wins = 0
            current_losses = 0
    return max_wins, max_losses


def profit_factor(gross_win: float, gross_loss: float) -> float:
    """Gross win over absolute gross loss; ``inf`` with wins and no losses, 0 with neither."""
    if gross_loss > 0:
        return gross_win / gross_loss
    return math.inf if gross_win > 0 else 0.0


def compute_trade_metrics(trades: Sequence[Trade]) -> TradeMetrics:
    """Compute aggregate statistics for `trades`.

    An empty input yields an all-zero result (profit factor 0).
    """
    if not trades:
        return TradeMetrics()

    wins = [t for t in trades if t.outcome is TradeOutcome.WIN]
    losses = [t for t in trades if t.outcome is TradeOutcome.LOSS]

    total_pnl = sum(t.pnl for t in trades)
    total_commission = sum(t.commission for t in trades)
    total_swap = sum(t.swap for t in trades)
    gross_win = sum(t.pnl for t in wins)
    gross_loss = abs(sum(t.pnl for t in losses))
    max_wins, max_losses = consecutive_wins_losses(trades)

    return TradeMetrics(
        total_trades=len(trades),
        winning_trades=len(wins),
        losing_trades=len(losses),
        win_rate=len(wins) / len(trades) * 100,
        profit_factor=profit_factor(gross_win, gross_loss),
        average_win=gross_win / len(wins) if wins else 0.0,
        average_loss=gross_loss / len(losses) if losses else 0.0,
        largest_win=max(t.pnl for t in wins) if wins else 0.0,
        largest_loss=min(t.pnl for t in losses) if losses else 0.0,
        max_consecutive_wins=max_wins,
        max_consecutive_losses=max_losses,
        average_trade_duration=sum(t.duration_minutes for t in trades) / len(trades),
        total_pnl=total_pnl,
        total_commission=total_commission,
        total_swap=total_swap,
        net_pnl=sum(t.net_pnl for t in trades),
    )


def max_drawdown_percent(balances: Sequence[float]) -> float:
    """Largest peak-to-trough decline of `balances`, in percent of the peak."""
    if not balances:
        return 0.0
    peak = balances[0]
    max_dd = 0.0
    for balance in balances:
        if balance > peak:
            peak = balance
        drawdown = (peak - balance) / peak * 100 if peak > 0 else 0.0
        if drawdown > max_dd:
            max_dd = drawdown
    return max_dd


def period_returns(balances: Sequence[float]) -> List[float]:
    """Step-over-step returns; steps whose previous balance is not positive are skipped."""
    returns: List[float] = []
    for prev, current in zip(balances, balances[1:]):
        if prev > 0:
            returns.append((current - prev) / prev)
    return returns


def risk_ratios(returns: Sequence[float], max_drawdown_pct: float) -> Dict[str, float]:
    """Sharpe, Sortino and Calmar ratios from per-step returns (risk-free rate 0)."""
    if not returns:
        return {'sharpe_ratio': 0.0, 'sortino_ratio': 0.0, 'calmar_ratio': 0.0}

    mean_ret = sum(returns) / len(returns)
    variance = sum((r - mean_ret) ** 2 for r in returns) / len(returns)
    std_dev = math.sqrt(variance)
    sharpe = mean_ret / std_dev if std_dev > 0 else 0.0

    negative = [r for r in returns if r < 0]
    downside = math.sqrt(sum(r ** 2 for r in negative) / len(negative)) if negative else 0.0
    sortino = mean_ret / downside if downside > 0 else 0.0

    calmar = (mean_ret * 100) / max_drawdown_pct if max_drawdown_pct > 0 else 0.0

    return {'sharpe_ratio': sharpe, 'sortino_ratio': sortino, 'calmar_ratio': calmar}


TRADE_COLUMNS = [
    'trade_id', 'side', 'entry_price', 'exit_price', 'stop_loss', 'take_profit',
    'lot_size', 'opened_at', 'closed_at', 'duration_minutes', 'pnl', 'pnl_percent',
    'outcome', 'exit_reason', 'commission', 'swap', 'net_pnl', 'analysis_id',
]


def trades_to_frame(trades: Sequence[Trade]) -> pd.DataFrame:
    """Tabulate trades for CSV export; an empty list still carries the columns."""
    return pd.DataFrame([t.to_dict() for t in trades], columns=TRADE_COLUMNS)
