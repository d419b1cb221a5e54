"""
Session and equity ledger.

Functions in this module transform a `BacktestSession` in place.  They
are called only by the simulation engine, one candle at a time, so no
locking is needed.  Each closed trade appends exactly one trade and one
equity point, after which the performance summary is rebuilt from
scratch rather than patched.
"""

from __future__ import annotations

import logging
from typing import List, Optional, Sequence, Tuple
import pandas as pd

from ..config.schema import BacktestRequest, PromptsConfig
from ..errors import InvalidStateError
from ..execution.models import Trade
from ..reporting.metrics import (
    compute_trade_metrics,
    consecutive_wins_losses as _consecutive_wins_losses,
    max_drawdown_percent,
    period_returns,
    risk_ratios,
)
from ..utils.timeutils import utc_now
from .models import (
    BacktestMetadata,
    BacktestSession,
    EquityPoint,
    PerformanceSummary,
    SessionStatus,
)


logger = logging.getLogger(__name__)


def create_session(
    request: BacktestRequest,
    session_id: str,
    now: Optional[pd.Timestamp] = None,
) -> BacktestSession:
    """Create a RUNNING session seeded with one equity point at the start date."""
    metadata = BacktestMetadata(
        session_id=session_id,
        symbol=request.symbol.upper(),
        start_date=request.start_date,
        end_date=request.end_date,
        initial_balance=request.initial_balance,
        skip_candles=request.skip_candles,
        analysis_window_hours=request.analysis_window_hours,
        prompts=PromptsConfig(
            analysis_prompt=request.prompts.analysis_prompt,
            extractor_prompt=request.prompts.extractor_prompt,
        ),
        created_at=now if now is not None else utc_now(),
        user_id=request.user_id,
    )
    seed = EquityPoint(
        timestamp=request.start_date,
        balance=request.initial_balance,
        equity=request.initial_balance,
        drawdown=0.0,
        drawdown_percent=0.0,
    )
    return BacktestSession(metadata=metadata, equity_curve=[seed])


def _require_running(session: BacktestSession) -> None:
    if session.metadata.status.is_terminal:
        raise InvalidStateError(
            f"Session {session.session_id} is {session.metadata.status.value} and can no longer change"
        )


def next_equity_point(session: BacktestSession, trade: Trade) -> EquityPoint:
    """Equity point that results from applying `trade` to the session balance."""
    previous = session.current_balance
    balance = previous + trade.net_pnl
    peak = max([p.balance for p in session.equity_curve] + [balance])
    drawdown = max(0.0, peak - balance)
    drawdown_pct = drawdown / peak * 100 if peak > 0 else 0.0
    return EquityPoint(
        timestamp=trade.closed_at,
        balance=balance,
        equity=balance,
        drawdown=drawdown,
        drawdown_percent=drawdown_pct,
    )


def add_trade(session: BacktestSession, trade: Trade) -> None:
    """Record a closed trade: one trade, one equity point, fresh summary."""
    _require_running(session)
    point = next_equity_point(session, trade)
    session.trades.append(trade)
    session.equity_curve.append(point)
    update_performance_summary(session)


def update_performance_summary(session: BacktestSession) -> None:
    """Rebuild the performance summary from the trade list and equity curve."""
    trades = session.trades
    initial_balance = session.metadata.initial_balance
    if not trades:
        session.performance_summary = PerformanceSummary(
            ai_analysis_failures=len(session.error_logs),
        )
        return

    metrics = compute_trade_metrics(trades)
    net = metrics.net_pnl
    session.performance_summary = PerformanceSummary(
        net_profit_loss=net,
        net_profit_loss_percent=net / initial_balance * 100 if initial_balance else 0.0,
        total_trades=metrics.total_trades,
        winning_trades=metrics.winning_trades,
        losing_trades=metrics.losing_trades,
        win_rate_percent=metrics.win_rate,
        profit_factor=metrics.profit_factor,
        max_drawdown_percent=max_drawdown(session.equity_curve),
        ai_analysis_failures=len(session.error_logs),
        average_trade_duration_minutes=metrics.average_trade_duration,
        largest_winning_trade=metrics.largest_win,
        largest_losing_trade=metrics.largest_loss,
        average_winning_trade=metrics.average_win,
        average_losing_trade=metrics.average_loss,
        max_consecutive_wins=metrics.max_consecutive_wins,
        max_consecutive_losses=metrics.max_consecutive_losses,
        total_commission=metrics.total_commission,
        total_swap=metrics.total_swap,
    )


def max_drawdown(equity_curve: Sequence[EquityPoint]) -> float:
    """Maximum percent drawdown seen along the equity curve."""
    return max_drawdown_percent([p.balance for p in equity_curve])


def consecutive_wins_losses(trades: Sequence[Trade]) -> Tuple[int, int]:
    return _consecutive_wins_losses(trades)


def add_analysis_log(session: BacktestSession, analysis_id: str) -> None:
    session.analysis_logs.append(analysis_id)


def add_error_log(session: BacktestSession, message: str, now: Optional[pd.Timestamp] = None) -> None:
    ts = now if now is not None else utc_now()
    session.error_logs.append(f"{ts.isoformat()}: {message}")


def complete_session(session: BacktestSession, now: Optional[pd.Timestamp] = None) -> None:
    _require_running(session)
    update_performance_summary(session)
    session.metadata.status = SessionStatus.COMPLETED
    session.metadata.completed_at = now if now is not None else utc_now()
    logger.info("Session %s completed with %d trades", session.session_id, len(session.trades))


def fail_session(
    session: BacktestSession,
    error: str,
    now: Optional[pd.Timestamp] = None,
    force: bool = False,
) -> None:
    """Mark the session FAILED and log the error.

    With ``force`` a COMPLETED or CANCELLED session whose final snapshot
    could not be stored is failed as well.
    """
    if not force or session.metadata.status is SessionStatus.FAILED:
        _require_running(session)
    now = now if now is not None else utc_now()
    add_error_log(session, f"Session failed: {error}", now)
    update_performance_summary(session)
    session.metadata.status = SessionStatus.FAILED
    session.metadata.completed_at = now
    logger.error("Session %s failed: %s", session.session_id, error)


def cancel_session(session: BacktestSession, now: Optional[pd.Timestamp] = None) -> None:
    _require_running(session)
    update_performance_summary(session)
    session.metadata.status = SessionStatus.CANCELLED
    session.metadata.completed_at = now if now is not None else utc_now()
    logger.info("Session %s cancelled after %d trades", session.session_id, len(session.trades))


def equity_returns(session: BacktestSession) -> List[float]:
    return period_returns([p.balance for p in session.equity_curve])


def advanced_metrics(session: BacktestSession) -> None:
    """Fill in Sharpe, Sortino and Calmar ratios from the equity curve returns.

    Leaves the summary untouched when the curve has no usable returns.
    """
    returns = equity_returns(session)
    if not returns:
        return
    ratios = risk_ratios(returns, session.performance_summary.max_drawdown_percent)
    summary = session.performance_summary
    summary.sharpe_ratio = ratios['sharpe_ratio']
    summary.sortino_ratio = ratios['sortino_ratio']
    summary.calmar_ratio = ratios['calmar_ratio']
