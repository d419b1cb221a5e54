"""
Backtest execution engine.

This module contains the `SimulationEngine` class which replays the
base-resolution candles of one backtest run through a `TradeManager`,
asks the decision oracle for a verdict whenever the account is flat and
records every closed trade in the session ledger.

The replay is strictly sequential: one candle is fully processed
(order expiry, order triggers, position exits, trade recording and the
decision request) before the next one starts.  Failures inside a single
iteration are written to the session's error log and the loop moves on
to the next candle; only errors that escape the loop fail the run.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
import logging
import time
from typing import Callable, List, Optional

import pandas as pd

from ..analysis.charts import ChartRenderer
from ..analysis.context import MarketContextBuilder
from ..analysis.oracle import Decision, decode_decision
from ..config.schema import BacktestRequest, Config
from ..config.validation import validate_request
from ..errors import AnalysisError, ChartError, DataFetchError, InvalidStateError, PersistenceError
from ..session.ledger import (
    add_analysis_log,
    add_error_log,
    add_trade,
    advanced_metrics,
    cancel_session,
    complete_session,
    create_session,
    fail_session,
)
from ..session.models import BacktestSession, SessionStatus
from ..utils.ids import UuidIdGenerator
from ..utils.timeutils import normalize_resolution, utc_now
from .models import Candle, OrderKind, PendingOrder
from .trade_manager import TradeManager

logger = logging.getLogger(__name__)


@dataclass
class SimulationProgress:
    """Snapshot of a running replay."""
    session_id: str
    cursor: int = 0
    total_candles: int = 0
    analyses: int = 0
    trades: int = 0
    balance: float = 0.0
    current_time: Optional[pd.Timestamp] = None
    elapsed_seconds: float = 0.0
    estimated_seconds_remaining: Optional[float] = None

    @property
    def percent(self) -> float:
        if self.total_candles <= 0:
            return 0.0
        return min(100.0, self.cursor / self.total_candles * 100)


@dataclass
class SimulationResult:
    """Outcome of one run.

    ``success`` is false only when the run failed; a cancelled run is a
    successful stop with status CANCELLED.
    """
    success: bool
    session_id: Optional[str]
    status: Optional[SessionStatus]
    error: Optional[str] = None
    session: Optional[BacktestSession] = None


class SimulationEngine:
    """Run AI-driven backtests candle by candle.

    Parameters
    ----------
    config : Config
        Root configuration (simulation, costs, account, instruments,
        limits and chart settings are used).
    market_data
        Provider with ``fetch(symbol, resolution, start, end)``.
    oracle
        Decision oracle with ``decide(context) -> Mapping``.
    repository : SessionRepository, optional
        Where final snapshots, checkpoints and analysis records go.
    context_builder : MarketContextBuilder, optional
        Defaults to a builder over `market_data` with a matplotlib
        chart renderer when charts are enabled.
    id_generator, clock, monotonic
        Injected id source, UTC wall clock and monotonic timer.
    """

    def __init__(
        self,
        config: Config,
        market_data,
        oracle,
        repository=None,
        context_builder: Optional[MarketContextBuilder] = None,
        id_generator=None,
        clock: Callable[[], pd.Timestamp] = utc_now,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config
        self.market_data = market_data
        self.oracle = oracle
        self.repository = repository
        if context_builder is None:
            renderer = ChartRenderer(config.charts) if config.charts.enabled else None
            context_builder = MarketContextBuilder(
                market_data, renderer, simulation=config.simulation, charts=config.charts
            )
        self.context_builder = context_builder
        self._ids = id_generator or UuidIdGenerator()
        self._clock = clock
        self._monotonic = monotonic

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------
    def start_session(self, request: BacktestRequest) -> BacktestSession:
        """Validate the request and create its RUNNING session.

        Raises `ConfigurationError` before any session exists.
        """
        now = self._clock()
        validate_request(request, self.config.limits, now)
        session = create_session(request, self._ids.new("session"), now)
        logger.info(
            "Session %s created: %s %s..%s balance=%.2f skip=%d window=%dh",
            session.session_id, session.metadata.symbol,
            session.metadata.start_date.isoformat(), session.metadata.end_date.isoformat(),
            session.metadata.initial_balance, session.metadata.skip_candles,
            session.metadata.analysis_window_hours,
        )
        return session

    def run(self, request: BacktestRequest, cancel_event=None, on_progress=None) -> SimulationResult:
        """Validate, create the session and replay it to the end."""
        session = self.start_session(request)
        return self.execute(session, cancel_event=cancel_event, on_progress=on_progress)

    def execute(
        self,
        session: BacktestSession,
        cancel_event=None,
        on_progress: Optional[Callable[[SimulationProgress], None]] = None,
    ) -> SimulationResult:
        """Replay a freshly created session and finalise it.

        ``cancel_event`` is any object with ``is_set()``; it is checked
        before every candle.
        """
        try:
            candles = self._load_candles(session)
            manager = TradeManager(
                session_id=session.session_id,
                symbol=session.metadata.symbol,
                initial_balance=session.metadata.initial_balance,
                costs=self.config.costs,
                account=self.config.account,
                instruments=self.config.instruments,
                order_expiry_minutes=self.config.simulation.order_expiry_minutes,
                id_generator=self._ids,
            )
            finished = self._replay(session, manager, candles, cancel_event, on_progress)
            if finished:
                complete_session(session, self._clock())
            else:
                cancel_session(session, self._clock())
            advanced_metrics(session)
            self._save(session)
        except Exception as exc:
            return self._fail(session, exc)

        summary = session.performance_summary
        logger.info(
            "Session %s %s: trades=%d net=%.2f (%.2f%%) win_rate=%.1f%% max_dd=%.2f%% failures=%d",
            session.session_id, session.status.value.lower(), summary.total_trades,
            summary.net_profit_loss, summary.net_profit_loss_percent, summary.win_rate_percent,
            summary.max_drawdown_percent, summary.ai_analysis_failures,
        )
        return SimulationResult(True, session.session_id, session.status, session=session)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    def _load_candles(self, session: BacktestSession) -> List[Candle]:
        meta = session.metadata
        resolution = normalize_resolution(self.config.simulation.base_resolution)
        candles = self.market_data.fetch(meta.symbol, resolution, meta.start_date, meta.end_date)
        if not candles:
            raise DataFetchError(
                f"No {resolution} candles for {meta.symbol} between "
                f"{meta.start_date.isoformat()} and {meta.end_date.isoformat()}"
            )
        logger.info("Loaded %d %s candles for %s", len(candles), resolution, meta.symbol)
        return list(candles)

    def _replay(self, session, manager, candles, cancel_event, on_progress) -> bool:
        """Run the candle loop.  Returns ``False`` when stopped by cancellation."""
        total = len(candles)
        interval = max(1, self.config.simulation.progress_interval)
        progress = SimulationProgress(
            session_id=session.session_id,
            total_candles=total,
            balance=session.current_balance,
        )
        started = self._monotonic()
        next_report = interval
        cursor = 0

        while cursor < total:
            if cancel_event is not None and cancel_event.is_set():
                logger.info("Session %s cancellation requested at candle %d/%d", session.session_id, cursor, total)
                return False

            candle = candles[cursor]
            try:
                cursor += self._step(session, manager, candle, progress)
            except InvalidStateError:
                raise
            except Exception as exc:
                logger.exception("Error processing candle %s", candle.timestamp.isoformat())
                add_error_log(
                    session, f"Error processing candle {candle.timestamp.isoformat()}: {exc}", self._clock()
                )
                cursor += 1

            progress.cursor = min(cursor, total)
            progress.current_time = candle.timestamp
            progress.balance = session.current_balance
            progress.elapsed_seconds = self._monotonic() - started
            if progress.cursor > 0:
                rate = progress.elapsed_seconds / progress.cursor
                progress.estimated_seconds_remaining = rate * (total - progress.cursor)
            if progress.cursor >= next_report:
                next_report = (progress.cursor // interval + 1) * interval
                logger.info(
                    "Progress %s: %d/%d candles (%.1f%%), analyses=%d trades=%d balance=%.2f",
                    session.session_id, progress.cursor, total, progress.percent,
                    progress.analyses, progress.trades, progress.balance,
                )
            if on_progress is not None:
                on_progress(replace(progress))
        return True

    def _step(self, session, manager: TradeManager, candle: Candle, progress: SimulationProgress) -> int:
        """Process one candle and return how many candles to advance."""
        update = manager.update_with_candle(candle)
        if update.closed_trade is not None:
            add_trade(session, update.closed_trade)
            progress.trades += 1
            if self.config.simulation.checkpoint_trades:
                self._save(session)

        if not manager.can_place_order():
            return 1

        decision = self._request_decision(session, candle)
        if decision is None:
            return 1
        progress.analyses += 1
        add_analysis_log(session, decision.analysis_id)

        if decision.is_trade:
            params = decision.trade_params
            order_id = manager.add_pending_order(
                kind=OrderKind.stop_for(params.side),
                price=params.entry_price,
                stop_loss=params.stop_loss,
                take_profit=params.take_profit,
                lot_size=params.lot_size or self.config.simulation.default_lot_size,
                analysis_id=decision.analysis_id,
                current_time=candle.timestamp,
            )
            order = next(o for o in manager.orders if o.order_id == order_id)
            self._archive(session, decision, candle, order)
            return 1

        self._archive(session, decision, candle)
        skip = max(1, session.metadata.skip_candles)
        logger.debug(
            "NO_TRADE at %s, skipping %d candles (analysis %s)",
            candle.timestamp.isoformat(), skip, decision.analysis_id,
        )
        return skip

    def _request_decision(self, session: BacktestSession, candle: Candle) -> Optional[Decision]:
        """Ask the oracle for a decision.  Returns ``None`` after a logged failure."""
        meta = session.metadata
        try:
            context = self.context_builder.build(
                meta.symbol, candle.timestamp, meta.analysis_window_hours, meta.prompts
            )
            payload = self.oracle.decide(context)
            return decode_decision(payload, self._ids.new("analysis"))
        except (AnalysisError, ChartError, DataFetchError) as exc:
            logger.error("AI analysis failed at %s: %s", candle.timestamp.isoformat(), exc)
            add_error_log(session, f"AI analysis failed at {candle.timestamp.isoformat()}: {exc}", self._clock())
            return None

    def _archive(
        self,
        session: BacktestSession,
        decision: Decision,
        candle: Candle,
        order: Optional[PendingOrder] = None,
    ) -> None:
        if self.repository is None:
            return
        record = decision.to_dict()
        record['session_id'] = session.session_id
        record['candle_time'] = candle.timestamp.isoformat()
        record['candle'] = candle.to_dict()
        if order is not None:
            record['order'] = order.to_dict()
        try:
            self.repository.save_analysis(session.session_id, decision.analysis_id, record)
        except PersistenceError as exc:
            logger.warning("Could not archive analysis %s: %s", decision.analysis_id, exc)

    def _save(self, session: BacktestSession) -> None:
        if self.repository is not None:
            self.repository.save(session)

    def _fail(self, session: BacktestSession, exc: Exception) -> SimulationResult:
        message = str(exc) or exc.__class__.__name__
        if isinstance(exc, (DataFetchError, PersistenceError)):
            logger.error("Session %s aborted: %s", session.session_id, message)
        else:
            logger.exception("Session %s aborted", session.session_id)
        if session.status is not SessionStatus.FAILED:
            fail_session(session, message, self._clock(), force=True)
        try:
            self._save(session)
        except PersistenceError as save_exc:
            logger.error("Could not persist failed session %s: %s", session.session_id, save_exc)
        return SimulationResult(False, session.session_id, SessionStatus.FAILED, error=message, session=session)
