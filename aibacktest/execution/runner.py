"""
Asynchronous backtest runner.

`BacktestRunner.submit()` validates a request, creates its session and
returns the session id straight away while the replay continues on a
worker thread.  Each run owns its session and `TradeManager`, so runs
never share mutable state; the runner only keeps a small registry of
futures, cancellation flags and progress snapshots per session id.
"""

from __future__ import annotations

from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
import logging
import threading
from typing import Dict, List, Optional

from ..config.schema import BacktestRequest
from ..session.models import BacktestSession, SessionStatus
from .backtest_exec import SimulationEngine, SimulationProgress, SimulationResult

logger = logging.getLogger(__name__)


@dataclass
class RunStatus:
    session_id: str
    status: SessionStatus
    progress: Optional[SimulationProgress] = None
    error: Optional[str] = None


@dataclass
class _Run:
    session: BacktestSession
    future: Future
    cancel_event: threading.Event
    progress: Optional[SimulationProgress] = None


class BacktestRunner:
    """Run simulations concurrently on a thread pool."""

    def __init__(self, engine: SimulationEngine, max_workers: int = 2) -> None:
        self.engine = engine
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="backtest")
        self._runs: Dict[str, _Run] = {}
        self._lock = threading.Lock()

    def submit(self, request: BacktestRequest) -> str:
        """Start a run and return its session id.

        Raises `ConfigurationError` synchronously for an invalid request.
        """
        session = self.engine.start_session(request)
        cancel_event = threading.Event()
        session_id = session.session_id

        def on_progress(progress: SimulationProgress) -> None:
            with self._lock:
                run = self._runs.get(session_id)
                if run is not None:
                    run.progress = progress

        with self._lock:
            future = self._executor.submit(
                self.engine.execute, session, cancel_event, on_progress
            )
            self._runs[session_id] = _Run(session=session, future=future, cancel_event=cancel_event)
        logger.info("Submitted backtest %s", session_id)
        return session_id

    def _run(self, session_id: str) -> Optional[_Run]:
        with self._lock:
            return self._runs.get(session_id)

    def status(self, session_id: str) -> Optional[RunStatus]:
        """Current status of a run, falling back to the stored session."""
        run = self._run(session_id)
        if run is not None:
            error = None
            if run.future.done() and run.future.exception() is None:
                error = run.future.result().error
            return RunStatus(session_id, run.session.status, run.progress, error)
        stored = self._load(session_id)
        if stored is None:
            return None
        return RunStatus(session_id, stored.status)

    def result(self, session_id: str) -> Optional[BacktestSession]:
        """The session record: live for runs of this runner, stored otherwise."""
        run = self._run(session_id)
        if run is not None:
            return run.session
        return self._load(session_id)

    def wait(self, session_id: str, timeout: Optional[float] = None) -> Optional[SimulationResult]:
        run = self._run(session_id)
        if run is None:
            return None
        return run.future.result(timeout=timeout)

    def cancel(self, session_id: str) -> bool:
        """Flag a running simulation for cancellation.

        The loop stops before its next candle.  Returns ``False`` when
        the run is unknown or already finished.
        """
        run = self._run(session_id)
        if run is None or run.future.done():
            return False
        run.cancel_event.set()
        logger.info("Cancellation requested for %s", session_id)
        return True

    def list_sessions(self) -> List[str]:
        """Ids of live and stored sessions."""
        with self._lock:
            ids = list(self._runs)
        if self.engine.repository is not None:
            for session in self.engine.repository.list():
                if session.session_id not in ids:
                    ids.append(session.session_id)
        return ids

    def delete(self, session_id: str) -> bool:
        """Delete a finished session.  Running sessions are not deleted."""
        run = self._run(session_id)
        if run is not None:
            if not run.future.done():
                return False
            with self._lock:
                self._runs.pop(session_id, None)
        removed = False
        if self.engine.repository is not None:
            removed = self.engine.repository.delete(session_id)
        return removed or run is not None

    def shutdown(self, wait: bool = True) -> None:
        if not wait:
            with self._lock:
                runs = list(self._runs.values())
            for run in runs:
                run.cancel_event.set()
        self._executor.shutdown(wait=wait)

    def _load(self, session_id: str) -> Optional[BacktestSession]:
        if self.engine.repository is None:
            return None
        return self.engine.repository.load(session_id)
