"""
Session persistence.

Backtest sessions are stored as one JSON document per session.  The
engine and the runner talk to a `SessionRepository`; the JSON file
implementation is used by the CLI and the in-memory one by tests and
short-lived embeddings.  Non-finite floats (an infinite profit factor)
are written as the JSON literal ``Infinity`` and read back unchanged.
"""

from __future__ import annotations

import copy
import json
import logging
from pathlib import Path
import threading
from typing import Any, Dict, List, Optional, Protocol

from ..errors import PersistenceError
from ..session.models import BacktestSession

logger = logging.getLogger(__name__)


class SessionRepository(Protocol):
    def save(self, session: BacktestSession) -> None:
        ...

    def load(self, session_id: str) -> Optional[BacktestSession]:
        ...

    def list(self) -> List[BacktestSession]:
        ...

    def delete(self, session_id: str) -> bool:
        ...

    def save_analysis(self, session_id: str, analysis_id: str, record: Dict[str, Any]) -> None:
        ...


def load_state(path: str) -> Optional[Dict[str, Any]]:
    """Load a JSON document.

    Parameters
    ----------
    path : str
        Path to the JSON file.

    Returns
    -------
    dict or None
        The parsed document if the file exists, otherwise `None`.
    """
    file_path = Path(path)
    if not file_path.exists():
        return None
    with file_path.open("r", encoding="utf-8") as fh:
        return json.load(fh)


def save_state(path: str, state: Dict[str, Any]) -> None:
    """Write a JSON document to disk, replacing the file atomically.

    Parameters
    ----------
    path : str
        Path to the output file.
    state : dict
        Document to write.  Must be serialisable to JSON.
    """
    file_path = Path(path)
    file_path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = file_path.with_suffix(file_path.suffix + ".tmp")
    with tmp_path.open("w", encoding="utf-8") as fh:
        json.dump(state, fh, ensure_ascii=False, indent=2, sort_keys=True)
    tmp_path.replace(file_path)


class JsonSessionRepository:
    """Store sessions under ``<results_dir>/sessions/<id>.json``.

    Analysis records go to ``<results_dir>/analysis/<session_id>/<analysis_id>.json``.
    """

    def __init__(self, results_dir: str) -> None:
        self.root = Path(results_dir)
        self.sessions_dir = self.root / "sessions"
        self.analysis_dir = self.root / "analysis"
        self._lock = threading.Lock()

    def _session_path(self, session_id: str) -> Path:
        if not session_id or "/" in session_id or "\\" in session_id or session_id.startswith("."):
            raise PersistenceError(f"Invalid session id: {session_id!r}")
        return self.sessions_dir / f"{session_id}.json"

    def save(self, session: BacktestSession) -> None:
        path = self._session_path(session.session_id)
        try:
            with self._lock:
                save_state(str(path), session.to_dict())
        except (OSError, TypeError, ValueError) as exc:
            raise PersistenceError(f"Could not save session {session.session_id}: {exc}") from exc
        logger.debug("Saved session %s to %s", session.session_id, path)

    def load(self, session_id: str) -> Optional[BacktestSession]:
        path = self._session_path(session_id)
        try:
            data = load_state(str(path))
            if data is None:
                return None
            return BacktestSession.from_dict(data)
        except (OSError, ValueError, KeyError, TypeError) as exc:
            raise PersistenceError(f"Could not load session {session_id}: {exc}") from exc

    def list(self) -> List[BacktestSession]:
        """All stored sessions, newest first.  Unreadable files are skipped with a warning."""
        if not self.sessions_dir.exists():
            return []
        sessions: List[BacktestSession] = []
        for path in sorted(self.sessions_dir.glob("*.json")):
            try:
                session = self.load(path.stem)
            except PersistenceError as exc:
                logger.warning("Skipping unreadable session file %s: %s", path, exc)
                continue
            if session is not None:
                sessions.append(session)
        sessions.sort(key=lambda s: s.metadata.created_at, reverse=True)
        return sessions

    def delete(self, session_id: str) -> bool:
        path = self._session_path(session_id)
        if not path.exists():
            return False
        try:
            path.unlink()
            analysis = self.analysis_dir / session_id
            if analysis.exists():
                for item in analysis.glob("*.json"):
                    item.unlink()
                analysis.rmdir()
        except OSError as exc:
            raise PersistenceError(f"Could not delete session {session_id}: {exc}") from exc
        return True

    def save_analysis(self, session_id: str, analysis_id: str, record: Dict[str, Any]) -> None:
        path = self.analysis_dir / session_id / f"{analysis_id}.json"
        try:
            save_state(str(path), record)
        except (OSError, TypeError, ValueError) as exc:
            raise PersistenceError(f"Could not save analysis {analysis_id}: {exc}") from exc


class InMemorySessionRepository:
    """Dictionary-backed repository.  Stored sessions are deep copies."""

    def __init__(self) -> None:
        self._sessions: Dict[str, Dict[str, Any]] = {}
        self.analysis: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self.save_count = 0
        self._lock = threading.Lock()

    def save(self, session: BacktestSession) -> None:
        with self._lock:
            self._sessions[session.session_id] = copy.deepcopy(session.to_dict())
            self.save_count += 1

    def load(self, session_id: str) -> Optional[BacktestSession]:
        with self._lock:
            data = self._sessions.get(session_id)
        return BacktestSession.from_dict(data) if data is not None else None

    def list(self) -> List[BacktestSession]:
        with self._lock:
            items = list(self._sessions.values())
        sessions = [BacktestSession.from_dict(d) for d in items]
        sessions.sort(key=lambda s: s.metadata.created_at, reverse=True)
        return sessions

    def delete(self, session_id: str) -> bool:
        with self._lock:
            self.analysis.pop(session_id, None)
            return self._sessions.pop(session_id, None) is not None

    def save_analysis(self, session_id: str, analysis_id: str, record: Dict[str, Any]) -> None:
        with self._lock:
            self.analysis.setdefault(session_id, {})[analysis_id] = copy.deepcopy(record)
