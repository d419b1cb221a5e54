"""
Identifier generation.

Sessions, orders, positions, trades and fallback analysis records all
need unique ids.  The generator is injected wherever ids are minted so
tests can use a deterministic sequence instead of random UUIDs.
"""

from __future__ import annotations

import itertools
import threading
import uuid


class UuidIdGenerator:
    """Return ``<prefix>_<32 hex chars>`` ids backed by `uuid.uuid4`."""

    def new(self, prefix: str) -> str:
        return f"{prefix}_{uuid.uuid4().hex}"


class SequentialIdGenerator:
    """Return ``<prefix>_<n>`` ids from a monotonic counter shared by all prefixes."""

    def __init__(self, start: int = 1) -> None:
        self._counter = itertools.count(start)
        self._lock = threading.Lock()

    def new(self, prefix: str) -> str:
        with self._lock:
            return f"{prefix}_{next(self._counter)}"
