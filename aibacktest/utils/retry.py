"""Bounded retry with increasing delay for calls to external services."""

from __future__ import annotations

import logging
import time
from typing import Callable, Tuple, Type, TypeVar

T = TypeVar("T")

logger = logging.getLogger(__name__)


def call_with_retry(
    func: Callable[[], T],
    max_retries: int,
    delay: float,
    retry_on: Tuple[Type[BaseException], ...] = (Exception,),
    description: str = "request",
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Call `func`, retrying up to `max_retries` times on `retry_on` errors.

    The n-th retry waits ``delay * n`` seconds.  The last error is
    re-raised once the retries are exhausted.
    """
    attempt = 0
    while True:
        try:
            return func()
        except retry_on as exc:
            if attempt >= max_retries:
                raise
            attempt += 1
            logger.warning(
                "%s failed, retrying (%d/%d): %s", description, attempt, max_retries, exc
            )
            sleep(delay * attempt)
