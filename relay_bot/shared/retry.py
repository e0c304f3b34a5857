"""Exponential backoff for transient platform failures."""

from __future__ import annotations

import logging
import time
from typing import Callable, TypeVar

T = TypeVar("T")

logger = logging.getLogger(__name__)


def retry_with_backoff(
    operation: Callable[[], T],
    *,
    retry_on: tuple[type[BaseException], ...],
    max_attempts: int = 3,
    initial_delay_s: float = 1.0,
    max_delay_s: float = 20.0,
    backoff_factor: float = 2.0,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Run ``operation`` until it succeeds or ``max_attempts`` is spent.

    Only exceptions listed in ``retry_on`` are retried; anything else
    propagates immediately. A ``retry_after_s`` attribute on the raised
    exception overrides the computed delay.
    """

    delay_s = initial_delay_s
    attempt = 0
    while True:
        attempt += 1
        try:
            return operation()
        except retry_on as exc:
            if attempt >= max_attempts:
                logger.error("Operation failed after %d attempts: %s", attempt, exc)
                raise
            wait_s = getattr(exc, "retry_after_s", None)
            if wait_s is None:
                wait_s = delay_s
            logger.warning(
                "Attempt %d of %d failed (%s); retrying in %.1fs",
                attempt,
                max_attempts,
                exc,
                wait_s,
            )
            sleep(min(wait_s, max_delay_s))
            delay_s = min(delay_s * backoff_factor, max_delay_s)
