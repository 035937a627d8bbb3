"""Capped exponential backoff for transient API failures."""

from __future__ import annotations

import logging
import time
from typing import Callable, TypeVar

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")

TRANSIENT_HINTS = ("rate_limit", "rate limit", "timeout", "timed out", "500", "502", "503", "504")


def backoff_delay(attempt: int, *, base: float = 1.0, cap: float = 10.0) -> float:
    """Delay before retrying after the 0-based ``attempt`` failed."""
    return min(base * (2**attempt), cap)


def is_transient_status(status: int | None) -> bool:
    if status is None:
        return False
    return status == 429 or status == 408 or 500 <= status <= 599


def looks_transient(message: str) -> bool:
    lowered = message.lower()
    return any(hint in lowered for hint in TRANSIENT_HINTS)


def retry_transient(
    operation: Callable[[], T],
    *,
    is_transient: Callable[[Exception], bool],
    max_attempts: int = 3,
    base_delay: float = 1.0,
    max_delay: float = 10.0,
    sleep: Callable[[float], None] = time.sleep,
    label: str = "request",
) -> T:
    """Run ``operation`` retrying only errors classified as transient.

    Non-transient errors propagate on the first occurrence; transient ones are
    re-raised once ``max_attempts`` is exhausted.
    """

    attempts = max(1, max_attempts)
    for attempt in range(attempts):
        try:
            return operation()
        except Exception as error:
            if not is_transient(error) or attempt == attempts - 1:
                raise
            delay = backoff_delay(attempt, base=base_delay, cap=max_delay)
            LOGGER.warning(
                "%s failed (attempt %d/%d), retrying in %.1fs: %s",
                label,
                attempt + 1,
                attempts,
                delay,
                error,
            )
            sleep(delay)
    raise AssertionError("unreachable")  # pragma: no cover


__all__ = ["backoff_delay", "is_transient_status", "looks_transient", "retry_transient"]
