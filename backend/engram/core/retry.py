"""Bounded exponential backoff for backend calls."""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Callable, TypeVar

from engram.core.errors import TransientBackendError
from engram.core.logging import get_logger
from engram.core.metrics import BACKEND_RETRIES

logger = get_logger(__name__)

T = TypeVar("T")


@dataclass(slots=True)
class RetryPolicy:
    attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0

    def delay_for(self, attempt: int) -> float:
        """Delay before retrying after the given (1-based) failed attempt."""
        return min(self.max_delay, self.base_delay * (2 ** (attempt - 1)))


def call_with_backoff(
    fn: Callable[[], T],
    *,
    policy: RetryPolicy,
    is_retryable: Callable[[BaseException], bool],
    operation: str,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Run ``fn`` retrying retryable failures; exhausting the budget raises TransientBackendError.

    Non-retryable exceptions propagate unchanged on the first occurrence.
    """
    for attempt in range(1, policy.attempts + 1):
        try:
            return fn()
        except Exception as exc:
            if not is_retryable(exc):
                raise
            if attempt >= policy.attempts:
                raise TransientBackendError(
                    f"{operation} failed after {policy.attempts} attempts: {exc}"
                ) from exc
            delay = policy.delay_for(attempt)
            BACKEND_RETRIES.labels(operation=operation).inc()
            logger.warning(
                "%s failed (attempt %s/%s), retrying in %.2fs: %s",
                operation,
                attempt,
                policy.attempts,
                delay,
                exc,
            )
            sleep(delay)
    raise TransientBackendError(f"{operation} was never attempted")


__all__ = ["RetryPolicy", "call_with_backoff"]
