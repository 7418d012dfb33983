"""
Retry with exponential backoff and jitter.

Used for artifact downloads: transient failures are retried up to
``max_attempts`` total attempts, permanent ones are raised at once.
The sleep function is injectable so tests never actually wait.
"""

from __future__ import annotations

import logging
import random
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """Backoff schedule.

    Args:
        max_attempts: Total attempts, including the first one.
        base_delay: Delay before the second attempt, in seconds.
        max_delay: Upper bound for a single delay (before jitter).
        jitter: Fraction of the delay added as random jitter.
    """

    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    jitter: float = 0.3

    def delay_for(self, attempt: int) -> float:
        """Delay after failed attempt number ``attempt`` (1-based)."""
        delay = min(self.base_delay * (2 ** (attempt - 1)), self.max_delay)
        return delay + random.uniform(0, delay * self.jitter)


def call_with_retry(
    fn: Callable[[], T],
    *,
    policy: RetryPolicy,
    is_transient: Callable[[Exception], bool],
    sleep: Callable[[float], None] = time.sleep,
    label: str = "operation",
) -> T:
    """Call ``fn`` until it succeeds, fails permanently, or attempts run out.

    The last exception is re-raised unchanged when retries are exhausted.
    """
    attempt = 1
    while True:
        try:
            return fn()
        except Exception as e:
            if not is_transient(e):
                raise
            if attempt >= policy.max_attempts:
                logger.warning("%s failed after %d attempts: %s", label, attempt, e)
                raise
            delay = policy.delay_for(attempt)
            logger.info(
                "%s failed (attempt %d/%d): %s; retrying in %.1fs",
                label, attempt, policy.max_attempts, e, delay,
            )
            sleep(delay)
            attempt += 1
