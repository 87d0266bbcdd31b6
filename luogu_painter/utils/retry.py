"""Bounded retry with exponential backoff for coroutine calls.

Used by the board mirror for both the snapshot fetch and the paint
request.  Attempts and delays come from the ``retry`` section of
``painter.yaml``.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """Backoff schedule.

    Parameters
    ----------
    max_attempts : int
        Total tries including the first one.
    base_delay_s : float
        Delay before the second attempt.
    factor : float
        Multiplier applied to the delay after each failed attempt.
    max_delay_s : float
        Upper bound for any single delay.
    """

    max_attempts: int = 5
    base_delay_s: float = 0.5
    factor: float = 2.0
    max_delay_s: float = 8.0

    def delay(self, attempt: int) -> float:
        """Seconds to wait after failed attempt number *attempt* (1-based)."""
        return min(self.base_delay_s * self.factor ** (attempt - 1), self.max_delay_s)


async def retry_async(
    fn: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    *,
    is_transient: Callable[[BaseException], bool],
    what: str = "request",
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """Await ``fn()`` until it succeeds or the policy gives up.

    Raises
    ------
    Exception
        The first non-transient error, or the last transient error once
        ``policy.max_attempts`` is exhausted.
    """
    attempt = 1
    while True:
        try:
            return await fn()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            if not is_transient(exc) or attempt >= policy.max_attempts:
                raise
            delay = policy.delay(attempt)
            logger.warning(
                "%s failed (attempt %d/%d): %s; retrying in %.2fs",
                what,
                attempt,
                policy.max_attempts,
                exc or type(exc).__name__,
                delay,
            )
            await sleep(delay)
            attempt += 1
