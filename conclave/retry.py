"""Bounded exponential backoff for transient backend failures."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterator
from dataclasses import dataclass
from typing import TypeVar

from .errors import StoreUnavailable

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class BackoffPolicy:
    """Retry schedule: ``attempts`` tries, delays doubling from ``base`` up to ``cap``."""

    attempts: int = 3
    base: float = 0.05
    cap: float = 1.0
    multiplier: float = 2.0

    def delays(self) -> Iterator[float]:
        """Delays to sleep between consecutive attempts (``attempts - 1`` values)."""
        delay = self.base
        for _ in range(max(self.attempts - 1, 0)):
            yield min(delay, self.cap)
            delay *= self.multiplier


async def with_retries(
    operation: Callable[[], Awaitable[T]],
    policy: BackoffPolicy,
    *,
    retry_on: tuple[type[BaseException], ...] = (StoreUnavailable,),
    label: str = "operation",
) -> T:
    """Run ``operation``, retrying ``retry_on`` errors per ``policy``.

    The last error propagates once the attempts are exhausted.
    """
    delays = policy.delays()
    attempt = 1
    while True:
        try:
            return await operation()
        except retry_on as exc:
            delay = next(delays, None)
            if delay is None:
                logger.error("%s failed after %d attempts: %s", label, attempt, exc)
                raise
            logger.warning(
                "%s failed (attempt %d/%d), retrying in %.2fs: %s",
                label,
                attempt,
                policy.attempts,
                delay,
                exc,
            )
            attempt += 1
            await asyncio.sleep(delay)
