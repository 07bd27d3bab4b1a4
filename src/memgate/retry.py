"""Backoff policy and the single retry loop used by session and connection code."""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

from memgate.errors import MemgateError, classify_exception

logger = logging.getLogger(__name__)

T = TypeVar("T")

Sleep = Callable[[float], Awaitable[None]]
RetryCallback = Callable[[int, MemgateError, float], None]


@dataclass(frozen=True)
class BackoffPolicy:
    """Exponential backoff: ``base * factor**n``, jittered by ``±jitter`` (a ratio), capped."""

    base: float = 1.0
    factor: float = 2.0
    max_delay: float = 10.0
    jitter: float = 0.25

    def compute_delay(self, n: int, *, jitter: bool = True) -> float:
        n = max(0, n)
        if n > 64:
            return self.max_delay
        raw = self.base * (self.factor**n)
        if raw >= self.max_delay:
            return self.max_delay
        if jitter and self.jitter:
            spread = raw * self.jitter
            raw += random.uniform(-spread, spread)
        return max(0.0, min(raw, self.max_delay))


async def retry_async(
    operation: Callable[[], Awaitable[T]],
    *,
    policy: BackoffPolicy,
    max_attempts: int,
    sleep: Sleep = asyncio.sleep,
    on_retry: RetryCallback | None = None,
    description: str = "operation",
) -> T:
    """Run ``operation`` until it succeeds, a non-retryable error occurs, or attempts run out.

    Raw exceptions are classified first; only ``retryable`` errors are retried,
    so an AuthError surfaces on the first attempt. Cancellation propagates
    through the backoff sleep, leaving no pending timer behind.
    """
    attempt = 0
    while True:
        attempt += 1
        try:
            return await operation()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            error = classify_exception(e)
            if not error.retryable or attempt >= max_attempts:
                if error is e:
                    raise
                raise error from e
            delay = policy.compute_delay(attempt - 1)
            logger.info(
                "Retry %d/%d for %s in %.2fs (%s: %s)",
                attempt,
                max_attempts - 1,
                description,
                delay,
                error.error_class,
                error,
            )
            if on_retry:
                on_retry(attempt, error, delay)
            await sleep(delay)
