"""
core/retry.py

Resilience primitives for asyncio call sites:
- Retries with exponential backoff + jitter, capped delay and bounded attempts
- Fixed-delay policies (multiplier=1.0) for "target not found yet" races

Both the queue/bus producers and the read-store patch paths use these, so the
retry arithmetic lives in one place.
"""

from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, Iterator, Optional, Tuple, Type, TypeVar

R = TypeVar("R")

log = logging.getLogger("postwatch.core.retry")


@dataclass(frozen=True)
class RetryConfig:
    """Configuration for `retry_async`.

    Attributes:
        attempts: Maximum number of attempts (including the first try).
        base_delay: Initial delay between retries (seconds).
        max_delay: Upper bound for delay (seconds).
        multiplier: Growth factor per retry; 1.0 gives a fixed delay.
        jitter: Proportional jitter (0..1) added/subtracted to delay.
    """
    attempts: int = 3
    base_delay: float = 0.05  # seconds
    max_delay: float = 1.0
    multiplier: float = 2.0
    jitter: float = 0.25  # 0..1 proportion added/subtracted

    def delays(self) -> Iterator[float]:
        """Yield the sleep before each retry (``attempts - 1`` values)."""
        delay = self.base_delay
        for _ in range(max(0, self.attempts - 1)):
            j = delay * self.jitter
            yield max(0.0, delay + random.uniform(-j, j))
            delay = min(self.max_delay, delay * self.multiplier)


async def retry_async(
    fn: Callable[[], Awaitable[R]],
    config: RetryConfig,
    retry_on: Tuple[Type[BaseException], ...] = (Exception,),
    on_retry: Optional[Callable[[int, BaseException, float], None]] = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> R:
    """Await `fn()` until it succeeds or the attempt budget is spent.

    Args:
        fn: Zero-arg coroutine factory; called once per attempt.
        config: RetryConfig parameters.
        retry_on: Exception types that trigger a retry; anything else propagates at once.
        on_retry: Optional hook called with (attempt, error, sleep_seconds) before sleeping.
        sleep: Awaitable sleep (injectable for tests).

    Returns:
        The result of the first successful attempt.

    Raises:
        The last exception raised by `fn` once attempts are exhausted.
    """
    delays = config.delays()
    attempt = 1
    while True:
        try:
            return await fn()
        except retry_on as e:
            pause = next(delays, None)
            if pause is None:
                raise
            if on_retry is not None:
                on_retry(attempt, e, pause)
            else:
                log.warning("attempt %d failed (%s); retrying in %.2fs", attempt, e, pause)
            attempt += 1
            await sleep(pause)
