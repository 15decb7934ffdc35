from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, Generic, Optional, Tuple, Type, TypeVar
from urllib.parse import urlsplit

T = TypeVar("T")

Sleep = Callable[[float], Awaitable[None]]


def host_from_url(url: str) -> str:
    try:
        host = urlsplit(url).hostname
    except ValueError:
        return "unknown"
    return host or "unknown"


class HostRateLimiter:
    """Enforces a minimum spacing between requests to the same host.

    Each host is tracked independently; a caller reserves the next free slot
    under the lock and sleeps outside it, so waiting on one host never blocks
    another.
    """

    def __init__(
        self,
        min_interval_ms: int = 1000,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Sleep = asyncio.sleep,
    ):
        self.min_interval = max(0, min_interval_ms) / 1000.0
        self._clock = clock
        self._sleep = sleep
        self._next_allowed: Dict[str, float] = {}
        self._lock = asyncio.Lock()

    async def wait_for_host(self, host: str) -> float:
        async with self._lock:
            now = self._clock()
            start = max(now, self._next_allowed.get(host, now))
            self._next_allowed[host] = start + self.min_interval
        delay = start - now
        if delay > 0:
            await self._sleep(delay)
        return delay


@dataclass(frozen=True)
class RetryPolicy:
    retries: int = 2  # additional attempts after the first
    base_delay: float = 0.5

    def delay_for(self, attempt: int) -> float:
        return self.base_delay * (2 ** (attempt - 1))


@dataclass
class RetryOutcome(Generic[T]):
    value: T
    attempts: int

    @property
    def retried(self) -> bool:
        return self.attempts > 1


async def with_retry(
    operation: Callable[[int], Awaitable[T]],
    policy: RetryPolicy,
    should_retry: Optional[Callable[[T], bool]] = None,
    *,
    retry_on: Tuple[Type[BaseException], ...] = (),
    sleep: Sleep = asyncio.sleep,
) -> RetryOutcome[T]:
    """Run ``operation`` up to ``policy.retries + 1`` times.

    ``operation`` receives the 1-based attempt number. Another attempt is made
    when ``should_retry`` holds for the returned value, or when the operation
    raised one of ``retry_on``. The final attempt is never retried: its value is
    returned as-is and its exception propagates.
    """
    total_attempts = 1 + max(0, policy.retries)
    for attempt in range(1, total_attempts + 1):
        final = attempt == total_attempts
        try:
            value = await operation(attempt)
        except retry_on:
            if final:
                raise
            await sleep(policy.delay_for(attempt))
            continue
        if final or should_retry is None or not should_retry(value):
            return RetryOutcome(value=value, attempts=attempt)
        await sleep(policy.delay_for(attempt))
    raise RuntimeError("retry loop exited without a result")
