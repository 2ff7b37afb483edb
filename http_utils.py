from __future__ import annotations

import asyncio
import random
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable

DEFAULT_RETRY_STATUSES = {429, 500, 502, 503, 504}


@dataclass
class RetryPolicy:
    retries: int = 0
    backoff: float = 0.0
    retry_statuses: set[int] = field(default_factory=lambda: set(DEFAULT_RETRY_STATUSES))

    def __post_init__(self) -> None:
        self.retries = max(0, int(self.retries))
        self.backoff = max(0.0, float(self.backoff))
        if not self.retry_statuses:
            self.retry_statuses = set(DEFAULT_RETRY_STATUSES)

    @property
    def attempts(self) -> int:
        return self.retries + 1

    def delay_for_attempt(self, attempt: int) -> float:
        if self.backoff <= 0:
            return 0.0
        delay = self.backoff * (2 ** (attempt - 1))
        delay += random.uniform(0.0, self.backoff)
        return delay


def parse_retry_after(value: str | None) -> float | None:
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        return None


class RequestThrottle:
    """Spaces calls at least ``interval`` seconds apart.

    The interval is measured from the end of the previous call, so use it as
    ``async with throttle:`` around the call itself.
    """

    def __init__(
        self,
        interval: float,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.interval = max(0.0, float(interval))
        self._clock = clock
        self._sleep = sleep
        self._last_finished: float | None = None
        self._lock = asyncio.Lock()

    async def wait(self) -> None:
        if self._last_finished is None or self.interval <= 0:
            return
        wait_for = self.interval - (self._clock() - self._last_finished)
        if wait_for > 0:
            await self._sleep(wait_for)

    def mark(self) -> None:
        self._last_finished = self._clock()

    async def __aenter__(self) -> "RequestThrottle":
        await self._lock.acquire()
        try:
            await self.wait()
        except BaseException:
            self._lock.release()
            raise
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self.mark()
        self._lock.release()
