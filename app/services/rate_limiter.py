"""Fixed-window request budget per external provider."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable

from ..models import JobPriority

logger = logging.getLogger(__name__)

Clock = Callable[[], float]
Sleeper = Callable[[float], Awaitable[Any]]


class RateLimiter:
    """Allow ``max_requests`` per ``window_seconds``, keeping headroom for urgent work.

    Windows are aligned to multiples of ``window_seconds`` on the injected clock
    and reset all at once; there is no sliding. Normal and low priority callers
    may only use ``max_requests - reserved_capacity`` grants per window, while
    urgent callers (see :meth:`JobPriority.is_urgent`) may use the whole pool.
    """

    def __init__(
        self,
        name: str,
        max_requests: int,
        window_seconds: float,
        *,
        reserved_capacity: int = 0,
        clock: Clock = time.monotonic,
        sleep: Sleeper = asyncio.sleep,
    ):
        if max_requests < 1:
            raise ValueError("max_requests must be at least 1")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be positive")
        if not 0 <= reserved_capacity < max_requests:
            raise ValueError("reserved_capacity must be smaller than max_requests")
        self.name = name
        self.max_requests = max_requests
        self.window_seconds = float(window_seconds)
        self.reserved_capacity = reserved_capacity
        self._clock = clock
        self._sleep = sleep
        self._lock = asyncio.Lock()
        self._window_index: int | None = None
        self._granted = 0

    def limit_for(self, priority: int) -> int:
        if JobPriority.is_urgent(priority):
            return self.max_requests
        return self.max_requests - self.reserved_capacity

    def _roll_window(self, now: float) -> None:
        index = int(now // self.window_seconds)
        if index != self._window_index:
            self._window_index = index
            self._granted = 0

    def _seconds_until_reset(self, now: float) -> float:
        window_end = (int(now // self.window_seconds) + 1) * self.window_seconds
        return max(window_end - now, 0.0)

    def _try_grant(self, priority: int) -> bool:
        self._roll_window(self._clock())
        if self._granted < self.limit_for(priority):
            self._granted += 1
            return True
        return False

    def try_acquire(self, priority: int = JobPriority.NORMAL) -> bool:
        """Take a grant if one is available for this priority, without waiting."""

        return self._try_grant(priority)

    async def acquire(self, priority: int = JobPriority.NORMAL) -> None:
        """Take a grant, suspending until the window resets when none is left."""

        while True:
            async with self._lock:
                if self._try_grant(priority):
                    return
                delay = self._seconds_until_reset(self._clock())
            logger.debug(
                "Rate limit for %s reached at priority %s; waiting %.2fs",
                self.name,
                priority,
                delay,
            )
            await self._sleep(delay)

    def remaining(self, priority: int = JobPriority.NORMAL) -> int:
        self._roll_window(self._clock())
        return max(self.limit_for(priority) - self._granted, 0)

    def stats(self) -> dict[str, Any]:
        self._roll_window(self._clock())
        return {
            "name": self.name,
            "granted": self._granted,
            "max_requests": self.max_requests,
            "reserved_capacity": self.reserved_capacity,
            "window_seconds": self.window_seconds,
            "remaining_normal": self.remaining(JobPriority.NORMAL),
            "remaining_urgent": self.remaining(JobPriority.CRITICAL),
        }

    def reset(self) -> None:
        self._window_index = None
        self._granted = 0
