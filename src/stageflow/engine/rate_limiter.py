"""Sliding-window admission control for the shared external resource."""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class RateLimitStatus:
    """Point-in-time view of limiter occupancy."""

    requests_in_window: int
    slots_available: int
    utilization_percent: float
    waiting: int


class RateLimiter:
    """Grants at most ``max_requests`` call starts per trailing ``window_seconds``.

    Keeps a log of granted start times. Waiters queue on a FIFO lock, so
    they are admitted strictly in arrival order and only the head of the
    queue ever sleeps for capacity; when old entries leave the window the
    queue drains one grant per freed slot.
    """

    def __init__(
        self,
        max_requests: int,
        window_seconds: float,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_requests <= 0:
            raise ValueError("max_requests must be positive")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be positive")
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._clock = clock
        self._granted: deque[float] = deque()
        self._lock = asyncio.Lock()
        self._waiting = 0

    async def wait_for_slot(self) -> None:
        """Block until the caller may start one external call."""

        self._waiting += 1
        try:
            async with self._lock:
                while True:
                    now = self._clock()
                    self._evict(now)
                    if len(self._granted) < self.max_requests:
                        self._granted.append(now)
                        return
                    delay = self._granted[0] + self.window_seconds - now
                    logger.debug(
                        "Rate limit reached (%d/%d), waiting %.3fs",
                        len(self._granted),
                        self.max_requests,
                        delay,
                    )
                    await asyncio.sleep(max(delay, 0.0))
        finally:
            self._waiting -= 1

    def status(self) -> RateLimitStatus:
        """Current window occupancy."""

        self._evict(self._clock())
        in_window = len(self._granted)
        return RateLimitStatus(
            requests_in_window=in_window,
            slots_available=self.max_requests - in_window,
            utilization_percent=in_window / self.max_requests * 100,
            waiting=self._waiting,
        )

    def _evict(self, now: float) -> None:
        cutoff = now - self.window_seconds
        while self._granted and self._granted[0] <= cutoff:
            self._granted.popleft()
