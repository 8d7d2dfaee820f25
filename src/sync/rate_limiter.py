from __future__ import annotations

import asyncio
import logging
import threading
import time
from collections import deque
from typing import Awaitable, Callable, Deque, NamedTuple, Optional

from sync.metrics import NullSyncMetrics, SyncMetrics

logger = logging.getLogger(__name__)


class RateDecision(NamedTuple):
    allowed: bool
    retry_after_s: float


class RateLimiter:
    """
    Sliding-window limiter shared by every outbound calendar call.

    One instance caps the combined call rate of all integrations, however
    many of them are being synced at once. The window is only touched while
    holding ``_lock``.
    """

    def __init__(
        self,
        capacity: int = 300,
        window_s: float = 60.0,
        floor_s: float = 1.0,
        enabled: bool = True,
        metrics: Optional[SyncMetrics] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self.capacity = capacity
        self.window_s = window_s
        self.floor_s = floor_s
        self.enabled = enabled
        self.metrics = metrics or NullSyncMetrics()
        self._clock = clock
        self._sleep = sleep
        self._calls: Deque[float] = deque()
        self._lock = threading.Lock()

    def _prune(self, now: float) -> None:
        cutoff = now - self.window_s
        while self._calls and self._calls[0] <= cutoff:
            self._calls.popleft()

    def try_acquire(self) -> RateDecision:
        """Record a call if the window has room, else say how long to wait."""
        if not self.enabled:
            return RateDecision(True, 0.0)

        with self._lock:
            now = self._clock()
            self._prune(now)
            if len(self._calls) < self.capacity:
                self._calls.append(now)
                return RateDecision(True, 0.0)
            return RateDecision(False, self._calls[0] + self.window_s - now)

    async def acquire(self) -> None:
        """Wait until a call fits in the window, then record it."""
        while True:
            decision = self.try_acquire()
            if decision.allowed:
                return

            delay = max(self.floor_s, decision.retry_after_s)
            logger.warning(
                f"Rate limit reached ({self.capacity}/{self.window_s:.0f}s), waiting {delay:.2f}s"
            )
            self.metrics.rate_limit_hit("local")
            await self._sleep(delay)

    def get_stats(self) -> dict:
        with self._lock:
            self._prune(self._clock())
            current = len(self._calls)

        return {
            "enabled": self.enabled,
            "max_requests_per_window": self.capacity,
            "window_seconds": self.window_s,
            "current_requests": current,
            "remaining_requests": max(0, self.capacity - current),
        }
