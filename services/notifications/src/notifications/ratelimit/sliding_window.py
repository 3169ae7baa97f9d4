"""
Sliding window (log) rate limiter.

Keeps an ordered log of admitted requests per key.  An entry counts
while it is younger than the window, so no half-open interval of length
``window_ms`` ever contains more than ``limit`` admitted units.
"""

from __future__ import annotations

import math
import time
from collections import deque
from dataclasses import dataclass, field

from herald_common.models.rate_limit import RateLimitResult

from .base import Clock, RateLimiter


@dataclass
class _Log:
    entries: deque[tuple[float, int]] = field(default_factory=deque)
    used: int = 0


class SlidingWindowLimiter(RateLimiter):
    """Exact rolling-window limiter.

    Args:
        limit: Units admitted per rolling window.
        window_ms: Window length in milliseconds.
        clock: Monotonic time source in seconds.
    """

    algorithm = "sliding-window"

    def __init__(self, limit: int, window_ms: int, clock: Clock = time.monotonic) -> None:
        if limit < 1:
            raise ValueError("limit must be >= 1")
        if window_ms < 1:
            raise ValueError("window_ms must be >= 1")
        super().__init__(clock)
        self.limit = limit
        self.window_ms = window_ms

    @property
    def bound(self) -> int:
        return self.limit

    def _purge(self, log: _Log, now_ms: float) -> None:
        horizon = now_ms - self.window_ms
        while log.entries and log.entries[0][0] <= horizon:
            _, cost = log.entries.popleft()
            log.used -= cost

    def _retry_after_ms(self, log: _Log, cost: int, now_ms: float) -> int:
        excess = log.used + cost - self.limit
        if excess <= 0:
            return 0
        for admitted_at, entry_cost in log.entries:
            excess -= entry_cost
            if excess <= 0:
                return max(1, math.ceil(admitted_at + self.window_ms - now_ms))
        return self.window_ms

    def _acquire(self, key: str, cost: int, now: float) -> RateLimitResult:
        now_ms = now * 1000.0
        log = self._states.setdefault(key, _Log())
        self._purge(log, now_ms)
        if log.used + cost <= self.limit:
            log.entries.append((now_ms, cost))
            log.used += cost
            return RateLimitResult(allowed=True, remaining=self.limit - log.used)
        return RateLimitResult(
            allowed=False,
            remaining=self.limit - log.used,
            retry_after_ms=self._retry_after_ms(log, cost, now_ms),
        )

    def _peek(self, key: str, now: float) -> RateLimitResult:
        now_ms = now * 1000.0
        log = self._states.get(key)
        if log is None:
            return RateLimitResult(allowed=True, remaining=self.limit)
        self._purge(log, now_ms)
        return RateLimitResult(
            allowed=log.used < self.limit,
            remaining=self.limit - log.used,
            retry_after_ms=self._retry_after_ms(log, 1, now_ms),
        )
