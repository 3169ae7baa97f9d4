"""
Fixed window rate limiter.

Counts admissions per window aligned to ``floor(now / window) * window``
and resets the count when a new window begins.  Up to twice the limit
can pass within one window length straddling a boundary (``limit`` at
the end of one window plus ``limit`` at the start of the next).  That is
the accepted trade-off of this algorithm, not a defect; use the sliding
window limiter where the bound must hold for every rolling interval.
"""

from __future__ import annotations

import math
import time
from dataclasses import dataclass

from herald_common.models.rate_limit import RateLimitResult

from .base import Clock, RateLimiter


@dataclass
class _Window:
    start_ms: int
    count: int = 0


class FixedWindowLimiter(RateLimiter):
    """Counter-per-window limiter.

    Args:
        limit: Units admitted per window.
        window_ms: Window length in milliseconds.
        clock: Wall-clock time source in seconds; windows align to epoch.
    """

    algorithm = "fixed-window"

    def __init__(self, limit: int, window_ms: int, clock: Clock = time.time) -> None:
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

    def _window_start(self, now_ms: float) -> int:
        return math.floor(now_ms / self.window_ms) * self.window_ms

    def _current(self, key: str, now_ms: float) -> _Window:
        start = self._window_start(now_ms)
        window = self._states.get(key)
        if window is None or window.start_ms != start:
            window = _Window(start_ms=start)
            self._states[key] = window
        return window

    def _retry_after_ms(self, window: _Window, now_ms: float) -> int:
        return max(1, math.ceil(window.start_ms + self.window_ms - now_ms))

    def _acquire(self, key: str, cost: int, now: float) -> RateLimitResult:
        now_ms = now * 1000.0
        window = self._current(key, now_ms)
        if window.count + cost <= self.limit:
            window.count += cost
            return RateLimitResult(allowed=True, remaining=self.limit - window.count)
        return RateLimitResult(
            allowed=False,
            remaining=self.limit - window.count,
            retry_after_ms=self._retry_after_ms(window, now_ms),
        )

    def _peek(self, key: str, now: float) -> RateLimitResult:
        now_ms = now * 1000.0
        window = self._states.get(key)
        if window is None or window.start_ms != self._window_start(now_ms):
            return RateLimitResult(allowed=True, remaining=self.limit)
        allowed = window.count < self.limit
        return RateLimitResult(
            allowed=allowed,
            remaining=self.limit - window.count,
            retry_after_ms=0 if allowed else self._retry_after_ms(window, now_ms),
        )
