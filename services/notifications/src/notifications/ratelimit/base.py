"""
Rate limiter interface for Herald.

Every algorithm keeps independent state per key and serializes mutation
of that state with a per-key lock.  Limiters never await, so a plain
``threading.Lock`` is enough and calls are safe from both event-loop
tasks and worker threads.
"""

from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from typing import Any, Callable

from herald_common.models.rate_limit import RateLimitResult

Clock = Callable[[], float]


class RateLimiter(ABC):
    """Base class for the token bucket, sliding window and fixed window limiters.

    Args:
        clock: Returns the current time in seconds.  Injected so tests can
               drive time explicitly.
    """

    algorithm: str = "base"

    def __init__(self, clock: Clock) -> None:
        self._clock = clock
        self._states: dict[str, Any] = {}
        self._locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    @property
    @abstractmethod
    def bound(self) -> int:
        """Largest cost that could ever be admitted (capacity or limit)."""

    def try_acquire(self, key: str, cost: int = 1) -> RateLimitResult:
        """Try to admit *cost* units for *key*.

        Args:
            key: Scope key (recipient or rule id).
            cost: Units requested, at least 1.

        Returns:
            The limiter's decision.  A cost above :attr:`bound` is always
            rejected with ``oversized=True`` and leaves the state untouched.

        Raises:
            ValueError: If *cost* is below 1.
        """
        if cost < 1:
            raise ValueError(f"cost must be >= 1, got {cost}")
        if cost > self.bound:
            return RateLimitResult(allowed=False, remaining=0, oversized=True)
        with self._lock_for(key):
            return self._acquire(key, cost, self._clock())

    def status(self, key: str) -> RateLimitResult:
        """Return what a cost-1 acquire would see, without consuming anything."""
        with self._lock_for(key):
            return self._peek(key, self._clock())

    def reset(self, key: str) -> None:
        """Forget all state for *key*; the next acquire starts fresh."""
        with self._lock_for(key):
            self._states.pop(key, None)

    def _lock_for(self, key: str) -> threading.Lock:
        lock = self._locks.get(key)
        if lock is None:
            with self._locks_guard:
                lock = self._locks.setdefault(key, threading.Lock())
        return lock

    @abstractmethod
    def _acquire(self, key: str, cost: int, now: float) -> RateLimitResult:
        """Apply the algorithm under the key's lock."""

    @abstractmethod
    def _peek(self, key: str, now: float) -> RateLimitResult:
        """Report current availability under the key's lock."""
