"""
Token bucket rate limiter.

A bucket holds up to ``capacity`` tokens and gains ``refill_rate``
tokens per second.  It starts full, so a burst of exactly ``capacity``
requests is admitted immediately, after which throughput settles at the
refill rate.
"""

from __future__ import annotations

import math
import time
from dataclasses import dataclass

from herald_common.models.rate_limit import RateLimitResult

from .base import Clock, RateLimiter


@dataclass
class _Bucket:
    tokens: float
    last_refill: float


class TokenBucketLimiter(RateLimiter):
    """Smooth average-rate limiter with a burst allowance.

    Args:
        capacity: Maximum tokens in the bucket.
        refill_rate: Tokens added per second.
        clock: Monotonic time source in seconds.
    """

    algorithm = "token-bucket"

    def __init__(self, capacity: int, refill_rate: float, clock: Clock = time.monotonic) -> None:
        if capacity < 1:
            raise ValueError("capacity must be >= 1")
        if refill_rate <= 0:
            raise ValueError("refill_rate must be > 0")
        super().__init__(clock)
        self.capacity = capacity
        self.refill_rate = refill_rate

    @property
    def bound(self) -> int:
        return self.capacity

    def _refilled(self, key: str, now: float) -> _Bucket:
        bucket = self._states.get(key)
        if bucket is None:
            bucket = _Bucket(tokens=float(self.capacity), last_refill=now)
            self._states[key] = bucket
            return bucket
        elapsed = max(0.0, now - bucket.last_refill)
        bucket.tokens = min(float(self.capacity), bucket.tokens + elapsed * self.refill_rate)
        bucket.last_refill = now
        return bucket

    def _retry_after_ms(self, tokens: float, cost: int) -> int:
        missing = cost - tokens
        if missing <= 0:
            return 0
        return max(1, math.ceil(missing / self.refill_rate * 1000))

    def _acquire(self, key: str, cost: int, now: float) -> RateLimitResult:
        bucket = self._refilled(key, now)
        if bucket.tokens >= cost:
            bucket.tokens -= cost
            return RateLimitResult(allowed=True, remaining=int(bucket.tokens))
        return RateLimitResult(
            allowed=False,
            remaining=int(bucket.tokens),
            retry_after_ms=self._retry_after_ms(bucket.tokens, cost),
        )

    def _peek(self, key: str, now: float) -> RateLimitResult:
        bucket = self._states.get(key)
        if bucket is None:
            tokens = float(self.capacity)
        else:
            elapsed = max(0.0, now - bucket.last_refill)
            tokens = min(float(self.capacity), bucket.tokens + elapsed * self.refill_rate)
        return RateLimitResult(
            allowed=tokens >= 1,
            remaining=int(tokens),
            retry_after_ms=self._retry_after_ms(tokens, 1),
        )
