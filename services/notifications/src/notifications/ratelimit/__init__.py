"""
Rate limiting for Herald channels.

Three interchangeable algorithms behind the ``RateLimiter`` interface,
and the ``RateLimitManager`` that owns them.
"""

from .base import RateLimiter
from .fixed_window import FixedWindowLimiter
from .manager import RateLimitManager, build_limiter
from .sliding_window import SlidingWindowLimiter
from .token_bucket import TokenBucketLimiter

__all__ = [
    "FixedWindowLimiter",
    "RateLimitManager",
    "RateLimiter",
    "SlidingWindowLimiter",
    "TokenBucketLimiter",
    "build_limiter",
]
