"""
Rate limit manager for Herald.

Owns every limiter in the process.  Limiters are created lazily per
``(channel, scope_key)`` from the channel's ``RateLimitConfig`` and
cached for the manager's lifetime.  A channel without configuration is
unlimited: every check is allowed and flagged ``unlimited=True``.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Any

import structlog

from herald_common.models.rate_limit import (
    RateLimitAlgorithm,
    RateLimitConfig,
    RateLimitResult,
    RateLimitScope,
)

from ..errors import RateLimitExceeded
from ..metrics import rate_limit_decisions_total
from .base import Clock, RateLimiter
from .fixed_window import FixedWindowLimiter
from .sliding_window import SlidingWindowLimiter
from .token_bucket import TokenBucketLimiter

logger = structlog.get_logger()


@dataclass
class ChannelRateStats:
    """Allowed/blocked counters for one channel."""

    allowed: int = 0
    blocked: int = 0

    @property
    def total(self) -> int:
        return self.allowed + self.blocked

    @property
    def block_rate(self) -> float:
        return self.blocked / self.total if self.total else 0.0


def build_limiter(config: RateLimitConfig, clock: Clock | None = None) -> RateLimiter:
    """Instantiate the limiter described by *config*.

    Args:
        config: Channel rate limit configuration.
        clock: Optional time source; each algorithm has its own default.
    """
    kwargs: dict[str, Any] = {} if clock is None else {"clock": clock}
    if config.algorithm == RateLimitAlgorithm.TOKEN_BUCKET:
        if config.capacity is None or config.refill_rate_per_sec is None:
            raise ValueError("token-bucket requires capacity and refill_rate_per_sec")
        return TokenBucketLimiter(config.capacity, config.refill_rate_per_sec, **kwargs)
    if config.limit is None or config.window_ms is None:
        raise ValueError(f"{config.algorithm.value} requires limit and window_ms")
    if config.algorithm == RateLimitAlgorithm.SLIDING_WINDOW:
        return SlidingWindowLimiter(config.limit, config.window_ms, **kwargs)
    return FixedWindowLimiter(config.limit, config.window_ms, **kwargs)


class RateLimitManager:
    """Routes rate limit checks to per-``(channel, scope_key)`` limiters.

    Args:
        configs: Rate limit configuration per channel name.
        clock: Optional time source shared by every limiter (tests).
    """

    def __init__(
        self,
        configs: dict[str, RateLimitConfig] | None = None,
        *,
        clock: Clock | None = None,
    ) -> None:
        self._configs: dict[str, RateLimitConfig] = dict(configs or {})
        self._clock = clock
        self._limiters: dict[tuple[str, str], RateLimiter] = {}
        self._stats: dict[str, ChannelRateStats] = {}
        self._lock = threading.Lock()

    # ── configuration ──

    def configure(self, channel: str, config: RateLimitConfig | None) -> None:
        """Replace (or with ``None``, remove) *channel*'s configuration.

        Cached limiters for the channel are dropped so the new bounds
        apply from the next check.
        """
        with self._lock:
            if config is None:
                self._configs.pop(channel, None)
            else:
                self._configs[channel] = config
            for key in [k for k in self._limiters if k[0] == channel]:
                del self._limiters[key]
        logger.info("rate_limit_configured", channel=channel, configured=config is not None)

    def config_for(self, channel: str) -> RateLimitConfig | None:
        return self._configs.get(channel)

    def scope_key_for(self, channel: str, recipient: str, rule_id: str) -> str:
        """Pick the recipient or the rule id as the scope key for *channel*."""
        config = self._configs.get(channel)
        if config is not None and config.scope == RateLimitScope.RULE:
            return rule_id
        return recipient

    # ── checks ──

    def _limiter_for(self, channel: str, scope_key: str) -> RateLimiter | None:
        key = (channel, scope_key)
        limiter = self._limiters.get(key)
        if limiter is not None:
            return limiter
        with self._lock:
            limiter = self._limiters.get(key)
            if limiter is None:
                config = self._configs.get(channel)
                if config is None:
                    return None
                limiter = build_limiter(config, self._clock)
                self._limiters[key] = limiter
                logger.debug(
                    "rate_limiter_created",
                    channel=channel,
                    scope_key=scope_key,
                    algorithm=limiter.algorithm,
                )
        return limiter

    def check(self, channel: str, scope_key: str, cost: int = 1) -> RateLimitResult:
        """Try to admit *cost* units for ``(channel, scope_key)``.

        Returns:
            The limiter's result, or an unlimited result when *channel*
            has no configuration.

        Raises:
            ValueError: If *cost* is below 1.
        """
        limiter = self._limiter_for(channel, scope_key)
        if limiter is None:
            if cost < 1:
                raise ValueError(f"cost must be >= 1, got {cost}")
            return RateLimitResult.unlimited_result()
        result = limiter.try_acquire(scope_key, cost)
        self._count(channel, result.allowed)
        if not result.allowed:
            logger.info(
                "rate_limited",
                channel=channel,
                scope_key=scope_key,
                retry_after_ms=result.retry_after_ms,
                oversized=result.oversized,
            )
        return result

    def acquire(self, channel: str, scope_key: str, cost: int = 1) -> RateLimitResult:
        """Like :meth:`check` but raises on denial.

        Raises:
            RateLimitExceeded: If the limiter denies the request.
        """
        result = self.check(channel, scope_key, cost)
        if not result.allowed:
            raise RateLimitExceeded(channel, scope_key, result.retry_after_ms)
        return result

    def status(self, channel: str, scope_key: str) -> RateLimitResult:
        """Non-consuming view of ``(channel, scope_key)``."""
        limiter = self._limiter_for(channel, scope_key)
        if limiter is None:
            return RateLimitResult.unlimited_result()
        return limiter.status(scope_key)

    def reset(self, channel: str, scope_key: str) -> None:
        """Clear the limiter state for ``(channel, scope_key)``."""
        limiter = self._limiters.get((channel, scope_key))
        if limiter is not None:
            limiter.reset(scope_key)

    # ── statistics ──

    def _count(self, channel: str, allowed: bool) -> None:
        with self._lock:
            stats = self._stats.setdefault(channel, ChannelRateStats())
            if allowed:
                stats.allowed += 1
            else:
                stats.blocked += 1
        rate_limit_decisions_total.labels(
            channel=channel,
            decision="allowed" if allowed else "blocked",
        ).inc()

    def stats(self) -> dict[str, dict[str, float]]:
        """Per-channel allowed/blocked counters."""
        with self._lock:
            return {
                channel: {
                    "total": s.total,
                    "allowed": s.allowed,
                    "blocked": s.blocked,
                    "block_rate": s.block_rate,
                }
                for channel, s in self._stats.items()
            }

    @property
    def active_limiters(self) -> int:
        return len(self._limiters)
