"""
Rate limit configuration and decision models for Herald.

``RateLimitConfig`` is the only externally tunable knob set of the
dispatch core: one entry per channel choosing an algorithm and its
bounds.  ``RateLimitResult`` is what every limiter returns.
"""

from __future__ import annotations

import enum
import sys

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel


class RateLimitAlgorithm(str, enum.Enum):
    """Supported rate limiting algorithms."""

    TOKEN_BUCKET = "token-bucket"
    SLIDING_WINDOW = "sliding-window"
    FIXED_WINDOW = "fixed-window"


class RateLimitScope(str, enum.Enum):
    """What the second half of a rate limit key is built from."""

    RECIPIENT = "recipient"
    RULE = "rule"


class RateLimitConfig(BaseModel):
    """Per-channel rate limit configuration.

    Token bucket needs ``capacity`` and ``refill_rate_per_sec``; the window
    algorithms need ``limit`` and ``window_ms``.  Accepts camelCase keys
    (``refillRatePerSec``, ``windowMs``) as well as snake_case.

    Attributes:
        algorithm: Which limiter implementation to build.
        capacity: Token bucket size (maximum burst).
        refill_rate_per_sec: Tokens added per second.
        limit: Requests admitted per window.
        window_ms: Window length in milliseconds.
        scope: Key the limiter by recipient or by routing rule.
    """

    model_config = ConfigDict(
        frozen=True,
        alias_generator=to_camel,
        populate_by_name=True,
    )

    algorithm: RateLimitAlgorithm = Field(..., description="Limiter algorithm.")
    capacity: int | None = Field(default=None, ge=1, description="Token bucket capacity.")
    refill_rate_per_sec: float | None = Field(
        default=None,
        gt=0,
        description="Token bucket refill rate per second.",
    )
    limit: int | None = Field(default=None, ge=1, description="Requests per window.")
    window_ms: int | None = Field(default=None, ge=1, description="Window length (ms).")
    scope: RateLimitScope = Field(default=RateLimitScope.RECIPIENT, description="Key scope.")

    @model_validator(mode="after")
    def _check_algorithm_fields(self) -> RateLimitConfig:
        if self.algorithm == RateLimitAlgorithm.TOKEN_BUCKET:
            if self.capacity is None or self.refill_rate_per_sec is None:
                raise ValueError("token-bucket requires 'capacity' and 'refillRatePerSec'")
        elif self.limit is None or self.window_ms is None:
            raise ValueError(f"{self.algorithm.value} requires 'limit' and 'windowMs'")
        return self


class RateLimitResult(BaseModel):
    """Outcome of a single ``try_acquire``.

    Attributes:
        allowed: Whether the request was admitted.
        remaining: Units still available right now.
        retry_after_ms: Wait before the same cost could be admitted
                        (0 when allowed).
        oversized: ``True`` when the cost exceeds the limiter's bound and
                   can never be admitted.
        unlimited: ``True`` when no limiter is configured for the channel.
    """

    model_config = ConfigDict(frozen=True)

    allowed: bool
    remaining: int = Field(..., ge=0)
    retry_after_ms: int = Field(default=0, ge=0)
    oversized: bool = False
    unlimited: bool = False

    @classmethod
    def unlimited_result(cls) -> RateLimitResult:
        """Result returned for channels without a configured limit."""
        return cls(allowed=True, remaining=sys.maxsize, unlimited=True)
