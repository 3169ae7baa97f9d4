"""
Delivery tracking models for Herald.

A ``DeliveryAttempt`` is one try to deliver a request over one channel.
For every ``(request_id, channel)`` pair attempt numbers start at 1 and
strictly increase, and exactly one terminal record (``delivered`` or
``exhausted``) closes the sequence.
"""

from __future__ import annotations

import enum
from datetime import datetime, timezone

from pydantic import BaseModel, ConfigDict, Field, model_validator


class DeliveryOutcome(str, enum.Enum):
    """Outcome of a delivery attempt."""

    DELIVERED = "delivered"
    FAILED = "failed"
    RATE_LIMITED = "rate_limited"
    EXHAUSTED = "exhausted"

    @property
    def is_terminal(self) -> bool:
        """``True`` for outcomes that close a channel's attempt sequence."""
        return self in (DeliveryOutcome.DELIVERED, DeliveryOutcome.EXHAUSTED)


class ErrorClass(str, enum.Enum):
    """Whether a failure may succeed on retry."""

    TRANSIENT = "transient"
    PERMANENT = "permanent"


class DeliveryAttempt(BaseModel):
    """A finalized delivery attempt.  Immutable.

    Attributes:
        request_id: Id of the ``NotificationRequest``.
        channel: Channel the attempt went over.
        attempt_number: 1-based position in the channel's sequence.
        started_at: When the attempt began (UTC).
        finished_at: When the outcome was known (UTC).
        outcome: Delivered, failed, rate limited, or exhausted.
        error_class: Transient/permanent for unsuccessful attempts.
        error_message: Human-readable failure reason.
        latency_ms: Wall time of the attempt.
        provider_message_id: Id returned by the channel provider.
        rule_id: Routing rule that planned this channel.
    """

    model_config = ConfigDict(frozen=True)

    request_id: str = Field(..., min_length=1)
    channel: str = Field(..., min_length=1)
    attempt_number: int = Field(..., ge=1)
    started_at: datetime
    finished_at: datetime
    outcome: DeliveryOutcome
    error_class: ErrorClass | None = None
    error_message: str | None = None
    latency_ms: float = Field(default=0.0, ge=0.0)
    provider_message_id: str | None = None
    rule_id: str | None = None

    @model_validator(mode="after")
    def _check_times(self) -> DeliveryAttempt:
        if self.finished_at < self.started_at:
            raise ValueError("finished_at precedes started_at")
        return self


class Acknowledgement(BaseModel):
    """Someone confirming they saw a notification.

    Attributes:
        request_id: Id of the acknowledged request.
        acknowledged_by: User id of the acknowledger.
        acknowledged_at: When the acknowledgement was received (UTC).
        channel: Where it came from; ``in-app`` for the HTTP API.
        notes: Optional free text.
    """

    model_config = ConfigDict(frozen=True)

    request_id: str = Field(..., min_length=1)
    acknowledged_by: str = Field(..., min_length=1)
    acknowledged_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    channel: str = "in-app"
    notes: str | None = None


class NotificationState(str, enum.Enum):
    """Overall state of a request derived from its records."""

    PENDING = "pending"
    SENDING = "sending"
    DELIVERED = "delivered"
    ACKNOWLEDGED = "acknowledged"
    FAILED = "failed"


class NotificationStatus(BaseModel):
    """Status report for one request: its state plus the records behind it."""

    request_id: str
    state: NotificationState
    attempts: list[DeliveryAttempt] = Field(default_factory=list)
    acknowledgements: list[Acknowledgement] = Field(default_factory=list)


class MetricsFilter(BaseModel):
    """Selects the attempts a metrics query aggregates over.

    Attributes:
        channel: Restrict to one channel (``None`` = all).
        since: Inclusive lower bound on ``finished_at``.
        until: Exclusive upper bound on ``finished_at``.
    """

    channel: str | None = None
    since: datetime | None = None
    until: datetime | None = None

    def matches(self, attempt: DeliveryAttempt) -> bool:
        """Return ``True`` if *attempt* falls inside this filter."""
        if self.channel is not None and attempt.channel != self.channel:
            return False
        finished = _aware(attempt.finished_at)
        if self.since is not None and finished < _aware(self.since):
            return False
        if self.until is not None and finished >= _aware(self.until):
            return False
        return True


class DeliveryMetrics(BaseModel):
    """Aggregate delivery statistics.

    ``success_rate`` is ``delivered / (delivered + exhausted)``, i.e. the
    share of channel sequences that ended in a delivery.
    """

    total_attempts: int = 0
    success_rate: float = 0.0
    avg_latency_ms: float = 0.0
    counts_by_outcome: dict[str, int] = Field(default_factory=dict)
    counts_by_channel: dict[str, int] = Field(default_factory=dict)


def _aware(value: datetime) -> datetime:
    return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)
