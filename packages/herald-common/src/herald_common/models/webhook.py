"""
Webhook subscriber models for Herald.

Defines registered ``WebhookEndpoint`` subscribers, their filters and
delivery statistics, and the per-endpoint ``WebhookDeliveryResult``
reported back from a fan-out.
"""

from __future__ import annotations

import enum
from datetime import datetime, timezone
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field

from herald_common.models.notification import NotificationRequest, Severity


def _utc_now() -> datetime:
    """Return the current UTC datetime."""
    return datetime.now(timezone.utc)


def _endpoint_id() -> str:
    return f"wh_{uuid4().hex[:16]}"


class WebhookFilter(BaseModel):
    """Which requests an endpoint wants.

    Attributes:
        min_severity: Severity threshold (inclusive).
        tags: If non-empty, the request must carry at least one of them.
    """

    model_config = ConfigDict(frozen=True)

    min_severity: Severity = Field(default=Severity.INFO, description="Severity threshold.")
    tags: frozenset[str] = Field(default_factory=frozenset, description="Tag set to intersect.")

    def matches(self, request: NotificationRequest) -> bool:
        """Return ``True`` if *request* passes this filter."""
        if not request.severity.at_least(self.min_severity):
            return False
        if self.tags and not (self.tags & request.tags):
            return False
        return True


class WebhookStats(BaseModel):
    """Delivery counters for an endpoint, written only by the webhook manager.

    Attributes:
        success_count: Deliveries that ended with a 2xx.
        failure_count: Deliveries that ended without one.
        total_attempts: HTTP attempts including retries.
        avg_response_ms: Mean latency over terminal attempts.
        last_delivery_at: Time of the last terminal attempt.
        last_success_at: Time of the last successful delivery.
    """

    success_count: int = 0
    failure_count: int = 0
    total_attempts: int = 0
    avg_response_ms: float = 0.0
    last_delivery_at: datetime | None = None
    last_success_at: datetime | None = None

    @property
    def success_rate(self) -> float:
        """Share of terminal deliveries that succeeded."""
        finished = self.success_count + self.failure_count
        return self.success_count / finished if finished else 0.0


class WebhookEndpoint(BaseModel):
    """A registered webhook subscriber.

    Attributes:
        id: Unique endpoint identifier.
        url: Destination URL receiving the signed POST.
        secret: HMAC key used to sign each body.
        filter: Severity/tag filter.
        headers: Extra headers sent on every request.
        enabled: Disabled endpoints are skipped by the fan-out.
        stats: Delivery counters.
        created_at: Registration timestamp (UTC).
        updated_at: Time of the last configuration change.
    """

    id: str = Field(default_factory=_endpoint_id, description="Endpoint identifier.")
    url: str = Field(..., min_length=1, description="Destination URL.")
    secret: str = Field(..., min_length=1, repr=False, description="Signing secret.")
    filter: WebhookFilter = Field(default_factory=WebhookFilter, description="Request filter.")
    headers: dict[str, str] = Field(default_factory=dict, description="Extra headers.")
    enabled: bool = Field(default=True, description="Whether this endpoint is active.")
    stats: WebhookStats = Field(default_factory=WebhookStats, description="Delivery counters.")
    created_at: datetime = Field(default_factory=_utc_now, description="Registration time.")
    updated_at: datetime | None = Field(default=None, description="Last configuration change.")


class WebhookDeliveryStatus(str, enum.Enum):
    """Final status of one endpoint's delivery within a fan-out."""

    DELIVERED = "delivered"
    FAILED = "failed"
    TIMED_OUT = "timed_out"


class WebhookDeliveryResult(BaseModel):
    """What happened when a request was delivered to one endpoint.

    Attributes:
        endpoint_id: Target endpoint.
        request_id: Delivered request.
        status: Delivered, failed, or timed out.
        http_status: Last HTTP status received (``None`` on transport error).
        error: Transport or HTTP error description.
        attempt: Number of HTTP attempts made.
        response_ms: Latency of the last attempt.
        timestamp: When the result was produced (UTC).
    """

    model_config = ConfigDict(frozen=True)

    endpoint_id: str
    request_id: str
    status: WebhookDeliveryStatus
    http_status: int | None = None
    error: str | None = None
    attempt: int = Field(default=0, ge=0)
    response_ms: float = Field(default=0.0, ge=0.0)
    timestamp: datetime = Field(default_factory=_utc_now)
