"""
Dispatch result models for Herald.

``RouteDecision`` is the channel plan produced by the router;
``NotificationResult`` aggregates the true per-channel and per-endpoint
outcomes of one dispatch, including partial failures.
"""

from __future__ import annotations

import enum

from pydantic import BaseModel, ConfigDict, Field

from herald_common.models.webhook import WebhookDeliveryResult


class RouteEntry(BaseModel):
    """One planned channel and the rule that planned it."""

    model_config = ConfigDict(frozen=True)

    channel: str
    rule_id: str


class RouteDecision(BaseModel):
    """Ordered channel plan for one request.  Empty means no rule matched."""

    model_config = ConfigDict(frozen=True)

    entries: tuple[RouteEntry, ...] = ()

    @property
    def channels(self) -> list[str]:
        """Planned channels in order."""
        return [e.channel for e in self.entries]

    @property
    def is_empty(self) -> bool:
        return not self.entries

    def __len__(self) -> int:
        return len(self.entries)


class ChannelStatus(str, enum.Enum):
    """Final per-channel status reported in a ``NotificationResult``."""

    DELIVERED = "delivered"
    FAILED = "failed"
    RATE_LIMITED = "rate_limited"
    TIMED_OUT = "timed_out"


class ChannelResult(BaseModel):
    """Outcome of delivering one request over one channel.

    Attributes:
        channel: Channel name.
        rule_id: Rule that planned the channel.
        status: Final status.
        attempts: Send attempts made (0 when rate limited before sending).
        provider_message_id: Provider id on success.
        error: Last error message.
        retry_after_ms: Rate limiter's retry hint when rate limited.
    """

    model_config = ConfigDict(frozen=True)

    channel: str
    rule_id: str
    status: ChannelStatus
    attempts: int = Field(default=0, ge=0)
    provider_message_id: str | None = None
    error: str | None = None
    retry_after_ms: int | None = None


class NotificationResult(BaseModel):
    """Aggregate result of ``NotificationService.dispatch``.

    Attributes:
        request_id: Dispatched request id.
        route_decision: Channel plan the router produced.
        channel_results: One entry per planned channel.
        webhook_results: One entry per matching webhook endpoint.
        route_error: Set when no routing rule matched.
        timed_out: ``True`` if the request deadline cut anything short.
        deduplicated: ``True`` when served from the idempotency store.
        escalate_to: Who to page because every channel failed often
            enough for the request's severity; empty otherwise.
    """

    request_id: str
    route_decision: RouteDecision = Field(default_factory=RouteDecision)
    channel_results: list[ChannelResult] = Field(default_factory=list)
    webhook_results: list[WebhookDeliveryResult] = Field(default_factory=list)
    route_error: str | None = None
    timed_out: bool = False
    deduplicated: bool = False
    escalate_to: list[str] = Field(default_factory=list)

    @property
    def delivered_channels(self) -> list[str]:
        return [r.channel for r in self.channel_results if r.status == ChannelStatus.DELIVERED]
