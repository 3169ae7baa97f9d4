"""
Notification request models for Herald.

Defines the inbound ``NotificationRequest`` (the unit of dispatch), the
severity scale used by routing rules and webhook filters, and the closed
set of channel types the dispatcher knows how to drive.
"""

from __future__ import annotations

import enum
from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


def _utc_now() -> datetime:
    """Return the current UTC datetime."""
    return datetime.now(timezone.utc)


class Severity(str, enum.Enum):
    """Notification severity, ordered ``info < warning < error < critical``."""

    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        """Position on the severity scale (0 = info)."""
        return _SEVERITY_RANK[self]

    def at_least(self, threshold: Severity) -> bool:
        """Return ``True`` if this severity is ``>=`` *threshold*."""
        return self.rank >= Severity(threshold).rank


_SEVERITY_RANK: dict[Severity, int] = {
    Severity.INFO: 0,
    Severity.WARNING: 1,
    Severity.ERROR: 2,
    Severity.CRITICAL: 3,
}


class ChannelType(str, enum.Enum):
    """Delivery media the dispatcher can plan for."""

    VOICE = "voice"
    SMS = "sms"
    CHAT = "chat"
    SLACK = "slack"
    EMAIL = "email"


class NotificationRequest(BaseModel):
    """An alert/event to be delivered.  Immutable once created.

    Attributes:
        id: Caller-supplied idempotency key.
        severity: Alert severity.
        tags: Free-form labels used by routing rules and webhook filters.
        recipient: Opaque recipient identifier (phone, user id, address…).
        payload_context: Data handed to the template renderer.
        template_id: Template family rendered per channel.
        event_type: Event name forwarded to webhook subscribers.
        created_at: Creation timestamp (UTC).
    """

    model_config = ConfigDict(frozen=True)

    id: str = Field(..., min_length=1, max_length=255, description="Idempotency key.")
    severity: Severity = Field(..., description="Alert severity.")
    tags: frozenset[str] = Field(default_factory=frozenset, description="Routing labels.")
    recipient: str = Field(..., min_length=1, description="Opaque recipient identifier.")
    payload_context: dict[str, Any] = Field(
        default_factory=dict,
        description="Key/value data for rendering.",
    )
    template_id: str = Field(default="default", min_length=1, description="Template family.")
    event_type: str = Field(default="notification", description="Webhook event type.")
    created_at: datetime = Field(
        default_factory=_utc_now,
        description="Creation timestamp (UTC).",
    )

    @field_validator("tags", mode="before")
    @classmethod
    def _clean_tags(cls, value: Any) -> Any:
        if isinstance(value, str):
            value = [value]
        if isinstance(value, (list, tuple, set, frozenset)):
            return frozenset(t.strip() for t in value if isinstance(t, str) and t.strip())
        return value

    @field_validator("created_at")
    @classmethod
    def _ensure_utc(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value
