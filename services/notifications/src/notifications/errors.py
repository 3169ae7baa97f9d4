"""
Exception hierarchy for the Herald notification service.

Per-channel and per-endpoint failures are captured in the dispatch
result rather than raised; only ``InvalidRequestError`` reaches the
caller of ``NotificationService.dispatch``.
"""

from __future__ import annotations


class HeraldError(Exception):
    """Base class for every Herald error."""


class InvalidRequestError(HeraldError):
    """The inbound request failed validation."""


class RoutingError(HeraldError):
    """No routing rule matched a request."""

    def __init__(self, request_id: str) -> None:
        super().__init__(f"no routing rule matched request {request_id!r}")
        self.request_id = request_id


class RateLimitExceeded(HeraldError):
    """A rate limiter denied the request.

    Args:
        channel: Limited channel.
        scope_key: Recipient or rule id the limiter is keyed by.
        retry_after_ms: Suggested wait before retrying.
    """

    def __init__(self, channel: str, scope_key: str, retry_after_ms: int) -> None:
        super().__init__(
            f"rate limit exceeded for {channel}:{scope_key}, retry after {retry_after_ms} ms"
        )
        self.channel = channel
        self.scope_key = scope_key
        self.retry_after_ms = retry_after_ms


class ChannelSendError(HeraldError):
    """A channel adapter failed to deliver.

    Args:
        message: Failure description.
        transient: ``True`` if a retry may succeed.
    """

    def __init__(self, message: str, *, transient: bool = True) -> None:
        super().__init__(message)
        self.transient = transient


class TemplateRenderError(HeraldError):
    """Rendering a notification template failed."""

    def __init__(self, message: str, template_id: str | None = None) -> None:
        super().__init__(message)
        self.template_id = template_id


class TemplateNotFound(TemplateRenderError):
    """No template is registered under the requested id."""

    def __init__(self, template_id: str) -> None:
        super().__init__(f"template {template_id!r} not found", template_id=template_id)


class WebhookDeliveryError(HeraldError):
    """A webhook POST did not succeed.

    Args:
        message: Failure description.
        status: HTTP status, ``None`` for transport errors.
        retryable: Whether another attempt is worthwhile (5xx/transport).
    """

    def __init__(self, message: str, *, status: int | None = None, retryable: bool = True) -> None:
        super().__init__(message)
        self.status = status
        self.retryable = retryable


class TrackerPersistenceError(HeraldError):
    """The durable tracker store rejected a write or read."""
