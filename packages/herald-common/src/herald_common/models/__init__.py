"""
Shared Pydantic data models for Herald.

This package contains the cross-component data models: notification
requests, rate limit configuration, delivery attempts and metrics,
acknowledgements, on-call schedules, routing rule configuration,
webhook subscribers, and dispatch results.
"""

from herald_common.models.delivery import (
    Acknowledgement,
    DeliveryAttempt,
    DeliveryMetrics,
    DeliveryOutcome,
    ErrorClass,
    MetricsFilter,
    NotificationState,
    NotificationStatus,
)
from herald_common.models.notification import ChannelType, NotificationRequest, Severity
from herald_common.models.oncall import OnCallAssignment, OnCallSchedule, OnCallShift
from herald_common.models.rate_limit import (
    RateLimitAlgorithm,
    RateLimitConfig,
    RateLimitResult,
    RateLimitScope,
)
from herald_common.models.routing import RoutingRuleConfig, TimeWindow
from herald_common.models.result import (
    ChannelResult,
    ChannelStatus,
    NotificationResult,
    RouteDecision,
    RouteEntry,
)
from herald_common.models.webhook import (
    WebhookDeliveryResult,
    WebhookDeliveryStatus,
    WebhookEndpoint,
    WebhookFilter,
    WebhookStats,
)

__all__ = [
    "Acknowledgement",
    "ChannelResult",
    "ChannelStatus",
    "ChannelType",
    "DeliveryAttempt",
    "DeliveryMetrics",
    "DeliveryOutcome",
    "ErrorClass",
    "MetricsFilter",
    "NotificationRequest",
    "NotificationResult",
    "NotificationState",
    "NotificationStatus",
    "OnCallAssignment",
    "OnCallSchedule",
    "OnCallShift",
    "RateLimitAlgorithm",
    "RateLimitConfig",
    "RateLimitResult",
    "RateLimitScope",
    "RouteDecision",
    "RouteEntry",
    "RoutingRuleConfig",
    "Severity",
    "TimeWindow",
    "WebhookDeliveryResult",
    "WebhookDeliveryStatus",
    "WebhookEndpoint",
    "WebhookFilter",
    "WebhookStats",
]
