"""
Herald Notification Dispatch Service.

Routes notification requests to delivery channels (SMS, voice, chat,
email, Slack) with per-channel rate limiting, retry, delivery tracking,
and signed webhook fan-out to external subscribers.
"""

from .errors import (
    ChannelSendError,
    HeraldError,
    InvalidRequestError,
    RateLimitExceeded,
    RoutingError,
    TemplateNotFound,
    TemplateRenderError,
    TrackerPersistenceError,
    WebhookDeliveryError,
)
from .router import MatchMode, RoutingRule, SmartRouter
from .rule_builder import RoutingRuleBuilder
from .service import NotificationService

__all__ = [
    "ChannelSendError",
    "HeraldError",
    "InvalidRequestError",
    "MatchMode",
    "NotificationService",
    "RateLimitExceeded",
    "RoutingError",
    "RoutingRule",
    "RoutingRuleBuilder",
    "SmartRouter",
    "TemplateNotFound",
    "TemplateRenderError",
    "TrackerPersistenceError",
    "WebhookDeliveryError",
]
