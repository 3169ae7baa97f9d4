"""
Webhook fan-out for Herald.

Signed HTTP delivery of notification requests to registered external
subscribers.
"""

from .manager import WebhookManager, build_payload
from .signing import sign, verify_signature

__all__ = ["WebhookManager", "build_payload", "sign", "verify_signature"]
