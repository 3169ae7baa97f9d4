"""
Messaging utilities for Herald.

This package provides the async Redis client wrapper used for durable
tracking, idempotency, and pub/sub request intake.
"""

from herald_common.messaging.redis_client import RedisClient

__all__ = ["RedisClient"]
