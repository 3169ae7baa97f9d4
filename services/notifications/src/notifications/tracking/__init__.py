"""
Delivery tracking for Herald.

Two interchangeable backends share the ``DeliveryTracker`` contract: an
in-process ring buffer and a durable Redis store.
"""

from .base import DeliveryTracker, MetricsAccumulator, derive_state
from .memory import InMemoryDeliveryTracker
from .redis_tracker import RedisDeliveryTracker

__all__ = [
    "DeliveryTracker",
    "InMemoryDeliveryTracker",
    "MetricsAccumulator",
    "RedisDeliveryTracker",
    "derive_state",
]
