"""
herald-common: Shared library for Herald.

Provides common data models, configuration management, structured
logging, and the Redis client wrapper used by the notification
dispatch service.
"""

from herald_common.config import Settings, get_settings

__all__ = [
    "Settings",
    "get_settings",
]
