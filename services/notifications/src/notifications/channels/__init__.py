"""
Delivery channel implementations for Herald.

Contains the abstract ``Channel`` base class, the registry the service
looks channels up in, and the Slack incoming-webhook channel.
"""

from .base import Channel, ChannelRegistry, SendError, SendResult
from .slack_channel import SlackChannel

__all__ = [
    "Channel",
    "ChannelRegistry",
    "SendError",
    "SendResult",
    "SlackChannel",
]
