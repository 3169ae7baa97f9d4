"""
Abstract base class for Herald delivery channels.

Defines the ``Channel`` interface every provider adapter implements and
the ``SendResult`` it returns.  The notification service retries
transient failures and closes the channel on permanent ones.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass

import structlog

logger = structlog.get_logger()


@dataclass(frozen=True)
class SendError:
    """Why a send failed and whether retrying could help."""

    message: str
    transient: bool = True


@dataclass(frozen=True)
class SendResult:
    """Outcome of one ``Channel.send`` call.

    Attributes:
        success: ``True`` if the provider accepted the message.
        provider_message_id: Provider-side id, when the provider returns one.
        error: Failure details when ``success`` is ``False``.
    """

    success: bool
    provider_message_id: str | None = None
    error: SendError | None = None

    @classmethod
    def ok(cls, provider_message_id: str | None = None) -> SendResult:
        return cls(success=True, provider_message_id=provider_message_id)

    @classmethod
    def fail(cls, message: str, *, transient: bool = True) -> SendResult:
        return cls(success=False, error=SendError(message=message, transient=transient))


class Channel(ABC):
    """Base class every delivery channel must implement.

    Subclasses override :meth:`send` to hand a rendered payload to their
    provider (SMS gateway, voice API, Slack, SMTP, ...).

    Attributes:
        name: Channel name used in routing rules, rate limit config and
              delivery tracking.
        enabled: Runtime flag; a disabled channel is reported as a
                 permanent failure without calling the provider.
    """

    name: str = "base"
    enabled: bool = True

    @abstractmethod
    async def send(self, rendered_payload: str, recipient: str) -> SendResult:
        """Deliver *rendered_payload* to *recipient*.

        Implementations may also raise
        :class:`~notifications.errors.ChannelSendError`; any other
        exception is treated as a transient failure.
        """

    async def close(self) -> None:
        """Release any resources held by the channel (override if needed)."""


class ChannelRegistry:
    """Channels selected by configuration, looked up by name."""

    def __init__(self, channels: list[Channel] | None = None) -> None:
        self._channels: dict[str, Channel] = {}
        for channel in channels or []:
            self.register(channel)

    def register(self, channel: Channel) -> None:
        if channel.name in self._channels:
            logger.warning("channel_replaced", channel=channel.name)
        self._channels[channel.name] = channel

    def get(self, name: str) -> Channel | None:
        return self._channels.get(name)

    @property
    def names(self) -> list[str]:
        return sorted(self._channels)

    def __contains__(self, name: object) -> bool:
        return name in self._channels

    def __len__(self) -> int:
        return len(self._channels)

    async def close(self) -> None:
        for channel in self._channels.values():
            try:
                await channel.close()
            except Exception as exc:  # noqa: BLE001
                logger.error("channel_close_failed", channel=channel.name, error=str(exc))
