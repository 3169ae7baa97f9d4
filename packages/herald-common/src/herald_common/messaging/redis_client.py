"""
Redis connection holder for Herald.

One connection pool per process, shared by the durable delivery tracker
and the idempotency store, plus the pub/sub side of the request intake:
producers publish ``NotificationRequest`` JSON on the request channel and
the notification service listens on it.
"""

from __future__ import annotations

import time
from collections.abc import Mapping
from typing import Any

import redis.asyncio as aioredis
import structlog
from redis.exceptions import RedisError

from herald_common.config import get_settings
from herald_common.models.notification import NotificationRequest

logger = structlog.get_logger()


class RedisClient:
    """Lazily connected ``redis.asyncio`` client with request pub/sub helpers.

    Args:
        url: Redis connection URL.  Falls back to ``Settings.redis_url``.
        request_channel: Pub/sub channel carrying inbound requests.  Falls
                         back to ``Settings.pubsub_channel``.
    """

    def __init__(self, url: str | None = None, *, request_channel: str | None = None) -> None:
        settings = get_settings() if url is None or request_channel is None else None
        self._url = url or settings.redis_url  # type: ignore[union-attr]
        self.request_channel = request_channel or settings.pubsub_channel  # type: ignore[union-attr]
        self._redis: aioredis.Redis | None = None
        self._subscriptions: list[aioredis.client.PubSub] = []

    async def connect(self) -> None:
        """Create the connection pool; calling it again is a no-op."""
        if self._redis is not None:
            return
        self._redis = aioredis.from_url(self._url, decode_responses=True, health_check_interval=30)
        logger.info("redis_connected", url=self._url)

    async def close(self) -> None:
        """Close open subscriptions, then the pool."""
        for pubsub in self._subscriptions:
            await pubsub.aclose()
        self._subscriptions.clear()
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None

    @property
    def redis(self) -> aioredis.Redis:
        """The raw connection handed to the tracker and idempotency store.

        Raises:
            RuntimeError: If ``connect()`` has not been called.
        """
        if self._redis is None:
            raise RuntimeError("RedisClient is not connected. Call connect() first.")
        return self._redis

    # ── request intake ──

    async def publish_request(self, request: NotificationRequest | Mapping[str, Any]) -> int:
        """Publish *request* as JSON on the request channel.

        Returns:
            Number of listeners that received it.
        """
        if not isinstance(request, NotificationRequest):
            request = NotificationRequest.model_validate(dict(request))
        receivers: int = await self.redis.publish(self.request_channel, request.model_dump_json())
        logger.debug("request_published", request_id=request.id, receivers=receivers)
        return receivers

    async def subscribe_requests(self) -> aioredis.client.PubSub:
        """Return a ``PubSub`` subscribed to the request channel."""
        pubsub = self.redis.pubsub(ignore_subscribe_messages=True)
        await pubsub.subscribe(self.request_channel)
        self._subscriptions.append(pubsub)
        return pubsub

    # ── health ──

    async def health_check(self) -> dict[str, Any]:
        """``PING`` the server and report reachability and round-trip time."""
        started = time.perf_counter()
        try:
            reachable = bool(await self.redis.ping())
        except (RedisError, OSError, RuntimeError) as exc:
            logger.warning("redis_unreachable", error=str(exc))
            return {"reachable": False, "latency_ms": None}
        return {"reachable": reachable, "latency_ms": round((time.perf_counter() - started) * 1000, 3)}
