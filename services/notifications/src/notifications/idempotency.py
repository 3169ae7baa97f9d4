"""
Idempotency store for Herald dispatches.

Remembers the finished ``NotificationResult`` per request id for the
dedupe window, so a repeated dispatch of the same id returns the stored
result instead of delivering again.
"""

from __future__ import annotations

import heapq
import time
from abc import ABC, abstractmethod
from typing import Any, Callable

import structlog
from pydantic import ValidationError
from redis.exceptions import RedisError

from herald_common.models.result import NotificationResult

logger = structlog.get_logger()


class IdempotencyStore(ABC):
    """Stores finished dispatch results keyed by request id."""

    @abstractmethod
    async def get(self, request_id: str) -> NotificationResult | None:
        """Return the stored result, or ``None`` if absent or expired."""

    @abstractmethod
    async def put(self, request_id: str, result: NotificationResult, ttl_s: float) -> None:
        """Store *result* for *ttl_s* seconds."""

    @abstractmethod
    async def clear(self) -> None:
        """Drop every stored result."""


class InMemoryIdempotencyStore(IdempotencyStore):
    """Process-local store.  Expired entries are purged on every access.

    Args:
        clock: Monotonic time source in seconds.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._entries: dict[str, tuple[float, NotificationResult]] = {}
        self._expiry: list[tuple[float, str]] = []

    def _purge(self, now: float) -> None:
        while self._expiry and self._expiry[0][0] <= now:
            expires_at, request_id = heapq.heappop(self._expiry)
            entry = self._entries.get(request_id)
            # a later put may have replaced the entry with a new expiry
            if entry is not None and entry[0] == expires_at:
                del self._entries[request_id]

    async def get(self, request_id: str) -> NotificationResult | None:
        self._purge(self._clock())
        entry = self._entries.get(request_id)
        return entry[1] if entry is not None else None

    async def put(self, request_id: str, result: NotificationResult, ttl_s: float) -> None:
        now = self._clock()
        self._purge(now)
        expires_at = now + ttl_s
        self._entries[request_id] = (expires_at, result)
        heapq.heappush(self._expiry, (expires_at, request_id))

    async def clear(self) -> None:
        self._entries.clear()
        self._expiry.clear()

    def __len__(self) -> int:
        return len(self._entries)


class RedisIdempotencyStore(IdempotencyStore):
    """Store shared by every service instance, one ``SET EX`` key per request.

    A store failure is logged and treated as a miss: at worst a request is
    delivered twice, never dropped.

    Args:
        redis: A raw ``redis.asyncio.Redis`` connection.
        prefix: Key prefix.
    """

    def __init__(self, redis: Any, *, prefix: str = "herald:idempotency") -> None:
        self._redis = redis
        self._prefix = prefix

    def _key(self, request_id: str) -> str:
        return f"{self._prefix}:{request_id}"

    async def get(self, request_id: str) -> NotificationResult | None:
        try:
            raw = await self._redis.get(self._key(request_id))
        except (RedisError, OSError) as exc:
            logger.warning("idempotency_store_unavailable", op="get", error=str(exc))
            return None
        if raw is None:
            return None
        try:
            return NotificationResult.model_validate_json(raw)
        except ValidationError as exc:
            logger.warning("idempotency_entry_corrupt", request_id=request_id, error=str(exc))
            return None

    async def put(self, request_id: str, result: NotificationResult, ttl_s: float) -> None:
        try:
            await self._redis.set(
                self._key(request_id),
                result.model_dump_json(),
                px=max(1, int(ttl_s * 1000)),
            )
        except (RedisError, OSError) as exc:
            logger.warning("idempotency_store_unavailable", op="put", error=str(exc))

    async def clear(self) -> None:
        keys = [key async for key in self._redis.scan_iter(match=f"{self._prefix}:*")]
        if keys:
            await self._redis.delete(*keys)
