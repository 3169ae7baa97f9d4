"""
Durable delivery tracker backed by Redis.

Storage layout (``herald:delivery`` prefix, every key expires after
``ttl_s``):

* ``…:history:{request_id}``: list of attempt JSON documents (RPUSH).
* ``…:stats:{channel}:{YYYYMMDDHH}``: hourly counter hash with
  ``attempts``, ``outcome:{outcome}``, ``latency_sum`` and
  ``latency_count`` fields, updated with HINCRBY/HINCRBYFLOAT.
* ``…:channels``: set of channels that have counters.
* ``…:acks:{request_id}``: list of acknowledgement JSON documents.

Each record is written in one MULTI/EXEC pipeline, so counters only move
by atomic increments.  When Redis is unavailable the attempt is kept in
a local fallback buffer and a ``tracker_degraded_mode`` warning is
logged; reads merge that buffer with the store.  Metrics from the store
are bucketed by hour, so filter bounds are widened to whole hours.

Every key also expires on its own; ``cleanup`` drops history and
acknowledgement lists whose newest entry is older than a cutoff, and
hourly counters whose hour ended before it.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Callable

import structlog
from pydantic import ValidationError
from redis.exceptions import RedisError

from herald_common.models.delivery import Acknowledgement, DeliveryAttempt, DeliveryMetrics, MetricsFilter

from ..errors import TrackerPersistenceError
from .base import LATENCY_OUTCOMES, DeliveryTracker, MetricsAccumulator
from .memory import InMemoryDeliveryTracker

logger = structlog.get_logger()

_KEY_PREFIX = "herald:delivery"
_HOUR_FORMAT = "%Y%m%d%H"


def _aware(value: datetime) -> datetime:
    return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)


def _hour_floor(value: datetime) -> datetime:
    return _aware(value).astimezone(timezone.utc).replace(minute=0, second=0, microsecond=0)


def _attempt_finished(raw: str) -> datetime:
    return DeliveryAttempt.model_validate_json(raw).finished_at


def _acknowledged_at(raw: str) -> datetime:
    return Acknowledgement.model_validate_json(raw).acknowledged_at


class RedisDeliveryTracker(DeliveryTracker):
    """Redis-backed tracker with a local fallback buffer.

    Args:
        redis: A raw ``redis.asyncio.Redis`` connection.
        ttl_s: Expiry applied to every key written.
        fallback_capacity: Per-channel size of the fallback buffer.
    """

    backend = "redis"

    def __init__(self, redis: Any, *, ttl_s: int = 7 * 24 * 3600, fallback_capacity: int = 1000) -> None:
        self._redis = redis
        self.ttl_s = ttl_s
        self._fallback = InMemoryDeliveryTracker(capacity=fallback_capacity)
        self._degraded = False

    # ── keys ──

    @staticmethod
    def history_key(request_id: str) -> str:
        return f"{_KEY_PREFIX}:history:{request_id}"

    @staticmethod
    def stats_key(channel: str, hour: datetime) -> str:
        return f"{_KEY_PREFIX}:stats:{channel}:{hour.strftime(_HOUR_FORMAT)}"

    @staticmethod
    def channels_key() -> str:
        return f"{_KEY_PREFIX}:channels"

    @staticmethod
    def acks_key(request_id: str) -> str:
        return f"{_KEY_PREFIX}:acks:{request_id}"

    # ── write path ──

    async def _write(self, attempt: DeliveryAttempt) -> None:
        history_key = self.history_key(attempt.request_id)
        stats_key = self.stats_key(attempt.channel, _hour_floor(attempt.finished_at))
        pipe = self._redis.pipeline(transaction=True)
        pipe.rpush(history_key, attempt.model_dump_json())
        pipe.expire(history_key, self.ttl_s)
        pipe.hincrby(stats_key, "attempts", 1)
        pipe.hincrby(stats_key, f"outcome:{attempt.outcome.value}", 1)
        if attempt.outcome in LATENCY_OUTCOMES:
            pipe.hincrbyfloat(stats_key, "latency_sum", attempt.latency_ms)
            pipe.hincrby(stats_key, "latency_count", 1)
        pipe.expire(stats_key, self.ttl_s)
        pipe.sadd(self.channels_key(), attempt.channel)
        pipe.expire(self.channels_key(), self.ttl_s)
        try:
            await pipe.execute()
        except (RedisError, OSError) as exc:
            raise TrackerPersistenceError(str(exc)) from exc

    async def record(self, attempt: DeliveryAttempt) -> None:
        try:
            await self._write(attempt)
        except TrackerPersistenceError as exc:
            self._enter_degraded(exc, op="record", request_id=attempt.request_id)
            self._fallback.append(attempt)
            return
        if self._degraded:
            self._degraded = False
            logger.info("tracker_recovered", backend=self.backend)

    async def record_acknowledgement(self, acknowledgement: Acknowledgement) -> None:
        key = self.acks_key(acknowledgement.request_id)
        pipe = self._redis.pipeline(transaction=True)
        pipe.rpush(key, acknowledgement.model_dump_json())
        pipe.expire(key, self.ttl_s)
        try:
            await pipe.execute()
        except (RedisError, OSError) as exc:
            self._enter_degraded(exc, op="record_acknowledgement", request_id=acknowledgement.request_id)
            self._fallback.append_acknowledgement(acknowledgement)

    def _enter_degraded(self, exc: Exception, **context: Any) -> None:
        self._degraded = True
        logger.warning("tracker_degraded_mode", backend=self.backend, error=str(exc), **context)

    # ── read path ──

    async def get_history(self, request_id: str) -> list[DeliveryAttempt]:
        buffered = self._fallback.history(request_id)
        try:
            raw = await self._redis.lrange(self.history_key(request_id), 0, -1)
        except (RedisError, OSError) as exc:
            self._enter_degraded(exc, op="get_history", request_id=request_id)
            return buffered

        stored: list[DeliveryAttempt] = []
        for item in raw:
            try:
                stored.append(DeliveryAttempt.model_validate_json(item))
            except ValidationError as exc:
                logger.warning("tracker_history_corrupt", request_id=request_id, error=str(exc))
        if not buffered:
            return stored
        # stable on ties, so store order wins among attempts finished together
        return sorted(stored + buffered, key=lambda a: a.finished_at)

    async def get_acknowledgements(self, request_id: str) -> list[Acknowledgement]:
        buffered = self._fallback.acknowledgements(request_id)
        try:
            raw = await self._redis.lrange(self.acks_key(request_id), 0, -1)
        except (RedisError, OSError) as exc:
            self._enter_degraded(exc, op="get_acknowledgements", request_id=request_id)
            return buffered
        stored: list[Acknowledgement] = []
        for item in raw:
            try:
                stored.append(Acknowledgement.model_validate_json(item))
            except ValidationError as exc:
                logger.warning("tracker_acknowledgement_corrupt", request_id=request_id, error=str(exc))
        return sorted(stored + buffered, key=lambda a: a.acknowledged_at)

    async def _stored_accumulator(self, metrics_filter: MetricsFilter) -> MetricsAccumulator:
        if metrics_filter.channel is not None:
            channels = [metrics_filter.channel]
        else:
            channels = sorted(await self._redis.smembers(self.channels_key()))

        now = datetime.now(timezone.utc)
        start = _hour_floor(metrics_filter.since or now - timedelta(seconds=self.ttl_s))
        end = metrics_filter.until or now + timedelta(hours=1)
        hours: list[datetime] = []
        hour = start
        while hour < end:
            hours.append(hour)
            hour += timedelta(hours=1)

        acc = MetricsAccumulator()
        if not channels or not hours:
            return acc
        pipe = self._redis.pipeline(transaction=False)
        slots = [(channel, hour) for channel in channels for hour in hours]
        for channel, hour in slots:
            pipe.hgetall(self.stats_key(channel, hour))
        buckets = await pipe.execute()

        for (channel, _), bucket in zip(slots, buckets):
            if not bucket:
                continue
            for name, value in bucket.items():
                if name.startswith("outcome:"):
                    acc.by_outcome[name.split(":", 1)[1]] += int(value)
            acc.by_channel[channel] += int(bucket.get("attempts", 0))
            acc.latency_sum += float(bucket.get("latency_sum", 0.0))
            acc.latency_count += int(bucket.get("latency_count", 0))
        return acc

    async def get_metrics(self, metrics_filter: MetricsFilter | None = None) -> DeliveryMetrics:
        metrics_filter = metrics_filter or MetricsFilter()
        acc = self._fallback.accumulate(metrics_filter)
        try:
            acc.merge(await self._stored_accumulator(metrics_filter))
        except (RedisError, OSError) as exc:
            self._enter_degraded(exc, op="get_metrics")
        return acc.to_metrics()

    # ── retention ──

    async def _expired_length(self, key: str, stamp: Callable[[str], datetime], cutoff: datetime) -> int:
        """Length of the list at *key* if its newest entry predates *cutoff*, else 0."""
        newest = await self._redis.lrange(key, -1, -1)
        if not newest:
            return 0
        try:
            if _aware(stamp(newest[0])) >= cutoff:
                return 0
        except ValidationError:
            return 0
        return int(await self._redis.llen(key))

    async def cleanup(self, older_than: datetime) -> int:
        cutoff = _aware(older_than)
        removed = self._fallback.purge(cutoff)
        doomed: list[str] = []
        entries = 0
        try:
            for pattern, stamp in (("history", _attempt_finished), ("acks", _acknowledged_at)):
                async for key in self._redis.scan_iter(match=f"{_KEY_PREFIX}:{pattern}:*"):
                    count = await self._expired_length(key, stamp, cutoff)
                    if count:
                        doomed.append(key)
                        entries += count
            async for key in self._redis.scan_iter(match=f"{_KEY_PREFIX}:stats:*"):
                try:
                    hour = datetime.strptime(key.rsplit(":", 1)[1], _HOUR_FORMAT).replace(tzinfo=timezone.utc)
                except ValueError:
                    continue
                if hour + timedelta(hours=1) <= cutoff:
                    doomed.append(key)
            if doomed:
                await self._redis.delete(*doomed)
            removed += entries
        except (RedisError, OSError) as exc:
            self._enter_degraded(exc, op="cleanup")
        logger.info("tracker_cleanup", backend=self.backend, removed=removed, keys=len(doomed))
        return removed

    async def health(self) -> dict[str, object]:
        try:
            reachable = bool(await self._redis.ping())
        except (RedisError, OSError):
            reachable = False
        return {
            "backend": self.backend,
            "degraded": self._degraded or not reachable,
            "redis_reachable": reachable,
            "fallback_buffered": len(self._fallback),
        }
