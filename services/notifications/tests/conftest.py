"""Shared fixtures for notification service tests."""

from __future__ import annotations

import asyncio
import fnmatch
import sys
from collections import defaultdict
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from herald_common.models.notification import NotificationRequest, Severity
from notifications.channels.base import Channel, SendResult

# Use *append* so test modules can import the helpers below.
sys.path.append(str(Path(__file__).resolve().parent))

T0 = datetime(2026, 3, 2, 9, 30, tzinfo=timezone.utc)


# ─── Time ───


class FakeClock:
    """Manually advanced time source usable as both a float and datetime clock."""

    def __init__(self, start: float = 1_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    def utc(self) -> datetime:
        return T0 + timedelta(seconds=self.now)


# ─── Redis double ───


class FakePipeline:
    """Queues commands and applies them to the owning ``FakeRedis`` on execute."""

    def __init__(self, redis: FakeRedis) -> None:
        self._redis = redis
        self._ops: list[tuple[str, tuple[Any, ...]]] = []

    def __getattr__(self, name: str) -> Any:
        def queue(*args: Any) -> FakePipeline:
            self._ops.append((name, args))
            return self

        return queue

    async def execute(self) -> list[Any]:
        self._redis._check()
        return [getattr(self._redis, f"_{name}")(*args) for name, args in self._ops]


class FakeRedis:
    """Dict-backed stand-in for the slice of ``redis.asyncio.Redis`` Herald uses."""

    def __init__(self) -> None:
        self.lists: dict[str, list[str]] = defaultdict(list)
        self.hashes: dict[str, dict[str, str]] = defaultdict(dict)
        self.sets: dict[str, set[str]] = defaultdict(set)
        self.strings: dict[str, str] = {}
        self.expiries: dict[str, int] = {}
        self.down = False

    def _check(self) -> None:
        if self.down:
            raise RedisConnectionError("connection refused")

    # sync primitives shared by pipeline and direct calls

    def _rpush(self, key: str, *values: str) -> int:
        self.lists[key].extend(values)
        return len(self.lists[key])

    def _expire(self, key: str, seconds: int) -> bool:
        self.expiries[key] = seconds
        return True

    def _hincrby(self, key: str, field: str, amount: int = 1) -> int:
        value = int(self.hashes[key].get(field, "0")) + amount
        self.hashes[key][field] = str(value)
        return value

    def _hincrbyfloat(self, key: str, field: str, amount: float = 1.0) -> float:
        value = float(self.hashes[key].get(field, "0")) + amount
        self.hashes[key][field] = repr(value)
        return value

    def _sadd(self, key: str, *members: str) -> int:
        before = len(self.sets[key])
        self.sets[key].update(members)
        return len(self.sets[key]) - before

    def _hgetall(self, key: str) -> dict[str, str]:
        return dict(self.hashes.get(key, {}))

    # async client surface

    def pipeline(self, transaction: bool = True) -> FakePipeline:
        return FakePipeline(self)

    async def lrange(self, key: str, start: int, end: int) -> list[str]:
        self._check()
        items = self.lists.get(key, [])
        return list(items[start:] if end == -1 else items[start : end + 1])

    async def smembers(self, key: str) -> set[str]:
        self._check()
        return set(self.sets.get(key, set()))

    async def hgetall(self, key: str) -> dict[str, str]:
        self._check()
        return self._hgetall(key)

    async def get(self, key: str) -> str | None:
        self._check()
        return self.strings.get(key)

    async def set(self, key: str, value: str, px: int | None = None) -> bool:
        self._check()
        self.strings[key] = value
        if px is not None:
            self.expiries[key] = px
        return True

    async def llen(self, key: str) -> int:
        self._check()
        return len(self.lists.get(key, []))

    def _stores(self) -> tuple[dict[str, Any], ...]:
        return (self.strings, self.lists, self.hashes, self.sets)

    async def scan_iter(self, match: str = "*"):
        self._check()
        keys = [key for store in self._stores() for key in list(store)]
        for key in keys:
            if fnmatch.fnmatch(key, match):
                yield key

    async def delete(self, *keys: str) -> int:
        self._check()
        deleted = 0
        for key in keys:
            hits = [store.pop(key, None) is not None for store in self._stores()]
            deleted += any(hits)
        return deleted

    async def ping(self) -> bool:
        self._check()
        return True


# ─── Channels ───


class ScriptedChannel(Channel):
    """Channel that replays a script of results (or exceptions) per call."""

    def __init__(self, name: str, script: list[Any] | None = None) -> None:
        self.name = name
        self.script = list(script or [])
        self.sent: list[tuple[str, str]] = []
        self.closed = False

    async def send(self, rendered_payload: str, recipient: str) -> SendResult:
        self.sent.append((rendered_payload, recipient))
        step = self.script.pop(0) if self.script else SendResult.ok(f"{self.name}-{len(self.sent)}")
        if isinstance(step, BaseException):
            raise step
        return step

    async def close(self) -> None:
        self.closed = True


class BlockingChannel(Channel):
    """Channel whose sends wait until ``release`` is set."""

    def __init__(self, name: str) -> None:
        self.name = name
        self.release = asyncio.Event()
        self.calls = 0

    async def send(self, rendered_payload: str, recipient: str) -> SendResult:
        self.calls += 1
        await self.release.wait()
        return SendResult.ok("late")


# ─── Fixtures ───


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture()
def sample_request() -> NotificationRequest:
    return NotificationRequest(
        id="req-001",
        severity=Severity.CRITICAL,
        tags=frozenset({"payments", "db"}),
        recipient="+15550100",
        payload_context={"message": "primary database unreachable"},
        created_at=T0,
    )


@pytest.fixture()
def make_request():
    """Factory for requests with overridable fields."""

    def _make(**overrides: Any) -> NotificationRequest:
        fields: dict[str, Any] = {
            "id": "req-001",
            "severity": Severity.WARNING,
            "tags": frozenset({"db"}),
            "recipient": "+15550100",
            "payload_context": {"message": "disk usage at 91%"},
            "created_at": T0,
        }
        fields.update(overrides)
        return NotificationRequest(**fields)

    return _make
