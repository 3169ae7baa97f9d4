"""
Tests for the herald-common Redis client.

Runs ``RedisClient`` against a mocked ``redis.asyncio`` connection: pool
lifecycle, request publishing and subscription, and the PING health check.
"""

from __future__ import annotations

import json
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from herald_common.config import Settings
from herald_common.messaging.redis_client import RedisClient
from herald_common.models.notification import NotificationRequest, Severity

_URL = "redis://redis.internal:6379/2"
_CHANNEL = "herald:test-requests"


@pytest.fixture()
def connection() -> AsyncMock:
    conn = AsyncMock()
    conn.publish = AsyncMock(return_value=2)
    conn.ping = AsyncMock(return_value=True)
    subscription = AsyncMock()
    conn.pubsub = MagicMock(return_value=subscription)
    return conn


@pytest.fixture()
def client(connection: AsyncMock) -> RedisClient:
    rc = RedisClient(_URL, request_channel=_CHANNEL)
    rc._redis = connection
    return rc


# ── lifecycle ──


class TestLifecycle:

    async def test_connect_builds_pool_once(self, connection) -> None:
        rc = RedisClient(_URL, request_channel=_CHANNEL)
        with patch(
            "herald_common.messaging.redis_client.aioredis.from_url",
            return_value=connection,
        ) as from_url:
            await rc.connect()
            await rc.connect()
        from_url.assert_called_once_with(_URL, decode_responses=True, health_check_interval=30)
        assert rc.redis is connection

    async def test_close_releases_subscriptions_and_pool(self, client, connection) -> None:
        subscription = await client.subscribe_requests()
        await client.close()
        subscription.aclose.assert_awaited_once()
        connection.aclose.assert_awaited_once()
        with pytest.raises(RuntimeError, match="not connected"):
            client.redis

    async def test_close_without_connect_is_noop(self) -> None:
        await RedisClient(_URL, request_channel=_CHANNEL).close()

    def test_defaults_come_from_settings(self) -> None:
        settings = Settings(redis_url=_URL, pubsub_channel=_CHANNEL)
        with patch("herald_common.messaging.redis_client.get_settings", return_value=settings):
            rc = RedisClient()
        assert rc._url == _URL
        assert rc.request_channel == _CHANNEL


# ── request intake ──


class TestRequestIntake:

    async def test_publish_model(self, client, connection) -> None:
        request = NotificationRequest(id="req-9", severity=Severity.ERROR, recipient="#oncall")
        assert await client.publish_request(request) == 2
        channel, raw = connection.publish.await_args.args
        assert channel == _CHANNEL
        assert json.loads(raw)["id"] == "req-9"

    async def test_publish_mapping_is_validated(self, client, connection) -> None:
        await client.publish_request({"id": "req-10", "severity": "warning", "recipient": "ops"})
        body = json.loads(connection.publish.await_args.args[1])
        assert body["severity"] == "warning"

    async def test_publish_invalid_mapping_raises(self, client, connection) -> None:
        with pytest.raises(ValueError):
            await client.publish_request({"id": "req-11"})
        connection.publish.assert_not_awaited()

    async def test_subscribe_requests(self, client, connection) -> None:
        subscription = await client.subscribe_requests()
        connection.pubsub.assert_called_once_with(ignore_subscribe_messages=True)
        subscription.subscribe.assert_awaited_once_with(_CHANNEL)


# ── health ──


class TestHealthCheck:

    async def test_reachable(self, client) -> None:
        report = await client.health_check()
        assert report["reachable"] is True
        assert report["latency_ms"] >= 0

    async def test_connection_error(self, client, connection) -> None:
        connection.ping.side_effect = RedisConnectionError("refused")
        assert await client.health_check() == {"reachable": False, "latency_ms": None}

    async def test_not_connected(self) -> None:
        report = await RedisClient(_URL, request_channel=_CHANNEL).health_check()
        assert report["reachable"] is False
