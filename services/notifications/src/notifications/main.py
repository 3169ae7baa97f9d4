"""
Notification service entry point for Herald.

Builds the dispatch service from settings (channels, routing rules,
on-call schedules, rate limits, tracker and idempotency backends), optionally subscribes to the Redis
request channel, and exposes the HTTP API, health and metrics endpoints.
"""

from __future__ import annotations

import asyncio
import contextlib
from contextlib import asynccontextmanager
from typing import AsyncIterator

import structlog
import uvicorn
from fastapi import FastAPI
from prometheus_client import make_asgi_app

from herald_common.config import Settings, get_settings
from herald_common.logging import configure_logging
from herald_common.messaging.redis_client import RedisClient

from .api import router as api_router
from .channels.base import ChannelRegistry
from .channels.slack_channel import SlackChannel
from .health import router as health_router
from .idempotency import InMemoryIdempotencyStore, RedisIdempotencyStore
from .ratelimit.manager import RateLimitManager
from .retry import RetryPolicy
from .router import RoutingRule, SmartRouter
from .rule_builder import RoutingRuleBuilder, rule_from_config
from .service import NotificationService
from .templates import JinjaTemplateRenderer
from .tracking.memory import InMemoryDeliveryTracker
from .tracking.redis_tracker import RedisDeliveryTracker
from .webhooks.manager import WebhookManager

logger = structlog.get_logger()


def default_rules(channels: list[str]) -> list[RoutingRule]:
    """Catch-all rule sending every request to every configured channel."""
    if not channels:
        return []
    return [
        RoutingRuleBuilder("catch-all")
        .to(*channels)
        .priority(1000)
        .accumulate()
        .describe("every request to every configured channel")
        .build()
    ]


def rules_from_settings(settings: Settings, channels: list[str]) -> list[RoutingRule]:
    """Routing rules from ``settings.routing_rules``, or the catch-all when none are set."""
    if not settings.routing_rules:
        return default_rules(channels)
    rules = [rule_from_config(config) for config in settings.routing_rules]
    for rule in rules:
        unknown = sorted(set(rule.channels) - set(channels))
        if unknown:
            logger.warning("routing_rule_unknown_channels", rule_id=rule.rule_id, channels=unknown)
    return rules


def build_service(settings: Settings, redis_client: RedisClient | None = None) -> NotificationService:
    """Wire a ``NotificationService`` from *settings*.

    Args:
        settings: Application settings.
        redis_client: Connected client, required when a Redis backend
                      is selected.
    """
    channels = ChannelRegistry()
    if settings.slack_webhook_url:
        channels.register(SlackChannel(settings.slack_webhook_url))

    needs_redis = "redis" in (settings.tracker_backend, settings.idempotency_backend)
    if needs_redis and redis_client is None:
        raise ValueError("a Redis backend is configured but no Redis client was given")

    if settings.tracker_backend == "redis":
        tracker = RedisDeliveryTracker(
            redis_client.redis,  # type: ignore[union-attr]
            ttl_s=settings.tracker_ttl_s,
            fallback_capacity=settings.tracker_buffer_capacity,
        )
    else:
        tracker = InMemoryDeliveryTracker(capacity=settings.tracker_buffer_capacity)

    if settings.idempotency_backend == "redis":
        idempotency = RedisIdempotencyStore(redis_client.redis)  # type: ignore[union-attr]
    else:
        idempotency = InMemoryIdempotencyStore()

    return NotificationService(
        router=SmartRouter(
            rules_from_settings(settings, channels.names),
            schedules=settings.oncall_schedules,
            emergency_contacts=tuple(settings.emergency_contacts),
        ),
        channels=channels,
        rate_limits=RateLimitManager(settings.rate_limits),
        tracker=tracker,
        webhooks=WebhookManager(
            retry_policy=RetryPolicy.for_webhooks(settings),
            timeout_s=settings.webhook_timeout_s,
            max_total_wait_s=settings.webhook_max_total_wait_s,
        ),
        renderer=JinjaTemplateRenderer(),
        idempotency=idempotency,
        retry_policy=RetryPolicy.for_channels(settings),
        max_parallelism=settings.max_parallelism,
        deadline_s=settings.request_deadline_s,
        dedupe_window_s=settings.dedupe_window_s,
    )


def create_app(service: NotificationService | None = None, settings: Settings | None = None) -> FastAPI:
    """Build and return the FastAPI application.

    Args:
        service: Pre-built service (tests); built from settings at startup
                 when omitted.
        settings: Settings override; defaults to ``get_settings()``.
    """
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        """Startup / shutdown lifecycle for the notification service."""
        logger.info("notification_service_starting")
        redis_client: RedisClient | None = None
        listener: asyncio.Task[None] | None = None
        uses_redis = settings.pubsub_enabled or "redis" in (
            settings.tracker_backend,
            settings.idempotency_backend,
        )
        if service is None and uses_redis:
            redis_client = RedisClient(settings.redis_url, request_channel=settings.pubsub_channel)
            await redis_client.connect()
        app.state.service = service or build_service(settings, redis_client)
        app.state.redis_client = redis_client

        if settings.pubsub_enabled and redis_client is not None:
            pubsub = await redis_client.subscribe_requests()
            listener = asyncio.create_task(app.state.service.listen(pubsub))

        yield

        logger.info("notification_service_stopping")
        if listener is not None:
            listener.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await listener
        await app.state.service.close()
        if redis_client is not None:
            await redis_client.close()

    app = FastAPI(title="Herald Notification Service", lifespan=lifespan)
    app.include_router(health_router)
    app.include_router(api_router)
    app.mount("/metrics", make_asgi_app())
    return app


def run() -> None:
    """Console entry point: configure logging and serve with uvicorn."""
    settings = get_settings()
    configure_logging(settings.log_level, settings.service_name)
    uvicorn.run(
        create_app(settings=settings),
        host=settings.api_host,
        port=settings.api_port,
        reload=False,
    )


if __name__ == "__main__":
    run()
