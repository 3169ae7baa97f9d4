"""
Environment-based configuration management for Herald.

Uses pydantic-settings to load configuration values from environment
variables and .env files. The dispatch service and the shared library
read their settings from this module so every knob lives in one place.

All environment variables are prefixed with ``HERALD_`` to avoid collisions.
Per-channel rate limits are given as JSON, e.g.::

    HERALD_RATE_LIMITS='{"sms": {"algorithm": "token-bucket",
                                  "capacity": 5, "refillRatePerSec": 0.0833}}'

Routing rules and on-call schedules are JSON lists as well::

    HERALD_ROUTING_RULES='[{"ruleId": "critical", "channels": ["sms", "voice"],
                            "minSeverity": "critical", "priority": 10}]'
"""

from __future__ import annotations

from functools import lru_cache
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from herald_common.models.oncall import OnCallSchedule
from herald_common.models.rate_limit import RateLimitConfig
from herald_common.models.routing import RoutingRuleConfig


class Settings(BaseSettings):
    """Central configuration loaded from ``HERALD_``-prefixed environment variables.

    Attributes:
        service_name: Name stamped on every log line.
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL).
        redis_url: Redis connection URL (durable tracking, idempotency, pub/sub).
        tracker_backend: ``memory`` (ring buffer) or ``redis`` (durable).
        tracker_buffer_capacity: Ring-buffer size per channel.
        tracker_ttl_s: Expiry of durable delivery history.
        idempotency_backend: ``memory`` or ``redis``.
        dedupe_window_s: How long a finished result suppresses a re-dispatch.
        max_parallelism: Concurrent channel/endpoint deliveries per request.
        request_deadline_s: Overall per-request deadline.
        channel_max_attempts: Send attempts per channel before giving up.
        retry_initial_delay_s: First backoff delay.
        retry_multiplier: Backoff growth factor.
        retry_max_delay_s: Upper bound of a single backoff delay.
        retry_jitter_s: Maximum random seconds added to each backoff.
        webhook_max_attempts: POST attempts per webhook endpoint.
        webhook_timeout_s: Per-request HTTP timeout for webhooks.
        webhook_max_total_wait_s: Cap on the summed webhook backoff.
        rate_limits: Per-channel rate limit configuration.
        routing_rules: Routing rules; empty means one catch-all rule over
            every configured channel.
        oncall_schedules: On-call rotations loaded at startup.
        emergency_contacts: Addresses paged first on every escalation.
        slack_webhook_url: Slack incoming-webhook URL for the chat channel.
        pubsub_enabled: Start the pub/sub request listener with the app.
        pubsub_channel: Redis pub/sub channel carrying inbound requests.
        api_host: Bind address for the HTTP surface.
        api_port: Bind port for the HTTP surface.
    """

    model_config = SettingsConfigDict(
        env_prefix="HERALD_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ── Service ──
    service_name: str = Field(default="herald", description="Service name for logs.")
    log_level: str = Field(default="INFO", description="Logging level.")

    # ── Redis ──
    redis_url: str = Field(
        default="redis://localhost:6379/0",
        description="Redis connection URL.",
    )

    # ── Delivery tracking ──
    tracker_backend: Literal["memory", "redis"] = Field(
        default="memory",
        description="Delivery tracker backend.",
    )
    tracker_buffer_capacity: int = Field(
        default=1000,
        ge=1,
        description="Ring-buffer capacity per channel.",
    )
    tracker_ttl_s: int = Field(
        default=7 * 24 * 3600,
        ge=60,
        description="Expiry of durable delivery history in seconds.",
    )

    # ── Idempotency ──
    idempotency_backend: Literal["memory", "redis"] = Field(
        default="memory",
        description="Where finished dispatch results are remembered.",
    )
    dedupe_window_s: float = Field(
        default=300.0,
        gt=0,
        description="Dedupe window for repeated request ids.",
    )

    # ── Dispatch ──
    max_parallelism: int = Field(
        default=8,
        ge=1,
        description="Maximum concurrent deliveries per request.",
    )
    request_deadline_s: float = Field(
        default=30.0,
        gt=0,
        description="Overall per-request deadline in seconds.",
    )
    channel_max_attempts: int = Field(
        default=3,
        ge=1,
        description="Send attempts per channel.",
    )
    retry_initial_delay_s: float = Field(default=0.5, ge=0, description="First backoff delay.")
    retry_multiplier: float = Field(default=2.0, ge=1.0, description="Backoff growth factor.")
    retry_max_delay_s: float = Field(default=10.0, ge=0, description="Maximum single backoff.")
    retry_jitter_s: float = Field(
        default=0.1,
        ge=0.0,
        description="Maximum random seconds added to each backoff.",
    )

    # ── Webhooks ──
    webhook_max_attempts: int = Field(default=3, ge=1, description="POST attempts per endpoint.")
    webhook_timeout_s: float = Field(default=10.0, gt=0, description="HTTP timeout in seconds.")
    webhook_max_total_wait_s: float = Field(
        default=30.0,
        ge=0,
        description="Cap on summed webhook backoff in seconds.",
    )

    # ── Rate limiting ──
    rate_limits: dict[str, RateLimitConfig] = Field(
        default_factory=dict,
        description="Per-channel rate limit configuration.",
    )

    # ── Routing ──
    routing_rules: list[RoutingRuleConfig] = Field(
        default_factory=list,
        description="Routing rules; empty means a catch-all over every channel.",
    )
    oncall_schedules: list[OnCallSchedule] = Field(
        default_factory=list,
        description="On-call rotations.",
    )
    emergency_contacts: list[str] = Field(
        default_factory=list,
        description="Addresses paged first on escalation.",
    )

    # ── Channels ──
    slack_webhook_url: str = Field(default="", description="Slack incoming-webhook URL.")

    # ── Transport ──
    pubsub_enabled: bool = Field(
        default=False,
        description="Consume requests from Redis pub/sub at startup.",
    )
    pubsub_channel: str = Field(
        default="herald:requests",
        description="Redis pub/sub channel for inbound requests.",
    )
    api_host: str = Field(default="0.0.0.0", description="HTTP bind address.")
    api_port: int = Field(default=8010, ge=1, le=65535, description="HTTP bind port.")


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return the cached application settings singleton.

    Returns:
        The global ``Settings`` instance.
    """
    return Settings()
