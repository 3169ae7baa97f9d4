"""
Prometheus metrics for the Herald notification service.

Collected in the default registry and exposed at ``/metrics`` by the
FastAPI app.
"""

from __future__ import annotations

from prometheus_client import Counter, Histogram

channel_attempts_total = Counter(
    "herald_channel_attempts_total",
    "Delivery attempt records written, by channel and outcome",
    ["channel", "outcome"],
)
webhook_deliveries_total = Counter(
    "herald_webhook_deliveries_total",
    "Terminal webhook deliveries, by status",
    ["status"],
)
rate_limit_decisions_total = Counter(
    "herald_rate_limit_decisions_total",
    "Rate limiter decisions, by channel and decision",
    ["channel", "decision"],
)
dispatch_latency_seconds = Histogram(
    "herald_dispatch_latency_seconds",
    "End-to-end latency of NotificationService.dispatch",
)
