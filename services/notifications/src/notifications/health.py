"""
Health check endpoint for the Herald notification service.

Exposes a /health endpoint returning service status together with the
tracker, router, rate limit and webhook summaries, plus Redis
reachability when the service runs against Redis.
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Request

router = APIRouter()


@router.get("/health")
async def health(request: Request) -> dict[str, Any]:
    """Return ``{"status": "ok", ...}`` when the service is alive.

    ``status`` is ``"degraded"`` while the durable tracker is running on
    its fallback buffer or Redis does not answer ``PING``.
    """
    service = getattr(request.app.state, "service", None)
    if service is None:
        return {"status": "starting"}
    body = await service.health()
    redis_client = getattr(request.app.state, "redis_client", None)
    if redis_client is not None:
        body["redis"] = await redis_client.health_check()
        if not body["redis"]["reachable"]:
            body["status"] = "degraded"
    return body
