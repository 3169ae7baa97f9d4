"""
HTTP routes for the Herald notification service.

Thin FastAPI layer over ``NotificationService``: submit a notification,
read its delivery history and status, acknowledge it, query delivery
metrics, manage webhook subscribers and on-call schedules.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Body, Depends, HTTPException, Request, status
from pydantic import BaseModel, Field

from herald_common.models.delivery import DeliveryAttempt, DeliveryMetrics, MetricsFilter, NotificationStatus
from herald_common.models.notification import Severity
from herald_common.models.oncall import OnCallAssignment, OnCallSchedule
from herald_common.models.result import NotificationResult
from herald_common.models.webhook import WebhookDeliveryResult, WebhookEndpoint, WebhookFilter

from .errors import InvalidRequestError
from .service import NotificationService

router = APIRouter()


def get_service(request: Request) -> NotificationService:
    """Return the service instance attached to the app during startup."""
    service = getattr(request.app.state, "service", None)
    if service is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="service not ready")
    return service


class WebhookRegistration(BaseModel):
    """Body of ``POST /webhooks``."""

    url: str = Field(..., min_length=1)
    secret: str = Field(..., min_length=8)
    min_severity: Severity = Severity.INFO
    tags: list[str] = Field(default_factory=list)
    headers: dict[str, str] = Field(default_factory=dict)
    enabled: bool = True


class WebhookUpdate(BaseModel):
    """Body of ``PATCH /webhooks/{endpoint_id}``; omitted fields stay as they are."""

    url: str | None = Field(default=None, min_length=1)
    secret: str | None = Field(default=None, min_length=8)
    min_severity: Severity | None = None
    tags: list[str] | None = None
    headers: dict[str, str] | None = None
    enabled: bool | None = None


class AcknowledgementBody(BaseModel):
    """Body of ``POST /notifications/{request_id}/acknowledge``."""

    user_id: str = Field(..., min_length=1)
    notes: str | None = None


def _public(endpoint: WebhookEndpoint) -> dict[str, Any]:
    return endpoint.model_dump(mode="json", exclude={"secret"})


# ── notifications ──


@router.post("/notifications", response_model=NotificationResult)
async def submit_notification(
    payload: dict[str, Any] = Body(...),
    service: NotificationService = Depends(get_service),
) -> NotificationResult:
    """Dispatch a notification and return the per-channel outcome."""
    try:
        return await service.dispatch(payload)
    except InvalidRequestError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc


@router.get("/notifications/{request_id}/history", response_model=list[DeliveryAttempt])
async def notification_history(
    request_id: str,
    service: NotificationService = Depends(get_service),
) -> list[DeliveryAttempt]:
    return await service.get_history(request_id)


@router.get("/notifications/{request_id}/status", response_model=NotificationStatus)
async def notification_status(
    request_id: str,
    service: NotificationService = Depends(get_service),
) -> NotificationStatus:
    return await service.get_status(request_id)


@router.post("/notifications/{request_id}/acknowledge", response_model=NotificationStatus)
async def acknowledge_notification(
    request_id: str,
    body: AcknowledgementBody,
    service: NotificationService = Depends(get_service),
) -> NotificationStatus:
    return await service.acknowledge(request_id, body.user_id, body.notes)


@router.get("/deliveries/metrics", response_model=DeliveryMetrics)
async def delivery_metrics(
    channel: str | None = None,
    since: datetime | None = None,
    until: datetime | None = None,
    service: NotificationService = Depends(get_service),
) -> DeliveryMetrics:
    return await service.get_metrics(MetricsFilter(channel=channel, since=since, until=until))


# ── webhooks ──


@router.post("/webhooks", status_code=status.HTTP_201_CREATED)
async def register_webhook(
    body: WebhookRegistration,
    service: NotificationService = Depends(get_service),
) -> dict[str, Any]:
    try:
        endpoint = service.webhooks.register(
            body.url,
            body.secret,
            filter=WebhookFilter(min_severity=body.min_severity, tags=frozenset(body.tags)),
            headers=body.headers,
            enabled=body.enabled,
        )
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    return _public(endpoint)


@router.get("/webhooks")
async def list_webhooks(service: NotificationService = Depends(get_service)) -> list[dict[str, Any]]:
    return [_public(e) for e in service.webhooks.list()]


@router.get("/webhooks/{endpoint_id}")
async def get_webhook(
    endpoint_id: str,
    service: NotificationService = Depends(get_service),
) -> dict[str, Any]:
    endpoint = service.webhooks.get(endpoint_id)
    if endpoint is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="webhook not found")
    return _public(endpoint)


@router.patch("/webhooks/{endpoint_id}")
async def update_webhook(
    endpoint_id: str,
    body: WebhookUpdate,
    service: NotificationService = Depends(get_service),
) -> dict[str, Any]:
    current = service.webhooks.get(endpoint_id)
    if current is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="webhook not found")
    new_filter = None
    if body.min_severity is not None or body.tags is not None:
        new_filter = WebhookFilter(
            min_severity=body.min_severity or current.filter.min_severity,
            tags=frozenset(body.tags) if body.tags is not None else current.filter.tags,
        )
    try:
        endpoint = service.webhooks.update(
            endpoint_id,
            url=body.url,
            secret=body.secret,
            filter=new_filter,
            headers=body.headers,
            enabled=body.enabled,
        )
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    if endpoint is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="webhook not found")
    return _public(endpoint)


@router.delete("/webhooks/{endpoint_id}", status_code=status.HTTP_204_NO_CONTENT)
async def deregister_webhook(
    endpoint_id: str,
    service: NotificationService = Depends(get_service),
) -> None:
    if not service.webhooks.deregister(endpoint_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="webhook not found")


@router.post("/webhooks/{endpoint_id}/test", response_model=WebhookDeliveryResult)
async def test_webhook(
    endpoint_id: str,
    service: NotificationService = Depends(get_service),
) -> WebhookDeliveryResult:
    try:
        return await service.webhooks.test_endpoint(endpoint_id)
    except KeyError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="webhook not found") from exc


# ── on-call ──


@router.put("/oncall/schedules/{schedule_id}", response_model=OnCallSchedule)
async def put_schedule(
    schedule_id: str,
    body: OnCallSchedule,
    service: NotificationService = Depends(get_service),
) -> OnCallSchedule:
    if body.schedule_id != schedule_id:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="schedule id mismatch")
    service.router.add_schedule(body)
    return body


@router.get("/oncall/schedules/{schedule_id}/current", response_model=OnCallAssignment)
async def current_on_call(
    schedule_id: str,
    service: NotificationService = Depends(get_service),
) -> OnCallAssignment:
    assignment = service.router.get_current_on_call(schedule_id)
    if assignment is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="nobody on call")
    return assignment


@router.delete("/oncall/schedules/{schedule_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_schedule(
    schedule_id: str,
    service: NotificationService = Depends(get_service),
) -> None:
    if not service.router.remove_schedule(schedule_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="schedule not found")
