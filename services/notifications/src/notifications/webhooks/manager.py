"""
Webhook manager for Herald.

Keeps the registry of external subscriber endpoints and fans requests
out to them.  For every enabled endpoint whose filter matches, the
request is serialized to a compact, key-sorted JSON body, signed with
the endpoint's secret, and POSTed with bounded retry:

* 5xx responses and transport errors are retried with exponential
  backoff plus jitter, up to ``max_attempts`` and a cap on the summed
  backoff.
* 4xx responses are terminal.
* Endpoints are delivered concurrently; one endpoint's backoff never
  delays another.

Endpoint ``stats`` are written only here, once per terminal delivery.
``list`` and ``get`` hand out copies.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

import httpx
import structlog
from tenacity import AsyncRetrying, retry_if_exception

from herald_common.models.notification import NotificationRequest, Severity
from herald_common.models.webhook import (
    WebhookDeliveryResult,
    WebhookDeliveryStatus,
    WebhookEndpoint,
    WebhookFilter,
)

from ..errors import WebhookDeliveryError
from ..metrics import webhook_deliveries_total
from ..retry import RetryPolicy, stop_after_total_wait, stop_before_deadline
from .signing import sign

logger = structlog.get_logger()

_DEFAULT_TIMEOUT_S = 10.0
_DEFAULT_MAX_TOTAL_WAIT_S = 30.0
_USER_AGENT = "Herald-Webhooks/1.0"


def build_payload(request: NotificationRequest) -> bytes:
    """Serialize the stable webhook body for *request*."""
    document = {
        "id": request.id,
        "severity": request.severity.value,
        "tags": sorted(request.tags),
        "recipient": request.recipient,
        "timestamp": request.created_at.isoformat(),
        "eventType": request.event_type,
    }
    return json.dumps(document, separators=(",", ":"), sort_keys=True).encode("utf-8")


def _is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, WebhookDeliveryError) and exc.retryable


@dataclass
class _AttemptState:
    attempts: int = 0
    http_status: int | None = None
    response_ms: float = 0.0


class WebhookManager:
    """Registry and signed HTTP fan-out for webhook subscribers.

    Args:
        retry_policy: Attempts and backoff per endpoint.
        timeout_s: Per-request HTTP timeout.
        max_total_wait_s: Cap on summed backoff per endpoint delivery.
        client: Optional shared ``httpx.AsyncClient`` (tests inject one
                with a ``MockTransport``).
    """

    def __init__(
        self,
        *,
        retry_policy: RetryPolicy | None = None,
        timeout_s: float = _DEFAULT_TIMEOUT_S,
        max_total_wait_s: float = _DEFAULT_MAX_TOTAL_WAIT_S,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.retry_policy = retry_policy or RetryPolicy()
        self.timeout_s = timeout_s
        self.max_total_wait_s = max_total_wait_s
        self._client = client
        self._endpoints: dict[str, WebhookEndpoint] = {}

    async def _get_client(self) -> httpx.AsyncClient:
        """Return (and lazily create) the shared ``httpx.AsyncClient``."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=self.timeout_s)
        return self._client

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    # ── registry ──

    def register(
        self,
        url: str,
        secret: str,
        *,
        filter: WebhookFilter | None = None,
        headers: dict[str, str] | None = None,
        endpoint_id: str | None = None,
        enabled: bool = True,
    ) -> WebhookEndpoint:
        """Register a subscriber and return a copy of it.

        Raises:
            ValueError: If *url* is not http(s) or *endpoint_id* is taken.
        """
        if not url.startswith(("http://", "https://")):
            raise ValueError(f"webhook url must be http(s): {url!r}")
        fields: dict[str, Any] = {
            "url": url,
            "secret": secret,
            "filter": filter or WebhookFilter(),
            "headers": dict(headers or {}),
            "enabled": enabled,
        }
        if endpoint_id is not None:
            if endpoint_id in self._endpoints:
                raise ValueError(f"webhook {endpoint_id!r} already registered")
            fields["id"] = endpoint_id
        endpoint = WebhookEndpoint(**fields)
        self._endpoints[endpoint.id] = endpoint
        logger.info("webhook_registered", endpoint_id=endpoint.id, url=url)
        return endpoint.model_copy(deep=True)

    def update(
        self,
        endpoint_id: str,
        *,
        url: str | None = None,
        secret: str | None = None,
        filter: WebhookFilter | None = None,
        headers: dict[str, str] | None = None,
        enabled: bool | None = None,
    ) -> WebhookEndpoint | None:
        """Replace the given fields of an endpoint; ``None`` if it is unknown.

        The id, creation time and delivery stats carry over unchanged.

        Raises:
            ValueError: If the new *url* is not http(s) or a field is invalid.
        """
        endpoint = self._endpoints.get(endpoint_id)
        if endpoint is None:
            return None
        if url is not None and not url.startswith(("http://", "https://")):
            raise ValueError(f"webhook url must be http(s): {url!r}")
        changes: dict[str, Any] = {
            name: value
            for name, value in (
                ("url", url),
                ("secret", secret),
                ("filter", filter),
                ("headers", headers),
                ("enabled", enabled),
            )
            if value is not None
        }
        fields = {**endpoint.model_dump(exclude={"stats"}), **changes, "updated_at": datetime.now(timezone.utc)}
        updated = WebhookEndpoint.model_validate(fields)
        updated.stats = endpoint.stats
        self._endpoints[endpoint_id] = updated
        logger.info("webhook_updated", endpoint_id=endpoint_id, fields=sorted(changes))
        return updated.model_copy(deep=True)

    def deregister(self, endpoint_id: str) -> bool:
        removed = self._endpoints.pop(endpoint_id, None) is not None
        if removed:
            logger.info("webhook_deregistered", endpoint_id=endpoint_id)
        return removed

    def list(self) -> list[WebhookEndpoint]:
        return [e.model_copy(deep=True) for e in self._endpoints.values()]

    def get(self, endpoint_id: str) -> WebhookEndpoint | None:
        endpoint = self._endpoints.get(endpoint_id)
        return endpoint.model_copy(deep=True) if endpoint is not None else None

    def set_enabled(self, endpoint_id: str, enabled: bool) -> bool:
        endpoint = self._endpoints.get(endpoint_id)
        if endpoint is None:
            return False
        endpoint.enabled = enabled
        logger.info("webhook_toggled", endpoint_id=endpoint_id, enabled=enabled)
        return True

    def matching_endpoints(self, request: NotificationRequest) -> list[WebhookEndpoint]:
        """Enabled endpoints whose filter accepts *request*."""
        return [e for e in self._endpoints.values() if e.enabled and e.filter.matches(request)]

    # ── delivery ──

    def _headers(self, endpoint: WebhookEndpoint, request: NotificationRequest, body: bytes) -> dict[str, str]:
        return {
            **endpoint.headers,
            "Content-Type": "application/json",
            "User-Agent": _USER_AGENT,
            "X-Herald-Signature": sign(body, endpoint.secret),
            "X-Herald-Event": request.event_type,
            "X-Herald-Delivery": uuid4().hex,
        }

    async def _post_once(
        self,
        endpoint: WebhookEndpoint,
        body: bytes,
        headers: dict[str, str],
        state: _AttemptState,
        semaphore: asyncio.Semaphore | None,
    ) -> httpx.Response:
        state.attempts += 1
        client = await self._get_client()
        started = time.perf_counter()
        try:
            async with semaphore or contextlib.nullcontext():
                response = await client.post(endpoint.url, content=body, headers=headers)
        except httpx.TransportError as exc:
            state.http_status = None
            state.response_ms = (time.perf_counter() - started) * 1000
            raise WebhookDeliveryError(f"transport error: {exc!r}", retryable=True) from exc
        state.http_status = response.status_code
        state.response_ms = (time.perf_counter() - started) * 1000
        if response.is_success:
            return response
        raise WebhookDeliveryError(
            f"HTTP {response.status_code}",
            status=response.status_code,
            retryable=response.status_code >= 500,
        )

    def _retrying(self, policy: RetryPolicy, at_deadline: stop_before_deadline) -> AsyncRetrying:
        return AsyncRetrying(
            stop=policy.stop() | stop_after_total_wait(self.max_total_wait_s) | at_deadline,
            wait=policy.wait(),
            retry=retry_if_exception(_is_retryable),
            reraise=True,
        )

    async def deliver(
        self,
        endpoint: WebhookEndpoint,
        request: NotificationRequest,
        *,
        deadline: float | None = None,
        semaphore: asyncio.Semaphore | None = None,
        policy: RetryPolicy | None = None,
        update_stats: bool = True,
    ) -> WebhookDeliveryResult:
        """Deliver *request* to one endpoint, retrying as configured.

        Never raises; every failure is reported in the result.

        Args:
            endpoint: Target endpoint.
            request: Request to deliver.
            deadline: Absolute event-loop time after which no retry starts.
            semaphore: Bounds concurrent POSTs across a dispatch.
            policy: Overrides the manager's retry policy.
            update_stats: Record the outcome in the endpoint's stats.
        """
        body = build_payload(request)
        headers = self._headers(endpoint, request, body)
        state = _AttemptState()
        log = logger.bind(endpoint_id=endpoint.id, request_id=request.id)
        status = WebhookDeliveryStatus.DELIVERED
        error: str | None = None
        at_deadline = stop_before_deadline(deadline)

        try:
            async for attempt in self._retrying(policy or self.retry_policy, at_deadline):
                with attempt:
                    await self._post_once(endpoint, body, headers, state, semaphore)
        except WebhookDeliveryError as exc:
            error = str(exc)
            expired = at_deadline.reached or (
                deadline is not None and asyncio.get_running_loop().time() >= deadline
            )
            status = (
                WebhookDeliveryStatus.TIMED_OUT
                if exc.retryable and expired
                else WebhookDeliveryStatus.FAILED
            )
        except Exception as exc:  # noqa: BLE001
            error = f"unexpected error: {exc!r}"
            status = WebhookDeliveryStatus.FAILED

        result = WebhookDeliveryResult(
            endpoint_id=endpoint.id,
            request_id=request.id,
            status=status,
            http_status=state.http_status,
            error=error,
            attempt=state.attempts,
            response_ms=state.response_ms,
        )
        if status == WebhookDeliveryStatus.DELIVERED:
            log.info("webhook_delivered", status=state.http_status, attempts=state.attempts)
        else:
            log.warning(
                "webhook_delivery_failed",
                status=state.http_status,
                attempts=state.attempts,
                error=error,
            )
        webhook_deliveries_total.labels(status=status.value).inc()
        if update_stats:
            self._record_stats(endpoint.id, result)
        return result

    def _record_stats(self, endpoint_id: str, result: WebhookDeliveryResult) -> None:
        endpoint = self._endpoints.get(endpoint_id)
        if endpoint is None:
            return
        stats = endpoint.stats
        stats.total_attempts += result.attempt
        if result.status == WebhookDeliveryStatus.DELIVERED:
            stats.success_count += 1
            stats.last_success_at = result.timestamp
        else:
            stats.failure_count += 1
        finished = stats.success_count + stats.failure_count
        stats.avg_response_ms += (result.response_ms - stats.avg_response_ms) / finished
        stats.last_delivery_at = result.timestamp

    async def dispatch(
        self,
        request: NotificationRequest,
        *,
        deadline: float | None = None,
        semaphore: asyncio.Semaphore | None = None,
    ) -> list[WebhookDeliveryResult]:
        """Fan *request* out to every matching endpoint concurrently."""
        endpoints = self.matching_endpoints(request)
        if not endpoints:
            return []
        return list(
            await asyncio.gather(
                *(
                    self.deliver(e, request, deadline=deadline, semaphore=semaphore)
                    for e in endpoints
                )
            )
        )

    async def test_endpoint(self, endpoint_id: str) -> WebhookDeliveryResult:
        """Send a single, unretried test event to *endpoint_id*.

        The endpoint's filter and enabled flag are ignored and its stats
        are left untouched.

        Raises:
            KeyError: If the endpoint is not registered.
        """
        endpoint = self._endpoints.get(endpoint_id)
        if endpoint is None:
            raise KeyError(endpoint_id)
        test_event = NotificationRequest(
            id=f"test-{uuid4().hex[:12]}",
            severity=Severity.INFO,
            tags=frozenset({"test"}),
            recipient="webhook-test",
            event_type="webhook.test",
        )
        return await self.deliver(
            endpoint,
            test_event,
            policy=RetryPolicy(max_attempts=1),
            update_stats=False,
        )

    def health(self) -> dict[str, object]:
        """Registry summary: counts, mean success rate, recently failing endpoints."""
        enabled = [e for e in self._endpoints.values() if e.enabled]
        now = datetime.now(timezone.utc)
        failing = [
            e.id
            for e in enabled
            if e.stats.last_delivery_at is not None
            and (now - e.stats.last_delivery_at).total_seconds() < 3600
            and (e.stats.last_success_at is None or e.stats.last_success_at < e.stats.last_delivery_at)
        ]
        rates = [e.stats.success_rate for e in enabled]
        return {
            "total_webhooks": len(self._endpoints),
            "enabled_webhooks": len(enabled),
            "avg_success_rate": sum(rates) / len(rates) if rates else 0.0,
            "recent_errors": len(failing),
            "failing_endpoints": failing,
        }
