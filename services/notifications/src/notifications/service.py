"""
Notification dispatch orchestrator for Herald.

Flow
----
1. Validate the request (a mapping is parsed into a
   ``NotificationRequest``; failure raises ``InvalidRequestError``).
2. Idempotency: a finished result stored for ``request.id`` within the
   dedupe window is returned as-is, and a concurrent duplicate waits for
   the in-flight dispatch instead of delivering again.
3. Resolve an ``oncall:<schedule>`` recipient to whoever is on call,
   then route the request to a channel plan.
4. Per planned channel, concurrently: rate limit → render → send →
   record, retrying transient failures with backoff.
5. Concurrently with 4, fan the request out to matching webhooks.
6. After the request deadline, whatever is still pending is reported as
   ``timed_out``.  It keeps running in the background to finish its
   current I/O but schedules no further retries.
7. If no channel delivered and the failed attempts reach the router's
   escalation threshold for the severity, the result names who to page.

Per-channel and per-endpoint failures are captured in the returned
``NotificationResult``; they never raise.
"""

from __future__ import annotations

import asyncio
import itertools
import json
import time
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable

import structlog
from pydantic import ValidationError
from tenacity import AsyncRetrying, retry_if_exception

from herald_common.models.delivery import (
    Acknowledgement,
    DeliveryAttempt,
    DeliveryMetrics,
    DeliveryOutcome,
    ErrorClass,
    MetricsFilter,
    NotificationStatus,
)
from herald_common.models.notification import NotificationRequest
from herald_common.models.result import (
    ChannelResult,
    ChannelStatus,
    NotificationResult,
    RouteEntry,
)
from herald_common.models.webhook import (
    WebhookDeliveryResult,
    WebhookDeliveryStatus,
    WebhookEndpoint,
)

from .channels.base import ChannelRegistry, SendError, SendResult
from .errors import ChannelSendError, InvalidRequestError, RateLimitExceeded, RoutingError
from .idempotency import IdempotencyStore, InMemoryIdempotencyStore
from .metrics import channel_attempts_total, dispatch_latency_seconds
from .ratelimit.manager import RateLimitManager
from .retry import RetryPolicy, stop_before_deadline
from .router import SmartRouter
from .templates import JinjaTemplateRenderer, TemplateRenderer
from .tracking.base import DeliveryTracker
from .tracking.memory import InMemoryDeliveryTracker
from .webhooks.manager import WebhookManager

logger = structlog.get_logger()

_DEADLINE_EXCEEDED = "deadline exceeded"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _is_transient(exc: BaseException) -> bool:
    return isinstance(exc, ChannelSendError) and exc.transient


@dataclass
class _ChannelProgress:
    """Send attempts made so far, readable after a deadline cut-off."""

    attempts: int = 0


class NotificationService:
    """Orchestrates router, rate limits, channels, tracker and webhooks.

    Args:
        router: Produces the channel plan.
        channels: Channel adapters by name.
        rate_limits: Per-channel limiter owner.
        tracker: Delivery tracker backend.
        webhooks: Webhook registry and fan-out.
        renderer: Template renderer.
        idempotency: Finished-result store for the dedupe window.
        retry_policy: Channel send attempts and backoff.
        max_parallelism: Concurrent sends/POSTs per request.
        deadline_s: Overall per-request deadline.
        dedupe_window_s: How long a finished result suppresses re-dispatch.
        sleep: Awaitable sleep used between retries (tests inject a fake).
        clock: Returns the aware datetime stamped on attempts.
    """

    def __init__(
        self,
        *,
        router: SmartRouter,
        channels: ChannelRegistry,
        rate_limits: RateLimitManager | None = None,
        tracker: DeliveryTracker | None = None,
        webhooks: WebhookManager | None = None,
        renderer: TemplateRenderer | None = None,
        idempotency: IdempotencyStore | None = None,
        retry_policy: RetryPolicy | None = None,
        max_parallelism: int = 8,
        deadline_s: float = 30.0,
        dedupe_window_s: float = 300.0,
        sleep: Callable[[float], Any] = asyncio.sleep,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        if max_parallelism < 1:
            raise ValueError("max_parallelism must be >= 1")
        if deadline_s <= 0:
            raise ValueError("deadline_s must be > 0")
        self.router = router
        self.channels = channels
        self.rate_limits = rate_limits or RateLimitManager()
        self.tracker = tracker or InMemoryDeliveryTracker()
        self.webhooks = webhooks or WebhookManager()
        self.renderer = renderer or JinjaTemplateRenderer()
        self.idempotency = idempotency or InMemoryIdempotencyStore()
        self.retry_policy = retry_policy or RetryPolicy()
        self.max_parallelism = max_parallelism
        self.deadline_s = deadline_s
        self.dedupe_window_s = dedupe_window_s
        self._sleep = sleep
        self._now = clock
        self._inflight: dict[str, asyncio.Task[NotificationResult]] = {}
        self._background: set[asyncio.Task[Any]] = set()

    # ── request parsing ──

    @staticmethod
    def parse_request(data: NotificationRequest | Mapping[str, Any] | str | bytes) -> NotificationRequest:
        """Coerce *data* into a ``NotificationRequest``.

        Raises:
            InvalidRequestError: If *data* is malformed.
        """
        if isinstance(data, NotificationRequest):
            return data
        try:
            if isinstance(data, (str, bytes)):
                return NotificationRequest.model_validate_json(data)
            if isinstance(data, Mapping):
                return NotificationRequest.model_validate(dict(data))
        except ValidationError as exc:
            raise InvalidRequestError(str(exc)) from exc
        raise InvalidRequestError(f"unsupported request type: {type(data).__name__}")

    # ── dispatch ──

    async def dispatch(self, request: NotificationRequest | Mapping[str, Any]) -> NotificationResult:
        """Deliver *request* over its planned channels and matching webhooks.

        Returns:
            The aggregate result.  ``deduplicated`` is ``True`` when the
            result was served from the idempotency store or a concurrent
            in-flight dispatch of the same id.

        Raises:
            InvalidRequestError: If *request* is malformed.
        """
        request = self.parse_request(request)

        # One shared task per id; a caller that is cancelled only stops
        # waiting, the dispatch itself runs to completion.
        inflight = self._inflight.get(request.id)
        if inflight is not None:
            logger.info("dispatch_joined_inflight", request_id=request.id)
            result = await asyncio.shield(inflight)
            return result.model_copy(update={"deduplicated": True})

        inflight = asyncio.get_running_loop().create_task(self._dispatch_once(request))
        self._inflight[request.id] = inflight
        inflight.add_done_callback(lambda task: self._forget_inflight(request.id, task))
        return await asyncio.shield(inflight)

    async def _dispatch_once(self, request: NotificationRequest) -> NotificationResult:
        cached = await self.idempotency.get(request.id)
        if cached is not None:
            logger.info("dispatch_deduplicated", request_id=request.id)
            return cached.model_copy(update={"deduplicated": True})
        result = await self._dispatch(request)
        await self.idempotency.put(request.id, result, self.dedupe_window_s)
        return result

    def _forget_inflight(self, request_id: str, task: asyncio.Task[NotificationResult]) -> None:
        if self._inflight.get(request_id) is task:
            del self._inflight[request_id]
        if not task.cancelled() and task.exception() is not None:
            logger.debug("dispatch_failed", request_id=request_id, error=str(task.exception()))

    async def dispatch_bulk(
        self,
        requests: list[NotificationRequest | Mapping[str, Any]],
    ) -> list[NotificationResult]:
        """Dispatch several requests concurrently, results in input order.

        Every request is validated before anything is delivered.

        Raises:
            InvalidRequestError: If any request is malformed.
        """
        parsed: list[NotificationRequest] = []
        for index, item in enumerate(requests):
            try:
                parsed.append(self.parse_request(item))
            except InvalidRequestError as exc:
                raise InvalidRequestError(f"request #{index}: {exc}") from exc
        return list(await asyncio.gather(*(self.dispatch(r) for r in parsed)))

    async def _dispatch(self, request: NotificationRequest) -> NotificationResult:
        loop = asyncio.get_running_loop()
        started = time.perf_counter()
        deadline = loop.time() + self.deadline_s
        semaphore = asyncio.Semaphore(self.max_parallelism)
        log = logger.bind(request_id=request.id, severity=request.severity.value)

        request = self.router.resolve_recipient(request)
        decision = self.router.route(request)
        route_error = None if decision.entries else str(RoutingError(request.id))

        channel_tasks: list[tuple[RouteEntry, _ChannelProgress, asyncio.Task[ChannelResult]]] = []
        for entry in decision.entries:
            progress = _ChannelProgress()
            task = loop.create_task(self._deliver_channel(request, entry, progress, deadline, semaphore))
            channel_tasks.append((entry, progress, task))

        webhook_tasks: list[tuple[WebhookEndpoint, asyncio.Task[WebhookDeliveryResult]]] = [
            (
                endpoint,
                loop.create_task(
                    self.webhooks.deliver(endpoint, request, deadline=deadline, semaphore=semaphore)
                ),
            )
            for endpoint in self.webhooks.matching_endpoints(request)
        ]

        tasks: list[asyncio.Task[Any]] = [t for _, _, t in channel_tasks] + [t for _, t in webhook_tasks]
        timed_out = False
        if tasks:
            try:
                _, pending = await asyncio.wait(tasks, timeout=self.deadline_s)
            except asyncio.CancelledError:
                self._keep_in_background(t for t in tasks if not t.done())
                raise
            timed_out = bool(pending)
            self._keep_in_background(pending)

        channel_results = [
            self._channel_outcome(entry, progress, task) for entry, progress, task in channel_tasks
        ]
        webhook_results = [
            self._webhook_outcome(endpoint, request, task) for endpoint, task in webhook_tasks
        ]
        escalate_to = self._escalation(request, channel_results)
        if escalate_to:
            log.warning("notification_escalated", recipients=escalate_to)
        result = NotificationResult(
            request_id=request.id,
            route_decision=decision,
            channel_results=channel_results,
            webhook_results=webhook_results,
            route_error=route_error,
            timed_out=timed_out,
            escalate_to=escalate_to,
        )
        dispatch_latency_seconds.observe(time.perf_counter() - started)
        log.info(
            "notification_dispatched",
            channels=decision.channels,
            delivered=result.delivered_channels,
            webhooks=len(webhook_results),
            timed_out=timed_out,
            unrouted=route_error is not None,
        )
        return result

    def _escalation(self, request: NotificationRequest, channel_results: list[ChannelResult]) -> list[str]:
        if not channel_results or any(r.status == ChannelStatus.DELIVERED for r in channel_results):
            return []
        failed_attempts = sum(r.attempts for r in channel_results)
        if not self.router.should_escalate(request, failed_attempts):
            return []
        return self.router.get_escalation_recipients(request)

    def _keep_in_background(self, tasks: Iterable[asyncio.Task[Any]]) -> None:
        for task in tasks:
            self._background.add(task)
            task.add_done_callback(self._forget_background)

    def _forget_background(self, task: asyncio.Task[Any]) -> None:
        self._background.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("background_delivery_failed", error=str(task.exception()))

    @staticmethod
    def _channel_outcome(
        entry: RouteEntry,
        progress: _ChannelProgress,
        task: asyncio.Task[ChannelResult],
    ) -> ChannelResult:
        if not task.done():
            return ChannelResult(
                channel=entry.channel,
                rule_id=entry.rule_id,
                status=ChannelStatus.TIMED_OUT,
                attempts=progress.attempts,
                error=_DEADLINE_EXCEEDED,
            )
        if task.exception() is not None:
            return ChannelResult(
                channel=entry.channel,
                rule_id=entry.rule_id,
                status=ChannelStatus.FAILED,
                attempts=progress.attempts,
                error=str(task.exception()),
            )
        return task.result()

    @staticmethod
    def _webhook_outcome(
        endpoint: WebhookEndpoint,
        request: NotificationRequest,
        task: asyncio.Task[WebhookDeliveryResult],
    ) -> WebhookDeliveryResult:
        if task.done() and task.exception() is None:
            return task.result()
        timed_out = not task.done()
        return WebhookDeliveryResult(
            endpoint_id=endpoint.id,
            request_id=request.id,
            status=WebhookDeliveryStatus.TIMED_OUT if timed_out else WebhookDeliveryStatus.FAILED,
            error=_DEADLINE_EXCEEDED if timed_out else str(task.exception()),
        )

    # ── per-channel delivery ──

    @staticmethod
    def render_context(request: NotificationRequest, channel: str) -> dict[str, Any]:
        """Template context: the payload context plus request metadata."""
        return {
            **request.payload_context,
            "channel": channel,
            "request": {
                "id": request.id,
                "severity": request.severity.value,
                "tags": sorted(request.tags),
                "recipient": request.recipient,
                "event_type": request.event_type,
                "template_id": request.template_id,
                "created_at": request.created_at.isoformat(),
            },
        }

    async def _deliver_channel(
        self,
        request: NotificationRequest,
        entry: RouteEntry,
        progress: _ChannelProgress,
        deadline: float,
        semaphore: asyncio.Semaphore,
    ) -> ChannelResult:
        """Run one channel's attempt sequence; always closes it with a terminal record."""
        loop = asyncio.get_running_loop()
        name = entry.channel
        log = logger.bind(request_id=request.id, channel=name, rule_id=entry.rule_id)
        numbers = itertools.count(1)

        async def record(
            outcome: DeliveryOutcome,
            started_at: datetime,
            *,
            error_class: ErrorClass | None = None,
            error: str | None = None,
            latency_ms: float = 0.0,
            provider_message_id: str | None = None,
        ) -> None:
            attempt = DeliveryAttempt(
                request_id=request.id,
                channel=name,
                attempt_number=next(numbers),
                started_at=started_at,
                finished_at=max(started_at, self._now()),
                outcome=outcome,
                error_class=error_class,
                error_message=error,
                latency_ms=latency_ms,
                provider_message_id=provider_message_id,
                rule_id=entry.rule_id,
            )
            await self.tracker.record(attempt)
            channel_attempts_total.labels(channel=name, outcome=outcome.value).inc()

        def result(status: ChannelStatus, **fields: Any) -> ChannelResult:
            return ChannelResult(
                channel=name,
                rule_id=entry.rule_id,
                status=status,
                attempts=progress.attempts,
                **fields,
            )

        async def give_up(error_class: ErrorClass, error: str) -> None:
            await record(DeliveryOutcome.EXHAUSTED, self._now(), error_class=error_class, error=error)

        # ── channel lookup ──
        channel = self.channels.get(name)
        if channel is None or not channel.enabled:
            error = "channel not configured" if channel is None else "channel disabled"
            log.warning("channel_unavailable", reason=error)
            await record(DeliveryOutcome.FAILED, self._now(), error_class=ErrorClass.PERMANENT, error=error)
            await give_up(ErrorClass.PERMANENT, error)
            return result(ChannelStatus.FAILED, error=error)

        # ── rate limit ──
        scope_key = self.rate_limits.scope_key_for(name, request.recipient, entry.rule_id)
        try:
            self.rate_limits.acquire(name, scope_key)
        except RateLimitExceeded as exc:
            await record(
                DeliveryOutcome.RATE_LIMITED,
                self._now(),
                error_class=ErrorClass.TRANSIENT,
                error=str(exc),
            )
            await give_up(ErrorClass.TRANSIENT, "rate limited")
            return result(ChannelStatus.RATE_LIMITED, error=str(exc), retry_after_ms=exc.retry_after_ms)

        # ── render ──
        template_id = f"{name}/{request.template_id}"
        try:
            payload = self.renderer.render(template_id, self.render_context(request, name))
        except Exception as exc:  # noqa: BLE001
            error = f"render failed: {exc}"
            log.warning("channel_render_failed", template_id=template_id, error=str(exc))
            await record(DeliveryOutcome.FAILED, self._now(), error_class=ErrorClass.PERMANENT, error=error)
            await give_up(ErrorClass.PERMANENT, error)
            return result(ChannelStatus.FAILED, error=error)

        # ── send with retry ──
        at_deadline = stop_before_deadline(deadline, loop.time)
        retrying = AsyncRetrying(
            stop=self.retry_policy.stop() | at_deadline,
            wait=self.retry_policy.wait(),
            retry=retry_if_exception(_is_transient),
            sleep=self._sleep,
            reraise=True,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    started_at = self._now()
                    t0 = time.perf_counter()
                    progress.attempts += 1
                    try:
                        async with semaphore:
                            outcome = await channel.send(payload, request.recipient)
                    except ChannelSendError as exc:
                        outcome = SendResult.fail(str(exc), transient=exc.transient)
                    except Exception as exc:  # noqa: BLE001
                        outcome = SendResult.fail(f"unexpected adapter error: {exc!r}", transient=True)
                    latency_ms = (time.perf_counter() - t0) * 1000

                    if not outcome.success:
                        failure = outcome.error or SendError(message="send failed without details")
                        await record(
                            DeliveryOutcome.FAILED,
                            started_at,
                            error_class=ErrorClass.TRANSIENT if failure.transient else ErrorClass.PERMANENT,
                            error=failure.message,
                            latency_ms=latency_ms,
                        )
                        log.warning(
                            "channel_send_failed",
                            attempt=progress.attempts,
                            transient=failure.transient,
                            error=failure.message,
                        )
                        raise ChannelSendError(failure.message, transient=failure.transient)
        except ChannelSendError as exc:
            status = ChannelStatus.TIMED_OUT if at_deadline.reached else ChannelStatus.FAILED
            error = _DEADLINE_EXCEEDED if at_deadline.reached else str(exc)
            await give_up(ErrorClass.TRANSIENT if exc.transient else ErrorClass.PERMANENT, error)
            log.warning("channel_exhausted", attempts=progress.attempts, error=error)
            return result(status, error=error)

        await record(
            DeliveryOutcome.DELIVERED,
            started_at,
            latency_ms=latency_ms,
            provider_message_id=outcome.provider_message_id,
        )
        log.info("channel_delivered", attempts=progress.attempts)
        return result(ChannelStatus.DELIVERED, provider_message_id=outcome.provider_message_id)

    # ── queries ──

    async def get_history(self, request_id: str) -> list[DeliveryAttempt]:
        return await self.tracker.get_history(request_id)

    async def get_metrics(self, metrics_filter: MetricsFilter | None = None) -> DeliveryMetrics:
        return await self.tracker.get_metrics(metrics_filter)

    async def get_status(self, request_id: str) -> NotificationStatus:
        return await self.tracker.get_status(request_id)

    async def acknowledge(self, request_id: str, user_id: str, notes: str | None = None) -> NotificationStatus:
        """Record that *user_id* has seen *request_id* and return the updated status.

        Raises:
            InvalidRequestError: If either id is empty.
        """
        try:
            acknowledgement = Acknowledgement(
                request_id=request_id,
                acknowledged_by=user_id,
                acknowledged_at=self._now(),
                notes=notes,
            )
        except ValidationError as exc:
            raise InvalidRequestError(str(exc)) from exc
        await self.tracker.record_acknowledgement(acknowledgement)
        logger.info("notification_acknowledged", request_id=request_id, acknowledged_by=user_id)
        return await self.get_status(request_id)

    async def cleanup(self, older_than: datetime) -> int:
        """Drop tracking records older than *older_than*."""
        return await self.tracker.cleanup(older_than)

    async def health(self) -> dict[str, Any]:
        """Component status summary for the health endpoint."""
        tracker = await self.tracker.health()
        return {
            "status": "degraded" if tracker.get("degraded") else "ok",
            "channels": self.channels.names,
            "tracker": tracker,
            "router": self.router.statistics(),
            "rate_limits": self.rate_limits.stats(),
            "webhooks": self.webhooks.health(),
            "inflight": len(self._inflight),
            "background": len(self._background),
        }

    # ── pub/sub listener ──

    async def listen(self, pubsub: Any) -> None:
        """Consume JSON requests from a Redis ``PubSub`` and dispatch them.

        Runs until the subscription ends or the task is cancelled.
        Malformed messages are logged and skipped.

        Args:
            pubsub: An ``aioredis.client.PubSub`` already subscribed to
                    the request channel.
        """
        log = logger.bind(component="notification_listener")
        log.info("listener_started")
        async for message in pubsub.listen():
            if message.get("type") != "message":
                continue
            raw = message.get("data", "")
            try:
                request = self.parse_request(json.loads(raw) if isinstance(raw, (str, bytes)) else raw)
            except (json.JSONDecodeError, InvalidRequestError) as exc:
                log.warning("listener_message_invalid", error=str(exc))
                continue
            await self.dispatch(request)

    async def close(self) -> None:
        """Wait for in-flight dispatches and background deliveries, then release every collaborator."""
        if self._inflight:
            await asyncio.gather(*self._inflight.values(), return_exceptions=True)
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)
        await self.webhooks.close()
        await self.channels.close()
        await self.tracker.close()
