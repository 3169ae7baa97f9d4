"""
Tests for the notification dispatch service.

Validates the per-channel attempt lifecycle (rate limit, render, send,
retry, terminal record), webhook fan-out, deadlines, idempotent
dispatch, bulk dispatch and the pub/sub listener.
"""

from __future__ import annotations

import asyncio
import json
from datetime import timedelta
from typing import Any

import httpx
import pytest

from conftest import T0, BlockingChannel, ScriptedChannel
from herald_common.models.delivery import DeliveryOutcome, ErrorClass
from herald_common.models.oncall import OnCallSchedule, OnCallShift
from herald_common.models.rate_limit import RateLimitConfig
from herald_common.models.result import ChannelStatus
from herald_common.models.webhook import WebhookDeliveryStatus
from notifications.channels.base import Channel, ChannelRegistry, SendResult
from notifications.errors import ChannelSendError, InvalidRequestError
from notifications.ratelimit import RateLimitManager
from notifications.retry import RetryPolicy
from notifications.router import SmartRouter
from notifications.rule_builder import RoutingRuleBuilder
from notifications.service import NotificationService
from notifications.templates import JinjaTemplateRenderer
from notifications.tracking import InMemoryDeliveryTracker, RedisDeliveryTracker
from notifications.webhooks import WebhookManager

_POLICY = RetryPolicy(max_attempts=3, initial_delay_s=0.5, multiplier=2.0, jitter=0.0)


# ── helpers ──


class Sleeps:
    """Fake ``asyncio.sleep`` recording requested delays."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


def _service(
    *channels: Channel,
    routes: tuple[str, ...] | None = None,
    sleeps: Sleeps | None = None,
    **kwargs: Any,
) -> NotificationService:
    names = routes if routes is not None else tuple(c.name for c in channels)
    rules = [RoutingRuleBuilder("all").to(*names).build()] if names else []
    kwargs.setdefault("retry_policy", _POLICY)
    kwargs.setdefault("deadline_s", 5.0)
    return NotificationService(
        router=SmartRouter(rules),
        channels=ChannelRegistry(list(channels)),
        sleep=sleeps or Sleeps(),
        **kwargs,
    )


async def _outcomes(service: NotificationService, request_id: str, channel: str) -> list[str]:
    history = await service.get_history(request_id)
    return [a.outcome.value for a in history if a.channel == channel]


def _terminal_count(history, channel: str) -> int:
    return sum(1 for a in history if a.channel == channel and a.outcome.is_terminal)


# ── attempt lifecycle ──


class TestChannelLifecycle:

    async def test_transient_failures_then_delivery(self, sample_request) -> None:
        sms = ScriptedChannel(
            "sms",
            [SendResult.fail("gateway busy"), SendResult.fail("gateway busy"), SendResult.ok("msg-1")],
        )
        sleeps = Sleeps()
        service = _service(sms, sleeps=sleeps)

        result = await service.dispatch(sample_request)

        [channel] = result.channel_results
        assert channel.status == ChannelStatus.DELIVERED
        assert channel.attempts == 3
        assert channel.provider_message_id == "msg-1"
        history = await service.get_history("req-001")
        assert [a.outcome for a in history] == [
            DeliveryOutcome.FAILED,
            DeliveryOutcome.FAILED,
            DeliveryOutcome.DELIVERED,
        ]
        assert [a.attempt_number for a in history] == [1, 2, 3]
        assert all(a.rule_id == "all" for a in history)
        assert sleeps.delays == [0.5, 1.0]

    async def test_rendered_payload_reaches_channel(self, sample_request) -> None:
        sms = ScriptedChannel("sms")
        await _service(sms).dispatch(sample_request)
        assert sms.sent == [("[CRITICAL] primary database unreachable", "+15550100")]

    async def test_exhausted_after_max_attempts(self, sample_request) -> None:
        sms = ScriptedChannel("sms", [SendResult.fail("timeout")] * 3)
        service = _service(sms)

        result = await service.dispatch(sample_request)

        assert result.channel_results[0].status == ChannelStatus.FAILED
        assert result.channel_results[0].error == "timeout"
        assert await _outcomes(service, "req-001", "sms") == ["failed", "failed", "failed", "exhausted"]
        history = await service.get_history("req-001")
        assert history[-1].attempt_number == 4
        assert history[-1].error_class == ErrorClass.TRANSIENT

    async def test_permanent_failure_is_not_retried(self, sample_request) -> None:
        sms = ScriptedChannel("sms", [SendResult.fail("invalid number", transient=False)])
        sleeps = Sleeps()
        service = _service(sms, sleeps=sleeps)

        result = await service.dispatch(sample_request)

        assert result.channel_results[0].status == ChannelStatus.FAILED
        assert result.channel_results[0].attempts == 1
        history = await service.get_history("req-001")
        assert [a.outcome for a in history] == [DeliveryOutcome.FAILED, DeliveryOutcome.EXHAUSTED]
        assert history[0].error_class == ErrorClass.PERMANENT
        assert sleeps.delays == []

    async def test_adapter_exceptions_are_classified(self, sample_request) -> None:
        sms = ScriptedChannel(
            "sms",
            [ChannelSendError("socket reset"), RuntimeError("bug"), SendResult.ok("msg-9")],
        )
        service = _service(sms)
        result = await service.dispatch(sample_request)
        assert result.channel_results[0].status == ChannelStatus.DELIVERED
        assert result.channel_results[0].attempts == 3

    async def test_permanent_channel_send_error(self, sample_request) -> None:
        sms = ScriptedChannel("sms", [ChannelSendError("blocked recipient", transient=False)])
        service = _service(sms)
        result = await service.dispatch(sample_request)
        assert result.channel_results[0].attempts == 1
        assert await _outcomes(service, "req-001", "sms") == ["failed", "exhausted"]

    async def test_partial_failure_reports_every_channel(self, sample_request) -> None:
        sms = ScriptedChannel("sms")
        email = ScriptedChannel("email", [SendResult.fail("mailbox full", transient=False)])
        result = await _service(sms, email).dispatch(sample_request)
        statuses = {r.channel: r.status for r in result.channel_results}
        assert statuses == {"sms": ChannelStatus.DELIVERED, "email": ChannelStatus.FAILED}
        assert result.delivered_channels == ["sms"]


class TestPreSendFailures:

    async def test_rate_limited_channel(self, make_request) -> None:
        sms = ScriptedChannel("sms")
        limits = RateLimitManager(
            {"sms": RateLimitConfig(algorithm="token-bucket", capacity=1, refill_rate_per_sec=0.01)}
        )
        service = _service(sms, rate_limits=limits)

        await service.dispatch(make_request(id="req-1"))
        result = await service.dispatch(make_request(id="req-2"))

        [channel] = result.channel_results
        assert channel.status == ChannelStatus.RATE_LIMITED
        assert channel.attempts == 0
        assert channel.retry_after_ms > 0
        assert await _outcomes(service, "req-2", "sms") == ["rate_limited", "exhausted"]
        history = await service.get_history("req-2")
        assert [a.attempt_number for a in history] == [1, 2]
        assert len(sms.sent) == 1

    async def test_template_error_fails_channel_permanently(self, sample_request) -> None:
        sms = ScriptedChannel("sms")
        service = _service(sms, renderer=JinjaTemplateRenderer({"default": "{{ host }} down"}))

        result = await service.dispatch(sample_request)

        assert result.channel_results[0].status == ChannelStatus.FAILED
        assert "render failed" in result.channel_results[0].error
        history = await service.get_history("req-001")
        assert [a.outcome for a in history] == [DeliveryOutcome.FAILED, DeliveryOutcome.EXHAUSTED]
        assert history[0].error_class == ErrorClass.PERMANENT
        assert sms.sent == []

    async def test_unconfigured_channel(self, sample_request) -> None:
        service = _service(ScriptedChannel("sms"), routes=("sms", "voice"))
        result = await service.dispatch(sample_request)
        voice = next(r for r in result.channel_results if r.channel == "voice")
        assert voice.status == ChannelStatus.FAILED
        assert voice.error == "channel not configured"
        assert await _outcomes(service, "req-001", "voice") == ["failed", "exhausted"]

    async def test_disabled_channel(self, sample_request) -> None:
        sms = ScriptedChannel("sms")
        sms.enabled = False
        result = await _service(sms).dispatch(sample_request)
        assert result.channel_results[0].error == "channel disabled"
        assert sms.sent == []


class TestTerminalRecord:

    @pytest.mark.parametrize(
        "script",
        [
            [],
            [SendResult.fail("x")] * 3,
            [SendResult.fail("x", transient=False)],
            [SendResult.fail("x"), SendResult.ok()],
        ],
        ids=["delivered", "exhausted", "permanent", "retried"],
    )
    async def test_exactly_one_terminal_record(self, sample_request, script) -> None:
        service = _service(ScriptedChannel("sms", script))
        await service.dispatch(sample_request)
        history = await service.get_history("req-001")
        assert _terminal_count(history, "sms") == 1
        assert history[-1].outcome.is_terminal


# ── routing and webhooks ──


class TestRoutingAndWebhooks:

    def _webhooks(self, statuses: list[int]) -> WebhookManager:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(statuses.pop(0) if statuses else 200)

        return WebhookManager(
            retry_policy=RetryPolicy(max_attempts=2, initial_delay_s=0.0, jitter=0.0),
            client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
        )

    async def test_unrouted_request_still_fans_out(self, sample_request) -> None:
        webhooks = self._webhooks([200])
        webhooks.register("https://hooks.example.com/a", "whsec-0123456789", endpoint_id="wh_a")
        service = _service(routes=(), webhooks=webhooks)

        result = await service.dispatch(sample_request)

        assert result.route_decision.is_empty
        assert result.channel_results == []
        assert "no routing rule matched" in result.route_error
        assert [r.status for r in result.webhook_results] == [WebhookDeliveryStatus.DELIVERED]

    async def test_webhook_failure_does_not_affect_channels(self, sample_request) -> None:
        webhooks = self._webhooks([500, 500])
        webhooks.register("https://hooks.example.com/a", "whsec-0123456789")
        result = await _service(ScriptedChannel("sms"), webhooks=webhooks).dispatch(sample_request)
        assert result.channel_results[0].status == ChannelStatus.DELIVERED
        assert result.webhook_results[0].status == WebhookDeliveryStatus.FAILED
        assert result.webhook_results[0].attempt == 2

    async def test_parallelism_bound(self, sample_request) -> None:
        class Counting(Channel):
            active = 0
            peak = 0

            def __init__(self, name: str) -> None:
                self.name = name

            async def send(self, rendered_payload: str, recipient: str) -> SendResult:
                Counting.active += 1
                Counting.peak = max(Counting.peak, Counting.active)
                await asyncio.sleep(0.01)
                Counting.active -= 1
                return SendResult.ok()

        service = _service(Counting("sms"), Counting("email"), Counting("voice"), max_parallelism=1)
        result = await service.dispatch(sample_request)
        assert len(result.delivered_channels) == 3
        assert Counting.peak == 1


# ── deadlines ──


class TestDeadline:

    async def test_pending_channel_reported_timed_out(self, sample_request) -> None:
        voice = BlockingChannel("voice")
        service = _service(voice, deadline_s=0.05)

        result = await service.dispatch(sample_request)

        assert result.timed_out is True
        [channel] = result.channel_results
        assert channel.status == ChannelStatus.TIMED_OUT
        assert channel.attempts == 1
        assert channel.error == "deadline exceeded"

        voice.release.set()
        await service.close()
        assert await _outcomes(service, "req-001", "voice") == ["delivered"]

    async def test_retry_past_deadline_not_scheduled(self, sample_request) -> None:
        sms = ScriptedChannel("sms", [SendResult.fail("busy")])
        sleeps = Sleeps()
        policy = RetryPolicy(max_attempts=3, initial_delay_s=10.0, jitter=0.0)
        service = _service(sms, sleeps=sleeps, retry_policy=policy, deadline_s=1.0)

        result = await service.dispatch(sample_request)

        assert result.channel_results[0].status == ChannelStatus.TIMED_OUT
        assert result.channel_results[0].attempts == 1
        assert sleeps.delays == []
        assert await _outcomes(service, "req-001", "sms") == ["failed", "exhausted"]


# ── idempotency ──


class TestIdempotentDispatch:

    async def test_repeat_returns_stored_result(self, sample_request) -> None:
        sms = ScriptedChannel("sms")
        service = _service(sms)

        first = await service.dispatch(sample_request)
        second = await service.dispatch(sample_request)

        assert first.deduplicated is False
        assert second.deduplicated is True
        assert second.channel_results == first.channel_results
        assert len(sms.sent) == 1

    async def test_concurrent_duplicate_joins_inflight(self, sample_request) -> None:
        voice = BlockingChannel("voice")
        service = _service(voice)

        first = asyncio.create_task(service.dispatch(sample_request))
        await asyncio.sleep(0)
        second = asyncio.create_task(service.dispatch(sample_request))
        await asyncio.sleep(0)
        voice.release.set()
        results = await asyncio.gather(first, second)

        assert voice.calls == 1
        assert sorted(r.deduplicated for r in results) == [False, True]

    async def test_cancelled_caller_does_not_fail_joined_duplicate(self, sample_request) -> None:
        voice = BlockingChannel("voice")
        service = _service(voice)

        first = asyncio.create_task(service.dispatch(sample_request))
        await asyncio.sleep(0)
        second = asyncio.create_task(service.dispatch(sample_request))
        await asyncio.sleep(0)
        first.cancel()
        with pytest.raises(asyncio.CancelledError):
            await first
        voice.release.set()
        result = await second

        assert result.deduplicated is True
        assert result.channel_results[0].status == ChannelStatus.DELIVERED
        assert voice.calls == 1

    async def test_close_waits_for_dispatch_whose_caller_left(self, sample_request) -> None:
        voice = BlockingChannel("voice")
        service = _service(voice)

        caller = asyncio.create_task(service.dispatch(sample_request))
        await asyncio.sleep(0)
        caller.cancel()
        with pytest.raises(asyncio.CancelledError):
            await caller
        voice.release.set()
        await service.close()

        assert await _outcomes(service, "req-001", "voice") == ["delivered"]
        assert await service.idempotency.get("req-001") is not None
        assert (await service.health())["inflight"] == 0

    async def test_different_ids_both_delivered(self, make_request) -> None:
        sms = ScriptedChannel("sms")
        service = _service(sms)
        await service.dispatch(make_request(id="a"))
        await service.dispatch(make_request(id="b"))
        assert len(sms.sent) == 2


# ── request parsing and bulk ──


class TestRequests:

    async def test_mapping_and_json_accepted(self) -> None:
        sms = ScriptedChannel("sms")
        service = _service(sms)
        await service.dispatch({"id": "m-1", "severity": "info", "recipient": "ops"})
        await service.dispatch(json.dumps({"id": "m-2", "severity": "info", "recipient": "ops"}))
        assert len(sms.sent) == 2

    async def test_invalid_request_raises(self) -> None:
        service = _service(ScriptedChannel("sms"))
        with pytest.raises(InvalidRequestError):
            await service.dispatch({"id": "m-1", "severity": "loud"})
        with pytest.raises(InvalidRequestError):
            NotificationService.parse_request(42)  # type: ignore[arg-type]

    async def test_bulk_preserves_order(self, make_request) -> None:
        service = _service(ScriptedChannel("sms"))
        results = await service.dispatch_bulk([make_request(id=f"b-{i}") for i in range(3)])
        assert [r.request_id for r in results] == ["b-0", "b-1", "b-2"]

    async def test_bulk_validates_before_delivering(self, make_request) -> None:
        sms = ScriptedChannel("sms")
        service = _service(sms)
        with pytest.raises(InvalidRequestError, match="request #1"):
            await service.dispatch_bulk([make_request(id="ok"), {"id": "bad"}])
        assert sms.sent == []


# ── status, acknowledgement, on-call ──


class TestStatusAndAcknowledgement:

    async def test_status_follows_delivery_then_acknowledgement(self, sample_request) -> None:
        service = _service(ScriptedChannel("sms"))
        assert (await service.get_status("req-001")).state.value == "pending"
        await service.dispatch(sample_request)
        assert (await service.get_status("req-001")).state.value == "delivered"
        status = await service.acknowledge("req-001", "oncall-1", notes="on it")
        assert status.state.value == "acknowledged"
        assert status.acknowledgements[0].acknowledged_by == "oncall-1"
        assert status.acknowledgements[0].notes == "on it"

    async def test_exhausted_request_is_failed(self, sample_request) -> None:
        failure = SendResult.fail("carrier rejected", transient=False)
        service = _service(ScriptedChannel("sms", [failure]))
        await service.dispatch(sample_request)
        assert (await service.get_status("req-001")).state.value == "failed"

    async def test_empty_acknowledger_rejected(self) -> None:
        with pytest.raises(InvalidRequestError):
            await _service(ScriptedChannel("sms")).acknowledge("req-001", "")

    async def test_on_call_recipient_resolved_and_escalated(self, make_request) -> None:
        schedule = OnCallSchedule(
            schedule_id="primary",
            shifts=(OnCallShift(user_id="bob", start=T0, end=T0 + timedelta(hours=8), contact="+15550111"),),
            escalation_contacts=("dba-lead",),
        )
        router = SmartRouter(
            [RoutingRuleBuilder("all").to("sms").build()],
            schedules=[schedule],
            emergency_contacts=("cto",),
            clock=lambda: T0 + timedelta(hours=1),
        )
        sms = ScriptedChannel("sms", [SendResult.fail("gateway busy")] * 3)
        service = NotificationService(
            router=router,
            channels=ChannelRegistry([sms]),
            retry_policy=_POLICY,
            sleep=Sleeps(),
        )
        result = await service.dispatch(make_request(severity="critical", recipient="oncall:primary"))
        assert [recipient for _, recipient in sms.sent] == ["+15550111"] * 3
        assert result.escalate_to == ["cto", "+15550111", "dba-lead"]

    async def test_delivered_request_never_escalates(self, sample_request) -> None:
        service = _service(ScriptedChannel("sms", [SendResult.fail("busy"), SendResult.ok("m-1")]))
        result = await service.dispatch(sample_request)
        assert result.escalate_to == []

    async def test_cleanup_delegates_to_tracker(self, sample_request) -> None:
        service = _service(ScriptedChannel("sms"))
        await service.dispatch(sample_request)
        history = await service.get_history("req-001")
        assert await service.cleanup(history[-1].finished_at + timedelta(seconds=1)) == len(history)
        assert await service.get_history("req-001") == []


# ── listener, health, close ──


class FakePubSub:

    def __init__(self, messages: list[dict[str, Any]]) -> None:
        self._messages = messages

    async def listen(self):
        for message in self._messages:
            yield message


class TestListenerAndHealth:

    async def test_listener_dispatches_valid_messages(self) -> None:
        sms = ScriptedChannel("sms")
        service = _service(sms)
        pubsub = FakePubSub(
            [
                {"type": "subscribe", "data": 1},
                {"type": "message", "data": "not json"},
                {"type": "message", "data": json.dumps({"id": "p-1"})},
                {"type": "message", "data": json.dumps({"id": "p-2", "severity": "error", "recipient": "ops"})},
            ]
        )
        await service.listen(pubsub)
        assert len(sms.sent) == 1
        assert await service.get_history("p-2") != []

    async def test_health_ok(self, sample_request) -> None:
        service = _service(ScriptedChannel("sms"))
        await service.dispatch(sample_request)
        health = await service.health()
        assert health["status"] == "ok"
        assert health["channels"] == ["sms"]
        assert health["router"]["routed"] == 1
        assert health["tracker"]["backend"] == "memory"

    async def test_health_degraded_with_unreachable_tracker(self, fake_redis) -> None:
        fake_redis.down = True
        service = _service(ScriptedChannel("sms"), tracker=RedisDeliveryTracker(fake_redis))
        assert (await service.health())["status"] == "degraded"

    async def test_metrics_query(self, sample_request) -> None:
        service = _service(ScriptedChannel("sms"), tracker=InMemoryDeliveryTracker())
        await service.dispatch(sample_request)
        metrics = await service.get_metrics()
        assert metrics.success_rate == 1.0
        assert metrics.counts_by_channel == {"sms": 1}

    async def test_close_releases_channels(self) -> None:
        sms = ScriptedChannel("sms")
        service = _service(sms)
        await service.close()
        assert sms.closed is True

    def test_invalid_construction(self) -> None:
        with pytest.raises(ValueError):
            _service(max_parallelism=0)
        with pytest.raises(ValueError):
            _service(deadline_s=0)
