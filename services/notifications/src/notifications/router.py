"""
Smart router for Herald.

Evaluates routing rules in ascending priority order (ties keep the
order the rules were added) and turns matching rules into an ordered,
deduplicated channel plan.

* A matching ``first-match`` rule contributes its channels and stops
  evaluation.
* A matching ``accumulate`` rule contributes its channels and lets
  evaluation continue.
* A channel already planned keeps the entry of the rule that planned it
  first.
* No match yields an empty ``RouteDecision``; the caller decides how to
  report it.

The router also owns the on-call schedules: it resolves ``oncall:``
recipients to whoever is on call and decides when, and to whom, a
failing request escalates.
"""

from __future__ import annotations

import enum
import itertools
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Mapping

import structlog

from herald_common.models.notification import NotificationRequest, Severity
from herald_common.models.oncall import ON_CALL_PREFIX, OnCallAssignment, OnCallSchedule
from herald_common.models.result import RouteDecision, RouteEntry

logger = structlog.get_logger()

Predicate = Callable[[NotificationRequest, datetime], bool]

DEFAULT_ESCALATION_THRESHOLDS: dict[Severity, int] = {Severity.CRITICAL: 2, Severity.ERROR: 5}


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class MatchMode(str, enum.Enum):
    """How a matching rule affects the rest of the evaluation."""

    FIRST_MATCH = "first-match"
    ACCUMULATE = "accumulate"


@dataclass(frozen=True)
class RoutingRule:
    """Immutable predicate-to-channels mapping.

    Attributes:
        rule_id: Unique identifier, reported with each planned channel.
        channels: Channels planned when the predicate matches, in order.
        predicate: ``(request, now) -> bool``.
        priority: Lower values are evaluated first.
        mode: ``first-match`` or ``accumulate``.
        enabled: Disabled rules are skipped.
        description: Free-form text for operators.
    """

    rule_id: str
    channels: tuple[str, ...]
    predicate: Predicate = field(compare=False)
    priority: int = 100
    mode: MatchMode = MatchMode.FIRST_MATCH
    enabled: bool = True
    description: str = ""


@dataclass
class _RouterStats:
    routed: int = 0
    unrouted: int = 0
    predicate_errors: int = 0
    rule_matches: dict[str, int] = field(default_factory=dict)


class SmartRouter:
    """Owns the routing rules and produces channel plans.

    Also keeps the on-call schedules used to resolve ``oncall:`` recipients
    and to pick escalation contacts.

    Args:
        rules: Initial rules.
        schedules: Initial on-call schedules.
        emergency_contacts: Paged first on every escalation.
        escalation_thresholds: Failed attempts after which a request of a
            given severity escalates; severities not listed never do.
        clock: Returns the current aware datetime handed to predicates.
    """

    def __init__(
        self,
        rules: list[RoutingRule] | None = None,
        *,
        schedules: list[OnCallSchedule] | None = None,
        emergency_contacts: tuple[str, ...] = (),
        escalation_thresholds: Mapping[Severity, int] | None = None,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self._clock = clock
        self._schedules: dict[str, OnCallSchedule] = {}
        self._emergency_contacts = tuple(emergency_contacts)
        self._escalation_thresholds = dict(
            DEFAULT_ESCALATION_THRESHOLDS if escalation_thresholds is None else escalation_thresholds
        )
        self._seq = itertools.count()
        self._rules: dict[str, tuple[int, RoutingRule]] = {}
        self._stats = _RouterStats()
        for rule in rules or []:
            self.add_rule(rule)
        for schedule in schedules or []:
            self.add_schedule(schedule)

    # ── rule management ──

    def add_rule(self, rule: RoutingRule) -> None:
        """Add *rule*, replacing any rule with the same id."""
        if not rule.channels:
            raise ValueError(f"rule {rule.rule_id!r} has no channels")
        self._rules.pop(rule.rule_id, None)
        self._rules[rule.rule_id] = (next(self._seq), rule)
        logger.info(
            "routing_rule_added",
            rule_id=rule.rule_id,
            priority=rule.priority,
            mode=rule.mode.value,
            channels=list(rule.channels),
        )

    def remove_rule(self, rule_id: str) -> bool:
        """Remove the rule with *rule_id*.  Returns ``False`` if unknown."""
        removed = self._rules.pop(rule_id, None) is not None
        if removed:
            logger.info("routing_rule_removed", rule_id=rule_id)
        return removed

    @property
    def rules(self) -> list[RoutingRule]:
        """Rules in evaluation order."""
        ordered = sorted(self._rules.values(), key=lambda item: (item[1].priority, item[0]))
        return [rule for _, rule in ordered]

    # ── routing ──

    def _matches(self, rule: RoutingRule, request: NotificationRequest, now: datetime) -> bool:
        try:
            return bool(rule.predicate(request, now))
        except Exception as exc:  # noqa: BLE001
            self._stats.predicate_errors += 1
            logger.warning(
                "routing_predicate_error",
                rule_id=rule.rule_id,
                request_id=request.id,
                error=str(exc),
            )
            return False

    def route(self, request: NotificationRequest) -> RouteDecision:
        """Build the channel plan for *request*."""
        now = self._clock()
        entries: list[RouteEntry] = []
        seen: set[str] = set()
        for rule in self.rules:
            if not rule.enabled or not self._matches(rule, request, now):
                continue
            self._stats.rule_matches[rule.rule_id] = self._stats.rule_matches.get(rule.rule_id, 0) + 1
            for channel in rule.channels:
                if channel not in seen:
                    seen.add(channel)
                    entries.append(RouteEntry(channel=channel, rule_id=rule.rule_id))
            if rule.mode == MatchMode.FIRST_MATCH:
                break

        decision = RouteDecision(entries=tuple(entries))
        if decision.is_empty:
            self._stats.unrouted += 1
            logger.info("request_unrouted", request_id=request.id, severity=request.severity.value)
        else:
            self._stats.routed += 1
            logger.debug("request_routed", request_id=request.id, channels=decision.channels)
        return decision

    # ── on-call schedules ──

    def add_schedule(self, schedule: OnCallSchedule) -> None:
        """Add *schedule*, replacing any schedule with the same id."""
        self._schedules[schedule.schedule_id] = schedule
        logger.info("oncall_schedule_added", schedule_id=schedule.schedule_id, shifts=len(schedule.shifts))

    def remove_schedule(self, schedule_id: str) -> bool:
        removed = self._schedules.pop(schedule_id, None) is not None
        if removed:
            logger.info("oncall_schedule_removed", schedule_id=schedule_id)
        return removed

    @property
    def schedules(self) -> list[OnCallSchedule]:
        return list(self._schedules.values())

    def get_current_on_call(self, schedule_id: str) -> OnCallAssignment | None:
        """Whoever holds the first shift of *schedule_id* covering now."""
        schedule = self._schedules.get(schedule_id)
        if schedule is None:
            return None
        now = self._clock()
        for shift in schedule.shifts:
            if shift.covers(now):
                return OnCallAssignment(
                    schedule_id=schedule_id,
                    user_id=shift.user_id,
                    contact=shift.contact or shift.user_id,
                    timezone=schedule.timezone,
                    shift_end=shift.end,
                )
        return None

    def resolve_recipient(self, request: NotificationRequest) -> NotificationRequest:
        """Swap an ``oncall:<schedule_id>`` recipient for the current on-call contact.

        Other recipients, and schedules with nobody on call, are left as
        they are.
        """
        if not request.recipient.startswith(ON_CALL_PREFIX):
            return request
        schedule_id = request.recipient[len(ON_CALL_PREFIX):]
        assignment = self.get_current_on_call(schedule_id)
        if assignment is None:
            logger.warning("oncall_unresolved", request_id=request.id, schedule_id=schedule_id)
            return request
        logger.debug(
            "oncall_resolved",
            request_id=request.id,
            schedule_id=schedule_id,
            user_id=assignment.user_id,
        )
        return request.model_copy(update={"recipient": assignment.contact})

    # ── escalation ──

    def should_escalate(self, request: NotificationRequest, failed_attempts: int) -> bool:
        """``True`` once *failed_attempts* reaches the threshold for the request's severity."""
        threshold = self._escalation_thresholds.get(request.severity)
        return threshold is not None and failed_attempts >= threshold

    def get_escalation_recipients(self, request: NotificationRequest) -> list[str]:
        """Emergency contacts, then per matching schedule its on-call contact and escalation contacts."""
        recipients = list(self._emergency_contacts)
        for schedule in self._schedules.values():
            if schedule.tags and not (schedule.tags & request.tags):
                continue
            assignment = self.get_current_on_call(schedule.schedule_id)
            if assignment is not None:
                recipients.append(assignment.contact)
            recipients.extend(schedule.escalation_contacts)
        return list(dict.fromkeys(recipients))

    def statistics(self) -> dict[str, object]:
        """Rule counts and routing outcomes since construction."""
        rules = [rule for _, rule in self._rules.values()]
        return {
            "total_rules": len(rules),
            "active_rules": sum(1 for r in rules if r.enabled),
            "routed": self._stats.routed,
            "unrouted": self._stats.unrouted,
            "predicate_errors": self._stats.predicate_errors,
            "rule_matches": dict(self._stats.rule_matches),
            "schedules": len(self._schedules),
        }
