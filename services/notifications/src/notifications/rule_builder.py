"""
Fluent builder for routing rules.

Each condition method adds a predicate fragment; fragments are AND-ed
together when :meth:`RoutingRuleBuilder.build` produces the rule.
``build`` snapshots the builder, so calling more methods afterwards never
changes a rule that was already built.

Example::

    rule = (
        RoutingRuleBuilder("critical-oncall")
        .min_severity(Severity.CRITICAL)
        .any_tag("payments", "auth")
        .to("sms", "voice")
        .priority(10)
        .build()
    )
"""

from __future__ import annotations

from datetime import datetime, time
from uuid import uuid4
from zoneinfo import ZoneInfo

from herald_common.models.notification import NotificationRequest, Severity
from herald_common.models.routing import RoutingRuleConfig

from .router import MatchMode, Predicate, RoutingRule


def _parse_hhmm(value: str) -> time:
    try:
        hours, minutes = (int(part) for part in value.split(":"))
        return time(hours, minutes)
    except ValueError as exc:
        raise ValueError(f"expected 'HH:MM', got {value!r}") from exc


def in_time_range(now: datetime, start: time, end: time) -> bool:
    """Return ``True`` if the wall-clock minute of *now* lies in ``[start, end]``.

    When *end* is earlier than *start* the range spans midnight.
    """
    minute = now.hour * 60 + now.minute
    lo = start.hour * 60 + start.minute
    hi = end.hour * 60 + end.minute
    if hi < lo:
        return minute >= lo or minute <= hi
    return lo <= minute <= hi


class RoutingRuleBuilder:
    """Accumulates predicate fragments and rule settings.

    Args:
        rule_id: Identifier of the rule to build.  Generated when omitted.
    """

    def __init__(self, rule_id: str | None = None) -> None:
        self._rule_id = rule_id or f"rule-{uuid4().hex[:12]}"
        self._fragments: list[Predicate] = []
        self._channels: list[str] = []
        self._priority = 100
        self._mode = MatchMode.FIRST_MATCH
        self._enabled = True
        self._description = ""

    # ── conditions ──

    def min_severity(self, threshold: Severity | str) -> RoutingRuleBuilder:
        """Match requests at or above *threshold*."""
        level = Severity(threshold)
        self._fragments.append(lambda request, _now: request.severity.at_least(level))
        return self

    def any_tag(self, *tags: str) -> RoutingRuleBuilder:
        """Match requests carrying at least one of *tags*."""
        wanted = frozenset(tags)
        self._fragments.append(lambda request, _now: bool(wanted & request.tags))
        return self

    def all_tags(self, *tags: str) -> RoutingRuleBuilder:
        """Match requests carrying every one of *tags*."""
        wanted = frozenset(tags)
        self._fragments.append(lambda request, _now: wanted <= request.tags)
        return self

    def recipient_in(self, *recipients: str) -> RoutingRuleBuilder:
        wanted = frozenset(recipients)
        self._fragments.append(lambda request, _now: request.recipient in wanted)
        return self

    def between(self, start: str, end: str, tz: str = "UTC") -> RoutingRuleBuilder:
        """Match when the local time in *tz* is within ``[start, end]`` (``HH:MM``).

        The range may span midnight, e.g. ``between("22:00", "06:00")``.
        """
        lo, hi = _parse_hhmm(start), _parse_hhmm(end)
        zone = ZoneInfo(tz)
        self._fragments.append(lambda _request, now: in_time_range(now.astimezone(zone), lo, hi))
        return self

    def when(self, predicate: Predicate) -> RoutingRuleBuilder:
        """Add a custom ``(request, now) -> bool`` fragment."""
        self._fragments.append(predicate)
        return self

    # ── settings ──

    def to(self, *channels: str) -> RoutingRuleBuilder:
        """Append *channels* to the rule's channel list."""
        self._channels.extend(channels)
        return self

    def priority(self, priority: int) -> RoutingRuleBuilder:
        self._priority = priority
        return self

    def mode(self, mode: MatchMode | str) -> RoutingRuleBuilder:
        self._mode = MatchMode(mode)
        return self

    def accumulate(self) -> RoutingRuleBuilder:
        return self.mode(MatchMode.ACCUMULATE)

    def disabled(self) -> RoutingRuleBuilder:
        self._enabled = False
        return self

    def describe(self, description: str) -> RoutingRuleBuilder:
        self._description = description
        return self

    # ── build ──

    def build(self) -> RoutingRule:
        """Return an immutable rule from the current builder state.

        Raises:
            ValueError: If no channel was given.
        """
        if not self._channels:
            raise ValueError(f"rule {self._rule_id!r} needs at least one channel")
        fragments = tuple(self._fragments)

        def predicate(request: NotificationRequest, now: datetime) -> bool:
            return all(fragment(request, now) for fragment in fragments)

        return RoutingRule(
            rule_id=self._rule_id,
            channels=tuple(dict.fromkeys(self._channels)),
            predicate=predicate,
            priority=self._priority,
            mode=self._mode,
            enabled=self._enabled,
            description=self._description,
        )


def rule_from_config(config: RoutingRuleConfig) -> RoutingRule:
    """Build the rule described by one ``routing_rules`` settings entry."""
    builder = (
        RoutingRuleBuilder(config.rule_id)
        .to(*config.channels)
        .priority(config.priority)
        .mode(config.mode)
    )
    if config.min_severity is not None:
        builder.min_severity(config.min_severity)
    if config.any_tags:
        builder.any_tag(*sorted(config.any_tags))
    if config.all_tags:
        builder.all_tags(*sorted(config.all_tags))
    if config.recipients:
        builder.recipient_in(*sorted(config.recipients))
    if config.between is not None:
        builder.between(config.between.start, config.between.end, config.between.tz)
    if not config.enabled:
        builder.disabled()
    if config.description:
        builder.describe(config.description)
    return builder.build()
