"""
Declarative routing rule configuration for Herald.

``RoutingRuleConfig`` is the JSON shape accepted by the ``routing_rules``
setting.  The dispatch service turns each entry into a routing rule;
all the conditions given on one entry must hold for it to match.
Accepts camelCase keys (``ruleId``, ``minSeverity``, ``anyTags``) as
well as snake_case.
"""

from __future__ import annotations

import re
from typing import Literal
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from herald_common.models.notification import Severity

_HHMM = re.compile(r"^([01]?\d|2[0-3]):[0-5]\d$")


class TimeWindow(BaseModel):
    """A daily ``[start, end]`` window in local time; may span midnight."""

    model_config = ConfigDict(frozen=True)

    start: str
    end: str
    tz: str = "UTC"

    @field_validator("start", "end")
    @classmethod
    def _hhmm(cls, value: str) -> str:
        if not _HHMM.match(value):
            raise ValueError(f"expected 'HH:MM', got {value!r}")
        return value

    @field_validator("tz")
    @classmethod
    def _known_zone(cls, value: str) -> str:
        try:
            ZoneInfo(value)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ValueError(f"unknown timezone {value!r}") from exc
        return value


class RoutingRuleConfig(BaseModel):
    """One configured routing rule.

    Attributes:
        rule_id: Unique identifier.
        channels: Channels planned on a match, in order.
        priority: Lower values are evaluated first.
        mode: ``first-match`` stops evaluation, ``accumulate`` continues.
        min_severity: Severity threshold (inclusive).
        any_tags: Request must carry at least one of these.
        all_tags: Request must carry every one of these.
        recipients: Request recipient must be one of these.
        between: Local time window the request must arrive in.
        enabled: Disabled rules are loaded but never match.
        description: Free-form text for operators.
    """

    model_config = ConfigDict(
        frozen=True,
        alias_generator=to_camel,
        populate_by_name=True,
    )

    rule_id: str = Field(..., min_length=1)
    channels: tuple[str, ...] = Field(..., min_length=1)
    priority: int = 100
    mode: Literal["first-match", "accumulate"] = "first-match"
    min_severity: Severity | None = None
    any_tags: frozenset[str] = Field(default_factory=frozenset)
    all_tags: frozenset[str] = Field(default_factory=frozenset)
    recipients: frozenset[str] = Field(default_factory=frozenset)
    between: TimeWindow | None = None
    enabled: bool = True
    description: str = ""
