"""
On-call schedule models for Herald.

A schedule is a list of shifts; whoever holds the shift covering the
current instant is on call.  Requests addressed to ``oncall:<schedule_id>``
are delivered to that person, and escalations page the schedule's
escalation contacts.
"""

from __future__ import annotations

from datetime import datetime, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

ON_CALL_PREFIX = "oncall:"


class OnCallShift(BaseModel):
    """One person's on-call window.

    Attributes:
        user_id: Who is on call.
        start: Start of the shift (inclusive).
        end: End of the shift (inclusive).
        contact: Address to deliver to; defaults to ``user_id``.
    """

    model_config = ConfigDict(frozen=True)

    user_id: str = Field(..., min_length=1)
    start: datetime
    end: datetime
    contact: str | None = None

    @field_validator("start", "end")
    @classmethod
    def _assume_utc(cls, value: datetime) -> datetime:
        return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)

    @model_validator(mode="after")
    def _check_window(self) -> OnCallShift:
        if self.end <= self.start:
            raise ValueError("shift end must be after its start")
        return self

    def covers(self, now: datetime) -> bool:
        return self.start <= now <= self.end


class OnCallSchedule(BaseModel):
    """A rotation of shifts.

    Attributes:
        schedule_id: Unique identifier.
        shifts: Shifts in priority order; the first covering one wins.
        timezone: IANA zone the rotation is planned in.
        tags: Requests carrying any of these tags escalate to this
              schedule; empty means every request.
        escalation_contacts: Extra addresses paged on escalation.
    """

    model_config = ConfigDict(frozen=True)

    schedule_id: str = Field(..., min_length=1)
    shifts: tuple[OnCallShift, ...] = ()
    timezone: str = "UTC"
    tags: frozenset[str] = Field(default_factory=frozenset)
    escalation_contacts: tuple[str, ...] = ()

    @field_validator("timezone")
    @classmethod
    def _known_zone(cls, value: str) -> str:
        try:
            ZoneInfo(value)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ValueError(f"unknown timezone {value!r}") from exc
        return value


class OnCallAssignment(BaseModel):
    """Who is on call for a schedule right now."""

    schedule_id: str
    user_id: str
    contact: str
    timezone: str
    shift_end: datetime
