"""
Retry configuration for Herald deliveries.

Channel sends and webhook POSTs both retry through tenacity with
exponential backoff plus random jitter.  ``RetryPolicy`` holds the knobs
and hands out the tenacity wait strategy; the stop conditions below bind
a retry loop to the request deadline and to a total-wait budget.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Callable

from tenacity import RetryCallState, stop_after_attempt, wait_exponential, wait_random
from tenacity.stop import stop_base
from tenacity.wait import wait_base

from herald_common.config import Settings


@dataclass(frozen=True)
class RetryPolicy:
    """Attempts and backoff for one kind of delivery.

    Attributes:
        max_attempts: Total attempts including the first one.
        initial_delay_s: Delay before the first retry.
        multiplier: Growth factor per retry.
        max_delay_s: Upper bound on a single delay (before jitter).
        jitter: Maximum random seconds added to each delay.
    """

    max_attempts: int = 3
    initial_delay_s: float = 0.5
    multiplier: float = 2.0
    max_delay_s: float = 10.0
    jitter: float = 0.1

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.initial_delay_s < 0 or self.max_delay_s < 0 or self.jitter < 0:
            raise ValueError("delays must be >= 0")

    @classmethod
    def for_channels(cls, settings: Settings) -> RetryPolicy:
        return cls(
            max_attempts=settings.channel_max_attempts,
            initial_delay_s=settings.retry_initial_delay_s,
            multiplier=settings.retry_multiplier,
            max_delay_s=settings.retry_max_delay_s,
            jitter=settings.retry_jitter_s,
        )

    @classmethod
    def for_webhooks(cls, settings: Settings) -> RetryPolicy:
        return cls(
            max_attempts=settings.webhook_max_attempts,
            initial_delay_s=settings.retry_initial_delay_s,
            multiplier=settings.retry_multiplier,
            max_delay_s=settings.retry_max_delay_s,
            jitter=settings.retry_jitter_s,
        )

    def wait(self) -> wait_base:
        """``initial * multiplier ** (n - 1)`` capped at ``max_delay_s``, plus jitter."""
        return wait_exponential(
            multiplier=self.initial_delay_s,
            exp_base=self.multiplier,
            max=self.max_delay_s,
        ) + wait_random(0, self.jitter)

    def stop(self) -> stop_base:
        return stop_after_attempt(self.max_attempts)


class stop_before_deadline(stop_base):
    """Stop when the upcoming sleep would end at or past *deadline*.

    *deadline* is an absolute event-loop time; ``None`` never stops.
    ``reached`` records whether this condition ended the loop.
    """

    def __init__(self, deadline: float | None, clock: Callable[[], float] | None = None) -> None:
        self.deadline = deadline
        self._clock = clock or asyncio.get_running_loop().time
        self.reached = False

    def __call__(self, retry_state: RetryCallState) -> bool:
        if self.deadline is None:
            return False
        if self._clock() + retry_state.upcoming_sleep >= self.deadline:
            self.reached = True
        return self.reached


class stop_after_total_wait(stop_base):
    """Stop when the summed backoff would exceed *budget_s*."""

    def __init__(self, budget_s: float) -> None:
        self.budget_s = budget_s

    def __call__(self, retry_state: RetryCallState) -> bool:
        return retry_state.idle_for + retry_state.upcoming_sleep > self.budget_s
