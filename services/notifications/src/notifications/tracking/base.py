"""
Delivery tracker interface for Herald.

A tracker records every ``DeliveryAttempt`` and every acknowledgement,
and answers history, status and metrics queries.  Implementations must never raise from ``record``:
losing a tracking write may degrade reporting but must not block
delivery.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime

from herald_common.models.delivery import (
    Acknowledgement,
    DeliveryAttempt,
    DeliveryMetrics,
    DeliveryOutcome,
    MetricsFilter,
    NotificationState,
    NotificationStatus,
)

# Outcomes whose latency reflects a real provider call.
LATENCY_OUTCOMES = frozenset({DeliveryOutcome.DELIVERED, DeliveryOutcome.FAILED})


@dataclass
class MetricsAccumulator:
    """Running sums from which ``DeliveryMetrics`` are derived.

    Both backends fold attempts (or stored counters) into one of these so
    the success-rate and latency formulas live in one place.
    """

    by_outcome: Counter[str] = field(default_factory=Counter)
    by_channel: Counter[str] = field(default_factory=Counter)
    latency_sum: float = 0.0
    latency_count: int = 0

    def add(self, attempt: DeliveryAttempt) -> None:
        self.by_outcome[attempt.outcome.value] += 1
        self.by_channel[attempt.channel] += 1
        if attempt.outcome in LATENCY_OUTCOMES:
            self.latency_sum += attempt.latency_ms
            self.latency_count += 1

    def merge(self, other: MetricsAccumulator) -> None:
        self.by_outcome.update(other.by_outcome)
        self.by_channel.update(other.by_channel)
        self.latency_sum += other.latency_sum
        self.latency_count += other.latency_count

    def to_metrics(self) -> DeliveryMetrics:
        delivered = self.by_outcome.get(DeliveryOutcome.DELIVERED.value, 0)
        exhausted = self.by_outcome.get(DeliveryOutcome.EXHAUSTED.value, 0)
        closed = delivered + exhausted
        return DeliveryMetrics(
            total_attempts=sum(self.by_outcome.values()),
            success_rate=delivered / closed if closed else 0.0,
            avg_latency_ms=self.latency_sum / self.latency_count if self.latency_count else 0.0,
            counts_by_outcome=dict(self.by_outcome),
            counts_by_channel=dict(self.by_channel),
        )


def derive_state(attempts: list[DeliveryAttempt], acknowledgements: list[Acknowledgement]) -> NotificationState:
    """Fold a request's records into one ``NotificationState``.

    An acknowledgement wins over everything; otherwise any delivered
    channel makes the request delivered, and it only counts as failed
    once every channel that was tried has closed its sequence.
    """
    if acknowledgements:
        return NotificationState.ACKNOWLEDGED
    if not attempts:
        return NotificationState.PENDING
    if any(a.outcome == DeliveryOutcome.DELIVERED for a in attempts):
        return NotificationState.DELIVERED
    tried = {a.channel for a in attempts}
    closed = {a.channel for a in attempts if a.outcome.is_terminal}
    return NotificationState.FAILED if tried == closed else NotificationState.SENDING


class DeliveryTracker(ABC):
    """Records attempt lifecycles and computes delivery metrics."""

    backend: str = "base"

    @abstractmethod
    async def record(self, attempt: DeliveryAttempt) -> None:
        """Persist *attempt*.  Never raises."""

    @abstractmethod
    async def get_history(self, request_id: str) -> list[DeliveryAttempt]:
        """Every attempt recorded for *request_id*, in insertion order."""

    @abstractmethod
    async def get_metrics(self, metrics_filter: MetricsFilter | None = None) -> DeliveryMetrics:
        """Aggregate metrics over the attempts selected by *metrics_filter*.

        ``success_rate`` is ``delivered / (delivered + exhausted)`` and
        ``avg_latency_ms`` averages delivered and failed attempts only.
        """

    @abstractmethod
    async def record_acknowledgement(self, acknowledgement: Acknowledgement) -> None:
        """Persist *acknowledgement*.  Never raises."""

    @abstractmethod
    async def get_acknowledgements(self, request_id: str) -> list[Acknowledgement]:
        """Acknowledgements for *request_id*, oldest first."""

    async def get_status(self, request_id: str) -> NotificationStatus:
        attempts = await self.get_history(request_id)
        acknowledgements = await self.get_acknowledgements(request_id)
        return NotificationStatus(
            request_id=request_id,
            state=derive_state(attempts, acknowledgements),
            attempts=attempts,
            acknowledgements=acknowledgements,
        )

    @abstractmethod
    async def cleanup(self, older_than: datetime) -> int:
        """Drop records that finished before *older_than*; return how many went."""

    async def health(self) -> dict[str, object]:
        return {"backend": self.backend, "degraded": False}

    async def close(self) -> None:
        """Release resources held by the tracker (override if needed)."""
