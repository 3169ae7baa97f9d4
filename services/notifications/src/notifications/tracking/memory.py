"""
In-process delivery tracker.

Keeps a bounded ring buffer per channel; when a buffer is full the
oldest attempt of that channel is dropped.  Metrics are computed by
scanning the buffers.  Everything is lost on restart, which is fine for
low-stakes deployments and for the durable tracker's fallback buffer.
"""

from __future__ import annotations

import itertools
from collections import deque
from datetime import datetime, timezone

from herald_common.models.delivery import (
    Acknowledgement,
    DeliveryAttempt,
    DeliveryMetrics,
    MetricsFilter,
)

from .base import DeliveryTracker, MetricsAccumulator


class InMemoryDeliveryTracker(DeliveryTracker):
    """Ring-buffer tracker.

    Args:
        capacity: Attempts kept per channel.
    """

    backend = "memory"

    def __init__(self, capacity: int = 1000) -> None:
        if capacity < 1:
            raise ValueError("capacity must be >= 1")
        self.capacity = capacity
        self._buffers: dict[str, deque[tuple[int, DeliveryAttempt]]] = {}
        self._acks: dict[str, list[Acknowledgement]] = {}
        self._seq = itertools.count()

    async def record(self, attempt: DeliveryAttempt) -> None:
        self.append(attempt)

    def append(self, attempt: DeliveryAttempt) -> None:
        """Synchronous ``record`` for callers outside the event loop."""
        buffer = self._buffers.get(attempt.channel)
        if buffer is None:
            buffer = self._buffers[attempt.channel] = deque(maxlen=self.capacity)
        buffer.append((next(self._seq), attempt))

    def append_acknowledgement(self, acknowledgement: Acknowledgement) -> None:
        self._acks.setdefault(acknowledgement.request_id, []).append(acknowledgement)

    def attempts(self) -> list[DeliveryAttempt]:
        """All buffered attempts in insertion order."""
        entries = sorted(itertools.chain.from_iterable(self._buffers.values()), key=lambda e: e[0])
        return [attempt for _, attempt in entries]

    def history(self, request_id: str) -> list[DeliveryAttempt]:
        return [a for a in self.attempts() if a.request_id == request_id]

    def acknowledgements(self, request_id: str) -> list[Acknowledgement]:
        return list(self._acks.get(request_id, ()))

    def accumulate(self, metrics_filter: MetricsFilter | None = None) -> MetricsAccumulator:
        metrics_filter = metrics_filter or MetricsFilter()
        acc = MetricsAccumulator()
        if metrics_filter.channel is not None:
            buffers = [self._buffers.get(metrics_filter.channel, deque())]
        else:
            buffers = list(self._buffers.values())
        for buffer in buffers:
            for _, attempt in buffer:
                if metrics_filter.matches(attempt):
                    acc.add(attempt)
        return acc

    def purge(self, older_than: datetime) -> int:
        """Synchronous ``cleanup``."""
        cutoff = _aware(older_than)
        removed = 0
        for channel, buffer in list(self._buffers.items()):
            kept = deque(
                (entry for entry in buffer if _aware(entry[1].finished_at) >= cutoff),
                maxlen=self.capacity,
            )
            removed += len(buffer) - len(kept)
            if kept:
                self._buffers[channel] = kept
            else:
                del self._buffers[channel]
        for request_id, acks in list(self._acks.items()):
            kept_acks = [ack for ack in acks if _aware(ack.acknowledged_at) >= cutoff]
            removed += len(acks) - len(kept_acks)
            if kept_acks:
                self._acks[request_id] = kept_acks
            else:
                del self._acks[request_id]
        return removed

    def __len__(self) -> int:
        return sum(len(b) for b in self._buffers.values())

    async def get_history(self, request_id: str) -> list[DeliveryAttempt]:
        return self.history(request_id)

    async def get_metrics(self, metrics_filter: MetricsFilter | None = None) -> DeliveryMetrics:
        return self.accumulate(metrics_filter).to_metrics()

    async def record_acknowledgement(self, acknowledgement: Acknowledgement) -> None:
        self.append_acknowledgement(acknowledgement)

    async def get_acknowledgements(self, request_id: str) -> list[Acknowledgement]:
        return self.acknowledgements(request_id)

    async def cleanup(self, older_than: datetime) -> int:
        return self.purge(older_than)

    async def health(self) -> dict[str, object]:
        return {
            "backend": self.backend,
            "degraded": False,
            "buffered": len(self),
            "channels": sorted(self._buffers),
        }


def _aware(value: datetime) -> datetime:
    return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)
