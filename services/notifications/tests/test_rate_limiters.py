"""
Tests for the rate limiting algorithms.

Validates token bucket burst and refill, the sliding window's rolling
bound, the fixed window's boundary behaviour, and the cost/oversize
rules shared by every limiter.
"""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor

import pytest

from conftest import FakeClock
from notifications.ratelimit import FixedWindowLimiter, SlidingWindowLimiter, TokenBucketLimiter


# ── token bucket ──


class TestTokenBucket:
    """Capacity 5, one token every 12 seconds: the SMS default."""

    def _limiter(self, clock: FakeClock) -> TokenBucketLimiter:
        return TokenBucketLimiter(capacity=5, refill_rate=1 / 12, clock=clock)

    def test_starts_full_and_admits_a_burst(self, clock) -> None:
        limiter = self._limiter(clock)
        results = [limiter.try_acquire("+15550100") for _ in range(5)]
        assert all(r.allowed for r in results)
        assert [r.remaining for r in results] == [4, 3, 2, 1, 0]

    def test_sixth_request_denied_with_refill_hint(self, clock) -> None:
        limiter = self._limiter(clock)
        for _ in range(5):
            limiter.try_acquire("+15550100")
        denied = limiter.try_acquire("+15550100")
        assert denied.allowed is False
        assert denied.remaining == 0
        assert 11_999 <= denied.retry_after_ms <= 12_001

    def test_refills_over_time(self, clock) -> None:
        limiter = self._limiter(clock)
        for _ in range(5):
            limiter.try_acquire("+15550100")
        clock.advance(12.5)
        assert limiter.try_acquire("+15550100").allowed is True
        assert limiter.try_acquire("+15550100").allowed is False

    def test_never_exceeds_capacity(self, clock) -> None:
        limiter = self._limiter(clock)
        limiter.try_acquire("+15550100")
        clock.advance(3600)
        assert limiter.status("+15550100").remaining == 5

    def test_keys_are_independent(self, clock) -> None:
        limiter = self._limiter(clock)
        for _ in range(5):
            limiter.try_acquire("+15550100")
        assert limiter.try_acquire("+15550199").allowed is True

    def test_multi_unit_cost(self, clock) -> None:
        limiter = TokenBucketLimiter(capacity=4, refill_rate=2.0, clock=clock)
        assert limiter.try_acquire("k", cost=3).allowed is True
        denied = limiter.try_acquire("k", cost=3)
        assert denied.allowed is False
        assert denied.retry_after_ms == 1000

    def test_invalid_construction(self) -> None:
        with pytest.raises(ValueError):
            TokenBucketLimiter(capacity=0, refill_rate=1.0)
        with pytest.raises(ValueError):
            TokenBucketLimiter(capacity=1, refill_rate=0)


# ── sliding window ──


class TestSlidingWindow:

    def test_admits_up_to_limit(self, clock) -> None:
        limiter = SlidingWindowLimiter(limit=3, window_ms=1000, clock=clock)
        assert [limiter.try_acquire("k").allowed for _ in range(4)] == [True, True, True, False]

    def test_retry_hint_tracks_oldest_entry(self, clock) -> None:
        limiter = SlidingWindowLimiter(limit=3, window_ms=1000, clock=clock)
        for _ in range(3):
            limiter.try_acquire("k")
        assert limiter.try_acquire("k").retry_after_ms == 1000
        clock.advance(0.5)
        assert limiter.try_acquire("k").retry_after_ms == 500

    def test_entries_expire_after_window(self, clock) -> None:
        limiter = SlidingWindowLimiter(limit=3, window_ms=1000, clock=clock)
        for _ in range(3):
            limiter.try_acquire("k")
        clock.advance(1.0)
        assert limiter.try_acquire("k").allowed is True

    def test_bound_holds_across_any_window(self, clock) -> None:
        limiter = SlidingWindowLimiter(limit=2, window_ms=1000, clock=clock)
        admitted: list[float] = []
        for _ in range(8):
            if limiter.try_acquire("k").allowed:
                admitted.append(clock.now)
            clock.advance(0.25)
        for start in admitted:
            in_window = [t for t in admitted if start <= t < start + 1.0]
            assert len(in_window) <= 2

    def test_status_does_not_consume(self, clock) -> None:
        limiter = SlidingWindowLimiter(limit=2, window_ms=1000, clock=clock)
        limiter.try_acquire("k")
        assert limiter.status("k").remaining == 1
        assert limiter.status("k").remaining == 1


# ── fixed window ──


class TestFixedWindow:

    def test_counter_resets_on_boundary(self) -> None:
        clock = FakeClock(start=1000.0)
        limiter = FixedWindowLimiter(limit=3, window_ms=1000, clock=clock)
        for _ in range(3):
            assert limiter.try_acquire("k").allowed is True
        assert limiter.try_acquire("k").allowed is False
        clock.advance(1.0)
        assert limiter.try_acquire("k").allowed is True

    def test_retry_hint_is_time_to_window_end(self) -> None:
        clock = FakeClock(start=1000.75)
        limiter = FixedWindowLimiter(limit=1, window_ms=1000, clock=clock)
        limiter.try_acquire("k")
        assert limiter.try_acquire("k").retry_after_ms == 250

    def test_boundary_admits_twice_the_limit(self) -> None:
        clock = FakeClock(start=1000.75)
        limiter = FixedWindowLimiter(limit=3, window_ms=1000, clock=clock)
        admitted = sum(limiter.try_acquire("k").allowed for _ in range(3))
        clock.advance(0.25)
        admitted += sum(limiter.try_acquire("k").allowed for _ in range(3))
        assert admitted == 6


# ── shared rules ──


@pytest.mark.parametrize(
    "factory",
    [
        lambda clock: TokenBucketLimiter(capacity=3, refill_rate=1.0, clock=clock),
        lambda clock: SlidingWindowLimiter(limit=3, window_ms=1000, clock=clock),
        lambda clock: FixedWindowLimiter(limit=3, window_ms=1000, clock=clock),
    ],
    ids=["token-bucket", "sliding-window", "fixed-window"],
)
class TestCommonRules:

    def test_cost_below_one_rejected(self, factory, clock) -> None:
        with pytest.raises(ValueError):
            factory(clock).try_acquire("k", cost=0)

    def test_oversized_cost_always_denied(self, factory, clock) -> None:
        limiter = factory(clock)
        result = limiter.try_acquire("k", cost=4)
        assert result.allowed is False
        assert result.oversized is True
        assert limiter.status("k").remaining == 3

    def test_reset_restores_full_allowance(self, factory, clock) -> None:
        limiter = factory(clock)
        for _ in range(3):
            limiter.try_acquire("k")
        assert limiter.try_acquire("k").allowed is False
        limiter.reset("k")
        assert limiter.try_acquire("k").allowed is True

    def test_status_of_unknown_key_is_full(self, factory, clock) -> None:
        status = factory(clock).status("never-seen")
        assert status.allowed is True
        assert status.remaining == 3


# ── concurrent callers ──


@pytest.mark.parametrize(
    "factory",
    [
        lambda clock: TokenBucketLimiter(capacity=100, refill_rate=1.0, clock=clock),
        lambda clock: SlidingWindowLimiter(limit=100, window_ms=60_000, clock=clock),
        lambda clock: FixedWindowLimiter(limit=100, window_ms=60_000, clock=clock),
    ],
    ids=["token-bucket", "sliding-window", "fixed-window"],
)
class TestConcurrentAcquire:
    """Many threads on one key at a frozen instant admit exactly the bound."""

    def test_admits_exactly_bound_on_one_key(self, factory, clock) -> None:
        limiter = factory(clock)

        def hammer(_: int) -> int:
            return sum(limiter.try_acquire("shared").allowed for _ in range(50))

        with ThreadPoolExecutor(max_workers=16) as pool:
            admitted = sum(pool.map(hammer, range(16)))

        assert admitted == 100
        assert limiter.status("shared").allowed is False

    def test_keys_do_not_share_allowance(self, factory, clock) -> None:
        limiter = factory(clock)

        def hammer(worker: int) -> int:
            return sum(limiter.try_acquire(f"key-{worker % 4}").allowed for _ in range(60))

        with ThreadPoolExecutor(max_workers=8) as pool:
            admitted = sum(pool.map(hammer, range(8)))

        assert admitted == 400
