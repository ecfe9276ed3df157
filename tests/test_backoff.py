"""Tests for the poll interval policy."""

import random

import pytest

from bestbot.backoff import BackoffPolicy
from bestbot.config import TimingConfig
from bestbot.probe import Availability

from fakes import FakeClock


@pytest.fixture
def timing() -> TimingConfig:
    return TimingConfig(
        poll_interval_min=10.0,
        poll_interval_max=40.0,
        poll_multiplier=2.0,
        blocked_cooldown_base=60.0,
        blocked_cooldown_max=300.0,
        blocked_multiplier=2.0,
        jitter=0.0,
    )


class TestBackoffPolicy:
    def test_starts_at_floor(self, timing):
        policy = BackoffPolicy(timing)
        assert policy.current_interval == 10.0
        assert policy.next_delay() == 10.0

    def test_idle_polls_grow_to_ceiling(self, timing):
        """Test that consecutive sold-out polls stretch the interval up to the cap."""
        policy = BackoffPolicy(timing)
        intervals = [policy.on_idle(Availability.OUT_OF_STOCK) for _ in range(5)]

        assert intervals == [10.0, 20.0, 40.0, 40.0, 40.0]

    def test_unknown_counts_as_idle(self, timing):
        policy = BackoffPolicy(timing)
        policy.on_idle(Availability.OUT_OF_STOCK)
        assert policy.on_idle(Availability.UNKNOWN) == 20.0

    def test_blocked_grows_exponentially_and_caps(self, timing):
        policy = BackoffPolicy(timing)
        intervals = [policy.on_blocked() for _ in range(5)]

        assert intervals == [60.0, 120.0, 240.0, 300.0, 300.0]
        assert policy.ceiling == 300.0

    def test_idle_after_blocked_returns_to_floor(self, timing):
        policy = BackoffPolicy(timing)
        policy.on_blocked()
        policy.on_blocked()

        assert policy.on_idle(Availability.OUT_OF_STOCK) == 10.0
        assert policy.ceiling == 40.0

    def test_reset_returns_to_floor(self, timing):
        policy = BackoffPolicy(timing)
        for _ in range(3):
            policy.on_idle(Availability.OUT_OF_STOCK)
        policy.on_blocked()

        assert policy.reset() == 10.0
        assert policy.state.consecutive_failures == 0

    def test_failures_counted_until_clean_poll(self, timing):
        policy = BackoffPolicy(timing)
        policy.on_idle(Availability.UNKNOWN, failed=True)
        policy.on_idle(Availability.UNKNOWN, failed=True)
        assert policy.state.consecutive_failures == 2

        policy.on_idle(Availability.OUT_OF_STOCK)
        assert policy.state.consecutive_failures == 0

    def test_records_poll_time(self, timing):
        clock = FakeClock(start=100.0)
        policy = BackoffPolicy(timing, clock=clock)
        policy.on_idle(Availability.OUT_OF_STOCK)
        assert policy.state.last_poll_at == 100.0

        clock.advance(15.0)
        policy.on_blocked()
        assert policy.state.last_poll_at == 115.0
        assert policy.state.last_signal == Availability.BLOCKED


class TestJitter:
    def test_jitter_stays_within_band(self, timing):
        jittered = timing.model_copy(update={"jitter": 0.2})
        policy = BackoffPolicy(jittered, rng=random.Random(7))

        delays = [policy.next_delay() for _ in range(200)]
        assert all(8.0 <= d <= 12.0 for d in delays)
        assert len(set(delays)) > 1

    def test_jitter_never_exceeds_ceiling(self, timing):
        """Test that jitter on a capped interval is clamped to the ceiling."""
        jittered = timing.model_copy(update={"jitter": 0.5})
        policy = BackoffPolicy(jittered, rng=random.Random(3))
        for _ in range(4):
            policy.on_idle(Availability.OUT_OF_STOCK)

        assert all(policy.next_delay() <= 40.0 for _ in range(200))

    def test_seeded_rng_is_reproducible(self, timing):
        jittered = timing.model_copy(update={"jitter": 0.3})
        first = BackoffPolicy(jittered, rng=random.Random(42))
        second = BackoffPolicy(jittered, rng=random.Random(42))

        assert [first.next_delay() for _ in range(10)] == [second.next_delay() for _ in range(10)]
