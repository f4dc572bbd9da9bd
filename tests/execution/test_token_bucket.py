"""Tests for TokenBucket and RateLimiterRegistry."""

from __future__ import annotations

import time

import pytest

from syncspine.core.errors import ConfigError
from syncspine.core.settings import EndpointRateLimit, SyncSettings
from syncspine.execution import BucketStateStore, RateLimiterRegistry, TokenBucket


class FakeClock:
    """Monotonic clock whose sleeps just advance time."""

    def __init__(self) -> None:
        self.now = 1000.0
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


def _bucket(clock: FakeClock, **kwargs) -> TokenBucket:
    kwargs.setdefault("rate", 2.0)
    kwargs.setdefault("capacity", 10.0)
    return TokenBucket(sleep=clock.sleep, clock=clock, jitter=0.0, **kwargs)


# ── Acquire ──────────────────────────────────────────────────────────────


class TestAcquire:
    def test_full_bucket_allows_burst(self, clock):
        bucket = _bucket(clock)
        assert all(bucket.acquire() for _ in range(10))
        assert not bucket.acquire()

    def test_refill_over_time(self, clock):
        bucket = _bucket(clock, initial_tokens=0)
        assert not bucket.acquire(2)
        clock.now += 1.0
        assert bucket.acquire(2)

    def test_refill_capped_at_capacity(self, clock):
        bucket = _bucket(clock, initial_tokens=0)
        clock.now += 3600
        assert bucket.available_tokens == 10.0

    def test_blocking_acquire_sleeps_exact_deficit(self, clock):
        bucket = _bucket(clock, initial_tokens=0)
        assert bucket.acquire(10, block=True)
        assert sum(clock.sleeps) == pytest.approx(5.0)
        assert bucket.metrics().throttled_requests == 1

    def test_more_than_capacity_rejected(self, clock):
        with pytest.raises(ValueError):
            _bucket(clock).acquire(11)

    def test_invalid_config(self):
        with pytest.raises(ConfigError):
            TokenBucket(rate=0, capacity=10)


# ── Wait ─────────────────────────────────────────────────────────────────


class TestWaitForTokens:
    def test_does_not_debit(self, clock):
        bucket = _bucket(clock, initial_tokens=4)
        assert bucket.wait_for_tokens(4) == 0.0
        assert bucket.available_tokens == 4.0

    def test_waits_for_deficit(self, clock):
        bucket = _bucket(clock, initial_tokens=1)
        waited = bucket.wait_for_tokens(5)
        assert waited == pytest.approx(2.0)
        assert bucket.get_wait_time(5) == 0.0

    @pytest.mark.slow
    def test_real_clock_rate_two_needs_four_seconds_for_ten(self):
        bucket = TokenBucket(rate=2.0, capacity=10.0, initial_tokens=0, jitter=0.0)
        start = time.monotonic()
        bucket.wait_for_tokens(10)
        assert bucket.acquire(10)
        assert time.monotonic() - start >= 4.0


# ── Server feedback ──────────────────────────────────────────────────────


class TestServerFeedback:
    def test_headers_override_local_estimate(self, clock):
        bucket = _bucket(clock)
        bucket.update_from_headers(3)
        assert bucket.available_tokens == 3.0
        bucket.update_from_headers(None)
        assert bucket.available_tokens == 3.0

    def test_throttle_uses_retry_after(self, clock):
        bucket = _bucket(clock)
        decision = bucket.handle_rate_limit_error(retry_after_seconds=7)
        assert decision.wait_seconds == 7
        assert decision.should_retry
        assert bucket.available_tokens == 0.0

    def test_throttle_without_hint_waits_for_deficit(self, clock):
        bucket = _bucket(clock)
        decision = bucket.handle_rate_limit_error(tokens_needed=4)
        assert decision.wait_seconds == pytest.approx(2.0)

    def test_consecutive_throttles_exhaust_inline_retries(self, clock):
        bucket = _bucket(clock, max_inline_retries=2)
        assert bucket.handle_rate_limit_error().should_retry
        assert bucket.handle_rate_limit_error().should_retry
        assert not bucket.handle_rate_limit_error().should_retry

    def test_success_resets_consecutive(self, clock):
        bucket = _bucket(clock, max_inline_retries=1)
        bucket.handle_rate_limit_error()
        bucket.record_success()
        assert bucket.handle_rate_limit_error().should_retry

    def test_escalation_is_capped(self, clock):
        bucket = _bucket(clock, escalation_step=30, escalation_cap=60, max_inline_retries=9)
        waits = [bucket.handle_rate_limit_error(retry_after_seconds=1).wait_seconds
                 for _ in range(4)]
        assert waits == [1, 31, 61, 61]


# ── Persistence ──────────────────────────────────────────────────────────


class TestPersistence:
    def test_level_survives_restart(self, conn, clock):
        store = BucketStateStore(conn)
        first = _bucket(clock, name="keepa", rate=0.001, state_store=store)
        first.acquire(8)

        second = _bucket(clock, name="keepa", rate=0.001, state_store=BucketStateStore(conn))
        assert second.available_tokens == pytest.approx(2.0, abs=0.01)

    def test_missing_table_is_tolerated(self, bare_conn, clock):
        bucket = _bucket(clock, state_store=BucketStateStore(bare_conn))
        assert bucket.acquire()


# ── Registry ─────────────────────────────────────────────────────────────


class TestRegistry:
    def test_one_bucket_per_name(self):
        registry = RateLimiterRegistry({"sp_api": EndpointRateLimit(rate=5, capacity=20)})
        assert registry.get("sp_api") is registry.get("sp_api")

    def test_unknown_name(self):
        with pytest.raises(ConfigError):
            RateLimiterRegistry({}).get("keepa")

    def test_from_settings(self):
        registry = RateLimiterRegistry.from_settings(SyncSettings())
        keepa = registry.get("keepa")
        assert keepa.capacity == 20
        assert keepa.available_tokens < 1
        assert registry.names() == ["keepa", "sp_api"]
