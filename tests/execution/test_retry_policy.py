"""Tests for DecorrelatedJitterBackoff, classify_failure and RetryLoop."""

from __future__ import annotations

from syncspine.core.errors import ExternalApiError, RateLimitedError, ValidationError
from syncspine.core.result import Err, Fatal, Ok, Retry
from syncspine.execution import DecorrelatedJitterBackoff, RetryLoop, classify_failure


# ── Backoff ──────────────────────────────────────────────────────────────


class TestDecorrelatedJitter:
    def test_delay_within_bounds(self):
        backoff = DecorrelatedJitterBackoff(base_delay=1.0, max_delay=30.0)
        previous = None
        for attempt in range(1, 20):
            delay = backoff.next_delay(attempt, previous)
            assert 1.0 <= delay <= 30.0
            if previous is not None:
                assert delay <= max(1.0, previous * 3)
            previous = delay

    def test_zero_base_disables_waiting(self):
        assert DecorrelatedJitterBackoff(base_delay=0).next_delay(3, 10.0) == 0.0

    def test_should_retry_respects_budget(self):
        backoff = DecorrelatedJitterBackoff(max_attempts=3)
        assert backoff.should_retry(2)
        assert not backoff.should_retry(3)

    def test_permanent_errors_not_retried(self):
        backoff = DecorrelatedJitterBackoff(max_attempts=5)
        assert not backoff.should_retry(1, ValidationError("bad"))
        assert backoff.should_retry(1, ExternalApiError("503"))


# ── Classification ───────────────────────────────────────────────────────


class TestClassifyFailure:
    def test_server_hint_wins(self):
        decision = classify_failure(RateLimitedError(retry_after=9), DecorrelatedJitterBackoff(), 1)
        assert isinstance(decision, Retry)
        assert decision.wait_for == 9

    def test_backoff_without_hint(self):
        backoff = DecorrelatedJitterBackoff(base_delay=2.0, max_delay=2.0)
        decision = classify_failure(ConnectionError("reset"), backoff, 1)
        assert decision.wait_for == 2.0

    def test_fatal_when_exhausted(self):
        backoff = DecorrelatedJitterBackoff(max_attempts=1)
        decision = classify_failure(ConnectionError("reset"), backoff, 1)
        assert isinstance(decision, Fatal)


# ── Loop ─────────────────────────────────────────────────────────────────


class TestRetryLoop:
    def test_succeeds_after_retries(self):
        sleeps: list[float] = []
        loop = RetryLoop(max_attempts=5, sleep=sleeps.append)
        result = loop.run(lambda n: Ok(n) if n == 3 else Retry(0.5, ConnectionError("x")))
        assert result == Ok(3)
        assert sleeps == [0.5, 0.5]
        assert loop.summary()["attempts"] == 3

    def test_fatal_stops_immediately(self):
        loop = RetryLoop(max_attempts=5, sleep=lambda s: None)
        result = loop.run(lambda n: Fatal(ValueError("no")))
        assert isinstance(result, Err)
        assert loop.attempt == 1

    def test_ceiling_is_hard(self):
        loop = RetryLoop(max_attempts=2, sleep=lambda s: None)
        result = loop.run(lambda n: Retry(0, ConnectionError(str(n))))
        assert isinstance(result, Err)
        assert str(result.error) == "2"
        assert len(loop.errors) == 2

    def test_on_retry_hook(self):
        seen: list[int] = []
        loop = RetryLoop(max_attempts=3, sleep=lambda s: None, on_retry=lambda n, r: seen.append(n))
        loop.run(lambda n: Ok(n) if n == 3 else Retry(0, ConnectionError()))
        assert seen == [1, 2]

    def test_zero_wait_never_sleeps(self):
        sleeps: list[float] = []
        RetryLoop(max_attempts=2, sleep=sleeps.append).run(lambda n: Retry(0, OSError()))
        assert sleeps == []
