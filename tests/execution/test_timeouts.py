"""Tests for Deadline, run_with_timeout and poll_until."""

from __future__ import annotations

import threading
import time

import pytest

from syncspine.core.errors import JobCancelledError, JobTimeoutError
from syncspine.core.settings import SyncSettings
from syncspine.execution import (
    Deadline,
    JobContext,
    JobRequest,
    JobTimeouts,
    JobType,
    poll_until,
    run_with_timeout,
)


class TestDeadline:
    def test_remaining_and_expiry(self):
        now = [0.0]
        deadline = Deadline(5.0, start_time=0.0, clock=lambda: now[0])
        assert deadline.remaining() == 5.0
        now[0] = 6.0
        assert deadline.is_expired()
        with pytest.raises(JobTimeoutError):
            deadline.check()


class TestJobTimeouts:
    def test_per_type_with_default(self):
        timeouts = JobTimeouts.from_settings(SyncSettings())
        assert timeouts.for_type("REFRESH_MATERIALIZED_VIEWS") == 600.0
        assert timeouts.for_type("UNLISTED") == 300.0

    def test_long_running_ceiling_from_settings(self):
        settings = SyncSettings(
            long_running_timeout_seconds=900, long_running_poll_interval_seconds=5
        )
        timeouts = JobTimeouts.from_settings(settings)
        assert timeouts.long_running == 900.0
        assert timeouts.long_running_poll_interval == 5.0
        assert JobTimeouts.from_settings(SyncSettings()).long_running == 1800.0


class TestRunWithTimeout:
    def test_returns_value(self):
        assert run_with_timeout(lambda x: x * 2, 1.0, args=(21,)) == 42

    def test_reraises_handler_error(self):
        def boom():
            raise KeyError("k")

        with pytest.raises(KeyError):
            run_with_timeout(boom, 1.0)

    def test_timeout_signals_and_raises(self):
        release = threading.Event()
        fired = threading.Event()
        with pytest.raises(JobTimeoutError) as exc_info:
            run_with_timeout(release.wait, 0.2, args=(5,), operation="slow",
                             on_timeout=fired.set)
        release.set()
        assert fired.is_set()
        assert exc_info.value.code == "JOB_TIMEOUT"
        assert exc_info.value.operation == "slow"

    def test_heartbeat_called_while_waiting(self):
        beats: list[float] = []
        run_with_timeout(time.sleep, 2.0, args=(0.35,), heartbeat=lambda: beats.append(1),
                         heartbeat_interval=0.1)
        assert len(beats) >= 2

    def test_non_positive_timeout(self):
        with pytest.raises(ValueError):
            run_with_timeout(lambda: None, 0)


class TestPollUntil:
    def test_returns_first_result(self):
        answers = iter([None, None, "done"])
        assert poll_until(lambda: next(answers), ceiling_seconds=10, interval_seconds=1,
                          sleep=lambda s: None) == "done"

    def test_ceiling(self):
        now = [0.0]

        def sleep(seconds: float) -> None:
            now[0] += seconds

        with pytest.raises(JobTimeoutError):
            poll_until(lambda: None, ceiling_seconds=5, interval_seconds=2, sleep=sleep,
                       clock=lambda: now[0])
        assert now[0] == pytest.approx(5.0)

    def test_cancelled(self):
        with pytest.raises(JobCancelledError):
            poll_until(lambda: None, ceiling_seconds=5, interval_seconds=1,
                       sleep=lambda s: None, cancelled=lambda: True)

    def test_job_context_poll_stops_on_cancel(self, job_store):
        job = job_store.create(JobRequest(job_type=JobType.REFRESH_MATERIALIZED_VIEWS))
        ctx = JobContext(job=job, worker_id="w-test", timeout_seconds=60, store=job_store,
                         long_running_timeout=30, long_running_poll_interval=1)
        checks = []

        def check():
            checks.append(1)
            if len(checks) == 2:
                ctx.cancel_event.set()

        with pytest.raises(JobCancelledError):
            ctx.poll_until(check, operation="refresh", sleep=lambda s: None)
        assert len(checks) == 2
