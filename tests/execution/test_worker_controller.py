"""Tests for WorkerController — dispatch, retries, timeouts, DLQ hand-off."""

from __future__ import annotations

import threading
import time

import pytest

from syncspine.core.errors import ConfigError, ValidationError
from syncspine.execution import (
    HandlerRegistry,
    JobRequest,
    JobScope,
    JobStatus,
    JobTimeouts,
    JobType,
    PartialResult,
    ScopeType,
    WorkerController,
)


def _worker(job_store, registry, dlq=None, **kwargs) -> WorkerController:
    kwargs.setdefault("timeouts", JobTimeouts(default=5.0))
    kwargs.setdefault("lease_margin", 1.0)
    kwargs.setdefault("poll_interval", 0.05)
    return WorkerController(job_store, registry, dlq=dlq, worker_id="w-test", **kwargs)


def _keepa_job(job_store, **kwargs):
    return job_store.create(
        JobRequest(
            job_type=JobType.SYNC_KEEPA_ASIN,
            scope=JobScope(ScopeType.ASIN, "B00TEST123"),
            input={"asin": "B00TEST123"},
            **kwargs,
        )
    )


class Flaky:
    """Fails ``failures`` times, then succeeds."""

    def __init__(self, failures: int):
        self.failures = failures
        self.calls = 0

    def __call__(self, ctx):
        self.calls += 1
        if self.calls <= self.failures:
            raise ConnectionError(f"attempt {ctx.attempt} failed")
        return {"attempt": ctx.attempt}


# ── Construction ─────────────────────────────────────────────────────────


class TestConstruction:
    def test_incomplete_registry_refused(self, job_store):
        with pytest.raises(ConfigError):
            WorkerController(job_store, HandlerRegistry())

    def test_from_settings(self, job_store, make_registry):
        from syncspine.core.settings import SyncSettings

        worker = WorkerController.from_settings(SyncSettings(worker_batch_size=9), job_store,
                                                make_registry())
        assert worker.batch_size == 9
        assert worker.worker_id.startswith("worker-")


# ── Dispatch ─────────────────────────────────────────────────────────────


class TestDispatch:
    def test_success(self, job_store, make_registry):
        job = _keepa_job(job_store)
        registry = make_registry(SYNC_KEEPA_ASIN=lambda ctx: {"asin": ctx.input["asin"]})
        worker = _worker(job_store, registry)
        assert worker.run_once() == 1
        done = job_store.require(job.id)
        assert done.status is JobStatus.SUCCEEDED
        assert done.result == {"asin": "B00TEST123"}
        assert worker.stats.succeeded == 1

    def test_partial_result(self, job_store, make_registry):
        job = _keepa_job(job_store)
        registry = make_registry(SYNC_KEEPA_ASIN=lambda ctx: PartialResult({"n": 1}))
        worker = _worker(job_store, registry)
        worker.run_once()
        done = job_store.require(job.id)
        assert done.status is JobStatus.PARTIAL
        assert done.result == {"n": 1}

    def test_handler_logs_are_persisted(self, job_store, make_registry):
        def handler(ctx):
            ctx.log("fetched", rows=4)
            return None

        job = _keepa_job(job_store)
        _worker(job_store, make_registry(SYNC_KEEPA_ASIN=handler)).run_once()
        (entry,) = job_store.get_logs(job.id)
        assert entry.message == "fetched"
        assert entry.data == {"rows": 4}

    def test_handler_polls_long_running_operation(self, job_store, make_registry):
        answers = iter([None, None, {"report_id": "R-9"}])
        seen = {}

        def handler(ctx):
            seen["ceiling"] = ctx.long_running_timeout
            return ctx.poll_until(lambda: next(answers), operation="sales_report")

        job = _keepa_job(job_store)
        timeouts = JobTimeouts(default=5.0, long_running=2.0, long_running_poll_interval=0.01)
        _worker(job_store, make_registry(SYNC_KEEPA_ASIN=handler), timeouts=timeouts).run_once()

        done = job_store.require(job.id)
        assert done.status is JobStatus.SUCCEEDED
        assert done.result == {"report_id": "R-9"}
        assert seen["ceiling"] == 2.0

    def test_empty_queue(self, job_store, make_registry):
        assert _worker(job_store, make_registry()).run_once() == 0


# ── Retries and the DLQ ──────────────────────────────────────────────────


class TestRetries:
    def test_fails_twice_then_succeeds(self, job_store, dlq, make_registry):
        job = _keepa_job(job_store)
        handler = Flaky(failures=2)
        worker = _worker(job_store, make_registry(SYNC_KEEPA_ASIN=handler), dlq)
        for _ in range(3):
            worker.run_once()

        done = job_store.require(job.id)
        assert done.status is JobStatus.SUCCEEDED
        assert done.attempts == 3
        assert done.result == {"attempt": 3}
        assert dlq.count_unresolved() == 0

    def test_always_failing_job_is_dead_lettered_once(self, job_store, dlq, make_registry):
        job = _keepa_job(job_store)
        worker = _worker(job_store, make_registry(SYNC_KEEPA_ASIN=Flaky(failures=99)), dlq)
        for _ in range(5):
            worker.run_once()

        failed = job_store.require(job.id)
        assert failed.status is JobStatus.FAILED
        assert failed.attempts == 3
        entries = dlq.list_unresolved()
        assert len(entries) == 1
        assert entries[0].job_id == job.id
        assert entries[0].error_code == "HANDLER_ERROR"
        assert worker.stats.dead_lettered == 1

    def test_permanent_error_skips_remaining_attempts(self, job_store, dlq, make_registry):
        def reject(ctx):
            raise ValidationError("ASIN is delisted")

        job = _keepa_job(job_store)
        _worker(job_store, make_registry(SYNC_KEEPA_ASIN=reject), dlq).run_once()
        failed = job_store.require(job.id)
        assert failed.status is JobStatus.FAILED
        assert failed.attempts == 1
        assert dlq.get_by_job(job.id).error_code == "VALIDATION_ERROR"

    def test_timeout_counts_as_failed_attempt(self, job_store, dlq, make_registry):
        release = threading.Event()

        def hang(ctx):
            release.wait(5)
            return None

        job = _keepa_job(job_store, max_attempts=1)
        worker = _worker(job_store, make_registry(SYNC_KEEPA_ASIN=hang), dlq,
                         timeouts=JobTimeouts(by_type={"SYNC_KEEPA_ASIN": 0.2}, default=5.0))
        try:
            worker.run_once()
        finally:
            release.set()

        failed = job_store.require(job.id)
        assert failed.status is JobStatus.FAILED
        assert failed.last_error.code == "JOB_TIMEOUT"
        assert worker.stats.timed_out == 1
        assert dlq.get_by_job(job.id) is not None

    def test_timeout_sets_cancel_event(self, job_store, make_registry):
        observed = threading.Event()

        def cooperative(ctx):
            deadline = time.monotonic() + 3
            while time.monotonic() < deadline:
                if ctx.is_cancelled():
                    observed.set()
                    return None
                time.sleep(0.02)
            return None

        _keepa_job(job_store)
        worker = _worker(job_store, make_registry(SYNC_KEEPA_ASIN=cooperative),
                         timeouts=JobTimeouts(by_type={"SYNC_KEEPA_ASIN": 0.2}, default=5.0))
        worker.run_once()
        assert observed.wait(2)


# ── Cancellation ─────────────────────────────────────────────────────────


class TestCancellation:
    def test_cancel_while_running_discards_outcome(self, job_store, make_registry):
        job = _keepa_job(job_store)

        def cancels_itself(ctx):
            job_store.cancel(ctx.job.id)
            assert ctx.is_cancelled()
            return {"late": True}

        worker = _worker(job_store, make_registry(SYNC_KEEPA_ASIN=cancels_itself))
        worker.run_once()
        assert job_store.require(job.id).status is JobStatus.CANCELLED
        assert worker.stats.discarded == 1


# ── Lifecycle ────────────────────────────────────────────────────────────


class TestLifecycle:
    def test_background_loop_processes_and_stops(self, job_store, make_registry):
        job = _keepa_job(job_store)
        worker = _worker(job_store, make_registry())
        worker.start()
        try:
            deadline = time.monotonic() + 5
            while job_store.require(job.id).status is not JobStatus.SUCCEEDED:
                assert time.monotonic() < deadline
                time.sleep(0.02)
        finally:
            assert worker.stop(timeout=2)
        assert not worker.is_running()

    def test_double_start_refused(self, job_store, make_registry):
        worker = _worker(job_store, make_registry())
        worker.start()
        try:
            with pytest.raises(RuntimeError):
                worker.start()
        finally:
            worker.stop(timeout=2)

    def test_dead_reclaimed_job_goes_to_dlq(self, job_store, dlq, make_registry):
        job = _keepa_job(job_store, max_attempts=1)
        job_store.claim(job.id, "crashed-worker", lease_seconds=-1)
        worker = _worker(job_store, make_registry(), dlq)
        worker.run_once()
        assert worker.stats.reclaimed == 1
        assert dlq.get_by_job(job.id).error_code == "LEASE_EXPIRED"
