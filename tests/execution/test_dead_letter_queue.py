"""Tests for DeadLetterQueue — archive, resolve, replay."""

from __future__ import annotations

import dataclasses

import pytest

from syncspine.core.errors import NotFoundError, ValidationError
from syncspine.execution import (
    DeadLetterQueue,
    JobError,
    JobRequest,
    JobScope,
    JobStatus,
    JobType,
    ScopeType,
)


@pytest.fixture()
def failed_job(job_store):
    """A job that used up its single attempt."""
    job = job_store.create(
        JobRequest(
            job_type=JobType.SYNC_AMAZON_OFFER,
            scope=JobScope(ScopeType.LISTING, "L-1"),
            input={"listing_id": "L-1"},
            max_attempts=1,
            priority=7,
        )
    )
    job_store.claim(job.id, "w1")
    return job_store.mark_failed(job.id, JobError("EXTERNAL_API_ERROR", "HTTP 503", "trace"))


# ── Record ───────────────────────────────────────────────────────────────


class TestRecord:
    def test_record_copies_job(self, dlq, failed_job):
        entry = dlq.record(failed_job)
        assert entry.job_id == failed_job.id
        assert entry.job_type == "SYNC_AMAZON_OFFER"
        assert entry.scope.entity_id == "L-1"
        assert entry.input == {"listing_id": "L-1"}
        assert entry.attempts == 1
        assert entry.error_code == "EXTERNAL_API_ERROR"
        assert entry.last_error == "HTTP 503"
        assert entry.error_stack == "trace"
        assert not entry.is_resolved

    def test_record_is_idempotent_per_job(self, dlq, failed_job):
        first = dlq.record(failed_job)
        second = dlq.record(failed_job)
        assert first.id == second.id
        assert dlq.count_unresolved() == 1

    def test_missing_table_never_raises(self, bare_conn, failed_job):
        queue = DeadLetterQueue(bare_conn)
        assert not queue.available
        assert queue.record(failed_job) is None
        assert queue.list_unresolved() == []

    def test_unserializable_snapshot_never_raises(self, dlq, failed_job):
        looped: dict = {}
        looped["self"] = looped
        broken = dataclasses.replace(failed_job, input=looped)

        assert dlq.record(broken) is None
        assert dlq.count_unresolved() == 0
        assert dlq.record(failed_job).job_id == failed_job.id


# ── Resolve ──────────────────────────────────────────────────────────────


class TestResolve:
    def test_resolve(self, dlq, failed_job):
        entry = dlq.record(failed_job)
        assert dlq.resolve(entry.id, notes="fixed upstream")
        resolved = dlq.get(entry.id)
        assert resolved.is_resolved
        assert resolved.resolution_notes == "fixed upstream"
        assert dlq.count_unresolved() == 0

    def test_resolve_twice_refused(self, dlq, failed_job):
        entry = dlq.record(failed_job)
        assert dlq.resolve(entry.id)
        assert not dlq.resolve(entry.id)

    def test_list_all_includes_resolved(self, dlq, failed_job):
        entry = dlq.record(failed_job)
        dlq.resolve(entry.id)
        assert dlq.list_unresolved() == []
        assert [e.id for e in dlq.list_all()] == [entry.id]


# ── Replay ───────────────────────────────────────────────────────────────


class TestReplay:
    def test_replay_creates_fresh_job(self, dlq, job_store, failed_job):
        entry = dlq.record(failed_job)
        job = dlq.replay(entry.id, job_store)
        assert job.id != failed_job.id
        assert job.status is JobStatus.PENDING
        assert job.attempts == 0
        assert job.input == {"listing_id": "L-1"}
        assert job.priority == 7
        replayed = dlq.get(entry.id)
        assert replayed.is_resolved
        assert replayed.replayed_job_id == job.id

    def test_replay_unknown(self, dlq, job_store):
        with pytest.raises(NotFoundError):
            dlq.replay("nope", job_store)

    def test_replay_resolved_refused(self, dlq, job_store, failed_job):
        entry = dlq.record(failed_job)
        dlq.resolve(entry.id)
        with pytest.raises(ValidationError):
            dlq.replay(entry.id, job_store)
