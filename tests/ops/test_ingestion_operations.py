"""Tests for ingestion operations and database operations."""

from __future__ import annotations

from syncspine.core.connection import connect
from syncspine.ingestion import (
    CycleResult,
    CycleStatus,
    DQIssueStore,
    IngestionCycleStore,
    IssueType,
    Severity,
    TrackedEntityStore,
)
from syncspine.ops import OperationContext
from syncspine.ops.database import check_schema, migrate_database
from syncspine.ops.ingestion import (
    get_cycle,
    list_cycles,
    list_dq_issues,
    run_ingestion_once,
    track_entities,
)
from syncspine.ops.requests import (
    GetCycleRequest,
    ListCyclesRequest,
    ListDQIssuesRequest,
    TrackEntitiesRequest,
)


class StubOrchestrator:
    sources = ["keepa", "sp_api"]
    scope_id = 1

    def __init__(self, result: CycleResult | None = None, error: Exception | None = None):
        self.result = result
        self.error = error
        self.calls = 0

    def run_cycle(self, *, should_stop=None):
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self.result


def _completed_cycle(conn, cycle_id: str = "c1") -> None:
    cycles = IngestionCycleStore(conn)
    cycles.start(cycle_id, strategy="full_refresh", scope_id=1)
    cycles.freeze_targets(cycle_id, ["A1", "B2"])
    cycles.complete(cycle_id, CycleStatus.PARTIAL, succeeded=1, failed=1, missing=["B2"])
    DQIssueStore(conn).record(entity_id="B2", scope_id=1, issue_type=IssueType.API_ERROR,
                              severity=Severity.CRITICAL, message="vanished", cycle_id=cycle_id)


# ── Run ──────────────────────────────────────────────────────────────────


class TestRunIngestionOnce:
    def test_partial_cycle_is_data_not_failure(self, ctx):
        orch = StubOrchestrator(CycleResult("c1", CycleStatus.PARTIAL, missing=["B2"]))
        result = run_ingestion_once(ctx, orch)
        assert result.success
        assert result.data["status"] == "PARTIAL"
        assert result.warnings == ["1 targeted entities produced no data"]

    def test_orchestrator_crash_is_failure(self, ctx):
        result = run_ingestion_once(ctx, StubOrchestrator(error=RuntimeError("no db")))
        assert result.error.code == "INTERNAL"
        assert result.error.retryable

    def test_dry_run_does_not_run(self, dry_ctx):
        orch = StubOrchestrator()
        result = run_ingestion_once(dry_ctx, orch)
        assert result.data == {"dry_run": True, "sources": ["keepa", "sp_api"], "scope_id": 1}
        assert orch.calls == 0


# ── Cycles and issues ────────────────────────────────────────────────────


class TestCycleQueries:
    def test_list_and_filter(self, ctx, conn):
        _completed_cycle(conn)
        assert [c["id"] for c in list_cycles(ctx, ListCyclesRequest()).data] == ["c1"]
        assert list_cycles(ctx, ListCyclesRequest(status="FAILED")).data == []
        assert list_cycles(ctx, ListCyclesRequest(status="BOGUS")).error.code == "VALIDATION_FAILED"

    def test_get_includes_targets_and_issue_counts(self, ctx, conn):
        _completed_cycle(conn)
        data = get_cycle(ctx, GetCycleRequest("c1")).data
        assert data["targets"] == ["A1", "B2"]
        assert data["dq_issues"] == {"WARN": 0, "CRITICAL": 1}

    def test_get_unknown(self, ctx):
        assert get_cycle(ctx, GetCycleRequest("nope")).error.code == "NOT_FOUND"

    def test_issues_for_cycle_and_open(self, ctx, conn):
        _completed_cycle(conn)
        by_cycle = list_dq_issues(ctx, ListDQIssuesRequest(cycle_id="c1", severity="CRITICAL"))
        assert [i["entity_id"] for i in by_cycle.data] == ["B2"]
        assert by_cycle.total == 1
        assert len(list_dq_issues(ctx, ListDQIssuesRequest()).data) == 1
        assert list_dq_issues(ctx, ListDQIssuesRequest(severity="INFO")).error.code == (
            "VALIDATION_FAILED"
        )


# ── Tracking ─────────────────────────────────────────────────────────────


class TestTrackEntities:
    def test_add_and_remove(self, ctx, conn):
        added = track_entities(ctx, TrackEntitiesRequest(("b00test123", "B00TEST456"), scope_id=3))
        assert added.data == {"scope_id": 3, "added": 2, "tracked": 2}
        removed = track_entities(ctx, TrackEntitiesRequest(("B00TEST123",), scope_id=3, remove=True))
        assert removed.data == {"scope_id": 3, "removed": 1, "tracked": 1}
        assert TrackedEntityStore(conn).list(3) == ["B00TEST456"]

    def test_scope_defaults_from_settings(self, ctx):
        result = track_entities(ctx, TrackEntitiesRequest(("A1",)))
        assert result.data["scope_id"] == ctx.settings.ingestion_scope_id

    def test_nothing_valid(self, ctx):
        assert track_entities(ctx, TrackEntitiesRequest(("", " "))).error.code == "VALIDATION_FAILED"

    def test_dry_run(self, dry_ctx, conn):
        result = track_entities(dry_ctx, TrackEntitiesRequest(("A1",), scope_id=1))
        assert result.data["entity_ids"] == ["A1"]
        assert TrackedEntityStore(conn).list(1) == []


# ── Database ─────────────────────────────────────────────────────────────


class TestDatabaseOperations:
    def test_migrate_fresh_database(self):
        conn = connect()
        try:
            ctx = OperationContext(conn=conn)
            assert check_schema(ctx).error.code == "SCHEMA_INCOMPLETE"
            pending = migrate_database(OperationContext(conn=conn, dry_run=True)).data["pending"]
            assert pending

            result = migrate_database(ctx)
            assert result.success
            assert result.data["applied"] == pending
            assert result.data["complete"] is True
            assert check_schema(OperationContext(conn=conn)).success
        finally:
            conn.close()

    def test_migrate_is_idempotent(self, ctx):
        result = migrate_database(ctx)
        assert result.success
        assert result.data["applied"] == []
