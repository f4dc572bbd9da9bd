"""Tests for raw payload, DQ issue, cycle and tracked-entity stores."""

from __future__ import annotations

import re
from datetime import timedelta

import pytest

from syncspine.core.errors import NotFoundError, SchemaUnavailableError
from syncspine.core.timestamps import utc_now
from syncspine.ingestion import (
    CycleStatus,
    DQIssueStore,
    FetchedDocument,
    IngestionCycleStore,
    IssueStatus,
    IssueType,
    RawPayloadStore,
    Severity,
    TargetResolver,
    TrackedEntityStore,
)


def _doc(entity_id: str, source: str = "keepa", **payload) -> FetchedDocument:
    return FetchedDocument(entity_id, source, payload or {"price": 100}, utc_now())


# ── Raw payloads ─────────────────────────────────────────────────────────


class TestRawPayloadStore:
    def test_insert_and_distinct_entities(self, conn):
        store = RawPayloadStore(conn)
        inserted = store.insert_many(
            [_doc("A1"), _doc("A1", "sp_api"), _doc("B2")], scope_id=1, cycle_id="c1"
        )
        assert inserted == 3
        assert store.distinct_entities_for_cycle("c1") == {"A1", "B2"}
        assert store.distinct_entities_for_cycle("c1", scope_id=2) == set()
        assert store.count_for_cycle("c1") == 3

    def test_reinsert_same_cycle_is_ignored(self, conn):
        store = RawPayloadStore(conn)
        store.insert_many([_doc("A1")], scope_id=1, cycle_id="c1")
        assert store.insert_many([_doc("A1")], scope_id=1, cycle_id="c1") == 0

    def test_payloads_grouped_by_source(self, conn):
        store = RawPayloadStore(conn)
        store.insert_many([_doc("A1", "keepa", rank=5), _doc("A1", "sp_api", qty=2)],
                          scope_id=1, cycle_id="c1")
        grouped = store.payloads_for_entity("A1", "c1")
        assert set(grouped) == {"keepa", "sp_api"}
        assert grouped["sp_api"][0].payload == {"qty": 2}

    def test_history_newest_first(self, conn):
        store = RawPayloadStore(conn)
        old = FetchedDocument("A1", "keepa", {"v": 1}, utc_now() - timedelta(days=1))
        store.insert_many([old], scope_id=1, cycle_id="c1")
        store.insert_many([_doc("A1", v=2)], scope_id=1, cycle_id="c2")
        assert [p.payload["v"] for p in store.history("A1")] == [2, 1]
        assert store.history("A1", source="sp_api") == []

    def test_insert_requires_table(self, bare_conn):
        with pytest.raises(SchemaUnavailableError):
            RawPayloadStore(bare_conn).insert_many([_doc("A1")], scope_id=1, cycle_id="c1")

    def test_reads_without_table_are_empty(self, bare_conn):
        store = RawPayloadStore(bare_conn)
        assert store.distinct_entities_for_cycle("c1") == set()
        assert store.payloads_for_entity("A1", "c1") == {}
        assert store.count_for_cycle("c1") == 0


# ── DQ issues ────────────────────────────────────────────────────────────


class TestDQIssueStore:
    def test_record_open_issue(self, conn):
        store = DQIssueStore(conn)
        issue = store.record(
            entity_id="A1", scope_id=1, issue_type=IssueType.MISSING_FIELD,
            severity=Severity.WARN, message="no title", cycle_id="c1",
            field_name="title", details={"source": "keepa"},
        )
        assert issue.status is IssueStatus.OPEN
        assert issue.details == {"source": "keepa"}
        assert store.list_for_cycle("c1") == [issue]

    def test_filters_and_counts(self, conn):
        store = DQIssueStore(conn)
        for entity_id, severity in [("A1", Severity.WARN), ("B2", Severity.CRITICAL)]:
            store.record(entity_id=entity_id, scope_id=1, issue_type=IssueType.API_ERROR,
                         severity=severity, message="x", cycle_id="c1")
        assert [i.entity_id for i in store.list_for_cycle("c1", severity=Severity.CRITICAL)] == ["B2"]
        assert [i.entity_id for i in store.list_open(entity_id="A1")] == ["A1"]
        assert store.count_by_severity("c1") == {"WARN": 1, "CRITICAL": 1}

    def test_resolve_closes_issue(self, conn):
        store = DQIssueStore(conn)
        issue = store.record(entity_id="A1", scope_id=1, issue_type=IssueType.STALE_DATA,
                             severity=Severity.WARN, message="old")
        closed = store.update_status(issue.id, IssueStatus.RESOLVED, notes="refetched")
        assert closed.resolved_at is not None
        assert closed.resolution_notes == "refetched"
        assert store.list_open() == []

    def test_acknowledged_stays_open(self, conn):
        store = DQIssueStore(conn)
        issue = store.record(entity_id="A1", scope_id=1, issue_type=IssueType.STALE_DATA,
                             severity=Severity.WARN, message="old")
        store.update_status(issue.id, IssueStatus.ACKNOWLEDGED)
        assert [i.id for i in store.list_open()] == [issue.id]

    def test_update_unknown(self, conn):
        with pytest.raises(NotFoundError):
            DQIssueStore(conn).update_status(999, IssueStatus.RESOLVED)

    def test_missing_table(self, bare_conn):
        store = DQIssueStore(bare_conn)
        assert store.list_open() == []
        assert store.count_by_severity() == {"WARN": 0, "CRITICAL": 0}
        with pytest.raises(SchemaUnavailableError):
            store.record(entity_id="A1", scope_id=1, issue_type=IssueType.API_ERROR,
                         severity=Severity.WARN, message="x")


# ── Cycles ───────────────────────────────────────────────────────────────


class TestIngestionCycleStore:
    def test_lifecycle(self, conn):
        store = IngestionCycleStore(conn)
        started = store.start("c1", strategy="full_refresh", scope_id=1)
        assert started.status is CycleStatus.RUNNING

        store.freeze_targets("c1", ["A1", "B2"])
        done = store.complete("c1", CycleStatus.PARTIAL, succeeded=1, failed=1, missing=["B2"],
                              source_reports=[{"source": "keepa", "fetched": 1}])
        assert done.status is CycleStatus.PARTIAL
        assert done.targets == ["A1", "B2"]
        assert done.target_count == 2
        assert done.missing == ["B2"]
        assert done.completed_at is not None
        assert done.duration_ms >= 0

    def test_complete_twice_refused(self, conn):
        store = IngestionCycleStore(conn)
        store.start("c1", strategy="full_refresh", scope_id=1)
        store.complete("c1", CycleStatus.SUCCEEDED)
        with pytest.raises(NotFoundError):
            store.complete("c1", CycleStatus.FAILED)

    def test_cannot_complete_as_running(self, conn):
        store = IngestionCycleStore(conn)
        store.start("c1", strategy="full_refresh", scope_id=1)
        with pytest.raises(ValueError):
            store.complete("c1", CycleStatus.RUNNING)

    def test_skipped_rows_excluded_from_latest(self, conn):
        store = IngestionCycleStore(conn)
        store.start("c1", strategy="full_refresh", scope_id=1)
        store.complete("c1", CycleStatus.SUCCEEDED)
        skipped = store.record_skipped("c2", strategy="full_refresh", scope_id=1, reason="busy")
        assert skipped.status is CycleStatus.SKIPPED
        assert skipped.error == "busy"
        assert store.latest().id == "c1"
        assert {c.id for c in store.list_recent()} == {"c1", "c2"}
        assert [c.id for c in store.list_recent(status=CycleStatus.SKIPPED)] == ["c2"]

    def test_missing_table(self, bare_conn):
        store = IngestionCycleStore(bare_conn)
        assert store.record_skipped("c1", strategy="s", scope_id=1, reason="busy") is None
        assert store.list_recent() == []
        assert store.latest() is None
        with pytest.raises(SchemaUnavailableError):
            store.start("c1", strategy="s", scope_id=1)


# ── Targets ──────────────────────────────────────────────────────────────


class TestTrackedEntities:
    def test_add_is_idempotent(self, conn):
        store = TrackedEntityStore(conn)
        assert store.add(["b2", "A1"], scope_id=1) == 2
        assert store.add(["A1"], scope_id=1) == 0
        assert store.list(1) == ["A1", "B2"]
        assert store.list(2) == []

    def test_remove(self, conn):
        store = TrackedEntityStore(conn)
        store.add(["A1", "B2"], scope_id=1)
        assert store.remove(["A1", "ZZ"], scope_id=1) == 1
        assert store(1) == ["B2"]


class TestTargetResolver:
    def test_union_sorted_and_deduplicated(self, conn):
        tracked = TrackedEntityStore(conn)
        tracked.add(["C3", "A1"], scope_id=1)
        resolver = TargetResolver([tracked, lambda scope_id: ["a1", "B2"]])
        assert resolver.resolve(1) == ("A1", "B2", "C3")

    def test_missing_table_provider_skipped(self, bare_conn):
        resolver = TargetResolver([TrackedEntityStore(bare_conn), lambda scope_id: ["A1"]])
        assert resolver.resolve(1) == ("A1",)

    def test_other_provider_errors_propagate(self):
        def broken(scope_id: int) -> list[str]:
            raise RuntimeError("listing service down")

        with pytest.raises(RuntimeError):
            TargetResolver([broken]).resolve(1)

    def test_pattern_and_cap(self):
        resolver = TargetResolver([lambda s: ["bad", "C3", "A1", "B2"]],
                                  pattern=re.compile(r"^[A-Z]\d$"), max_targets=2)
        assert resolver.resolve(1) == ("A1", "B2")
