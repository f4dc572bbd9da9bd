"""Tests for the migration runner and the startup schema report."""

from __future__ import annotations

import pytest

from syncspine.core.connection import connect, initialize
from syncspine.core.errors import SchemaUnavailableError
from syncspine.core.migrations import MigrationRunner
from syncspine.core.schema import CORE_TABLES, verify_schema


# ── Migrations ───────────────────────────────────────────────────────────


class TestMigrationRunner:
    def test_fresh_database_has_everything_pending(self, bare_conn):
        pending = MigrationRunner(bare_conn).get_pending()
        assert pending == sorted(pending)
        assert pending[0].startswith("001_")

    def test_apply_pending_creates_core_tables(self, bare_conn):
        result = MigrationRunner(bare_conn).apply_pending()
        assert result.success
        assert result.applied
        report = verify_schema(bare_conn)
        assert report.is_complete

    def test_second_run_is_a_no_op(self, bare_conn):
        runner = MigrationRunner(bare_conn)
        first = runner.apply_pending()
        second = runner.apply_pending()
        assert second.applied == []
        assert sorted(second.skipped) == sorted(first.applied)
        assert runner.get_pending() == []

    def test_initialize_returns_complete_report(self, bare_conn):
        report = initialize(bare_conn)
        assert report.is_complete
        assert len(report.applied_migrations) >= 4

    def test_file_database_survives_reconnect(self, db_path):
        first = connect(db_path)
        initialize(first)
        first.close()
        second = connect(db_path)
        try:
            assert MigrationRunner(second).get_pending() == []
        finally:
            second.close()


# ── Schema report ────────────────────────────────────────────────────────


class TestSchemaReport:
    def test_empty_database_misses_every_table(self, bare_conn):
        report = verify_schema(bare_conn)
        assert not report.is_complete
        assert report.missing == frozenset(CORE_TABLES)

    def test_require_raises_schema_unavailable(self, bare_conn):
        report = verify_schema(bare_conn)
        with pytest.raises(SchemaUnavailableError) as exc_info:
            report.require("jobs")
        assert exc_info.value.table == "jobs"
        assert exc_info.value.code == "SCHEMA_UNAVAILABLE"

    def test_partial_schema(self, bare_conn):
        bare_conn.execute("CREATE TABLE jobs (id TEXT PRIMARY KEY)")
        report = verify_schema(bare_conn)
        assert report.has("jobs")
        assert not report.has("dead_letters")
        assert "jobs" not in report.missing

    def test_to_dict(self, conn):
        data = verify_schema(conn).to_dict()
        assert data["complete"] is True
        assert data["missing"] == []
        assert set(data["present"]) == set(CORE_TABLES)
