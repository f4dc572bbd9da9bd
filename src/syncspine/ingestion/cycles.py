"""Ingestion Cycle Store — one row per ``run_cycle`` invocation.

A cycle row is written RUNNING before any fetch starts, gets its frozen
target list once targets are resolved, and is completed exactly once with
the final status and counts. A run that lost the single-flight race is
recorded directly as SKIPPED so that "nothing happened" is visible too.
"""

from __future__ import annotations

import json
import sqlite3
import threading
from collections.abc import Sequence
from typing import Any

from syncspine.core.errors import NotFoundError
from syncspine.core.logging import get_logger
from syncspine.core.schema import SchemaReport, verify_schema
from syncspine.core.timestamps import from_iso8601, to_iso8601, utc_now

from .models import CycleStatus, IngestionCycle

logger = get_logger(__name__)

_CYCLE_COLUMNS = (
    "id, strategy, status, scope_id, targets, target_count, succeeded_count, failed_count, "
    "missing, source_reports, error, started_at, completed_at, duration_ms"
)


class IngestionCycleStore:
    """SQLite-backed ingestion cycle log."""

    def __init__(self, conn: sqlite3.Connection, *, schema: SchemaReport | None = None):
        self._conn = conn
        self._schema = schema or verify_schema(conn)
        self._lock = threading.RLock()

    @property
    def available(self) -> bool:
        return self._schema.has("ingestion_cycles")

    # ------------------------------------------------------------------ #
    # Writes
    # ------------------------------------------------------------------ #

    def start(self, cycle_id: str, *, strategy: str, scope_id: int) -> IngestionCycle:
        """Insert a RUNNING cycle.

        Raises:
            SchemaUnavailableError: The ingestion_cycles table is not provisioned.
        """
        self._schema.require("ingestion_cycles")
        with self._lock:
            self._conn.execute(
                "INSERT INTO ingestion_cycles (id, strategy, status, scope_id, started_at) "
                "VALUES (?, ?, 'RUNNING', ?, ?)",
                (cycle_id, strategy, scope_id, to_iso8601(utc_now())),
            )
            self._conn.commit()
        return self.require(cycle_id)

    def freeze_targets(self, cycle_id: str, targets: Sequence[str]) -> None:
        """Record the target list this cycle works against."""
        self._schema.require("ingestion_cycles")
        with self._lock:
            self._conn.execute(
                "UPDATE ingestion_cycles SET targets = ?, target_count = ? "
                "WHERE id = ? AND status = 'RUNNING'",
                (json.dumps(list(targets)), len(targets), cycle_id),
            )
            self._conn.commit()

    def complete(
        self,
        cycle_id: str,
        status: CycleStatus,
        *,
        succeeded: int = 0,
        failed: int = 0,
        missing: Sequence[str] = (),
        source_reports: Sequence[dict[str, Any]] = (),
        error: str | None = None,
    ) -> IngestionCycle:
        """Close a RUNNING cycle with its final status.

        Raises:
            ValueError: ``status`` is RUNNING or SKIPPED.
            NotFoundError: No RUNNING cycle with that id.
        """
        if status in (CycleStatus.RUNNING, CycleStatus.SKIPPED):
            raise ValueError(f"A cycle cannot be completed as {status.value}")
        self._schema.require("ingestion_cycles")
        now = utc_now()
        with self._lock:
            row = self._conn.execute(
                "SELECT started_at FROM ingestion_cycles WHERE id = ? AND status = 'RUNNING'",
                (cycle_id,),
            ).fetchone()
            if row is None:
                raise NotFoundError(f"No running ingestion cycle {cycle_id}")
            started_at = from_iso8601(row["started_at"])
            duration_ms = int((now - started_at).total_seconds() * 1000)
            self._conn.execute(
                """
                UPDATE ingestion_cycles
                SET status = ?, succeeded_count = ?, failed_count = ?, missing = ?,
                    source_reports = ?, error = ?, completed_at = ?, duration_ms = ?
                WHERE id = ? AND status = 'RUNNING'
                """,
                (
                    status.value,
                    succeeded,
                    failed,
                    json.dumps(list(missing)),
                    json.dumps(list(source_reports), default=str),
                    error,
                    to_iso8601(now),
                    duration_ms,
                    cycle_id,
                ),
            )
            self._conn.commit()
        return self.require(cycle_id)

    def record_skipped(
        self,
        cycle_id: str,
        *,
        strategy: str,
        scope_id: int,
        reason: str,
    ) -> IngestionCycle | None:
        """Persist a SKIPPED run. Returns None (and logs) when the table is missing."""
        if not self.available:
            logger.warning("ingestion_cycles.unavailable", operation="record_skipped")
            return None
        now = to_iso8601(utc_now())
        with self._lock:
            self._conn.execute(
                "INSERT INTO ingestion_cycles "
                "(id, strategy, status, scope_id, error, started_at, completed_at, duration_ms) "
                "VALUES (?, ?, 'SKIPPED', ?, ?, ?, ?, 0)",
                (cycle_id, strategy, scope_id, reason, now, now),
            )
            self._conn.commit()
        return self.get(cycle_id)

    # ------------------------------------------------------------------ #
    # Reads
    # ------------------------------------------------------------------ #

    def get(self, cycle_id: str) -> IngestionCycle | None:
        if not self.available:
            return None
        with self._lock:
            row = self._conn.execute(
                f"SELECT {_CYCLE_COLUMNS} FROM ingestion_cycles WHERE id = ?", (cycle_id,)
            ).fetchone()
        return _row_to_cycle(row) if row else None

    def require(self, cycle_id: str) -> IngestionCycle:
        cycle = self.get(cycle_id)
        if cycle is None:
            raise NotFoundError(f"Ingestion cycle {cycle_id} not found").with_context(
                cycle_id=cycle_id
            )
        return cycle

    def list_recent(
        self,
        limit: int = 20,
        *,
        status: CycleStatus | None = None,
    ) -> list[IngestionCycle]:
        """Most recent cycles first."""
        if not self.available:
            logger.warning("ingestion_cycles.unavailable", operation="list_recent")
            return []
        query = f"SELECT {_CYCLE_COLUMNS} FROM ingestion_cycles"
        params: list[object] = []
        if status is not None:
            query += " WHERE status = ?"
            params.append(status.value)
        query += " ORDER BY started_at DESC LIMIT ?"
        params.append(limit)
        with self._lock:
            rows = self._conn.execute(query, params).fetchall()
        return [_row_to_cycle(row) for row in rows]

    def latest(self, *, include_skipped: bool = False) -> IngestionCycle | None:
        """The most recently started cycle."""
        if not self.available:
            return None
        query = f"SELECT {_CYCLE_COLUMNS} FROM ingestion_cycles"
        if not include_skipped:
            query += " WHERE status != 'SKIPPED'"
        query += " ORDER BY started_at DESC LIMIT 1"
        with self._lock:
            row = self._conn.execute(query).fetchone()
        return _row_to_cycle(row) if row else None


def _row_to_cycle(row: sqlite3.Row) -> IngestionCycle:
    return IngestionCycle(
        id=row["id"],
        strategy=row["strategy"],
        status=CycleStatus(row["status"]),
        scope_id=row["scope_id"],
        targets=json.loads(row["targets"]),
        target_count=row["target_count"],
        succeeded_count=row["succeeded_count"],
        failed_count=row["failed_count"],
        missing=json.loads(row["missing"]),
        source_reports=json.loads(row["source_reports"]),
        error=row["error"],
        started_at=from_iso8601(row["started_at"]),
        completed_at=from_iso8601(row["completed_at"]),
        duration_ms=row["duration_ms"],
    )


__all__ = ["IngestionCycleStore"]
