"""Data-Quality Issue Store.

Records data problems found while ingesting: an entity that was targeted
but never produced a payload, a transform that blew up, a value out of
range. Issues are how a problem in the data becomes visible to operators
independently of whether the surrounding job or cycle succeeded.

Recording is part of the pipeline's correctness guarantee, so ``record``
requires the table. Reads degrade to empty results when it is missing.
"""

from __future__ import annotations

import json
import sqlite3
import threading
from typing import Any

from syncspine.core.errors import NotFoundError
from syncspine.core.logging import get_logger
from syncspine.core.schema import SchemaReport, verify_schema
from syncspine.core.timestamps import from_iso8601, to_iso8601, utc_now

from .models import DQIssue, IssueStatus, IssueType, Severity

logger = get_logger(__name__)

_ISSUE_COLUMNS = (
    "id, entity_id, scope_id, cycle_id, issue_type, severity, status, field_name, "
    "message, details, created_at, resolved_at, resolution_notes"
)

_CLOSED_STATUSES = (IssueStatus.RESOLVED, IssueStatus.IGNORED)


class DQIssueStore:
    """SQLite-backed DQ issue log."""

    def __init__(self, conn: sqlite3.Connection, *, schema: SchemaReport | None = None):
        self._conn = conn
        self._schema = schema or verify_schema(conn)
        self._lock = threading.RLock()

    @property
    def available(self) -> bool:
        return self._schema.has("dq_issues")

    def record(
        self,
        *,
        entity_id: str,
        scope_id: int,
        issue_type: IssueType,
        severity: Severity,
        message: str,
        cycle_id: str | None = None,
        field_name: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> DQIssue:
        """Insert an OPEN issue.

        Raises:
            SchemaUnavailableError: The dq_issues table is not provisioned.
        """
        self._schema.require("dq_issues")
        now = to_iso8601(utc_now())
        with self._lock:
            cursor = self._conn.execute(
                """
                INSERT INTO dq_issues (
                    entity_id, scope_id, cycle_id, issue_type, severity, status,
                    field_name, message, details, created_at
                ) VALUES (?, ?, ?, ?, ?, 'OPEN', ?, ?, ?, ?)
                """,
                (
                    entity_id,
                    scope_id,
                    cycle_id,
                    issue_type.value,
                    severity.value,
                    field_name,
                    message,
                    json.dumps(details, default=str) if details is not None else None,
                    now,
                ),
            )
            self._conn.commit()
            issue_id = cursor.lastrowid

        log = logger.error if severity is Severity.CRITICAL else logger.warning
        log(
            "dq.issue_recorded",
            issue_id=issue_id,
            entity_id=entity_id,
            issue_type=issue_type.value,
            severity=severity.value,
            cycle_id=cycle_id,
        )
        issue = self.get(issue_id)
        assert issue is not None
        return issue

    def get(self, issue_id: int) -> DQIssue | None:
        if not self.available:
            return None
        with self._lock:
            row = self._conn.execute(
                f"SELECT {_ISSUE_COLUMNS} FROM dq_issues WHERE id = ?", (issue_id,)
            ).fetchone()
        return _row_to_issue(row) if row else None

    def list_for_cycle(
        self,
        cycle_id: str,
        *,
        severity: Severity | None = None,
    ) -> list[DQIssue]:
        if not self.available:
            logger.warning("dq_issues.unavailable", operation="list_for_cycle")
            return []
        query = f"SELECT {_ISSUE_COLUMNS} FROM dq_issues WHERE cycle_id = ?"
        params: list[object] = [cycle_id]
        if severity is not None:
            query += " AND severity = ?"
            params.append(severity.value)
        query += " ORDER BY id"
        with self._lock:
            rows = self._conn.execute(query, params).fetchall()
        return [_row_to_issue(row) for row in rows]

    def list_open(
        self,
        *,
        entity_id: str | None = None,
        severity: Severity | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[DQIssue]:
        """OPEN and ACKNOWLEDGED issues, newest first."""
        if not self.available:
            logger.warning("dq_issues.unavailable", operation="list_open")
            return []
        query = (
            f"SELECT {_ISSUE_COLUMNS} FROM dq_issues "
            "WHERE status IN ('OPEN', 'ACKNOWLEDGED')"
        )
        params: list[object] = []
        if entity_id is not None:
            query += " AND entity_id = ?"
            params.append(entity_id)
        if severity is not None:
            query += " AND severity = ?"
            params.append(severity.value)
        query += " ORDER BY created_at DESC, id DESC LIMIT ? OFFSET ?"
        params.extend([limit, offset])
        with self._lock:
            rows = self._conn.execute(query, params).fetchall()
        return [_row_to_issue(row) for row in rows]

    def count_by_severity(self, cycle_id: str | None = None) -> dict[str, int]:
        """Issue counts per severity; every severity key is present."""
        counts = {s.value: 0 for s in Severity}
        if not self.available:
            return counts
        query = "SELECT severity, COUNT(*) FROM dq_issues"
        params: list[object] = []
        if cycle_id is not None:
            query += " WHERE cycle_id = ?"
            params.append(cycle_id)
        query += " GROUP BY severity"
        with self._lock:
            for severity, count in self._conn.execute(query, params).fetchall():
                counts[severity] = count
        return counts

    def update_status(
        self,
        issue_id: int,
        status: IssueStatus,
        *,
        notes: str | None = None,
    ) -> DQIssue:
        """Move an issue to ``status``; closing it stamps ``resolved_at``.

        Raises:
            NotFoundError: No issue with that id.
        """
        self._schema.require("dq_issues")
        resolved_at = to_iso8601(utc_now()) if status in _CLOSED_STATUSES else None
        with self._lock:
            cursor = self._conn.execute(
                """
                UPDATE dq_issues
                SET status = ?, resolved_at = ?, resolution_notes = COALESCE(?, resolution_notes)
                WHERE id = ?
                """,
                (status.value, resolved_at, notes, issue_id),
            )
            self._conn.commit()
        if cursor.rowcount == 0:
            raise NotFoundError(f"DQ issue {issue_id} not found")
        logger.info("dq.issue_updated", issue_id=issue_id, status=status.value)
        issue = self.get(issue_id)
        assert issue is not None
        return issue


def _row_to_issue(row: sqlite3.Row) -> DQIssue:
    return DQIssue(
        id=row["id"],
        entity_id=row["entity_id"],
        scope_id=row["scope_id"],
        cycle_id=row["cycle_id"],
        issue_type=IssueType(row["issue_type"]),
        severity=Severity(row["severity"]),
        status=IssueStatus(row["status"]),
        field_name=row["field_name"],
        message=row["message"],
        details=json.loads(row["details"]) if row["details"] else None,
        created_at=from_iso8601(row["created_at"]),
        resolved_at=from_iso8601(row["resolved_at"]),
        resolution_notes=row["resolution_notes"],
    )


__all__ = ["DQIssueStore"]
