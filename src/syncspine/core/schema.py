"""
Schema manifest and startup capability check.

Stores never discover a missing table by catching a driver error and
matching its message. Instead, the set of tables present is read once
(``verify_schema``) into an immutable :class:`SchemaReport`, and every
store consults the report it was built with.

Manifesto:
    - **Checked once:** One ``sqlite_master`` query per store construction
    - **Explicit:** ``report.require("jobs")`` raises SchemaUnavailableError
    - **Degradable:** Readers call ``report.has(...)`` and return empty

Architecture:
    ::

        MigrationRunner.apply_pending()   (core/migrations/sql/*.sql)
                │
                ▼
        verify_schema(conn) ──► SchemaReport(present, applied)
                                    │
                    ┌───────────────┼────────────────┐
                    ▼               ▼                ▼
                JobStore     DeadLetterQueue    RawPayloadStore ...

Tags:
    schema, migrations, capability-check, syncspine

Doc-Types:
    - API Reference
"""

from __future__ import annotations

import sqlite3
from dataclasses import dataclass
from typing import Any

from syncspine.core.errors import SchemaUnavailableError

# Table name -> owning component.
CORE_TABLES: dict[str, str] = {
    "jobs": "execution",
    "job_logs": "execution",
    "dead_letters": "execution",
    "concurrency_locks": "execution",
    "rate_limit_buckets": "execution",
    "ingestion_cycles": "ingestion",
    "raw_payloads": "ingestion",
    "dq_issues": "ingestion",
    "tracked_entities": "ingestion",
}


@dataclass(frozen=True)
class SchemaReport:
    """Tables present in a database at check time."""

    present: frozenset[str]
    applied_migrations: tuple[str, ...] = ()

    @property
    def missing(self) -> frozenset[str]:
        return frozenset(CORE_TABLES) - self.present

    @property
    def is_complete(self) -> bool:
        return not self.missing

    def has(self, table: str) -> bool:
        return table in self.present

    def require(self, table: str) -> None:
        """Raise :class:`SchemaUnavailableError` unless ``table`` exists."""
        if table not in self.present:
            raise SchemaUnavailableError(table)

    def to_dict(self) -> dict[str, Any]:
        return {
            "complete": self.is_complete,
            "present": sorted(self.present & frozenset(CORE_TABLES)),
            "missing": sorted(self.missing),
            "applied_migrations": list(self.applied_migrations),
        }


def verify_schema(conn: sqlite3.Connection) -> SchemaReport:
    """Read the table list (and applied migrations) from ``conn``."""
    rows = conn.execute(
        "SELECT name FROM sqlite_master WHERE type = 'table'"
    ).fetchall()
    present = frozenset(row[0] for row in rows)

    applied: tuple[str, ...] = ()
    if "_migrations" in present:
        applied = tuple(
            row[0]
            for row in conn.execute("SELECT filename FROM _migrations ORDER BY id").fetchall()
        )
    return SchemaReport(present=present, applied_migrations=applied)


__all__ = ["CORE_TABLES", "SchemaReport", "verify_schema"]
