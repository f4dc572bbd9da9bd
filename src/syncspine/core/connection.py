"""SQLite connection factory.

Every store in syncspine takes a plain :class:`sqlite3.Connection`.
``connect()`` is the one place that decides how such a connection is
opened: shared across threads (stores serialize access with their own
locks), ``sqlite3.Row`` rows, WAL journal for file databases and a busy
timeout so that two processes contending for the claim ``UPDATE`` or the
cycle lock wait for each other instead of failing immediately.

Usage::

    from syncspine.core.connection import connect, initialize

    conn = connect("/var/lib/syncspine/sync.db")
    schema = initialize(conn)        # apply migrations, verify tables
"""

from __future__ import annotations

import sqlite3
from pathlib import Path

from syncspine.core.migrations import MigrationRunner
from syncspine.core.schema import SchemaReport, verify_schema

MEMORY = ":memory:"


def connect(database: str | Path = MEMORY, *, timeout: float = 30.0) -> sqlite3.Connection:
    """Open a SQLite connection configured for syncspine stores.

    Args:
        database: File path or ``":memory:"``.
        timeout: Seconds to wait on a locked database before raising.
    """
    target = str(database)
    if target != MEMORY:
        Path(target).parent.mkdir(parents=True, exist_ok=True)

    conn = sqlite3.connect(target, timeout=timeout, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute(f"PRAGMA busy_timeout = {int(timeout * 1000)}")
    if target != MEMORY:
        conn.execute("PRAGMA journal_mode = WAL")
    return conn


def initialize(conn: sqlite3.Connection) -> SchemaReport:
    """Apply pending migrations and return the resulting schema report."""
    result = MigrationRunner(conn).apply_pending()
    if not result.success:
        failed = ", ".join(f"{name}: {err}" for name, err in result.errors.items())
        raise sqlite3.OperationalError(f"Migration failed: {failed}")
    return verify_schema(conn)
