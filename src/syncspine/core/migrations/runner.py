"""Apply numbered SQL migrations to a SQLite database."""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass, field
from pathlib import Path

logger = logging.getLogger(__name__)

_SQL_DIR = Path(__file__).resolve().parent / "sql"


@dataclass
class MigrationRecord:
    """Record of a single applied migration."""

    id: int
    filename: str
    applied_at: str


@dataclass
class MigrationResult:
    """Result of a migration run."""

    applied: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    errors: dict[str, str] = field(default_factory=dict)

    @property
    def success(self) -> bool:
        return len(self.errors) == 0


class MigrationRunner:
    """Applies SQL migrations from a directory of numbered ``.sql`` files.

    Parameters
    ----------
    conn
        A ``sqlite3.Connection``.
    sql_dir
        Directory containing the migrations. Defaults to the ``sql/``
        directory shipped with this package.

    Example::

        runner = MigrationRunner(conn)
        result = runner.apply_pending()
        print(f"Applied {len(result.applied)} migrations")
    """

    def __init__(
        self,
        conn: sqlite3.Connection,
        sql_dir: Path | str | None = None,
    ) -> None:
        self._conn = conn
        self._sql_dir = Path(sql_dir) if sql_dir else _SQL_DIR
        self._ensure_migrations_table()

    def apply_pending(self) -> MigrationResult:
        """Apply all pending migrations in filename order, stopping at the first error."""
        result = MigrationResult()
        applied = {r.filename for r in self.get_applied()}

        for sql_file in self._discover_migrations():
            name = sql_file.name
            if name in applied:
                result.skipped.append(name)
                continue

            try:
                self._conn.executescript(sql_file.read_text(encoding="utf-8"))
                self._record_migration(name)
            except sqlite3.Error as exc:
                result.errors[name] = str(exc)
                logger.error("migration %s failed: %s", name, exc)
                break

            result.applied.append(name)
            logger.info("migration %s applied", name)

        return result

    def get_applied(self) -> list[MigrationRecord]:
        """Return already-applied migrations in application order."""
        cursor = self._conn.execute(
            "SELECT id, filename, applied_at FROM _migrations ORDER BY id"
        )
        return [
            MigrationRecord(id=row[0], filename=row[1], applied_at=row[2])
            for row in cursor.fetchall()
        ]

    def get_pending(self) -> list[str]:
        """Return filenames of migrations not yet applied."""
        applied = {r.filename for r in self.get_applied()}
        return [f.name for f in self._discover_migrations() if f.name not in applied]

    def _ensure_migrations_table(self) -> None:
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS _migrations (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                filename TEXT NOT NULL UNIQUE,
                applied_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now'))
            )
            """
        )
        self._conn.commit()

    def _discover_migrations(self) -> list[Path]:
        if not self._sql_dir.exists():
            return []
        return sorted(self._sql_dir.glob("*.sql"))

    def _record_migration(self, filename: str) -> None:
        self._conn.execute("INSERT INTO _migrations (filename) VALUES (?)", (filename,))
        self._conn.commit()
