"""Dead Letter Queue (DLQ) — archive, inspect and replay failed jobs.

WHY
───
A job that exhausted its attempts must not disappear into a FAILED row
nobody looks at. The DLQ keeps an immutable snapshot of it (type, scope,
full input, attempts, classified error and stack) so operators can
inspect it, resolve it, or replay it as a fresh job.

Writing to the DLQ happens inside the worker loop, so ``record`` never
raises: a missing table or a storage error is logged and swallowed.

ARCHITECTURE
────────────
::

    DeadLetterQueue(conn)
      ├── .record(job, error)       ─ snapshot a terminally failed job (never raises)
      ├── .get(dlq_id) / .get_by_job(job_id)
      ├── .list_unresolved() / .list_all() / .count_unresolved()
      ├── .resolve(dlq_id, notes)   ─ mark as handled
      ├── .replay(dlq_id, store)    ─ re-create the job, mark resolved
      └── .cleanup_resolved(days)   ─ purge old resolved entries

BEST PRACTICES
──────────────
- Replay only after fixing the cause; the replayed job gets a fresh
  attempt budget and no dedup key.
- Run ``cleanup_resolved()`` periodically to bound table growth.

Related modules:
    models.py     — DeadLetter dataclass
    worker.py     — records entries after terminal failures
    job_store.py  — replay target

Example::

    dlq = DeadLetterQueue(conn)
    for entry in dlq.list_unresolved():
        print(entry.job_type, entry.error_code, entry.last_error)
    dlq.replay(entry.id, job_store)
"""

from __future__ import annotations

import contextlib
import json
import logging
import sqlite3
import threading
import uuid
from datetime import timedelta
from typing import TYPE_CHECKING, Any

from syncspine.core.errors import NotFoundError, ValidationError
from syncspine.core.schema import SchemaReport, verify_schema
from syncspine.core.timestamps import from_iso8601, to_iso8601, utc_now

from .models import DeadLetter, Job, JobError, JobRequest, JobScope, JobType, ScopeType

if TYPE_CHECKING:
    from .job_store import JobStore

logger = logging.getLogger(__name__)

_DLQ_COLUMNS = (
    "id, job_id, job_type, scope_type, entity_id, input, attempts, max_attempts, priority, "
    "error_code, last_error, error_stack, failed_at, created_at, resolved_at, "
    "resolution_notes, replayed_job_id"
)


class DeadLetterQueue:
    """Terminal-failure archive for jobs."""

    def __init__(self, conn: sqlite3.Connection, *, schema: SchemaReport | None = None):
        """Initialize with a database connection.

        Args:
            conn: Connection from :func:`syncspine.core.connection.connect`
            schema: Schema report; checked here once when omitted
        """
        self._conn = conn
        self._schema = schema or verify_schema(conn)
        self._lock = threading.RLock()

    @property
    def available(self) -> bool:
        return self._schema.has("dead_letters")

    def record(self, job: Job, error: JobError | None = None) -> DeadLetter | None:
        """Archive a terminally failed job.

        Idempotent per job id. Never raises: returns None (and logs a
        warning) when the table is missing or the write fails.
        """
        if not self.available:
            logger.warning("dead_letters table unavailable; job %s not archived", job.id)
            return None

        err = error or job.last_error
        now = utc_now()
        entry_id = str(uuid.uuid4())
        try:
            with self._lock:
                self._conn.execute(
                    f"""
                    INSERT INTO dead_letters ({_DLQ_COLUMNS})
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, NULL, NULL, NULL)
                    ON CONFLICT (job_id) DO NOTHING
                    """,
                    (
                        entry_id,
                        job.id,
                        job.job_type,
                        job.scope.scope_type.value,
                        job.scope.entity_id,
                        json.dumps(job.input, default=str),
                        job.attempts,
                        job.max_attempts,
                        job.priority,
                        err.code if err else None,
                        err.message if err else None,
                        err.stack if err else None,
                        to_iso8601(job.finished_at or now),
                        to_iso8601(now),
                    ),
                )
                self._conn.commit()
            return self.get_by_job(job.id)
        except Exception as exc:
            with contextlib.suppress(sqlite3.Error):
                self._conn.rollback()
            logger.warning("failed to archive job %s in DLQ: %s", job.id, exc)
            return None

    def get(self, dlq_id: str) -> DeadLetter | None:
        if not self.available:
            return None
        with self._lock:
            row = self._conn.execute(
                f"SELECT {_DLQ_COLUMNS} FROM dead_letters WHERE id = ?", (dlq_id,)
            ).fetchone()
        return self._row_to_entry(row) if row else None

    def get_by_job(self, job_id: str) -> DeadLetter | None:
        if not self.available:
            return None
        with self._lock:
            row = self._conn.execute(
                f"SELECT {_DLQ_COLUMNS} FROM dead_letters WHERE job_id = ?", (job_id,)
            ).fetchone()
        return self._row_to_entry(row) if row else None

    def list_unresolved(
        self, job_type: str | None = None, limit: int = 100, offset: int = 0
    ) -> list[DeadLetter]:
        """Unresolved entries, newest first."""
        return self._list(job_type=job_type, unresolved_only=True, limit=limit, offset=offset)

    def list_all(
        self, job_type: str | None = None, limit: int = 100, offset: int = 0
    ) -> list[DeadLetter]:
        return self._list(job_type=job_type, unresolved_only=False, limit=limit, offset=offset)

    def count_unresolved(self, job_type: str | None = None) -> int:
        if not self.available:
            return 0
        query = "SELECT COUNT(*) FROM dead_letters WHERE resolved_at IS NULL"
        params: tuple = ()
        if job_type:
            query += " AND job_type = ?"
            params = (job_type,)
        with self._lock:
            return self._conn.execute(query, params).fetchone()[0]

    def resolve(self, dlq_id: str, notes: str | None = None) -> bool:
        """Mark an entry handled. False if missing or already resolved."""
        if not self.available:
            return False
        with self._lock:
            cursor = self._conn.execute(
                """
                UPDATE dead_letters SET resolved_at = ?, resolution_notes = ?
                WHERE id = ? AND resolved_at IS NULL
                """,
                (to_iso8601(utc_now()), notes, dlq_id),
            )
            self._conn.commit()
        return cursor.rowcount == 1

    def replay(self, dlq_id: str, job_store: JobStore, *, created_by: str | None = None) -> Job:
        """Re-create the archived job as a new PENDING job and resolve the entry.

        Raises:
            NotFoundError: No such entry.
            ValidationError: Entry already resolved, or its job type no
                longer exists.
        """
        entry = self.get(dlq_id)
        if entry is None:
            raise NotFoundError(f"Dead letter {dlq_id} not found")
        if entry.is_resolved:
            raise ValidationError(f"Dead letter {dlq_id} is already resolved")
        kind = JobType.parse(entry.job_type)
        if kind is None:
            raise ValidationError(f"Job type {entry.job_type!r} can no longer be run")

        job = job_store.create(
            JobRequest(
                job_type=kind,
                scope=entry.scope,
                input=entry.input,
                priority=entry.priority,
                max_attempts=entry.max_attempts,
                created_by=created_by or f"dlq-replay:{dlq_id}",
            )
        )
        with self._lock:
            self._conn.execute(
                """
                UPDATE dead_letters
                SET resolved_at = ?, resolution_notes = ?, replayed_job_id = ?
                WHERE id = ?
                """,
                (to_iso8601(utc_now()), f"Replayed as job {job.id}", job.id, dlq_id),
            )
            self._conn.commit()
        logger.info("dead letter %s replayed as job %s", dlq_id, job.id)
        return job

    def cleanup_resolved(self, days: int = 30) -> int:
        """Delete entries resolved more than ``days`` ago."""
        if not self.available:
            return 0
        cutoff = to_iso8601(utc_now() - timedelta(days=days))
        with self._lock:
            cursor = self._conn.execute(
                "DELETE FROM dead_letters WHERE resolved_at IS NOT NULL AND resolved_at < ?",
                (cutoff,),
            )
            self._conn.commit()
        return cursor.rowcount

    def _list(
        self, *, job_type: str | None, unresolved_only: bool, limit: int, offset: int
    ) -> list[DeadLetter]:
        if not self.available:
            logger.warning("dead_letters table unavailable; nothing to list")
            return []
        query = f"SELECT {_DLQ_COLUMNS} FROM dead_letters WHERE 1=1"
        params: list[Any] = []
        if unresolved_only:
            query += " AND resolved_at IS NULL"
        if job_type:
            query += " AND job_type = ?"
            params.append(job_type)
        query += " ORDER BY created_at DESC LIMIT ? OFFSET ?"
        params.extend([limit, offset])
        with self._lock:
            rows = self._conn.execute(query, params).fetchall()
        return [self._row_to_entry(r) for r in rows]

    def _row_to_entry(self, row: sqlite3.Row) -> DeadLetter:
        return DeadLetter(
            id=row["id"],
            job_id=row["job_id"],
            job_type=row["job_type"],
            scope=JobScope(ScopeType(row["scope_type"]), row["entity_id"]),
            input=json.loads(row["input"]) if row["input"] else {},
            attempts=row["attempts"],
            max_attempts=row["max_attempts"],
            priority=row["priority"],
            error_code=row["error_code"],
            last_error=row["last_error"],
            error_stack=row["error_stack"],
            failed_at=from_iso8601(row["failed_at"]),
            created_at=from_iso8601(row["created_at"]),
            resolved_at=from_iso8601(row["resolved_at"]),
            resolution_notes=row["resolution_notes"],
            replayed_job_id=row["replayed_job_id"],
        )


__all__ = ["DeadLetterQueue"]
