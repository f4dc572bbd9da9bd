"""Job Store — durable queue with an atomic claim.

WHY
───
Jobs are created by callers (HTTP layer, other jobs, the scheduler) and
executed by any number of worker processes. The only thing those workers
share is this table, so every state transition is a conditional
``UPDATE ... WHERE status = ?`` checked through ``rowcount``. There is no
check-then-act in memory anywhere in this module.

ARCHITECTURE
────────────
::

    JobStore(conn)
      ├── .create(request)          ─ insert PENDING (DuplicateJobError on live dedup key)
      ├── .list_pending(limit)      ─ due PENDING jobs, priority DESC then age
      ├── .claim(job_id, worker)    ─ PENDING → RUNNING, attempts + 1, lease stamped
      ├── .renew_lease(...)         ─ keep a long job from looking orphaned
      ├── .mark_succeeded(...)      ─ RUNNING → SUCCEEDED | PARTIAL
      ├── .mark_failed(...)         ─ RUNNING → PENDING (backoff) | FAILED
      ├── .cancel(job_id)           ─ PENDING | RUNNING → CANCELLED
      ├── .reclaim_expired()        ─ orphaned RUNNING → PENDING | FAILED
      └── .list_jobs / .count_by_status / .append_log / .get_logs

    attempts counts RUNNING executions: it is bumped by the claim, which
    also refuses jobs whose attempts already reached max_attempts.

BEST PRACTICES
──────────────
- Build one store per connection; the internal lock serializes threads
  sharing that connection (worker loop + handler thread checking for
  cancellation).
- Pass a zero-delay backoff in tests so retried jobs are due immediately.

Related modules:
    worker.py  — the only caller of claim / mark_*
    dlq.py     — archives jobs that mark_failed made terminal
    retry.py   — backoff policy for mark_failed

Tags:
    syncspine, execution, job-queue, claim, sqlite

Doc-Types:
    api-reference
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from syncspine.core.errors import DuplicateJobError, NotFoundError, ValidationError
from syncspine.core.schema import SchemaReport, verify_schema
from syncspine.core.timestamps import from_iso8601, to_iso8601, utc_now

from .models import (
    Job,
    JobError,
    JobLogEntry,
    JobRequest,
    JobScope,
    JobStatus,
    ScopeType,
)
from .retry import DecorrelatedJitterBackoff, RetryStrategy

logger = logging.getLogger(__name__)

_JOB_COLUMNS = (
    "id, job_type, scope_type, entity_id, input, status, attempts, max_attempts, "
    "priority, result, last_error, dedup_key, created_by, claimed_by, lease_expires_at, "
    "retry_delay_seconds, scheduled_for, started_at, finished_at, created_at, updated_at"
)


@dataclass
class ReclaimedJob:
    """A RUNNING job whose lease expired, after reclaim."""

    job: Job
    previous_owner: str | None

    @property
    def dead(self) -> bool:
        return self.job.status is JobStatus.FAILED


class JobStore:
    """SQLite-backed job queue."""

    def __init__(
        self,
        conn: sqlite3.Connection,
        *,
        backoff: RetryStrategy | None = None,
        schema: SchemaReport | None = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        """
        Args:
            conn: Connection from :func:`syncspine.core.connection.connect`.
            backoff: Delay policy between attempts (default: decorrelated jitter, 30 s base).
            schema: Schema report; checked here once when omitted.
            clock: Source of "now" (tests may freeze it).
        """
        self._conn = conn
        self._backoff = backoff or DecorrelatedJitterBackoff()
        self._schema = schema or verify_schema(conn)
        self._clock = clock
        self._lock = threading.RLock()

    # ------------------------------------------------------------------ #
    # Creation
    # ------------------------------------------------------------------ #

    def create(self, request: JobRequest) -> Job:
        """Insert a PENDING job.

        Raises:
            DuplicateJobError: A PENDING or RUNNING job holds the same dedup key.
            ValidationError: ``max_attempts`` < 1.
            SchemaUnavailableError: The jobs table is not provisioned.
        """
        self._schema.require("jobs")
        if request.max_attempts < 1:
            raise ValidationError("max_attempts must be at least 1")

        now = self._clock()
        job_id = str(uuid.uuid4())
        scheduled_for = request.scheduled_for or now

        with self._lock:
            try:
                self._conn.execute(
                    """
                    INSERT INTO jobs (
                        id, job_type, scope_type, entity_id, input, status,
                        attempts, max_attempts, priority, dedup_key, created_by,
                        scheduled_for, created_at, updated_at
                    ) VALUES (?, ?, ?, ?, ?, 'PENDING', 0, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        job_id,
                        request.job_type.value,
                        request.scope.scope_type.value,
                        request.scope.entity_id,
                        json.dumps(request.input, default=str),
                        request.max_attempts,
                        request.priority,
                        request.dedup_key,
                        request.created_by,
                        to_iso8601(scheduled_for),
                        to_iso8601(now),
                        to_iso8601(now),
                    ),
                )
                self._conn.commit()
            except sqlite3.IntegrityError as exc:
                self._conn.rollback()
                if request.dedup_key is None:
                    raise
                existing = self._find_live_by_dedup_key(request.dedup_key)
                raise DuplicateJobError(
                    request.dedup_key,
                    existing_job_id=existing.id if existing else None,
                    cause=exc,
                ) from exc

        logger.debug("job %s created (%s)", job_id, request.job_type.value)
        return self.require(job_id)

    # ------------------------------------------------------------------ #
    # Reads
    # ------------------------------------------------------------------ #

    def get(self, job_id: str) -> Job | None:
        if not self._schema.has("jobs"):
            logger.warning("jobs table unavailable; get(%s) returns nothing", job_id)
            return None
        with self._lock:
            row = self._conn.execute(
                f"SELECT {_JOB_COLUMNS} FROM jobs WHERE id = ?", (job_id,)
            ).fetchone()
        return self._row_to_job(row) if row else None

    def require(self, job_id: str) -> Job:
        """Like :meth:`get` but raises :class:`NotFoundError`."""
        job = self.get(job_id)
        if job is None:
            raise NotFoundError(f"Job {job_id} not found").with_context(job_id=job_id)
        return job

    def list_pending(self, limit: int = 5) -> list[Job]:
        """Due PENDING jobs, highest priority first, then oldest first."""
        if not self._schema.has("jobs"):
            logger.warning("jobs table unavailable; no pending jobs")
            return []
        with self._lock:
            rows = self._conn.execute(
                f"""
                SELECT {_JOB_COLUMNS} FROM jobs
                WHERE status = 'PENDING'
                  AND attempts < max_attempts
                  AND scheduled_for <= ?
                ORDER BY priority DESC, created_at ASC
                LIMIT ?
                """,
                (to_iso8601(self._clock()), limit),
            ).fetchall()
        return [self._row_to_job(r) for r in rows]

    def list_jobs(
        self,
        *,
        job_type: str | None = None,
        status: JobStatus | str | None = None,
        scope_type: ScopeType | str | None = None,
        entity_id: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[Job], int]:
        """Filtered, newest-first page of jobs plus the total match count."""
        if not self._schema.has("jobs"):
            logger.warning("jobs table unavailable; list_jobs returns nothing")
            return [], 0

        where = " WHERE 1=1"
        params: list[Any] = []
        if job_type:
            where += " AND job_type = ?"
            params.append(str(getattr(job_type, "value", job_type)))
        if status:
            where += " AND status = ?"
            params.append(str(getattr(status, "value", status)))
        if scope_type:
            where += " AND scope_type = ?"
            params.append(str(getattr(scope_type, "value", scope_type)))
        if entity_id:
            where += " AND entity_id = ?"
            params.append(entity_id)

        with self._lock:
            total = self._conn.execute(f"SELECT COUNT(*) FROM jobs{where}", params).fetchone()[0]
            rows = self._conn.execute(
                f"SELECT {_JOB_COLUMNS} FROM jobs{where} "
                "ORDER BY created_at DESC LIMIT ? OFFSET ?",
                [*params, limit, offset],
            ).fetchall()
        return [self._row_to_job(r) for r in rows], total

    def count_by_status(self, job_type: str | None = None) -> dict[str, int]:
        """Job counts keyed by status (every status present, zero if none)."""
        counts = {s.value: 0 for s in JobStatus}
        if not self._schema.has("jobs"):
            return counts
        query = "SELECT status, COUNT(*) FROM jobs"
        params: tuple = ()
        if job_type:
            query += " WHERE job_type = ?"
            params = (job_type,)
        query += " GROUP BY status"
        with self._lock:
            for status, count in self._conn.execute(query, params).fetchall():
                counts[status] = count
        return counts

    def is_cancelled(self, job_id: str) -> bool:
        with self._lock:
            row = self._conn.execute(
                "SELECT status FROM jobs WHERE id = ?", (job_id,)
            ).fetchone()
        return row is not None and row[0] == JobStatus.CANCELLED.value

    # ------------------------------------------------------------------ #
    # Claim / lease
    # ------------------------------------------------------------------ #

    def claim(self, job_id: str, worker_id: str, lease_seconds: float = 300.0) -> Job | None:
        """Atomically move a PENDING job to RUNNING.

        Returns the claimed job, or ``None`` if another worker got there
        first (or the job is no longer claimable).
        """
        now = self._clock()
        with self._lock:
            cursor = self._conn.execute(
                """
                UPDATE jobs
                SET status = 'RUNNING',
                    attempts = attempts + 1,
                    claimed_by = ?,
                    lease_expires_at = ?,
                    started_at = ?,
                    updated_at = ?
                WHERE id = ? AND status = 'PENDING' AND attempts < max_attempts
                """,
                (
                    worker_id,
                    to_iso8601(now + timedelta(seconds=lease_seconds)),
                    to_iso8601(now),
                    to_iso8601(now),
                    job_id,
                ),
            )
            claimed = cursor.rowcount == 1
            self._conn.commit()
        if not claimed:
            return None
        return self.get(job_id)

    def renew_lease(self, job_id: str, worker_id: str, lease_seconds: float) -> bool:
        """Push out the lease of a job this worker still holds."""
        now = self._clock()
        with self._lock:
            cursor = self._conn.execute(
                """
                UPDATE jobs SET lease_expires_at = ?, updated_at = ?
                WHERE id = ? AND status = 'RUNNING' AND claimed_by = ?
                """,
                (to_iso8601(now + timedelta(seconds=lease_seconds)), to_iso8601(now),
                 job_id, worker_id),
            )
            self._conn.commit()
        return cursor.rowcount == 1

    # ------------------------------------------------------------------ #
    # Outcomes
    # ------------------------------------------------------------------ #

    def mark_succeeded(
        self,
        job_id: str,
        result: Any = None,
        *,
        partial: bool = False,
        worker_id: str | None = None,
    ) -> Job | None:
        """RUNNING → SUCCEEDED (or PARTIAL).

        Returns ``None`` when the job is no longer RUNNING under this worker
        (cancelled meanwhile, or reclaimed after lease expiry); the stored
        terminal state is left untouched.
        """
        status = JobStatus.PARTIAL if partial else JobStatus.SUCCEEDED
        now = to_iso8601(self._clock())
        query = """
            UPDATE jobs
            SET status = ?, result = ?, finished_at = ?, updated_at = ?,
                lease_expires_at = NULL
            WHERE id = ? AND status = 'RUNNING'
        """
        params: list[Any] = [status.value, _dump_result(result), now, now, job_id]
        if worker_id is not None:
            query += " AND claimed_by = ?"
            params.append(worker_id)

        with self._lock:
            cursor = self._conn.execute(query, params)
            self._conn.commit()
        if cursor.rowcount != 1:
            logger.info("job %s no longer running; %s outcome discarded", job_id, status.value)
            return None
        return self.get(job_id)

    def mark_failed(
        self,
        job_id: str,
        error: JobError,
        *,
        terminal: bool = False,
        retry_after: float | None = None,
        worker_id: str | None = None,
    ) -> Job | None:
        """Record a failed attempt.

        The job goes back to PENDING, due after the backoff delay (or
        ``retry_after`` when the error carried a server hint), unless
        ``terminal`` is set or attempts already reached max_attempts, in
        which case it becomes terminal FAILED.

        Returns the updated job, or ``None`` if it was no longer RUNNING
        under this worker.

        Raises:
            NotFoundError: Unknown job id.
        """
        now = self._clock()
        with self._lock:
            row = self._conn.execute(
                "SELECT status, attempts, max_attempts, retry_delay_seconds, claimed_by "
                "FROM jobs WHERE id = ?",
                (job_id,),
            ).fetchone()
            if row is None:
                raise NotFoundError(f"Job {job_id} not found").with_context(job_id=job_id)
            if row["status"] != JobStatus.RUNNING.value or (
                worker_id is not None and row["claimed_by"] != worker_id
            ):
                logger.info("job %s no longer running; failure not recorded", job_id)
                return None

            exhausted = terminal or row["attempts"] >= row["max_attempts"]
            error_json = json.dumps(error.to_dict())
            if exhausted:
                cursor = self._conn.execute(
                    """
                    UPDATE jobs
                    SET status = 'FAILED', last_error = ?, finished_at = ?, updated_at = ?,
                        lease_expires_at = NULL
                    WHERE id = ? AND status = 'RUNNING'
                    """,
                    (error_json, to_iso8601(now), to_iso8601(now), job_id),
                )
            else:
                delay = (
                    retry_after
                    if retry_after is not None
                    else self._backoff.next_delay(row["attempts"], row["retry_delay_seconds"])
                )
                cursor = self._conn.execute(
                    """
                    UPDATE jobs
                    SET status = 'PENDING', last_error = ?, retry_delay_seconds = ?,
                        scheduled_for = ?, claimed_by = NULL, lease_expires_at = NULL,
                        updated_at = ?
                    WHERE id = ? AND status = 'RUNNING'
                    """,
                    (error_json, delay, to_iso8601(now + timedelta(seconds=delay)),
                     to_iso8601(now), job_id),
                )
            updated = cursor.rowcount == 1
            self._conn.commit()

        if not updated:
            return None
        return self.get(job_id)

    def cancel(self, job_id: str) -> bool:
        """Cancel a PENDING or RUNNING job. False if missing or already terminal.

        A running handler is not interrupted; it can observe the
        cancellation through its JobContext, and its eventual outcome is
        discarded.
        """
        now = to_iso8601(self._clock())
        with self._lock:
            cursor = self._conn.execute(
                """
                UPDATE jobs
                SET status = 'CANCELLED', finished_at = ?, updated_at = ?,
                    lease_expires_at = NULL
                WHERE id = ? AND status IN ('PENDING', 'RUNNING')
                """,
                (now, now, job_id),
            )
            self._conn.commit()
        return cursor.rowcount == 1

    def reclaim_expired(self) -> list[ReclaimedJob]:
        """Release RUNNING jobs whose lease has expired.

        Jobs with attempts left go back to PENDING (immediately due); jobs
        that used their last attempt become FAILED with code LEASE_EXPIRED.
        """
        if not self._schema.has("jobs"):
            return []
        now = self._clock()
        now_iso = to_iso8601(now)
        released: list[tuple[str, str | None]] = []

        with self._lock:
            rows = self._conn.execute(
                "SELECT id, claimed_by, attempts, max_attempts FROM jobs "
                "WHERE status = 'RUNNING' AND lease_expires_at IS NOT NULL "
                "AND lease_expires_at < ?",
                (now_iso,),
            ).fetchall()

            for row in rows:
                error = JobError(
                    code="LEASE_EXPIRED",
                    message=f"Worker {row['claimed_by']} stopped renewing its lease",
                )
                target = "FAILED" if row["attempts"] >= row["max_attempts"] else "PENDING"
                cursor = self._conn.execute(
                    """
                    UPDATE jobs
                    SET status = ?, last_error = ?, claimed_by = NULL,
                        lease_expires_at = NULL, scheduled_for = ?, updated_at = ?,
                        finished_at = CASE WHEN ? = 'FAILED' THEN ? ELSE finished_at END
                    WHERE id = ? AND status = 'RUNNING' AND lease_expires_at < ?
                    """,
                    (target, json.dumps(error.to_dict()), now_iso, now_iso,
                     target, now_iso, row["id"], now_iso),
                )
                if cursor.rowcount == 1:
                    released.append((row["id"], row["claimed_by"]))
            self._conn.commit()

        result = []
        for job_id, owner in released:
            job = self.get(job_id)
            if job is not None:
                logger.warning("job %s reclaimed from %s -> %s", job_id, owner, job.status.value)
                result.append(ReclaimedJob(job=job, previous_owner=owner))
        return result

    # ------------------------------------------------------------------ #
    # Job log
    # ------------------------------------------------------------------ #

    def append_log(
        self,
        job_id: str,
        message: str,
        *,
        level: str = "INFO",
        data: dict[str, Any] | None = None,
    ) -> None:
        """Append a line to the job's log. Missing table is a no-op."""
        if not self._schema.has("job_logs"):
            return
        with self._lock:
            self._conn.execute(
                "INSERT INTO job_logs (job_id, level, message, data, created_at) "
                "VALUES (?, ?, ?, ?, ?)",
                (job_id, level, message, json.dumps(data, default=str) if data else None,
                 to_iso8601(self._clock())),
            )
            self._conn.commit()

    def get_logs(self, job_id: str, limit: int = 200) -> list[JobLogEntry]:
        if not self._schema.has("job_logs"):
            return []
        with self._lock:
            rows = self._conn.execute(
                "SELECT id, job_id, level, message, data, created_at FROM job_logs "
                "WHERE job_id = ? ORDER BY id ASC LIMIT ?",
                (job_id, limit),
            ).fetchall()
        return [
            JobLogEntry(
                id=r["id"],
                job_id=r["job_id"],
                level=r["level"],
                message=r["message"],
                data=json.loads(r["data"]) if r["data"] else None,
                created_at=from_iso8601(r["created_at"]),
            )
            for r in rows
        ]

    # ------------------------------------------------------------------ #
    # Helpers
    # ------------------------------------------------------------------ #

    def _find_live_by_dedup_key(self, dedup_key: str) -> Job | None:
        row = self._conn.execute(
            f"SELECT {_JOB_COLUMNS} FROM jobs "
            "WHERE dedup_key = ? AND status IN ('PENDING', 'RUNNING')",
            (dedup_key,),
        ).fetchone()
        return self._row_to_job(row) if row else None

    def _row_to_job(self, row: sqlite3.Row) -> Job:
        return Job(
            id=row["id"],
            job_type=row["job_type"],
            scope=JobScope(ScopeType(row["scope_type"]), row["entity_id"]),
            input=json.loads(row["input"]) if row["input"] else {},
            status=JobStatus(row["status"]),
            attempts=row["attempts"],
            max_attempts=row["max_attempts"],
            priority=row["priority"],
            result=json.loads(row["result"]) if row["result"] else None,
            last_error=JobError.from_dict(json.loads(row["last_error"])) if row["last_error"] else None,
            dedup_key=row["dedup_key"],
            created_by=row["created_by"],
            claimed_by=row["claimed_by"],
            lease_expires_at=from_iso8601(row["lease_expires_at"]),
            retry_delay_seconds=row["retry_delay_seconds"],
            scheduled_for=from_iso8601(row["scheduled_for"]),
            started_at=from_iso8601(row["started_at"]),
            finished_at=from_iso8601(row["finished_at"]),
            created_at=from_iso8601(row["created_at"]),
            updated_at=from_iso8601(row["updated_at"]),
        )


def _dump_result(result: Any) -> str | None:
    if result is None:
        return None
    try:
        return json.dumps(result)
    except (TypeError, ValueError):
        return json.dumps({"value": str(result)})
