"""Concurrency Guard — named DB-level locks with expiry.

WHY
───
Ingestion cycles may be triggered by the scheduler in several processes
and by an operator at the same time. Two overlapping cycles would double
the source quota spend and interleave raw payloads. ConcurrencyGuard
takes a named lock through the ``concurrency_locks`` primary key, so the
database decides the winner; the expiry makes a crashed holder's lock
self-heal.

ARCHITECTURE
────────────
::

    ConcurrencyGuard(conn)
      ├── .acquire(key, owner_id, ttl) ─ non-blocking try-lock
      ├── .release(key, owner_id)      ─ explicit unlock
      ├── .hold(key, owner_id, ttl)    ─ context manager, yields acquired?
      ├── .is_locked(key) / .get_lock_holder(key)
      ├── .extend_lock(key, owner_id, ttl)
      ├── .keep_alive(key, owner_id, ttl) ─ renew on a daemon thread while held
      ├── .cleanup_expired()           ─ reap stale locks
      └── .list_active_locks()

    Lock key convention: "area:name", e.g. "ingestion:cycle"

BEST PRACTICES
──────────────
- Always release in a ``finally`` (or use ``hold``).
- Use a fresh owner id per run; re-acquiring with the same owner id
  extends the lock instead of failing.
- Renew long holds with ``keep_alive``; the TTL then only bounds how
  long a crashed holder blocks others.

Related modules:
    ingestion/orchestrator.py — single-flight ingestion cycles

Example::

    guard = ConcurrencyGuard(conn)
    if guard.acquire("ingestion:cycle", owner_id="cycle-123"):
        try:
            run_cycle()
        finally:
            guard.release("ingestion:cycle", "cycle-123")
"""

from __future__ import annotations

import logging
import sqlite3
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import timedelta

from syncspine.core.schema import SchemaReport, verify_schema
from syncspine.core.timestamps import from_iso8601, to_iso8601, utc_now

logger = logging.getLogger(__name__)


class ConcurrencyGuard:
    """Guards against concurrent execution of the same named operation.

    Holding a lock means owning the ``concurrency_locks`` row for its key.
    A missing table makes every acquire fail (never run unguarded).
    """

    def __init__(self, conn: sqlite3.Connection, *, schema: SchemaReport | None = None):
        """Initialize with a database connection.

        Args:
            conn: Connection from :func:`syncspine.core.connection.connect`
            schema: Schema report; checked here once when omitted
        """
        self._conn = conn
        self._schema = schema or verify_schema(conn)
        self._lock = threading.RLock()

    def acquire(self, lock_key: str, owner_id: str, ttl_seconds: float = 3600) -> bool:
        """Try to acquire a lock without waiting.

        Args:
            lock_key: Unique key for the lock
            owner_id: Identity of the would-be holder
            ttl_seconds: Lock expires after this many seconds

        Returns:
            True if acquired (or already held by ``owner_id``, now extended),
            False if held by someone else
        """
        if not self._schema.has("concurrency_locks"):
            logger.warning("concurrency_locks table unavailable; refusing lock %s", lock_key)
            return False

        now = utc_now()
        expires_at = to_iso8601(now + timedelta(seconds=ttl_seconds))

        with self._lock:
            self._conn.execute(
                "DELETE FROM concurrency_locks WHERE lock_key = ? AND expires_at < ?",
                (lock_key, to_iso8601(now)),
            )
            try:
                self._conn.execute(
                    "INSERT INTO concurrency_locks (lock_key, owner_id, acquired_at, expires_at) "
                    "VALUES (?, ?, ?, ?)",
                    (lock_key, owner_id, to_iso8601(now), expires_at),
                )
                self._conn.commit()
                logger.debug("lock %s acquired by %s", lock_key, owner_id)
                return True
            except sqlite3.IntegrityError:
                self._conn.rollback()

            # Already held: re-entry by the same owner extends it.
            cursor = self._conn.execute(
                "UPDATE concurrency_locks SET expires_at = ? WHERE lock_key = ? AND owner_id = ?",
                (expires_at, lock_key, owner_id),
            )
            self._conn.commit()
            return cursor.rowcount == 1

    def release(self, lock_key: str, owner_id: str | None = None) -> bool:
        """Release a lock.

        Args:
            lock_key: Lock key to release
            owner_id: Only release if this owner holds it (None = force)

        Returns:
            True if a lock row was removed
        """
        if not self._schema.has("concurrency_locks"):
            return False
        with self._lock:
            if owner_id:
                cursor = self._conn.execute(
                    "DELETE FROM concurrency_locks WHERE lock_key = ? AND owner_id = ?",
                    (lock_key, owner_id),
                )
            else:
                cursor = self._conn.execute(
                    "DELETE FROM concurrency_locks WHERE lock_key = ?", (lock_key,)
                )
            self._conn.commit()
        return cursor.rowcount > 0

    @contextmanager
    def hold(self, lock_key: str, owner_id: str, ttl_seconds: float = 3600) -> Iterator[bool]:
        """Context manager form: yields whether the lock was acquired.

        The lock (if acquired) is released on exit, exceptions included.
        """
        acquired = self.acquire(lock_key, owner_id, ttl_seconds)
        try:
            yield acquired
        finally:
            if acquired:
                self.release(lock_key, owner_id)

    def get_lock_holder(self, lock_key: str) -> str | None:
        """Owner id holding an unexpired lock, or None."""
        if not self._schema.has("concurrency_locks"):
            return None
        with self._lock:
            row = self._conn.execute(
                "SELECT owner_id, expires_at FROM concurrency_locks WHERE lock_key = ?",
                (lock_key,),
            ).fetchone()
        if row is None or from_iso8601(row[1]) < utc_now():
            return None
        return row[0]

    def is_locked(self, lock_key: str) -> bool:
        return self.get_lock_holder(lock_key) is not None

    def extend_lock(self, lock_key: str, owner_id: str, ttl_seconds: float = 3600) -> bool:
        """Push out the expiry of a lock ``owner_id`` holds."""
        if not self._schema.has("concurrency_locks"):
            return False
        expires_at = to_iso8601(utc_now() + timedelta(seconds=ttl_seconds))
        with self._lock:
            cursor = self._conn.execute(
                "UPDATE concurrency_locks SET expires_at = ? WHERE lock_key = ? AND owner_id = ?",
                (expires_at, lock_key, owner_id),
            )
            self._conn.commit()
        return cursor.rowcount > 0

    @contextmanager
    def keep_alive(
        self,
        lock_key: str,
        owner_id: str,
        ttl_seconds: float = 3600,
        interval: float | None = None,
    ) -> Iterator[None]:
        """Renew a held lock every ``interval`` seconds until the block exits.

        ``interval`` defaults to a third of the TTL. Renewal stops early if
        the lock is found to belong to someone else.
        """
        interval = interval if interval is not None else ttl_seconds / 3
        stop = threading.Event()

        def renew() -> None:
            while not stop.wait(interval):
                try:
                    if not self.extend_lock(lock_key, owner_id, ttl_seconds):
                        logger.warning("lock %s is no longer held by %s", lock_key, owner_id)
                        return
                except sqlite3.Error as exc:
                    logger.warning("could not renew lock %s: %s", lock_key, exc)

        thread = threading.Thread(target=renew, name=f"lock-{lock_key}", daemon=True)
        thread.start()
        try:
            yield
        finally:
            stop.set()
            thread.join()

    def cleanup_expired(self) -> int:
        """Remove every expired lock; returns how many were removed."""
        if not self._schema.has("concurrency_locks"):
            return 0
        with self._lock:
            cursor = self._conn.execute(
                "DELETE FROM concurrency_locks WHERE expires_at < ?", (to_iso8601(utc_now()),)
            )
            self._conn.commit()
        return cursor.rowcount

    def list_active_locks(self) -> list[dict]:
        if not self._schema.has("concurrency_locks"):
            return []
        with self._lock:
            rows = self._conn.execute(
                """
                SELECT lock_key, owner_id, acquired_at, expires_at
                FROM concurrency_locks
                WHERE expires_at > ?
                ORDER BY acquired_at DESC
                """,
                (to_iso8601(utc_now()),),
            ).fetchall()
        return [
            {"lock_key": r[0], "owner_id": r[1], "acquired_at": r[2], "expires_at": r[3]}
            for r in rows
        ]


__all__ = ["ConcurrencyGuard"]
