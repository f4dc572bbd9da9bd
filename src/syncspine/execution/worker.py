"""Job worker — polls pending jobs, claims them and dispatches handlers.

The WorkerController is an explicit value owned by whoever constructs it:
there is no module-level "is running" flag or interval handle. Build one
per process (or per test), then either ``start()`` it on a background
thread or ``run_forever()`` on the current one.

Usage (programmatic)::

    from syncspine.execution import HandlerRegistry, JobStore, WorkerController

    worker = WorkerController(JobStore(conn), registry, dlq=DeadLetterQueue(conn))
    worker.start()
    ...
    worker.stop()          # waits up to shutdown_timeout for the job in flight

Usage (CLI)::

    syncspine worker start --handlers myapp.jobs:build_registry

Per job::

    claim ──► resolve handler ──► run_with_timeout(handler, per-type timeout)
                  │                      │
                  │ unknown type         ├── value / PartialResult → mark_succeeded
                  ▼                      ├── JobTimeoutError       → mark_failed (retryable)
            mark_failed(terminal)        └── other error           → mark_failed
                                                                       │
                                             terminal FAILED ◄─────────┘
                                                   │
                                                   ▼
                                             DeadLetterQueue.record
"""

from __future__ import annotations

import logging
import os
import signal
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from syncspine.core.errors import (
    JobTimeoutError,
    UnknownJobTypeError,
    get_retry_after,
    is_retryable,
)
from syncspine.core.logging import LogContext
from syncspine.core.settings import SyncSettings
from syncspine.core.timestamps import utc_now

from .context import JobContext
from .dlq import DeadLetterQueue
from .job_store import JobStore
from .models import Job, JobError, JobStatus, PartialResult
from .registry import HandlerRegistry
from .timeout import JobTimeouts, run_with_timeout

logger = logging.getLogger(__name__)


@dataclass
class WorkerStats:
    """Counters for one worker since construction."""

    started_at: datetime = field(default_factory=utc_now)
    polls: int = 0
    claimed: int = 0
    succeeded: int = 0
    partial: int = 0
    failed_attempts: int = 0
    timed_out: int = 0
    dead_lettered: int = 0
    discarded: int = 0
    reclaimed: int = 0
    last_poll_at: datetime | None = None
    current_job_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "started_at": self.started_at.isoformat(),
            "uptime_seconds": round((utc_now() - self.started_at).total_seconds(), 2),
            "polls": self.polls,
            "claimed": self.claimed,
            "succeeded": self.succeeded,
            "partial": self.partial,
            "failed_attempts": self.failed_attempts,
            "timed_out": self.timed_out,
            "dead_lettered": self.dead_lettered,
            "discarded": self.discarded,
            "reclaimed": self.reclaimed,
            "last_poll_at": self.last_poll_at.isoformat() if self.last_poll_at else None,
            "current_job_id": self.current_job_id,
        }


class WorkerController:
    """Polls the job store and runs claimed jobs one at a time.

    Thread-safety:
        The poll loop is single-threaded; each handler runs on its own
        daemon thread so that a hung handler can be abandoned at its
        timeout. Several controllers (in one or many processes) may share
        a database: the atomic claim decides who runs what.
    """

    def __init__(
        self,
        store: JobStore,
        registry: HandlerRegistry,
        *,
        dlq: DeadLetterQueue | None = None,
        timeouts: JobTimeouts | None = None,
        poll_interval: float = 5.0,
        batch_size: int = 5,
        shutdown_timeout: float = 30.0,
        lease_margin: float = 60.0,
        worker_id: str | None = None,
    ):
        """
        Args:
            store: Job store to poll and update.
            registry: Handlers; must cover every JobType (checked here).
            dlq: Where terminally failed jobs are archived (optional).
            timeouts: Per-type handler timeouts.
            poll_interval: Seconds between polls when the queue is drained.
            batch_size: Max pending jobs fetched per poll.
            shutdown_timeout: Max seconds ``stop()`` waits for the job in flight.
            lease_margin: Seconds added to a job's timeout to form its lease.
            worker_id: Custom worker identifier. Auto-generated if ``None``.

        Raises:
            ConfigError: The registry is not exhaustive.
        """
        registry.validate()
        self._store = store
        self._registry = registry
        self._dlq = dlq
        self._timeouts = timeouts or JobTimeouts()
        self.poll_interval = poll_interval
        self.batch_size = batch_size
        self.shutdown_timeout = shutdown_timeout
        self.lease_margin = lease_margin
        self.worker_id = worker_id or f"worker-{os.getpid()}-{uuid.uuid4().hex[:8]}"

        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self._stats_lock = threading.Lock()
        self.stats = WorkerStats()

    @classmethod
    def from_settings(
        cls,
        settings: SyncSettings,
        store: JobStore,
        registry: HandlerRegistry,
        *,
        dlq: DeadLetterQueue | None = None,
        worker_id: str | None = None,
    ) -> WorkerController:
        return cls(
            store,
            registry,
            dlq=dlq,
            timeouts=JobTimeouts.from_settings(settings),
            poll_interval=settings.worker_poll_interval_seconds,
            batch_size=settings.worker_batch_size,
            shutdown_timeout=settings.worker_shutdown_timeout_seconds,
            lease_margin=settings.worker_lease_margin_seconds,
            worker_id=worker_id,
        )

    # ------------------------------------------------------------------ #
    # Lifecycle
    # ------------------------------------------------------------------ #

    def start(self) -> None:
        """Start the poll loop on a background thread.

        Raises:
            RuntimeError: Already running.
        """
        if self.is_running():
            raise RuntimeError(f"Worker {self.worker_id} is already running")
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run_loop, name=f"{self.worker_id}-loop", daemon=True
        )
        self._thread.start()

    def run_forever(self) -> None:
        """Run the poll loop on the current thread until stopped.

        Installs SIGINT / SIGTERM handlers when called from the main thread.
        """
        try:
            signal.signal(signal.SIGINT, self._handle_signal)
            signal.signal(signal.SIGTERM, self._handle_signal)
        except ValueError:
            logger.debug("not in main thread; signal handlers not installed")
        self._stop_event.clear()
        self._run_loop()

    def stop(self, timeout: float | None = None) -> bool:
        """Stop polling and wait for the job in flight.

        Returns True if the loop ended within the timeout. Otherwise the
        running job is left RUNNING; once its lease expires any worker
        reclaims it.
        """
        logger.info("worker %s shutting down", self.worker_id)
        self._stop_event.set()
        thread = self._thread
        if thread is None or thread is threading.current_thread():
            return True
        thread.join(self.shutdown_timeout if timeout is None else timeout)
        if thread.is_alive():
            logger.warning(
                "worker %s stopped waiting; job %s left for lease reclaim",
                self.worker_id, self.stats.current_job_id,
            )
            return False
        self._thread = None
        return True

    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _handle_signal(self, signum: int, frame: Any) -> None:
        logger.info("worker %s received signal %s", self.worker_id, signum)
        self._stop_event.set()

    # ------------------------------------------------------------------ #
    # Loop
    # ------------------------------------------------------------------ #

    def _run_loop(self) -> None:
        logger.info(
            "worker %s starting: poll every %.1fs, batch=%d",
            self.worker_id, self.poll_interval, self.batch_size,
        )
        while not self._stop_event.is_set():
            processed = 0
            try:
                processed = self.run_once()
            except Exception:
                logger.exception("worker %s poll failed", self.worker_id)
            # A full batch means more may be waiting.
            if processed < self.batch_size:
                self._stop_event.wait(self.poll_interval)
        logger.info("worker %s stopped: %s", self.worker_id, self.stats.to_dict())

    def run_once(self) -> int:
        """One poll: reclaim expired leases, then claim and run due jobs.

        Returns the number of jobs this worker claimed and ran.
        """
        with self._stats_lock:
            self.stats.polls += 1
            self.stats.last_poll_at = utc_now()

        for reclaimed in self._store.reclaim_expired():
            with self._stats_lock:
                self.stats.reclaimed += 1
            if reclaimed.dead:
                self._dead_letter(reclaimed.job, reclaimed.job.last_error)

        processed = 0
        for pending in self._store.list_pending(self.batch_size):
            if self._stop_event.is_set():
                break
            lease = self._timeouts.for_type(pending.job_type) + self.lease_margin
            job = self._store.claim(pending.id, self.worker_id, lease_seconds=lease)
            if job is None:
                continue  # another worker got it
            with self._stats_lock:
                self.stats.claimed += 1
            self._process(job)
            processed += 1
        return processed

    # ------------------------------------------------------------------ #
    # Dispatch
    # ------------------------------------------------------------------ #

    def _process(self, job: Job) -> Job | None:
        """Run one claimed job to an outcome. Never raises for handler errors."""
        timeout = self._timeouts.for_type(job.job_type)
        ctx = JobContext(
            job=job,
            worker_id=self.worker_id,
            timeout_seconds=timeout,
            store=self._store,
            long_running_timeout=self._timeouts.long_running,
            long_running_poll_interval=self._timeouts.long_running_poll_interval,
        )
        self.stats.current_job_id = job.id
        try:
            with LogContext(job_id=job.id, job_type=job.job_type, worker_id=self.worker_id):
                logger.info("job %s attempt %d/%d (%s)",
                            job.id, job.attempts, job.max_attempts, job.job_type)
                try:
                    handler = self._registry.resolve(job.job_type)
                except UnknownJobTypeError as exc:
                    logger.error("job %s has no handler for %s", job.id, job.job_type)
                    return self._fail(job, exc, terminal=True)

                try:
                    value = run_with_timeout(
                        handler,
                        timeout,
                        operation=job.job_type,
                        args=(ctx,),
                        on_timeout=ctx.cancel_event.set,
                        heartbeat=lambda: self._store.renew_lease(
                            job.id, self.worker_id, timeout + self.lease_margin
                        ),
                        heartbeat_interval=max(1.0, self.lease_margin / 2),
                    )
                except JobTimeoutError as exc:
                    with self._stats_lock:
                        self.stats.timed_out += 1
                    logger.warning("job %s timed out after %.1fs", job.id, timeout)
                    return self._fail(job, exc)
                except Exception as exc:
                    logger.warning("job %s failed: %s: %s", job.id, type(exc).__name__, exc)
                    return self._fail(
                        job, exc, terminal=not is_retryable(exc), retry_after=get_retry_after(exc)
                    )

                return self._succeed(job, value)
        finally:
            self.stats.current_job_id = None

    def _succeed(self, job: Job, value: Any) -> Job | None:
        partial = isinstance(value, PartialResult)
        result = value.value if partial else value
        updated = self._store.mark_succeeded(
            job.id, result, partial=partial, worker_id=self.worker_id
        )
        with self._stats_lock:
            if updated is None:
                self.stats.discarded += 1
            elif partial:
                self.stats.partial += 1
            else:
                self.stats.succeeded += 1
        if updated is not None:
            logger.info("job %s %s", job.id, updated.status.value)
        return updated

    def _fail(
        self,
        job: Job,
        exc: BaseException,
        *,
        terminal: bool = False,
        retry_after: float | None = None,
    ) -> Job | None:
        error = JobError.from_exception(exc)
        updated = self._store.mark_failed(
            job.id, error, terminal=terminal, retry_after=retry_after, worker_id=self.worker_id
        )
        with self._stats_lock:
            if updated is None:
                self.stats.discarded += 1
            else:
                self.stats.failed_attempts += 1
        if updated is None:
            return None
        if updated.status is JobStatus.FAILED:
            self._dead_letter(updated, error)
        else:
            logger.info("job %s back to PENDING, retry in %.1fs",
                        job.id, updated.retry_delay_seconds or 0.0)
        return updated

    def _dead_letter(self, job: Job, error: JobError | None) -> None:
        logger.error("job %s permanently failed after %d attempts (%s)",
                     job.id, job.attempts, error.code if error else "UNKNOWN")
        if self._dlq is None:
            return
        if self._dlq.record(job, error) is not None:
            with self._stats_lock:
                self.stats.dead_lettered += 1


__all__ = ["WorkerController", "WorkerStats"]
