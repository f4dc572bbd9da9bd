"""Per-dispatch context handed to job handlers.

A handler receives exactly one argument, a :class:`JobContext`: the job's
typed input and scope, its attempt number, the time left before the
worker gives up on it, and a cooperative cancellation signal. Handlers
doing long work should call ``ctx.raise_if_cancelled()`` between steps.

Example:
    >>> def sync_keepa(ctx: JobContext) -> dict:
    ...     for asin in ctx.input["asins"]:
    ...         ctx.raise_if_cancelled()
    ...         refresh(asin)
    ...     return {"refreshed": len(ctx.input["asins"])}
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, TypeVar

from syncspine.core.errors import JobCancelledError

from .models import Job, JobScope, JobType
from .timeout import poll_until

if TYPE_CHECKING:
    from .job_store import JobStore

T = TypeVar("T")


@dataclass
class JobContext:
    """Everything a handler may know about the dispatch it is running in."""

    job: Job
    worker_id: str
    timeout_seconds: float
    store: JobStore | None = None
    cancel_event: threading.Event = field(default_factory=threading.Event)
    started_at: float = field(default_factory=time.monotonic)
    long_running_timeout: float = 1800.0
    long_running_poll_interval: float = 15.0

    @property
    def input(self) -> dict[str, Any]:
        return self.job.input

    @property
    def job_type(self) -> JobType | None:
        return self.job.kind

    @property
    def scope(self) -> JobScope:
        return self.job.scope

    @property
    def attempt(self) -> int:
        return self.job.attempts

    def remaining(self) -> float:
        """Seconds left before the dispatch times out."""
        return self.timeout_seconds - (time.monotonic() - self.started_at)

    def is_cancelled(self) -> bool:
        """True once the job was cancelled or the dispatch timed out.

        Checks the cancel event first, then the job row.
        """
        if self.cancel_event.is_set():
            return True
        if self.store is not None and self.store.is_cancelled(self.job.id):
            self.cancel_event.set()
            return True
        return False

    def raise_if_cancelled(self) -> None:
        if self.is_cancelled():
            raise JobCancelledError(f"Job {self.job.id} was cancelled").with_context(
                job_id=self.job.id, job_type=self.job.job_type
            )

    def poll_until(
        self,
        check: Callable[[], T | None],
        *,
        operation: str = "poll",
        sleep: Callable[[float], None] = time.sleep,
    ) -> T:
        """Poll a submitted external operation until ``check`` returns a result.

        Uses the long-running ceiling and poll interval rather than the
        dispatch timeout, and stops early once the job is cancelled.

        Raises:
            JobTimeoutError: No result within the long-running ceiling.
            JobCancelledError: The job was cancelled while polling.
        """
        return poll_until(
            check,
            ceiling_seconds=self.long_running_timeout,
            interval_seconds=self.long_running_poll_interval,
            operation=operation,
            sleep=sleep,
            cancelled=self.is_cancelled,
        )

    def log(self, message: str, *, level: str = "INFO", **data: Any) -> None:
        """Append a line to the job's persisted log."""
        if self.store is not None:
            self.store.append_log(self.job.id, message, level=level, data=data or None)


__all__ = ["JobContext"]
