"""Timeout enforcement for job handlers and long-running operations.

Manifesto:
    A handler that never returns holds a worker slot forever and, worse,
    keeps its job RUNNING with no outcome. Every dispatch therefore has a
    ceiling:

    - **Per type:** ``JobTimeouts`` maps each job type to seconds
    - **Thread isolated:** the handler runs on a daemon thread, the worker
      waits with ``join(timeout)`` and moves on when it expires
    - **Cooperative:** on expiry the handler's cancel event is set so a
      well-behaved handler can stop early; its late result is discarded
    - **Polling:** operations that are submitted and then polled use
      ``poll_until`` with their own ceiling

Architecture:
    ::

        WorkerController._process(job)
            │
            ▼
        run_with_timeout(handler, timeout, on_timeout=ctx.cancel_event.set)
            │
            ├── Thread(daemon=True).start()
            ├── thread.join(timeout)
            │       ├── finished → return value / re-raise handler error
            │       └── alive    → on_timeout(); raise JobTimeoutError
            ▼
        JobTimeoutError(code="JOB_TIMEOUT")  → mark_failed (counts as attempt)

Guardrails:
    - Python threads cannot be killed; a timed-out handler keeps running
      until it notices the cancel event or finishes on its own
    - Never wrap the handler in ``with ThreadPoolExecutor``: leaving the
      ``with`` block waits for the very thread that timed out

Tags:
    timeout, deadline, resilience, execution, syncspine

Doc-Types:
    api-reference
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import Any, TypeVar

from syncspine.core.errors import JobCancelledError, JobTimeoutError
from syncspine.core.settings import DEFAULT_JOB_TIMEOUTS, SyncSettings

T = TypeVar("T")


@dataclass
class Deadline:
    """Tracks an absolute deadline on the monotonic clock.

    Attributes:
        timeout_seconds: Original timeout value in seconds
        operation: Name/description of the operation
        start_time: When the deadline started
    """

    timeout_seconds: float
    operation: str = "operation"
    start_time: float = field(default_factory=time.monotonic)
    clock: Callable[[], float] = field(default=time.monotonic, repr=False)

    @property
    def deadline(self) -> float:
        return self.start_time + self.timeout_seconds

    def remaining(self) -> float:
        """Seconds until the deadline; negative once it has passed."""
        return self.deadline - self.clock()

    @property
    def elapsed(self) -> float:
        return self.clock() - self.start_time

    def is_expired(self) -> bool:
        return self.clock() >= self.deadline

    def check(self) -> None:
        """Raise :class:`JobTimeoutError` if the deadline has passed."""
        if self.is_expired():
            raise JobTimeoutError(
                self.timeout_seconds, elapsed=self.elapsed, operation=self.operation
            )


@dataclass(frozen=True)
class JobTimeouts:
    """Per job type timeout table with a default.

    ``long_running`` and ``long_running_poll_interval`` bound report-style
    external operations that handlers submit and then poll for.
    """

    by_type: Mapping[str, float] = field(default_factory=lambda: dict(DEFAULT_JOB_TIMEOUTS))
    default: float = 300.0
    long_running: float = 1800.0
    long_running_poll_interval: float = 15.0

    def for_type(self, job_type: Any) -> float:
        key = getattr(job_type, "value", job_type)
        return float(self.by_type.get(str(key), self.default))

    @classmethod
    def from_settings(cls, settings: SyncSettings) -> JobTimeouts:
        return cls(
            by_type=dict(settings.job_timeouts),
            default=settings.job_default_timeout_seconds,
            long_running=settings.long_running_timeout_seconds,
            long_running_poll_interval=settings.long_running_poll_interval_seconds,
        )


def run_with_timeout(
    func: Callable[..., T],
    timeout_seconds: float,
    *,
    operation: str | None = None,
    args: tuple[Any, ...] = (),
    kwargs: dict[str, Any] | None = None,
    on_timeout: Callable[[], None] | None = None,
    heartbeat: Callable[[], Any] | None = None,
    heartbeat_interval: float = 30.0,
) -> T:
    """Run ``func`` on a daemon thread and wait at most ``timeout_seconds``.

    Returns the function's value or re-raises its exception. When the
    ceiling is reached, ``on_timeout`` is called (typically setting the
    handler's cancel event) and :class:`JobTimeoutError` is raised without
    waiting for the thread. While waiting, ``heartbeat`` (if given) is
    called every ``heartbeat_interval`` seconds, e.g. to renew a job lease.

    Raises:
        ValueError: ``timeout_seconds`` is not positive.
        JobTimeoutError: The function did not finish in time.
    """
    if timeout_seconds <= 0:
        raise ValueError(f"Timeout must be positive, got {timeout_seconds}")

    op_name = operation or getattr(func, "__name__", "operation")
    outcome: dict[str, Any] = {}

    def target() -> None:
        try:
            outcome["value"] = func(*args, **(kwargs or {}))
        except BaseException as exc:  # re-raised on the calling thread
            outcome["error"] = exc

    start = time.monotonic()
    thread = threading.Thread(target=target, name=f"timeout-{op_name}", daemon=True)
    thread.start()
    deadline = start + timeout_seconds
    while True:
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            break
        thread.join(min(remaining, heartbeat_interval) if heartbeat else remaining)
        if not thread.is_alive():
            break
        if heartbeat is not None and deadline - time.monotonic() > 0:
            heartbeat()

    if thread.is_alive():
        if on_timeout is not None:
            on_timeout()
        raise JobTimeoutError(
            timeout_seconds, elapsed=time.monotonic() - start, operation=op_name
        )

    if "error" in outcome:
        raise outcome["error"]
    return outcome.get("value")  # type: ignore[return-value]


def poll_until(
    check: Callable[[], T | None],
    *,
    ceiling_seconds: float,
    interval_seconds: float,
    operation: str = "poll",
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
    cancelled: Callable[[], bool] | None = None,
) -> T:
    """Call ``check`` every ``interval_seconds`` until it returns non-None.

    Used for operations that are submitted and then polled for completion
    (report generation, bulk feeds). The poll never outlives its ceiling.

    Raises:
        JobTimeoutError: No result within ``ceiling_seconds``.
        JobCancelledError: ``cancelled`` returned True before a result arrived.
    """
    deadline = Deadline(ceiling_seconds, operation=operation, start_time=clock(), clock=clock)
    while True:
        result = check()
        if result is not None:
            return result
        if cancelled is not None and cancelled():
            raise JobCancelledError(f"{operation} cancelled after {deadline.elapsed:.1f}s")
        remaining = deadline.remaining()
        if remaining <= 0:
            raise JobTimeoutError(ceiling_seconds, elapsed=deadline.elapsed, operation=operation)
        sleep(min(interval_seconds, remaining))


__all__ = ["Deadline", "JobTimeouts", "poll_until", "run_with_timeout"]
