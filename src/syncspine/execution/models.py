"""Job queue domain models.

Defines the core data structures for the execution system:
- JobType / ScopeType: closed enums of what can be queued and for what
- JobStatus: the job state machine
- JobRequest: what a caller submits
- Job: a persisted unit of work
- JobError: the classified error recorded on a failed attempt
- DeadLetter: a job archived after terminal failure

These models are used by JobStore, WorkerController, DeadLetterQueue and
the ops layer.
"""

from __future__ import annotations

import traceback
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from syncspine.core.errors import error_code


class InvalidTransitionError(ValueError):
    """Raised when an illegal job state transition is attempted."""

    def __init__(self, current: str, target: str) -> None:
        self.current = current
        self.target = target
        super().__init__(f"Invalid JobStatus transition: {current} → {target}")


class JobType(str, Enum):
    """Every kind of job the worker knows how to run.

    Adding a member is a deliberate change: the worker refuses to start
    until the handler registry covers it.
    """

    PUBLISH_PRICE_CHANGE = "PUBLISH_PRICE_CHANGE"
    PUBLISH_STOCK_CHANGE = "PUBLISH_STOCK_CHANGE"
    SYNC_KEEPA_ASIN = "SYNC_KEEPA_ASIN"
    COMPUTE_FEATURES_LISTING = "COMPUTE_FEATURES_LISTING"
    COMPUTE_FEATURES_ASIN = "COMPUTE_FEATURES_ASIN"
    SYNC_AMAZON_OFFER = "SYNC_AMAZON_OFFER"
    SYNC_AMAZON_SALES = "SYNC_AMAZON_SALES"
    SYNC_AMAZON_CATALOG = "SYNC_AMAZON_CATALOG"
    GENERATE_RECOMMENDATIONS_LISTING = "GENERATE_RECOMMENDATIONS_LISTING"
    GENERATE_RECOMMENDATIONS_ASIN = "GENERATE_RECOMMENDATIONS_ASIN"
    REFRESH_MATERIALIZED_VIEWS = "REFRESH_MATERIALIZED_VIEWS"
    RUN_INGESTION_CYCLE = "RUN_INGESTION_CYCLE"

    @classmethod
    def parse(cls, value: str) -> JobType | None:
        """Return the member for ``value`` or None if it is not a known type."""
        try:
            return cls(value)
        except ValueError:
            return None


# Job types whose inputs must be re-validated by the business layer at creation.
PUBLISH_JOB_TYPES: frozenset[JobType] = frozenset({
    JobType.PUBLISH_PRICE_CHANGE,
    JobType.PUBLISH_STOCK_CHANGE,
})


class ScopeType(str, Enum):
    """Kind of entity a job operates on."""

    LISTING = "LISTING"
    ASIN = "ASIN"
    MARKETPLACE = "MARKETPLACE"
    GLOBAL = "GLOBAL"


class JobStatus(str, Enum):
    """Status of a job.

    Valid transition graph::

        PENDING  → RUNNING | CANCELLED
        RUNNING  → SUCCEEDED | PARTIAL | FAILED | PENDING (retry) | CANCELLED
        SUCCEEDED, PARTIAL, FAILED, CANCELLED → (terminal)
    """

    PENDING = "PENDING"
    RUNNING = "RUNNING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    PARTIAL = "PARTIAL"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return self not in (JobStatus.PENDING, JobStatus.RUNNING)


JOB_VALID_TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.PENDING: frozenset({JobStatus.RUNNING, JobStatus.CANCELLED}),
    JobStatus.RUNNING: frozenset({
        JobStatus.SUCCEEDED,
        JobStatus.PARTIAL,
        JobStatus.FAILED,
        JobStatus.PENDING,  # retry
        JobStatus.CANCELLED,
    }),
    JobStatus.SUCCEEDED: frozenset(),
    JobStatus.PARTIAL: frozenset(),
    JobStatus.FAILED: frozenset(),
    JobStatus.CANCELLED: frozenset(),
}


def validate_job_transition(current: JobStatus, target: JobStatus) -> None:
    """Raise :class:`InvalidTransitionError` if *current → target* is illegal."""
    if target not in JOB_VALID_TRANSITIONS.get(current, frozenset()):
        raise InvalidTransitionError(current.value, target.value)


@dataclass(frozen=True)
class JobScope:
    """Entity kind plus optional entity id."""

    scope_type: ScopeType
    entity_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"scope_type": self.scope_type.value, "entity_id": self.entity_id}


GLOBAL_SCOPE = JobScope(ScopeType.GLOBAL)


def make_dedup_key(
    job_type: JobType | str,
    scope: JobScope,
    correlation_id: str | None = None,
) -> str:
    """Compose the dedup key for a job.

    Format: ``{job_type}:{scope_type}:{entity_id or '*'}[:{correlation_id}]``.

    Example:
        >>> make_dedup_key(JobType.SYNC_KEEPA_ASIN, JobScope(ScopeType.ASIN, "B00TEST123"))
        'SYNC_KEEPA_ASIN:ASIN:B00TEST123'
    """
    job_type_str = job_type.value if isinstance(job_type, JobType) else str(job_type)
    key = f"{job_type_str}:{scope.scope_type.value}:{scope.entity_id or '*'}"
    if correlation_id:
        key += f":{correlation_id}"
    return key


@dataclass
class JobError:
    """Classified error recorded on the job row for the latest failed attempt."""

    code: str
    message: str
    stack: str | None = None

    @classmethod
    def from_exception(cls, exc: BaseException) -> JobError:
        return cls(
            code=error_code(exc),
            message=str(exc) or type(exc).__name__,
            stack="".join(traceback.format_exception(type(exc), exc, exc.__traceback__)),
        )

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> JobError | None:
        if not data:
            return None
        return cls(code=data.get("code", "UNKNOWN"), message=data.get("message", ""),
                   stack=data.get("stack"))

    def to_dict(self) -> dict[str, Any]:
        return {"code": self.code, "message": self.message, "stack": self.stack}


@dataclass
class JobRequest:
    """A job as submitted by a caller, before it is persisted.

    Example:
        >>> JobRequest(
        ...     job_type=JobType.SYNC_KEEPA_ASIN,
        ...     scope=JobScope(ScopeType.ASIN, "B00TEST123"),
        ...     input={"asin": "B00TEST123"},
        ... ).with_dedup().dedup_key
        'SYNC_KEEPA_ASIN:ASIN:B00TEST123'
    """

    job_type: JobType
    scope: JobScope = GLOBAL_SCOPE
    input: dict[str, Any] = field(default_factory=dict)
    priority: int = 5
    max_attempts: int = 3
    dedup_key: str | None = None
    created_by: str | None = None
    scheduled_for: datetime | None = None

    def with_dedup(self, correlation_id: str | None = None) -> JobRequest:
        """Set ``dedup_key`` from type, scope and an optional correlation id."""
        self.dedup_key = make_dedup_key(self.job_type, self.scope, correlation_id)
        return self


@dataclass(frozen=True)
class PartialResult:
    """Handler return value meaning "done, but not everything succeeded"."""

    value: Any = None


@dataclass
class Job:
    """A persisted unit of asynchronous work."""

    id: str
    job_type: str
    scope: JobScope
    input: dict[str, Any]
    status: JobStatus
    attempts: int
    max_attempts: int
    priority: int
    created_at: datetime
    updated_at: datetime
    scheduled_for: datetime
    result: Any = None
    last_error: JobError | None = None
    dedup_key: str | None = None
    created_by: str | None = None
    claimed_by: str | None = None
    lease_expires_at: datetime | None = None
    retry_delay_seconds: float | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def kind(self) -> JobType | None:
        return JobType.parse(self.job_type)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "id": self.id,
            "job_type": self.job_type,
            "scope_type": self.scope.scope_type.value,
            "entity_id": self.scope.entity_id,
            "input": self.input,
            "status": self.status.value,
            "attempts": self.attempts,
            "max_attempts": self.max_attempts,
            "priority": self.priority,
            "result": self.result,
            "last_error": self.last_error.to_dict() if self.last_error else None,
            "dedup_key": self.dedup_key,
            "created_by": self.created_by,
            "claimed_by": self.claimed_by,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "scheduled_for": self.scheduled_for.isoformat(),
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
        }


@dataclass
class JobLogEntry:
    """One line of a job's log."""

    id: int
    job_id: str
    level: str
    message: str
    data: dict[str, Any] | None
    created_at: datetime


@dataclass
class DeadLetter:
    """A job archived after terminal failure.

    Created once by the worker; afterwards only ``resolved_at``,
    ``resolution_notes`` and ``replayed_job_id`` ever change.
    """

    id: str
    job_id: str
    job_type: str
    scope: JobScope
    input: dict[str, Any]
    attempts: int
    max_attempts: int
    priority: int
    error_code: str | None
    last_error: str | None
    error_stack: str | None
    failed_at: datetime
    created_at: datetime
    resolved_at: datetime | None = None
    resolution_notes: str | None = None
    replayed_job_id: str | None = None

    @property
    def is_resolved(self) -> bool:
        return self.resolved_at is not None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "id": self.id,
            "job_id": self.job_id,
            "job_type": self.job_type,
            "scope_type": self.scope.scope_type.value,
            "entity_id": self.scope.entity_id,
            "input": self.input,
            "attempts": self.attempts,
            "max_attempts": self.max_attempts,
            "error_code": self.error_code,
            "last_error": self.last_error,
            "failed_at": self.failed_at.isoformat(),
            "created_at": self.created_at.isoformat(),
            "resolved_at": self.resolved_at.isoformat() if self.resolved_at else None,
            "resolution_notes": self.resolution_notes,
            "replayed_job_id": self.replayed_job_id,
        }
