"""Ingestion pipeline domain models.

Defines the data structures shared by the ingestion stores, the source
fetchers, the transform stage and the orchestrator:

- CycleStatus: outcome of one ingestion cycle
- IssueType / Severity / IssueStatus: data-quality issue vocabulary
- FetchedDocument / RawPayload: a source document before and after persistence
- DQIssue: a recorded data problem
- IngestionCycle: the persisted cycle row
- SourceFetchReport / TransformSummary / CycleResult: stage results
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class CycleStatus(str, Enum):
    """Status of an ingestion cycle.

    RUNNING → SUCCEEDED | PARTIAL | FAILED. SKIPPED is written directly when
    another cycle holds the lock.
    """

    RUNNING = "RUNNING"
    SUCCEEDED = "SUCCEEDED"
    PARTIAL = "PARTIAL"
    FAILED = "FAILED"
    SKIPPED = "SKIPPED"


class IssueType(str, Enum):
    MISSING_FIELD = "MISSING_FIELD"
    INVALID_VALUE = "INVALID_VALUE"
    STALE_DATA = "STALE_DATA"
    INCONSISTENT_DATA = "INCONSISTENT_DATA"
    TRANSFORM_ERROR = "TRANSFORM_ERROR"
    API_ERROR = "API_ERROR"
    DUPLICATE_DATA = "DUPLICATE_DATA"
    OUT_OF_RANGE = "OUT_OF_RANGE"


class Severity(str, Enum):
    WARN = "WARN"
    CRITICAL = "CRITICAL"


class IssueStatus(str, Enum):
    OPEN = "OPEN"
    ACKNOWLEDGED = "ACKNOWLEDGED"
    RESOLVED = "RESOLVED"
    IGNORED = "IGNORED"


@dataclass(frozen=True)
class FetchedDocument:
    """One document returned by a source for one entity, not yet stored."""

    entity_id: str
    source: str
    payload: dict[str, Any]
    captured_at: datetime


@dataclass
class RawPayload:
    """A stored source document, tagged with its ingestion cycle."""

    id: int
    entity_id: str
    scope_id: int
    source: str
    cycle_id: str
    payload: dict[str, Any]
    captured_at: datetime


@dataclass
class DQIssue:
    """A recorded data-quality problem."""

    id: int
    entity_id: str
    scope_id: int
    cycle_id: str | None
    issue_type: IssueType
    severity: Severity
    status: IssueStatus
    message: str
    created_at: datetime
    field_name: str | None = None
    details: dict[str, Any] | None = None
    resolved_at: datetime | None = None
    resolution_notes: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "entity_id": self.entity_id,
            "scope_id": self.scope_id,
            "cycle_id": self.cycle_id,
            "issue_type": self.issue_type.value,
            "severity": self.severity.value,
            "status": self.status.value,
            "field_name": self.field_name,
            "message": self.message,
            "details": self.details,
            "created_at": self.created_at.isoformat(),
            "resolved_at": self.resolved_at.isoformat() if self.resolved_at else None,
            "resolution_notes": self.resolution_notes,
        }


@dataclass
class SourceFetchReport:
    """What one source fetch did during a cycle."""

    source: str
    requested: int = 0
    fetched: int = 0
    batches: int = 0
    failed_batches: int = 0
    throttled: int = 0
    rate_limit_wait_seconds: float = 0.0
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "source": self.source,
            "requested": self.requested,
            "fetched": self.fetched,
            "batches": self.batches,
            "failed_batches": self.failed_batches,
            "throttled": self.throttled,
            "rate_limit_wait_seconds": round(self.rate_limit_wait_seconds, 3),
            "errors": list(self.errors),
        }


@dataclass
class TransformSummary:
    """Aggregate outcome of the transform stage.

    ``failed`` counts missing entities plus entities whose transform failed.
    """

    succeeded: int = 0
    failed: int = 0
    missing: list[str] = field(default_factory=list)
    errors: dict[str, str] = field(default_factory=dict)

    @property
    def is_clean(self) -> bool:
        return self.failed == 0 and not self.missing

    def to_dict(self) -> dict[str, Any]:
        return {
            "succeeded": self.succeeded,
            "failed": self.failed,
            "missing": list(self.missing),
            "errors": dict(self.errors),
        }


@dataclass
class IngestionCycle:
    """Persisted record of one cycle."""

    id: str
    strategy: str
    status: CycleStatus
    scope_id: int
    started_at: datetime
    targets: list[str] = field(default_factory=list)
    target_count: int = 0
    succeeded_count: int = 0
    failed_count: int = 0
    missing: list[str] = field(default_factory=list)
    source_reports: list[dict[str, Any]] = field(default_factory=list)
    error: str | None = None
    completed_at: datetime | None = None
    duration_ms: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "strategy": self.strategy,
            "status": self.status.value,
            "scope_id": self.scope_id,
            "target_count": self.target_count,
            "succeeded_count": self.succeeded_count,
            "failed_count": self.failed_count,
            "missing": list(self.missing),
            "source_reports": list(self.source_reports),
            "error": self.error,
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "duration_ms": self.duration_ms,
        }


@dataclass
class CycleResult:
    """What ``IngestionOrchestrator.run_cycle`` returns."""

    cycle_id: str
    status: CycleStatus
    target_count: int = 0
    succeeded: int = 0
    failed: int = 0
    missing: list[str] = field(default_factory=list)
    source_reports: list[SourceFetchReport] = field(default_factory=list)
    duration_ms: int = 0
    reason: str | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "cycle_id": self.cycle_id,
            "status": self.status.value,
            "target_count": self.target_count,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "missing": list(self.missing),
            "sources": [r.to_dict() for r in self.source_reports],
            "duration_ms": self.duration_ms,
            "reason": self.reason,
            "error": self.error,
        }
