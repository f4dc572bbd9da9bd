"""
Typed request objects for operations.

Each dataclass is the input contract of one operation function. Requests
carry plain, transport-agnostic values (strings for enum members) so the
CLI and an HTTP layer can build them directly; the operation validates.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

# ------------------------------------------------------------------ #
# Jobs
# ------------------------------------------------------------------ #


@dataclass(frozen=True, slots=True)
class CreateJobRequest:
    """Request for :func:`syncspine.ops.jobs.create_job`.

    Attributes:
        job_type: A ``JobType`` value, e.g. ``"SYNC_KEEPA_ASIN"``.
        scope_type: ``LISTING``, ``ASIN``, ``MARKETPLACE`` or ``GLOBAL``.
        entity_id: Entity the job operates on (optional for GLOBAL).
        input: Job input handed to the handler.
        priority: Higher runs first; settings default when ``None``.
        max_attempts: Attempt budget; settings default when ``None``.
        correlation_id: Appended to the dedup key to allow parallel jobs per entity.
        dedup: Set a dedup key so a live duplicate is rejected.
        scheduled_for: Do not run before this time.
    """

    job_type: str = ""
    scope_type: str = "GLOBAL"
    entity_id: str | None = None
    input: dict[str, Any] = field(default_factory=dict)
    priority: int | None = None
    max_attempts: int | None = None
    correlation_id: str | None = None
    dedup: bool = True
    scheduled_for: datetime | None = None


@dataclass(frozen=True, slots=True)
class ListJobsRequest:
    job_type: str | None = None
    status: str | None = None
    scope_type: str | None = None
    entity_id: str | None = None
    limit: int = 50
    offset: int = 0


@dataclass(frozen=True, slots=True)
class GetJobRequest:
    job_id: str = ""
    include_logs: bool = False


@dataclass(frozen=True, slots=True)
class CancelJobRequest:
    job_id: str = ""


# ------------------------------------------------------------------ #
# Dead letters
# ------------------------------------------------------------------ #


@dataclass(frozen=True, slots=True)
class ListDeadLettersRequest:
    job_type: str | None = None
    include_resolved: bool = False
    limit: int = 50
    offset: int = 0


@dataclass(frozen=True, slots=True)
class ResolveDeadLetterRequest:
    dead_letter_id: str = ""
    notes: str | None = None


@dataclass(frozen=True, slots=True)
class ReplayDeadLetterRequest:
    dead_letter_id: str = ""


# ------------------------------------------------------------------ #
# Ingestion
# ------------------------------------------------------------------ #


@dataclass(frozen=True, slots=True)
class ListCyclesRequest:
    status: str | None = None
    limit: int = 20


@dataclass(frozen=True, slots=True)
class GetCycleRequest:
    cycle_id: str = ""


@dataclass(frozen=True, slots=True)
class ListDQIssuesRequest:
    """Issues for one cycle when ``cycle_id`` is set, otherwise open issues."""

    cycle_id: str | None = None
    entity_id: str | None = None
    severity: str | None = None
    limit: int = 100
    offset: int = 0


@dataclass(frozen=True, slots=True)
class TrackEntitiesRequest:
    """Add (or with ``remove`` drop) entities from the tracked target set."""

    entity_ids: tuple[str, ...] = ()
    scope_id: int | None = None
    remove: bool = False
