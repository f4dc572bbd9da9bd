"""
Job lifecycle operations: create, list, get, cancel, counts.

These are what a business or HTTP layer calls. They never raise: every
failure comes back as an :class:`OperationResult` with a stable code.

Publish-style jobs (price and stock changes) are re-validated here, at
creation time, by the precondition validator registered for their type.
The validator re-derives the input that is persisted, so a caller cannot
smuggle in a precomputed decision. Without a validator the operation
fails closed with ``PRECONDITION_UNAVAILABLE``.
"""

from __future__ import annotations

from typing import Any

from syncspine.core.errors import ErrorCategory, SyncError
from syncspine.core.logging import get_logger
from syncspine.execution.job_store import JobStore
from syncspine.execution.models import (
    PUBLISH_JOB_TYPES,
    JobRequest,
    JobScope,
    JobStatus,
    JobType,
    ScopeType,
)
from syncspine.ops.context import OperationContext
from syncspine.ops.requests import (
    CancelJobRequest,
    CreateJobRequest,
    GetJobRequest,
    ListJobsRequest,
)
from syncspine.ops.result import OperationResult, PagedResult, start_timer

logger = get_logger(__name__)


def _job_store(ctx: OperationContext) -> JobStore:
    return JobStore(ctx.conn, schema=ctx.schema)


def create_job(
    ctx: OperationContext,
    request: CreateJobRequest,
) -> OperationResult[dict[str, Any]]:
    """Validate and enqueue a job.

    Failure codes:
        VALIDATION_FAILED: Unknown job/scope type, bad attempt budget, or a
            precondition validator rejected the input.
        PRECONDITION_UNAVAILABLE: Publish-style type with no validator registered.
        DUPLICATE_JOB: A live job holds the same dedup key (details carry its id).
        SCHEMA_UNAVAILABLE: The jobs table is not provisioned.
    """
    timer = start_timer()

    job_type = JobType.parse(request.job_type)
    if job_type is None:
        return OperationResult.fail(
            "VALIDATION_FAILED",
            f"Unknown job type {request.job_type!r}",
            category=ErrorCategory.VALIDATION,
            details={"allowed": [t.value for t in JobType]},
            elapsed_ms=timer.elapsed_ms,
        )
    try:
        scope_type = ScopeType(request.scope_type)
    except ValueError:
        return OperationResult.fail(
            "VALIDATION_FAILED",
            f"Unknown scope type {request.scope_type!r}",
            category=ErrorCategory.VALIDATION,
            elapsed_ms=timer.elapsed_ms,
        )
    if scope_type is not ScopeType.GLOBAL and not request.entity_id:
        return OperationResult.fail(
            "VALIDATION_FAILED",
            f"entity_id is required for scope {scope_type.value}",
            category=ErrorCategory.VALIDATION,
            elapsed_ms=timer.elapsed_ms,
        )
    if request.max_attempts is not None and request.max_attempts < 1:
        return OperationResult.fail(
            "VALIDATION_FAILED",
            "max_attempts must be at least 1",
            category=ErrorCategory.VALIDATION,
            elapsed_ms=timer.elapsed_ms,
        )
    scope = JobScope(scope_type, request.entity_id)

    job_input = dict(request.input)
    if job_type in PUBLISH_JOB_TYPES:
        validator = ctx.preconditions.get(job_type)
        if validator is None:
            logger.warning("jobs.precondition_unavailable", job_type=job_type.value)
            return OperationResult.fail(
                "PRECONDITION_UNAVAILABLE",
                f"No precondition validator is registered for {job_type.value}; "
                "publish jobs cannot be created without one",
                category=ErrorCategory.CONFIG,
                elapsed_ms=timer.elapsed_ms,
            )
        try:
            job_input = validator(scope, job_input)
        except SyncError as exc:
            return OperationResult.fail(
                "VALIDATION_FAILED",
                exc.message,
                category=exc.category,
                details=exc.context.to_dict(),
                elapsed_ms=timer.elapsed_ms,
            )

    settings = ctx.settings
    job_request = JobRequest(
        job_type=job_type,
        scope=scope,
        input=job_input,
        priority=request.priority if request.priority is not None else settings.job_default_priority,
        max_attempts=(
            request.max_attempts
            if request.max_attempts is not None
            else settings.job_default_max_attempts
        ),
        created_by=ctx.user or ctx.caller,
        scheduled_for=request.scheduled_for,
    )
    if request.dedup:
        job_request.with_dedup(request.correlation_id)

    if ctx.dry_run:
        return OperationResult.ok(
            {
                "dry_run": True,
                "job_type": job_type.value,
                "scope": scope.to_dict(),
                "input": job_input,
                "dedup_key": job_request.dedup_key,
                "priority": job_request.priority,
                "max_attempts": job_request.max_attempts,
            },
            elapsed_ms=timer.elapsed_ms,
        )

    try:
        job = _job_store(ctx).create(job_request)
    except SyncError as exc:
        logger.info("jobs.create_rejected", code=exc.code, job_type=job_type.value)
        result: OperationResult[dict[str, Any]] = OperationResult.from_error(
            exc, elapsed_ms=timer.elapsed_ms
        )
        existing = getattr(exc, "existing_job_id", None)
        if existing and result.error is not None:
            result.error.details["existing_job_id"] = existing
        return result
    except Exception as exc:
        logger.exception("op_failed", op="create_job", error=str(exc))
        return OperationResult.fail("INTERNAL", f"Failed to create job: {exc}",
                                    elapsed_ms=timer.elapsed_ms)

    logger.info("jobs.created", job_id=job.id, job_type=job.job_type, dedup_key=job.dedup_key)
    return OperationResult.ok(job.to_dict(), elapsed_ms=timer.elapsed_ms)


def list_jobs(
    ctx: OperationContext,
    request: ListJobsRequest,
) -> PagedResult[dict[str, Any]]:
    """Filtered, paginated job list (newest first)."""
    timer = start_timer()

    if request.status is not None and request.status not in {s.value for s in JobStatus}:
        return PagedResult(
            success=False,
            error=OperationResult.fail("VALIDATION_FAILED",
                                       f"Unknown status {request.status!r}").error,
            elapsed_ms=timer.elapsed_ms,
        )
    try:
        jobs, total = _job_store(ctx).list_jobs(
            job_type=request.job_type,
            status=request.status,
            scope_type=request.scope_type,
            entity_id=request.entity_id,
            limit=request.limit,
            offset=request.offset,
        )
    except Exception as exc:
        logger.exception("op_failed", op="list_jobs", error=str(exc))
        return PagedResult(
            success=False,
            error=OperationResult.fail("INTERNAL", f"Failed to list jobs: {exc}").error,
            elapsed_ms=timer.elapsed_ms,
        )
    return PagedResult.from_items(
        [job.to_dict() for job in jobs],
        total=total,
        limit=request.limit,
        offset=request.offset,
        elapsed_ms=timer.elapsed_ms,
    )


def get_job(ctx: OperationContext, request: GetJobRequest) -> OperationResult[dict[str, Any]]:
    timer = start_timer()
    if not request.job_id:
        return OperationResult.fail("VALIDATION_FAILED", "job_id is required",
                                    elapsed_ms=timer.elapsed_ms)
    store = _job_store(ctx)
    job = store.get(request.job_id)
    if job is None:
        return OperationResult.fail("NOT_FOUND", f"Job {request.job_id!r} not found",
                                    category=ErrorCategory.NOT_FOUND,
                                    elapsed_ms=timer.elapsed_ms)
    data = job.to_dict()
    if request.include_logs:
        data["logs"] = [
            {
                "level": entry.level,
                "message": entry.message,
                "data": entry.data,
                "created_at": entry.created_at.isoformat(),
            }
            for entry in store.get_logs(job.id)
        ]
    return OperationResult.ok(data, elapsed_ms=timer.elapsed_ms)


def cancel_job(ctx: OperationContext, request: CancelJobRequest) -> OperationResult[dict[str, Any]]:
    """Cancel a PENDING or RUNNING job (cooperative for running handlers)."""
    timer = start_timer()
    if not request.job_id:
        return OperationResult.fail("VALIDATION_FAILED", "job_id is required",
                                    elapsed_ms=timer.elapsed_ms)
    store = _job_store(ctx)
    job = store.get(request.job_id)
    if job is None:
        return OperationResult.fail("NOT_FOUND", f"Job {request.job_id!r} not found",
                                    category=ErrorCategory.NOT_FOUND,
                                    elapsed_ms=timer.elapsed_ms)
    if ctx.dry_run:
        return OperationResult.ok(
            {"job_id": job.id, "dry_run": True, "would_cancel": not job.is_terminal},
            elapsed_ms=timer.elapsed_ms,
        )
    if not store.cancel(job.id):
        current = store.require(job.id)
        return OperationResult.fail(
            "INVALID_STATE",
            f"Job {job.id} is {current.status.value} and cannot be cancelled",
            category=ErrorCategory.CONFLICT,
            details={"status": current.status.value},
            elapsed_ms=timer.elapsed_ms,
        )
    logger.info("jobs.cancelled", job_id=job.id, previous_status=job.status.value)
    return OperationResult.ok(store.require(job.id).to_dict(), elapsed_ms=timer.elapsed_ms)


def job_counts(ctx: OperationContext, job_type: str | None = None) -> OperationResult[dict[str, int]]:
    """Job counts per status."""
    timer = start_timer()
    return OperationResult.ok(_job_store(ctx).count_by_status(job_type),
                              elapsed_ms=timer.elapsed_ms)


__all__ = ["cancel_job", "create_job", "get_job", "job_counts", "list_jobs"]
