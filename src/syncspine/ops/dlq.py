"""
Dead letter queue operations.

Wraps :class:`~syncspine.execution.dlq.DeadLetterQueue` with typed
contracts: list, resolve, replay.
"""

from __future__ import annotations

from typing import Any

from syncspine.core.errors import ErrorCategory, SyncError
from syncspine.core.logging import get_logger
from syncspine.execution.dlq import DeadLetterQueue
from syncspine.execution.job_store import JobStore
from syncspine.ops.context import OperationContext
from syncspine.ops.requests import (
    ListDeadLettersRequest,
    ReplayDeadLetterRequest,
    ResolveDeadLetterRequest,
)
from syncspine.ops.result import OperationResult, PagedResult, start_timer

logger = get_logger(__name__)


def _dlq(ctx: OperationContext) -> DeadLetterQueue:
    return DeadLetterQueue(ctx.conn, schema=ctx.schema)


def list_dead_letters(
    ctx: OperationContext,
    request: ListDeadLettersRequest,
) -> PagedResult[dict[str, Any]]:
    """Dead letters, newest first; unresolved only unless asked otherwise."""
    timer = start_timer()
    dlq = _dlq(ctx)
    warnings = [] if dlq.available else ["dead_letters table is not provisioned"]
    try:
        if request.include_resolved:
            entries = dlq.list_all(request.job_type, limit=request.limit, offset=request.offset)
            total = len(entries) + request.offset
        else:
            entries = dlq.list_unresolved(request.job_type, limit=request.limit,
                                          offset=request.offset)
            total = dlq.count_unresolved(request.job_type)
    except Exception as exc:
        logger.exception("op_failed", op="list_dead_letters", error=str(exc))
        return PagedResult(
            success=False,
            error=OperationResult.fail("INTERNAL", f"Failed to list dead letters: {exc}").error,
            elapsed_ms=timer.elapsed_ms,
        )
    return PagedResult.from_items(
        [entry.to_dict() for entry in entries],
        total=total,
        limit=request.limit,
        offset=request.offset,
        warnings=warnings,
        elapsed_ms=timer.elapsed_ms,
    )


def resolve_dead_letter(
    ctx: OperationContext,
    request: ResolveDeadLetterRequest,
) -> OperationResult[dict[str, Any]]:
    timer = start_timer()
    if not request.dead_letter_id:
        return OperationResult.fail("VALIDATION_FAILED", "dead_letter_id is required",
                                    elapsed_ms=timer.elapsed_ms)
    dlq = _dlq(ctx)
    entry = dlq.get(request.dead_letter_id)
    if entry is None:
        return OperationResult.fail(
            "NOT_FOUND",
            f"Dead letter {request.dead_letter_id!r} not found",
            category=ErrorCategory.NOT_FOUND,
            elapsed_ms=timer.elapsed_ms,
        )
    if ctx.dry_run:
        return OperationResult.ok({"id": entry.id, "dry_run": True,
                                   "would_resolve": not entry.is_resolved},
                                  elapsed_ms=timer.elapsed_ms)
    if not dlq.resolve(entry.id, request.notes):
        return OperationResult.fail(
            "INVALID_STATE",
            f"Dead letter {entry.id} is already resolved",
            category=ErrorCategory.CONFLICT,
            elapsed_ms=timer.elapsed_ms,
        )
    logger.info("dlq.resolved", dead_letter_id=entry.id, job_id=entry.job_id)
    resolved = dlq.get(entry.id)
    return OperationResult.ok(resolved.to_dict() if resolved else {"id": entry.id},
                              elapsed_ms=timer.elapsed_ms)


def replay_dead_letter(
    ctx: OperationContext,
    request: ReplayDeadLetterRequest,
) -> OperationResult[dict[str, Any]]:
    """Re-create the archived job as a fresh PENDING job and resolve the entry."""
    timer = start_timer()
    if not request.dead_letter_id:
        return OperationResult.fail("VALIDATION_FAILED", "dead_letter_id is required",
                                    elapsed_ms=timer.elapsed_ms)
    dlq = _dlq(ctx)
    if ctx.dry_run:
        entry = dlq.get(request.dead_letter_id)
        if entry is None:
            return OperationResult.fail("NOT_FOUND",
                                        f"Dead letter {request.dead_letter_id!r} not found",
                                        category=ErrorCategory.NOT_FOUND,
                                        elapsed_ms=timer.elapsed_ms)
        return OperationResult.ok(
            {"id": entry.id, "dry_run": True, "job_type": entry.job_type,
             "would_replay": not entry.is_resolved},
            elapsed_ms=timer.elapsed_ms,
        )
    try:
        job = dlq.replay(
            request.dead_letter_id,
            JobStore(ctx.conn, schema=ctx.schema),
            created_by=ctx.user or ctx.caller,
        )
    except SyncError as exc:
        return OperationResult.from_error(exc, elapsed_ms=timer.elapsed_ms)
    logger.info("dlq.replayed", dead_letter_id=request.dead_letter_id, job_id=job.id)
    return OperationResult.ok(job.to_dict(), elapsed_ms=timer.elapsed_ms)


__all__ = ["list_dead_letters", "replay_dead_letter", "resolve_dead_letter"]
