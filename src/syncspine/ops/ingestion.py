"""
Ingestion operations: manual trigger and read access to cycles and DQ issues.

The cycle outcome (SUCCEEDED / PARTIAL / FAILED / SKIPPED) is returned as
data, not as an operation failure: a PARTIAL cycle ran correctly and
reported a data problem. Only an orchestrator that could not run at all
yields a failed result.
"""

from __future__ import annotations

from typing import Any

from syncspine.core.errors import ErrorCategory, SyncError
from syncspine.core.logging import get_logger
from syncspine.ingestion.cycles import IngestionCycleStore
from syncspine.ingestion.dq_issues import DQIssueStore
from syncspine.ingestion.identifiers import normalize_identifiers
from syncspine.ingestion.models import CycleStatus, Severity
from syncspine.ingestion.orchestrator import IngestionOrchestrator
from syncspine.ingestion.targets import TrackedEntityStore
from syncspine.ops.context import OperationContext
from syncspine.ops.requests import (
    GetCycleRequest,
    ListCyclesRequest,
    ListDQIssuesRequest,
    TrackEntitiesRequest,
)
from syncspine.ops.result import OperationResult, PagedResult, start_timer

logger = get_logger(__name__)


def run_ingestion_once(
    ctx: OperationContext,
    orchestrator: IngestionOrchestrator,
) -> OperationResult[dict[str, Any]]:
    """Run one ingestion cycle now (or report SKIPPED if one is running)."""
    timer = start_timer()
    if ctx.dry_run:
        return OperationResult.ok(
            {"dry_run": True, "sources": orchestrator.sources,
             "scope_id": orchestrator.scope_id},
            elapsed_ms=timer.elapsed_ms,
        )
    try:
        result = orchestrator.run_cycle()
    except Exception as exc:
        logger.exception("op_failed", op="run_ingestion_once", error=str(exc))
        return OperationResult.fail("INTERNAL", f"Ingestion cycle could not run: {exc}",
                                    category=ErrorCategory.INGESTION, retryable=True,
                                    elapsed_ms=timer.elapsed_ms)
    warnings = []
    if result.missing:
        warnings.append(f"{len(result.missing)} targeted entities produced no data")
    return OperationResult.ok(result.to_dict(), warnings=warnings, elapsed_ms=timer.elapsed_ms)


def list_cycles(ctx: OperationContext, request: ListCyclesRequest) -> PagedResult[dict[str, Any]]:
    timer = start_timer()
    status = None
    if request.status is not None:
        try:
            status = CycleStatus(request.status)
        except ValueError:
            return PagedResult(
                success=False,
                error=OperationResult.fail("VALIDATION_FAILED",
                                           f"Unknown cycle status {request.status!r}").error,
                elapsed_ms=timer.elapsed_ms,
            )
    cycles = IngestionCycleStore(ctx.conn, schema=ctx.schema).list_recent(request.limit,
                                                                           status=status)
    return PagedResult.from_items(
        [cycle.to_dict() for cycle in cycles],
        total=len(cycles),
        limit=request.limit,
        elapsed_ms=timer.elapsed_ms,
    )


def get_cycle(ctx: OperationContext, request: GetCycleRequest) -> OperationResult[dict[str, Any]]:
    """Cycle detail including its frozen targets and DQ severity counts."""
    timer = start_timer()
    if not request.cycle_id:
        return OperationResult.fail("VALIDATION_FAILED", "cycle_id is required",
                                    elapsed_ms=timer.elapsed_ms)
    cycle = IngestionCycleStore(ctx.conn, schema=ctx.schema).get(request.cycle_id)
    if cycle is None:
        return OperationResult.fail("NOT_FOUND", f"Ingestion cycle {request.cycle_id!r} not found",
                                    category=ErrorCategory.NOT_FOUND,
                                    elapsed_ms=timer.elapsed_ms)
    data = cycle.to_dict()
    data["targets"] = list(cycle.targets)
    data["dq_issues"] = DQIssueStore(ctx.conn, schema=ctx.schema).count_by_severity(cycle.id)
    return OperationResult.ok(data, elapsed_ms=timer.elapsed_ms)


def list_dq_issues(
    ctx: OperationContext,
    request: ListDQIssuesRequest,
) -> PagedResult[dict[str, Any]]:
    timer = start_timer()
    severity = None
    if request.severity is not None:
        try:
            severity = Severity(request.severity)
        except ValueError:
            return PagedResult(
                success=False,
                error=OperationResult.fail("VALIDATION_FAILED",
                                           f"Unknown severity {request.severity!r}").error,
                elapsed_ms=timer.elapsed_ms,
            )
    store = DQIssueStore(ctx.conn, schema=ctx.schema)
    if request.cycle_id:
        issues = store.list_for_cycle(request.cycle_id, severity=severity)
        if request.entity_id:
            issues = [i for i in issues if i.entity_id == request.entity_id]
        page = issues[request.offset: request.offset + request.limit]
        total = len(issues)
    else:
        page = store.list_open(entity_id=request.entity_id, severity=severity,
                               limit=request.limit, offset=request.offset)
        total = request.offset + len(page)
    return PagedResult.from_items(
        [issue.to_dict() for issue in page],
        total=total,
        limit=request.limit,
        offset=request.offset,
        elapsed_ms=timer.elapsed_ms,
    )


def track_entities(
    ctx: OperationContext,
    request: TrackEntitiesRequest,
) -> OperationResult[dict[str, Any]]:
    """Add entities to (or remove them from) the tracked target set."""
    timer = start_timer()
    normalized = normalize_identifiers(request.entity_ids)
    if not normalized.identifiers:
        return OperationResult.fail("VALIDATION_FAILED", "No valid entity ids given",
                                    details={"skipped": list(normalized.skipped)},
                                    elapsed_ms=timer.elapsed_ms)
    scope_id = request.scope_id if request.scope_id is not None else ctx.settings.ingestion_scope_id
    warnings = [f"Skipped invalid id {value!r}" for value in normalized.skipped]
    if ctx.dry_run:
        return OperationResult.ok(
            {"dry_run": True, "scope_id": scope_id, "remove": request.remove,
             "entity_ids": list(normalized.identifiers)},
            warnings=warnings, elapsed_ms=timer.elapsed_ms,
        )
    store = TrackedEntityStore(ctx.conn, schema=ctx.schema)
    try:
        if request.remove:
            changed = store.remove(normalized.identifiers, scope_id=scope_id)
        else:
            changed = store.add(normalized.identifiers, scope_id=scope_id, source=ctx.caller)
    except SyncError as exc:
        return OperationResult.from_error(exc, elapsed_ms=timer.elapsed_ms)
    key = "removed" if request.remove else "added"
    return OperationResult.ok(
        {"scope_id": scope_id, key: changed, "tracked": len(store.list(scope_id))},
        warnings=warnings, elapsed_ms=timer.elapsed_ms,
    )


__all__ = ["get_cycle", "list_cycles", "list_dq_issues", "run_ingestion_once", "track_entities"]
