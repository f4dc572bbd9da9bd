"""
Operations layer for syncspine.

Typed request/response functions over the job queue, the dead letter
queue and the ingestion pipeline, with one set of conventions:

- All functions accept ``OperationContext`` as first argument
- All functions return ``OperationResult[T]`` (never raise)
- All functions are transport-agnostic (no HTTP, no CLI knowledge)
- Mutating functions honour ``ctx.dry_run``

Usage::

    from syncspine.ops import OperationContext
    from syncspine.ops.jobs import create_job
    from syncspine.ops.requests import CreateJobRequest

    ctx = OperationContext(conn=conn, caller="api")
    result = create_job(ctx, CreateJobRequest(job_type="SYNC_KEEPA_ASIN",
                                              scope_type="ASIN", entity_id="B00TEST123"))
    if not result.success and result.error.code == "DUPLICATE_JOB":
        ...  # 409
"""

from syncspine.ops.context import OperationContext, PreconditionValidator
from syncspine.ops.result import OperationError, OperationResult, PagedResult

__all__ = [
    "OperationContext",
    "OperationError",
    "OperationResult",
    "PagedResult",
    "PreconditionValidator",
]
