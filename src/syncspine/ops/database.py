"""
Database operations: apply migrations, report schema capability.
"""

from __future__ import annotations

from typing import Any

from syncspine.core.logging import get_logger
from syncspine.core.migrations import MigrationRunner
from syncspine.core.schema import verify_schema
from syncspine.ops.context import OperationContext
from syncspine.ops.result import OperationResult, start_timer

logger = get_logger(__name__)


def migrate_database(ctx: OperationContext) -> OperationResult[dict[str, Any]]:
    """Apply pending migrations (``dry_run`` lists them instead)."""
    timer = start_timer()
    runner = MigrationRunner(ctx.conn)
    if ctx.dry_run:
        return OperationResult.ok({"dry_run": True, "pending": runner.get_pending()},
                                  elapsed_ms=timer.elapsed_ms)

    result = runner.apply_pending()
    if not result.success:
        name, error = next(iter(result.errors.items()))
        return OperationResult.fail(
            "MIGRATION_FAILED",
            f"Migration {name} failed: {error}",
            details={"applied": result.applied, "errors": result.errors},
            elapsed_ms=timer.elapsed_ms,
        )
    logger.info("db.migrated", applied=result.applied, skipped=len(result.skipped))
    report = verify_schema(ctx.conn)
    return OperationResult.ok(
        {"applied": result.applied, "skipped": len(result.skipped), **report.to_dict()},
        elapsed_ms=timer.elapsed_ms,
    )


def check_schema(ctx: OperationContext) -> OperationResult[dict[str, Any]]:
    """Which tables exist; a failure (``SCHEMA_INCOMPLETE``) lists the missing ones."""
    timer = start_timer()
    report = verify_schema(ctx.conn)
    if not report.is_complete:
        return OperationResult.fail(
            "SCHEMA_INCOMPLETE",
            f"Missing tables: {', '.join(sorted(report.missing))}; run `syncspine db migrate`",
            details=report.to_dict(),
            elapsed_ms=timer.elapsed_ms,
        )
    return OperationResult.ok(report.to_dict(), elapsed_ms=timer.elapsed_ms)


__all__ = ["check_schema", "migrate_database"]
