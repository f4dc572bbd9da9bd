"""
Request-scoped context for operations.

Every operation function receives an :class:`OperationContext` first. It
carries the database connection, the settings, the caller identity and
the dry-run flag, plus the business-layer precondition validators that
publish-style job creation must consult.
"""

from __future__ import annotations

import sqlite3
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from syncspine.core.schema import SchemaReport, verify_schema
from syncspine.core.settings import SyncSettings, get_settings
from syncspine.execution.models import JobScope, JobType

# Re-derives the input to persist for a job from the caller's input; raises
# ValidationError when the business preconditions do not hold.
PreconditionValidator = Callable[[JobScope, dict[str, Any]], dict[str, Any]]


@dataclass
class OperationContext:
    """Context passed to every operation function.

    Attributes:
        conn: SQLite connection from :func:`syncspine.core.connection.connect`.
        settings: Runtime settings (defaults to the cached process settings).
        request_id: Unique id for this invocation.
        caller: Origin of the request: ``"cli"``, ``"api"``, ``"sdk"`` or ``"scheduler"``.
        user: Optional authenticated user; recorded as ``created_by``.
        dry_run: Validate and preview without side effects.
        preconditions: Validators for publish-style job types, keyed by type.
    """

    conn: sqlite3.Connection
    settings: SyncSettings = field(default_factory=get_settings)
    request_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    caller: str = "sdk"
    user: str | None = None
    dry_run: bool = False
    preconditions: dict[JobType, PreconditionValidator] = field(default_factory=dict)
    metadata: dict[str, Any] = field(default_factory=dict)
    _schema: SchemaReport | None = field(default=None, init=False, repr=False)

    @property
    def schema(self) -> SchemaReport:
        """Schema report for ``conn``, checked once per context."""
        if self._schema is None:
            self._schema = verify_schema(self.conn)
        return self._schema

    def register_precondition(self, job_type: JobType, validator: PreconditionValidator) -> None:
        self.preconditions[job_type] = validator


__all__ = ["OperationContext", "PreconditionValidator"]
