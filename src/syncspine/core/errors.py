"""
Structured error types for syncspine.

Every failure that crosses a component boundary (job handler to worker,
source client to fetcher, store to operation) is expressed as a
``SyncError`` subclass so that the caller can decide, without string
inspection, whether to retry, how long to wait, and which code to record
on the job row.

Manifesto:
    - **Typed taxonomy:** One class per failure class the queue reacts to
    - **Explicit retry semantics:** Each error knows if it is retryable
    - **Stable codes:** ``code`` is what lands in ``last_error.code``
    - **Error chaining:** Preserve the original exception as ``cause``

Architecture:
    ::

        ┌─────────────────────────────────────────────────────────────────┐
        │                          SyncError                               │
        │        (code, category, retryable, retry_after, context)         │
        ├─────────────────────────────────────────────────────────────────┤
        │                                                                  │
        │  ValidationError      DuplicateJobError     NotFoundError        │
        │  (VALIDATION, no)     (CONFLICT, no)        (NOT_FOUND, no)      │
        │       │                                                          │
        │  UnknownJobTypeError                                             │
        │                                                                  │
        │  ExternalApiError     JobTimeoutError       SchemaUnavailable    │
        │  (SOURCE, yes)        (TIMEOUT, yes)        (STORAGE, no)        │
        │       │                                                          │
        │  RateLimitedError     PermanentFailure      ConfigError          │
        │  (RATE_LIMIT, yes)    JobCancelledError     IngestionCycleFailed │
        └─────────────────────────────────────────────────────────────────┘

Examples:
    >>> err = RateLimitedError("429 from keepa", retry_after=65, tokens_remaining=0)
    >>> err.retryable, err.code
    (True, 'RATE_LIMITED')
    >>> err.with_context(source_name="keepa").to_dict()["context"]
    {'source_name': 'keepa'}

Guardrails:
    ❌ DON'T: Raise bare Exception from a job handler for an expected failure
    ✅ DO: Raise the SyncError subclass that matches the retry behaviour you want

    ❌ DON'T: Detect missing tables by matching error message text
    ✅ DO: Consult the SchemaReport and raise SchemaUnavailableError

Tags:
    error-handling, exception-hierarchy, retry-logic, syncspine

Doc-Types:
    - API Reference
    - Error Handling Guide
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ErrorCategory(str, Enum):
    """Standard error categories used for routing and retry heuristics."""

    # Infrastructure
    NETWORK = "NETWORK"
    DATABASE = "DATABASE"
    STORAGE = "STORAGE"

    # Upstream data sources
    SOURCE = "SOURCE"
    RATE_LIMIT = "RATE_LIMIT"
    TIMEOUT = "TIMEOUT"

    # Caller errors
    VALIDATION = "VALIDATION"
    CONFLICT = "CONFLICT"
    NOT_FOUND = "NOT_FOUND"
    CONFIG = "CONFIG"

    # Application
    EXECUTION = "EXECUTION"
    INGESTION = "INGESTION"
    INTERNAL = "INTERNAL"
    UNKNOWN = "UNKNOWN"


@dataclass
class ErrorContext:
    """
    Structured metadata attached to an error.

    Only non-None fields are serialized by ``to_dict()``; anything without a
    dedicated field goes into ``metadata``.

    Attributes:
        job_id: Job being executed when the error occurred
        job_type: Job type of that job
        cycle_id: Ingestion cycle id
        source_name: External source (e.g. "keepa", "sp_api")
        entity_id: Target entity (ASIN, listing id, ...)
        endpoint_class: Rate-limiter bucket the call was charged to
        http_status: HTTP status code returned by the source, if any
        metadata: Additional key-value pairs
    """

    job_id: str | None = None
    job_type: str | None = None
    cycle_id: str | None = None
    source_name: str | None = None
    entity_id: str | None = None
    endpoint_class: str | None = None
    http_status: int | None = None

    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging."""
        result = {}
        for key in ["job_id", "job_type", "cycle_id", "source_name", "entity_id",
                    "endpoint_class", "http_status"]:
            value = getattr(self, key)
            if value is not None:
                result[key] = value
        if self.metadata:
            result.update(self.metadata)
        return result


class SyncError(Exception):
    """
    Base exception for all syncspine errors.

    Subclasses set ``code``, ``default_category`` and ``default_retryable``;
    instances may override category and retryability per raise site.

    Examples:
        >>> error = SyncError("Something went wrong")
        >>> error.category, error.retryable, error.code
        (<ErrorCategory.INTERNAL: 'INTERNAL'>, False, 'INTERNAL_ERROR')

        >>> try:
        ...     raise ConnectionError("reset by peer")
        ... except ConnectionError as e:
        ...     error = ExternalApiError("keepa unreachable", cause=e)
        >>> error.retryable
        True
    """

    code: str = "INTERNAL_ERROR"
    default_category: ErrorCategory = ErrorCategory.INTERNAL
    default_retryable: bool = False

    def __init__(
        self,
        message: str,
        *,
        category: ErrorCategory | None = None,
        retryable: bool | None = None,
        retry_after: float | None = None,
        context: ErrorContext | None = None,
        cause: Exception | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.category = category or self.default_category
        self.retryable = retryable if retryable is not None else self.default_retryable
        self.retry_after = retry_after
        self.context = context or ErrorContext()
        self.cause = cause

        if cause is not None:
            self.__cause__ = cause

    def with_context(self, **kwargs: Any) -> SyncError:
        """
        Add context to this error (fluent API).

        Usage:
            raise ExternalApiError("HTTP 503").with_context(
                source_name="sp_api",
                http_status=503,
            )
        """
        for key, value in kwargs.items():
            if hasattr(self.context, key) and key != "metadata":
                setattr(self.context, key, value)
            else:
                self.context.metadata[key] = value
        return self

    def to_dict(self) -> dict[str, Any]:
        """Convert error to dictionary for logging/serialization."""
        result = {
            "error_type": self.__class__.__name__,
            "code": self.code,
            "message": self.message,
            "category": self.category.value,
            "retryable": self.retryable,
        }
        if self.retry_after is not None:
            result["retry_after"] = self.retry_after
        context_dict = self.context.to_dict()
        if context_dict:
            result["context"] = context_dict
        if self.cause is not None:
            result["cause"] = str(self.cause)
        return result

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.message!r}, code={self.code})"


# =============================================================================
# CALLER ERRORS (never retried)
# =============================================================================


class ValidationError(SyncError):
    """Bad input. Never retryable; the input must be fixed."""

    code = "VALIDATION_ERROR"
    default_category = ErrorCategory.VALIDATION


class UnknownJobTypeError(ValidationError):
    """A job row names a type with no registered handler."""

    code = "UNKNOWN_JOB_TYPE"

    def __init__(self, job_type: str, **kwargs: Any):
        super().__init__(f"No handler registered for job type {job_type!r}", **kwargs)
        self.job_type = job_type


class DuplicateJobError(SyncError):
    """A non-terminal job with the same dedup key already exists."""

    code = "DUPLICATE_JOB"
    default_category = ErrorCategory.CONFLICT

    def __init__(self, dedup_key: str, existing_job_id: str | None = None, **kwargs: Any):
        message = f"A live job with dedup key {dedup_key!r} already exists"
        if existing_job_id:
            message += f" ({existing_job_id})"
        super().__init__(message, **kwargs)
        self.dedup_key = dedup_key
        self.existing_job_id = existing_job_id


class NotFoundError(SyncError):
    """Requested record does not exist."""

    code = "NOT_FOUND"
    default_category = ErrorCategory.NOT_FOUND


class ConfigError(SyncError):
    """Missing or inconsistent configuration detected at startup."""

    code = "CONFIG_ERROR"
    default_category = ErrorCategory.CONFIG


# =============================================================================
# EXTERNAL SOURCE ERRORS (retryable)
# =============================================================================


class ExternalApiError(SyncError):
    """Failure talking to an external data source. Retryable with backoff."""

    code = "EXTERNAL_API_ERROR"
    default_category = ErrorCategory.SOURCE
    default_retryable = True

    def __init__(self, message: str, *, status_code: int | None = None, **kwargs: Any):
        super().__init__(message, **kwargs)
        self.status_code = status_code
        if status_code is not None:
            self.context.http_status = status_code


class RateLimitedError(ExternalApiError):
    """The source throttled us (HTTP 429 or equivalent).

    ``retry_after`` is the server's wait hint in seconds, when it sent one;
    ``tokens_remaining`` is the server's view of the bucket, when known.
    """

    code = "RATE_LIMITED"
    default_category = ErrorCategory.RATE_LIMIT

    def __init__(
        self,
        message: str = "Rate limit exceeded",
        *,
        retry_after: float | None = None,
        tokens_remaining: float | None = None,
        **kwargs: Any,
    ):
        kwargs.setdefault("status_code", 429)
        super().__init__(message, retry_after=retry_after, **kwargs)
        self.tokens_remaining = tokens_remaining


class JobTimeoutError(SyncError):
    """An operation exceeded its configured ceiling.

    Distinct from handler-raised business errors but still counts as an attempt.
    """

    code = "JOB_TIMEOUT"
    default_category = ErrorCategory.TIMEOUT
    default_retryable = True

    def __init__(
        self,
        timeout: float,
        *,
        elapsed: float | None = None,
        operation: str = "operation",
        **kwargs: Any,
    ):
        message = f"Operation '{operation}' timed out after {timeout}s"
        if elapsed is not None:
            message += f" (ran for {elapsed:.2f}s)"
        super().__init__(message, **kwargs)
        self.timeout = timeout
        self.elapsed = elapsed
        self.operation = operation


# =============================================================================
# STORAGE / EXECUTION ERRORS
# =============================================================================


class SchemaUnavailableError(SyncError):
    """A table the component needs was not found by the startup schema check."""

    code = "SCHEMA_UNAVAILABLE"
    default_category = ErrorCategory.STORAGE

    def __init__(self, table: str, **kwargs: Any):
        super().__init__(f"Required table {table!r} is not provisioned", **kwargs)
        self.table = table


class PermanentFailureError(SyncError):
    """Attempts exhausted; the job has been dead-lettered."""

    code = "PERMANENT_FAILURE"
    default_category = ErrorCategory.EXECUTION


class JobCancelledError(SyncError):
    """Raised by a cooperative handler that observed a cancellation request."""

    code = "JOB_CANCELLED"
    default_category = ErrorCategory.EXECUTION


class IngestionCycleFailedError(SyncError):
    """An ingestion cycle aborted before reaching the transform stage."""

    code = "INGESTION_CYCLE_FAILED"
    default_category = ErrorCategory.INGESTION
    default_retryable = True


# =============================================================================
# UTILITY FUNCTIONS
# =============================================================================


def is_retryable(error: BaseException) -> bool:
    """Check if an error is worth retrying.

    Unclassified exceptions are treated as retryable: the job queue gives
    them the full attempt budget rather than guessing they are permanent.
    """
    if isinstance(error, SyncError):
        return error.retryable
    return isinstance(error, Exception)


def get_retry_after(error: BaseException) -> float | None:
    """Get the retry delay hint from an error, if specified."""
    if isinstance(error, SyncError):
        return error.retry_after
    return None


def error_code(error: BaseException) -> str:
    """Machine-readable code recorded on the job row."""
    if isinstance(error, SyncError):
        return error.code
    if isinstance(error, TimeoutError):
        return JobTimeoutError.code
    return "HANDLER_ERROR"


__all__ = [
    "ErrorCategory",
    "ErrorContext",
    "SyncError",
    "ValidationError",
    "UnknownJobTypeError",
    "DuplicateJobError",
    "NotFoundError",
    "ConfigError",
    "ExternalApiError",
    "RateLimitedError",
    "JobTimeoutError",
    "SchemaUnavailableError",
    "PermanentFailureError",
    "JobCancelledError",
    "IngestionCycleFailedError",
    "is_retryable",
    "get_retry_after",
    "error_code",
]
