"""Core primitives shared by the execution and ingestion layers."""

from syncspine.core.errors import (
    ConfigError,
    DuplicateJobError,
    ErrorCategory,
    ErrorContext,
    ExternalApiError,
    JobTimeoutError,
    NotFoundError,
    PermanentFailureError,
    RateLimitedError,
    SchemaUnavailableError,
    SyncError,
    ValidationError,
)
from syncspine.core.result import Err, Fatal, Ok, Retry, try_result

__all__ = [
    "ConfigError",
    "DuplicateJobError",
    "ErrorCategory",
    "ErrorContext",
    "ExternalApiError",
    "JobTimeoutError",
    "NotFoundError",
    "PermanentFailureError",
    "RateLimitedError",
    "SchemaUnavailableError",
    "SyncError",
    "ValidationError",
    "Err",
    "Fatal",
    "Ok",
    "Retry",
    "try_result",
]
