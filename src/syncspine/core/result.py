"""
Result and retry-outcome types.

Two small families live here:

- ``Ok`` / ``Err`` — the value-or-exception envelope used when a call is
  fallible but the caller wants to keep going (per-entity transforms,
  per-batch fetches).
- ``Ok`` / ``Retry`` / ``Fatal`` — the outcome of one attempt inside a
  retry loop. The attempt decides *what happened*; the outer
  :class:`~syncspine.execution.retry.RetryLoop` owns sleeping and the
  attempt bound, so backoff policy is testable without the wrapped call.

Examples:
    >>> Ok(3).map(lambda x: x + 1).unwrap()
    4
    >>> Err(ValueError("bad")).unwrap_or(0)
    0
    >>> try_result(lambda: 1 / 0).is_err()
    True

Tags:
    result-pattern, retry, functional-programming, syncspine

Doc-Types:
    - API Reference
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Generic, TypeVar

T = TypeVar("T")
U = TypeVar("U")


@dataclass(frozen=True, slots=True)
class Ok(Generic[T]):
    """Successful result containing a value."""

    value: T

    def is_ok(self) -> bool:
        return True

    def is_err(self) -> bool:
        return False

    def unwrap(self) -> T:
        return self.value

    def unwrap_or(self, default: T) -> T:
        return self.value

    def map(self, f: Callable[[T], U]) -> Ok[U]:
        """Transform the value."""
        return Ok(f(self.value))

    def to_dict(self) -> dict[str, Any]:
        return {"ok": True, "value": self.value}


@dataclass(frozen=True, slots=True)
class Err(Generic[T]):
    """Failed result containing the exception."""

    error: Exception

    def is_ok(self) -> bool:
        return False

    def is_err(self) -> bool:
        return True

    def unwrap(self) -> T:
        """Re-raise the wrapped exception."""
        raise self.error

    def unwrap_or(self, default: T) -> T:
        return default

    def map(self, f: Callable[[T], U]) -> Err[U]:
        return Err(self.error)

    def to_dict(self) -> dict[str, Any]:
        return {
            "ok": False,
            "error_type": type(self.error).__name__,
            "message": str(self.error),
        }


Result = Ok[T] | Err[T]


@dataclass(frozen=True, slots=True)
class Retry:
    """The attempt failed and may be tried again after ``wait_for`` seconds."""

    wait_for: float
    error: Exception

    def is_ok(self) -> bool:
        return False


@dataclass(frozen=True, slots=True)
class Fatal:
    """The attempt failed and retrying would not help."""

    error: Exception

    def is_ok(self) -> bool:
        return False


Outcome = Ok[T] | Retry | Fatal


def try_result(f: Callable[[], T]) -> Result[T]:
    """Run ``f`` and capture its return value or exception."""
    try:
        return Ok(f())
    except Exception as e:
        return Err(e)


def partition_results(results: list[Result[T]]) -> tuple[list[T], list[Exception]]:
    """Split results into (values, errors)."""
    values: list[T] = []
    errors: list[Exception] = []
    for r in results:
        if isinstance(r, Ok):
            values.append(r.value)
        else:
            errors.append(r.error)
    return values, errors


__all__ = [
    "Ok",
    "Err",
    "Result",
    "Retry",
    "Fatal",
    "Outcome",
    "try_result",
    "partition_results",
]
