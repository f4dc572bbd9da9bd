"""Handler Registry — closed JobType → handler map.

Manifesto:
The worker must never meet a job type it cannot run and silently skip
it. Job types are a closed enum; the registry is checked against it at
startup, so adding a ``JobType`` member without a handler stops the
worker from starting rather than failing jobs at runtime.

ARCHITECTURE
────────────
::

    HandlerRegistry(handlers, job_types=tuple(JobType))
      ├── .register(job_type, handler) ─ store / replace handler
      ├── .resolve(job_type)           ─ lookup (UnknownJobTypeError)
      ├── .missing()                   ─ required types with no handler
      ├── .validate()                  ─ ConfigError unless exhaustive
      └── .job_types()                 ─ registered types

    Handler signature:  handler(ctx: JobContext) -> result | PartialResult

BEST PRACTICES
──────────────
- Build the registry once at process start and pass it to the worker;
  there is no module-level default registry.
- Pass ``job_types=`` in tests to validate against a subset.

Related modules:
    worker.py   — calls validate() at construction, resolve() per job
    context.py  — the handler argument

Tags:
    syncspine, execution, registry, handler-registry, dispatch

Doc-Types:
    api-reference
"""

from __future__ import annotations

from collections.abc import Callable, Iterable, Mapping
from typing import Any

from syncspine.core.errors import ConfigError, UnknownJobTypeError

from .context import JobContext
from .models import JobType

JobHandler = Callable[[JobContext], Any]


class HandlerRegistry:
    """Exhaustive job type → handler registry.

    Example:
        >>> registry = HandlerRegistry(job_types=(JobType.SYNC_KEEPA_ASIN,))
        >>> registry.missing()
        [<JobType.SYNC_KEEPA_ASIN: 'SYNC_KEEPA_ASIN'>]
        >>> registry.register(JobType.SYNC_KEEPA_ASIN, lambda ctx: {"ok": True})
        >>> registry.validate()
    """

    def __init__(
        self,
        handlers: Mapping[JobType | str, JobHandler] | None = None,
        *,
        job_types: Iterable[JobType] = tuple(JobType),
    ):
        self._required: tuple[JobType, ...] = tuple(job_types)
        self._handlers: dict[JobType, JobHandler] = {}
        for job_type, handler in (handlers or {}).items():
            self.register(job_type, handler)

    def register(self, job_type: JobType | str, handler: JobHandler) -> None:
        """Register ``handler`` for ``job_type``.

        Raises:
            ConfigError: ``job_type`` is not a JobType member, or the
                handler is not callable.
        """
        kind = job_type if isinstance(job_type, JobType) else JobType.parse(str(job_type))
        if kind is None:
            raise ConfigError(f"Cannot register handler for unknown job type {job_type!r}")
        if not callable(handler):
            raise ConfigError(f"Handler for {kind.value} is not callable")
        self._handlers[kind] = handler

    def resolve(self, job_type: JobType | str) -> JobHandler:
        """Handler for ``job_type``.

        Raises:
            UnknownJobTypeError: Not a JobType member or no handler registered.
        """
        kind = job_type if isinstance(job_type, JobType) else JobType.parse(str(job_type))
        if kind is None or kind not in self._handlers:
            raise UnknownJobTypeError(str(getattr(job_type, "value", job_type)))
        return self._handlers[kind]

    def missing(self) -> list[JobType]:
        return [t for t in self._required if t not in self._handlers]

    def validate(self) -> None:
        """Raise :class:`ConfigError` unless every required type has a handler."""
        missing = self.missing()
        if missing:
            names = ", ".join(t.value for t in missing)
            raise ConfigError(f"No handler registered for job types: {names}")

    def job_types(self) -> list[JobType]:
        return sorted(self._handlers, key=lambda t: t.value)

    def __contains__(self, job_type: object) -> bool:
        kind = job_type if isinstance(job_type, JobType) else JobType.parse(str(job_type))
        return kind in self._handlers

    def __len__(self) -> int:
        return len(self._handlers)


__all__ = ["HandlerRegistry", "JobHandler"]
