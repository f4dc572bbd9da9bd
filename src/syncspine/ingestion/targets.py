"""Target resolution for ingestion cycles.

The set of entities a cycle fetches is the union of the explicitly
tracked entities (``tracked_entities`` table) and whatever the business
domain references elsewhere (active listings, watched products, ...).
The latter is an external collaborator: any callable taking a scope id
and returning identifiers.

The resolved list is normalized, de-duplicated and sorted, then frozen on
the cycle row so that reconciliation runs against exactly what was asked
for.
"""

from __future__ import annotations

import re
import sqlite3
import threading
from collections.abc import Callable, Iterable, Sequence

from syncspine.core.errors import SchemaUnavailableError
from syncspine.core.logging import get_logger
from syncspine.core.schema import SchemaReport, verify_schema
from syncspine.core.timestamps import to_iso8601, utc_now

from .identifiers import normalize_identifiers

logger = get_logger(__name__)

TargetProvider = Callable[[int], Iterable[str]]


class TrackedEntityStore:
    """Entities explicitly registered for ingestion, per scope."""

    def __init__(self, conn: sqlite3.Connection, *, schema: SchemaReport | None = None):
        self._conn = conn
        self._schema = schema or verify_schema(conn)
        self._lock = threading.RLock()

    def add(self, entity_ids: Iterable[str], *, scope_id: int, source: str = "manual") -> int:
        """Track entities; already tracked ones are left alone. Returns rows added."""
        self._schema.require("tracked_entities")
        ids = normalize_identifiers(entity_ids).identifiers
        now = to_iso8601(utc_now())
        with self._lock:
            before = self._conn.total_changes
            self._conn.executemany(
                "INSERT INTO tracked_entities (entity_id, scope_id, source, added_at) "
                "VALUES (?, ?, ?, ?) ON CONFLICT (entity_id, scope_id) DO NOTHING",
                [(entity_id, scope_id, source, now) for entity_id in ids],
            )
            self._conn.commit()
            added = self._conn.total_changes - before
        logger.info("targets.tracked", scope_id=scope_id, added=added)
        return added

    def remove(self, entity_ids: Iterable[str], *, scope_id: int) -> int:
        self._schema.require("tracked_entities")
        ids = normalize_identifiers(entity_ids).identifiers
        with self._lock:
            before = self._conn.total_changes
            self._conn.executemany(
                "DELETE FROM tracked_entities WHERE entity_id = ? AND scope_id = ?",
                [(entity_id, scope_id) for entity_id in ids],
            )
            self._conn.commit()
            return self._conn.total_changes - before

    def list(self, scope_id: int) -> list[str]:
        """Tracked entity ids for ``scope_id``.

        Raises:
            SchemaUnavailableError: The tracked_entities table is not provisioned.
        """
        self._schema.require("tracked_entities")
        with self._lock:
            rows = self._conn.execute(
                "SELECT entity_id FROM tracked_entities WHERE scope_id = ? ORDER BY entity_id",
                (scope_id,),
            ).fetchall()
        return [row[0] for row in rows]

    def __call__(self, scope_id: int) -> list[str]:
        return self.list(scope_id)


class TargetResolver:
    """Unions target providers into one frozen, sorted tuple.

    A provider whose backing table is not provisioned is skipped with a
    warning; any other provider error propagates and fails the cycle.
    """

    def __init__(
        self,
        providers: Sequence[TargetProvider],
        *,
        pattern: re.Pattern[str] | None = None,
        max_targets: int | None = None,
    ):
        self._providers = list(providers)
        self._pattern = pattern
        self._max_targets = max_targets

    def resolve(self, scope_id: int) -> tuple[str, ...]:
        collected: list[str] = []
        for provider in self._providers:
            name = getattr(provider, "__qualname__", type(provider).__name__)
            try:
                found = list(provider(scope_id))
            except SchemaUnavailableError as exc:
                logger.warning("targets.provider_unavailable", provider=name, table=exc.table)
                continue
            logger.debug("targets.provider_resolved", provider=name, count=len(found))
            collected.extend(found)

        normalized = normalize_identifiers(collected, pattern=self._pattern)
        if normalized.skipped:
            logger.warning(
                "targets.invalid_skipped",
                count=len(normalized.skipped),
                sample=list(normalized.skipped[:5]),
            )
        targets = sorted(normalized.identifiers)
        if self._max_targets is not None and len(targets) > self._max_targets:
            logger.warning("targets.truncated", resolved=len(targets), max_targets=self._max_targets)
            targets = targets[: self._max_targets]
        return tuple(targets)


__all__ = ["TargetProvider", "TargetResolver", "TrackedEntityStore"]
