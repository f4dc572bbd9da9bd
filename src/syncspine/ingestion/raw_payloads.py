"""Raw Payload Store — append-only record of fetched source documents.

Every document a source returns is written once, tagged with the target
entity, the source name and the ingestion cycle that fetched it. Rows are
never updated; history across cycles is kept so reconciliation can be
replayed and anomalies traced back to what a source actually said.

A second write for the same (entity, scope, source, cycle) is ignored,
which makes re-persisting a batch after a retry harmless.
"""

from __future__ import annotations

import json
import sqlite3
import threading
from collections.abc import Iterable

from syncspine.core.logging import get_logger
from syncspine.core.schema import SchemaReport, verify_schema
from syncspine.core.timestamps import from_iso8601, to_iso8601

from .models import FetchedDocument, RawPayload

logger = get_logger(__name__)

_PAYLOAD_COLUMNS = "id, entity_id, scope_id, source, cycle_id, payload, captured_at"


class RawPayloadStore:
    """SQLite-backed raw payload archive."""

    def __init__(self, conn: sqlite3.Connection, *, schema: SchemaReport | None = None):
        self._conn = conn
        self._schema = schema or verify_schema(conn)
        self._lock = threading.RLock()

    @property
    def available(self) -> bool:
        return self._schema.has("raw_payloads")

    def insert_many(
        self,
        documents: Iterable[FetchedDocument],
        *,
        scope_id: int,
        cycle_id: str,
    ) -> int:
        """Persist documents for one cycle; returns the number of new rows.

        Raises:
            SchemaUnavailableError: The raw_payloads table is not provisioned.
                A cycle cannot proceed without somewhere to put what it fetched.
        """
        self._schema.require("raw_payloads")
        rows = [
            (
                doc.entity_id,
                scope_id,
                doc.source,
                cycle_id,
                json.dumps(doc.payload, default=str),
                to_iso8601(doc.captured_at),
            )
            for doc in documents
        ]
        if not rows:
            return 0
        with self._lock:
            before = self._conn.total_changes
            self._conn.executemany(
                """
                INSERT INTO raw_payloads (entity_id, scope_id, source, cycle_id, payload, captured_at)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT (entity_id, scope_id, source, cycle_id) DO NOTHING
                """,
                rows,
            )
            self._conn.commit()
            inserted = self._conn.total_changes - before
        logger.debug("raw_payloads.inserted", cycle_id=cycle_id, rows=inserted, offered=len(rows))
        return inserted

    def distinct_entities_for_cycle(self, cycle_id: str, *, scope_id: int | None = None) -> set[str]:
        """Entities that produced at least one payload in ``cycle_id``."""
        if not self.available:
            logger.warning("raw_payloads.unavailable", operation="distinct_entities_for_cycle")
            return set()
        query = "SELECT DISTINCT entity_id FROM raw_payloads WHERE cycle_id = ?"
        params: list[object] = [cycle_id]
        if scope_id is not None:
            query += " AND scope_id = ?"
            params.append(scope_id)
        with self._lock:
            rows = self._conn.execute(query, params).fetchall()
        return {row[0] for row in rows}

    def payloads_for_entity(
        self,
        entity_id: str,
        cycle_id: str,
        *,
        scope_id: int | None = None,
    ) -> dict[str, list[RawPayload]]:
        """All payloads for one entity in one cycle, grouped by source."""
        if not self.available:
            logger.warning("raw_payloads.unavailable", operation="payloads_for_entity")
            return {}
        query = f"SELECT {_PAYLOAD_COLUMNS} FROM raw_payloads WHERE entity_id = ? AND cycle_id = ?"
        params: list[object] = [entity_id, cycle_id]
        if scope_id is not None:
            query += " AND scope_id = ?"
            params.append(scope_id)
        query += " ORDER BY source, captured_at"
        with self._lock:
            rows = self._conn.execute(query, params).fetchall()

        grouped: dict[str, list[RawPayload]] = {}
        for row in rows:
            payload = _row_to_payload(row)
            grouped.setdefault(payload.source, []).append(payload)
        return grouped

    def history(
        self,
        entity_id: str,
        *,
        source: str | None = None,
        limit: int = 50,
    ) -> list[RawPayload]:
        """Most recent payloads for an entity across cycles, newest first."""
        if not self.available:
            return []
        query = f"SELECT {_PAYLOAD_COLUMNS} FROM raw_payloads WHERE entity_id = ?"
        params: list[object] = [entity_id]
        if source is not None:
            query += " AND source = ?"
            params.append(source)
        query += " ORDER BY captured_at DESC, id DESC LIMIT ?"
        params.append(limit)
        with self._lock:
            rows = self._conn.execute(query, params).fetchall()
        return [_row_to_payload(row) for row in rows]

    def count_for_cycle(self, cycle_id: str) -> int:
        if not self.available:
            return 0
        with self._lock:
            row = self._conn.execute(
                "SELECT COUNT(*) FROM raw_payloads WHERE cycle_id = ?", (cycle_id,)
            ).fetchone()
        return int(row[0])


def _row_to_payload(row: sqlite3.Row) -> RawPayload:
    return RawPayload(
        id=row["id"],
        entity_id=row["entity_id"],
        scope_id=row["scope_id"],
        source=row["source"],
        cycle_id=row["cycle_id"],
        payload=json.loads(row["payload"]),
        captured_at=from_iso8601(row["captured_at"]),
    )


__all__ = ["RawPayloadStore"]
