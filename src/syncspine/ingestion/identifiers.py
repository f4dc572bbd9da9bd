"""Identifier normalization and batching.

Sources accept identifiers in slightly different shapes (a list, a
comma-separated string). Everything entering the pipeline goes through
``normalize_identifiers`` first: trimmed, upper-cased, optionally
validated, de-duplicated in first-seen order.

Examples:
    >>> normalize_identifiers(" b00test123, B00TEST123 ,bad", pattern=ASIN_PATTERN).identifiers
    ('B00TEST123',)
    >>> list(chunked(["A", "B", "C"], 2))
    [('A', 'B'), ('C',)]
"""

from __future__ import annotations

import re
from collections.abc import Iterable, Iterator
from dataclasses import dataclass
from typing import TypeVar

from syncspine.core.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

ASIN_PATTERN = re.compile(r"^[A-Z0-9]{10}$")


@dataclass(frozen=True)
class NormalizedIdentifiers:
    """Accepted identifiers plus whatever was rejected."""

    identifiers: tuple[str, ...]
    skipped: tuple[str, ...] = ()

    @property
    def valid(self) -> bool:
        return bool(self.identifiers)

    @property
    def joined(self) -> str:
        """Comma-separated form some source APIs require."""
        return ",".join(self.identifiers)


def normalize_identifiers(
    values: str | Iterable[object] | None,
    *,
    pattern: re.Pattern[str] | None = None,
    max_size: int | None = None,
) -> NormalizedIdentifiers:
    """Clean a batch of identifiers.

    Args:
        values: Iterable of identifiers or a comma-separated string.
        pattern: Optional regex an identifier must fully match.
        max_size: Keep at most this many (the rest are dropped, logged).
    """
    if values is None:
        return NormalizedIdentifiers(())
    raw = values.split(",") if isinstance(values, str) else values

    seen: set[str] = set()
    accepted: list[str] = []
    skipped: list[str] = []
    for item in raw:
        if not isinstance(item, str):
            if item is not None:
                skipped.append(str(item))
            continue
        value = item.strip().upper()
        if not value or value in seen:
            continue
        if pattern is not None and not pattern.match(value):
            skipped.append(value)
            continue
        seen.add(value)
        accepted.append(value)

    if max_size is not None and len(accepted) > max_size:
        logger.warning("identifiers.truncated", requested=len(accepted), max_size=max_size)
        accepted = accepted[:max_size]
    return NormalizedIdentifiers(tuple(accepted), tuple(skipped))


def chunked(items: Iterable[T], size: int) -> Iterator[tuple[T, ...]]:
    """Yield consecutive tuples of at most ``size`` items."""
    if size < 1:
        raise ValueError(f"Batch size must be positive, got {size}")
    batch: list[T] = []
    for item in items:
        batch.append(item)
        if len(batch) == size:
            yield tuple(batch)
            batch = []
    if batch:
        yield tuple(batch)


__all__ = ["ASIN_PATTERN", "NormalizedIdentifiers", "chunked", "normalize_identifiers"]
