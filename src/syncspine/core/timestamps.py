"""
UTC timestamp helpers.

Rows store timestamps as fixed-width ISO 8601 strings (microsecond
precision, ``+00:00`` offset) so that SQL string comparison orders them
chronologically; ``scheduled_for <= ?`` and lease expiry checks rely on it.
"""

from datetime import UTC, datetime, timedelta


def utc_now() -> datetime:
    """Get current UTC datetime."""
    return datetime.now(UTC)


def to_iso8601(dt: datetime | None) -> str | None:
    """Convert datetime to a sortable ISO 8601 string."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC).isoformat(timespec="microseconds")


def from_iso8601(s: str | None) -> datetime | None:
    """Parse ISO 8601 string to datetime."""
    if s is None:
        return None
    return datetime.fromisoformat(s)


def iso_after(seconds: float, start: datetime | None = None) -> str:
    """ISO timestamp ``seconds`` after ``start`` (default: now)."""
    return to_iso8601((start or utc_now()) + timedelta(seconds=seconds))
