"""
Helpers for optional datetime handling.
"""
from __future__ import annotations

from datetime import UTC, datetime
from typing import Any


def utcnow() -> datetime:
    return datetime.now(UTC)


def iso_or_none(dt: datetime | None | Any) -> str | None:
    """
    Return ISO format string for dt, or None if dt is None.
    """
    if dt is None:
        return None
    if hasattr(dt, "isoformat"):
        return dt.isoformat()
    return None


def dt_replace_utc(dt: datetime | None | Any) -> datetime | None:
    """
    Return dt with tzinfo=UTC if naive, or None if dt is None.
    Use for optional datetimes that may be naive (e.g. from SQLite).
    """
    if dt is None:
        return None
    if isinstance(dt, datetime):
        return dt.replace(tzinfo=UTC) if dt.tzinfo is None else dt
    return None


def parse_iso(value: str | datetime | None) -> datetime | None:
    """Parse an ISO timestamp from a stored document (UTC if naive)."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return dt_replace_utc(value)
    return dt_replace_utc(datetime.fromisoformat(value))


def format_duration(start: datetime | None, end: datetime | None = None) -> str:
    """Human readable duration, e.g. '2h 5m' or '3m'."""
    start = dt_replace_utc(start)
    if start is None:
        return "-"
    end = dt_replace_utc(end) or utcnow()
    minutes = max(0, int((end - start).total_seconds() // 60))
    hours, minutes = divmod(minutes, 60)
    if hours:
        return f"{hours}h {minutes}m"
    return f"{minutes}m"
