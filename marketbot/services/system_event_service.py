"""
Durable system events.

Moderation decisions, delivery failures, store degradation and dispatch faults
are written to the system_events table so they can be inspected through
GET /admin/events after the log lines are gone.

Request handlers that already hold a session call log_event (or the
info/warn/error shorthands). The dispatcher, the store and background tasks
call emit(), which opens its own session and never raises into the caller.
"""

import logging
from datetime import UTC, datetime, timedelta

from sqlalchemy import delete
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import InstrumentedAttribute, Session

from marketbot.db.helpers import commit_and_refresh, open_session
from marketbot.db.models import SystemEvent
from marketbot.middleware.correlation_id import get_correlation_id

logger = logging.getLogger(__name__)

DEFAULT_RETENTION_DAYS = 90
MAX_ERROR_MESSAGE_LENGTH = 500


def build_payload(
    payload: dict | None,
    exc: BaseException | None = None,
    correlation_id: str | None = None,
) -> dict | None:
    """Copy the caller's payload and attach error details and the correlation id."""
    data = dict(payload or {})
    if exc is not None:
        data["error"] = {"type": type(exc).__name__, "message": str(exc)[:MAX_ERROR_MESSAGE_LENGTH]}
    cid = correlation_id if correlation_id is not None else get_correlation_id(None)
    if cid is not None:
        data["correlation_id"] = cid
    return data or None


def log_event(
    db: Session,
    level: str,
    event_type: str,
    user_id: int | None = None,
    product_id: int | None = None,
    payload: dict | None = None,
    exc: BaseException | None = None,
    correlation_id: str | None = None,
) -> SystemEvent:
    """
    Insert one SystemEvent and return it.

    level is case-insensitive (INFO, WARN, ERROR). event_type is one of the
    names in marketbot.constants.event_types, e.g. "moderation.approved".
    """
    event = SystemEvent(
        level=level.upper(),
        event_type=event_type,
        user_id=user_id,
        product_id=product_id,
        payload=build_payload(payload, exc, correlation_id),
    )
    db.add(event)
    commit_and_refresh(db, event)
    return event


def info(db: Session, event_type: str, **kwargs) -> SystemEvent:
    return log_event(db, "INFO", event_type, **kwargs)


def warn(db: Session, event_type: str, **kwargs) -> SystemEvent:
    return log_event(db, "WARN", event_type, **kwargs)


def error(db: Session, event_type: str, **kwargs) -> SystemEvent:
    return log_event(db, "ERROR", event_type, **kwargs)


def emit(level: str, event_type: str, **kwargs) -> SystemEvent | None:
    """
    Record an event from code that has no session of its own.

    Returns None when the database rejects the insert; the failure is logged.
    """
    db = open_session()
    try:
        return log_event(db, level, event_type, **kwargs)
    except SQLAlchemyError as e:
        db.rollback()
        logger.warning(f"Could not record system event {event_type}: {e}")
        return None
    finally:
        db.close()


def retention_cutoff(retention_days: int, cutoff: datetime | None = None) -> datetime:
    """Aware UTC cutoff; a naive explicit cutoff is read as UTC."""
    if cutoff is None:
        return datetime.now(UTC) - timedelta(days=retention_days)
    if cutoff.tzinfo is None:
        return cutoff.replace(tzinfo=UTC)
    return cutoff


def delete_older_than(db: Session, column: InstrumentedAttribute, cutoff: datetime) -> int:
    """Delete rows of column's table whose timestamp is before cutoff."""
    result = db.execute(delete(column.class_).where(column < cutoff))
    db.commit()
    return result.rowcount or 0


def cleanup_old_events(
    db: Session,
    *,
    retention_days: int = DEFAULT_RETENTION_DAYS,
    cutoff: datetime | None = None,
) -> int:
    """Delete system events older than retention_days (or before an explicit cutoff)."""
    cutoff = retention_cutoff(retention_days, cutoff)
    deleted = delete_older_than(db, SystemEvent.created_at, cutoff)
    logger.info(f"SystemEvent retention: deleted {deleted} events older than {cutoff.isoformat()}")
    return deleted
