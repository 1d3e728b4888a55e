"""
Scheduled retention job.

Deletes system events older than --retention-days (default 90) and, when
--updates-retention-days is given, processed Telegram update ids older than
that. Telegram stops redelivering an update after 24 hours, so old
idempotency rows only cost space.

Run via: python -m marketbot.jobs.cleanup_system_events [--retention-days 90]
"""

import argparse
import logging
import sys

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from marketbot.db import session as db_session
from marketbot.db.models import ProcessedUpdate
from marketbot.services.system_event_service import cleanup_old_events, delete_older_than, retention_cutoff

logger = logging.getLogger(__name__)


def cleanup_processed_updates(db: Session, *, retention_days: int) -> int:
    deleted = delete_older_than(db, ProcessedUpdate.processed_at, retention_cutoff(retention_days))
    logger.info(f"Deleted {deleted} processed updates older than {retention_days} days")
    return deleted


def run(retention_days: int, updates_retention_days: int | None = None) -> dict:
    db = db_session.SessionLocal()
    try:
        summary = {"events": cleanup_old_events(db, retention_days=retention_days)}
        if updates_retention_days is not None:
            summary["processed_updates"] = cleanup_processed_updates(db, retention_days=updates_retention_days)
        return summary
    finally:
        db.close()


def main(argv: list[str] | None = None) -> None:
    """CLI entrypoint for retention cleanup."""
    parser = argparse.ArgumentParser(description="Clean up old system events (retention)")
    parser.add_argument(
        "--retention-days",
        type=int,
        default=90,
        help="Delete events older than this many days (default: 90)",
    )
    parser.add_argument(
        "--updates-retention-days",
        type=int,
        default=None,
        help="Also delete processed update ids older than this many days",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Enable verbose logging",
    )
    args = parser.parse_args(argv)

    if args.retention_days < 1 or (args.updates_retention_days is not None and args.updates_retention_days < 1):
        parser.error("retention must be at least 1 day")

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    try:
        summary = run(args.retention_days, args.updates_retention_days)
        logger.info(f"Retention cleanup completed: {summary}")
    except SQLAlchemyError as e:
        logger.error(f"Retention cleanup failed: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
