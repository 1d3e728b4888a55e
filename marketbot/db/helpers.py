"""Database session helpers."""

from sqlalchemy.orm import Session


def commit_and_refresh(db: Session, *instances) -> None:
    """
    Commit the transaction and refresh each given instance.
    """
    db.commit()
    for obj in instances:
        if obj is not None:
            db.refresh(obj)


def open_session() -> Session:
    """
    Open a new session from the current SessionLocal factory.

    Resolved at call time so tests that rebind the factory are honored.
    """
    from marketbot.db import session as db_session

    return db_session.SessionLocal()
