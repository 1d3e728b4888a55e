"""
Document-style access to the relational tables.

Each collection maps onto one ORM model; documents are plain dicts keyed by
column name. Every call opens its own short-lived session so callers never
share transaction state across awaits.
"""

import logging
from collections.abc import Callable
from typing import Any

from sqlalchemy import inspect as sa_inspect
from sqlalchemy import func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from marketbot.db.helpers import open_session
from marketbot.db.models import (
    BotSetting,
    BotUser,
    BroadcastJobRecord,
    ChatSessionRecord,
    ConversationStateRecord,
    Product,
)

logger = logging.getLogger(__name__)

COLLECTION_USERS = "users"
COLLECTION_PRODUCTS = "products"
COLLECTION_CHAT_SESSIONS = "chat_sessions"
COLLECTION_CONVERSATION_STATES = "conversation_states"
COLLECTION_BROADCAST_JOBS = "broadcast_jobs"
COLLECTION_BOT_SETTINGS = "bot_settings"

COLLECTIONS = {
    COLLECTION_USERS: BotUser,
    COLLECTION_PRODUCTS: Product,
    COLLECTION_CHAT_SESSIONS: ChatSessionRecord,
    COLLECTION_CONVERSATION_STATES: ConversationStateRecord,
    COLLECTION_BROADCAST_JOBS: BroadcastJobRecord,
    COLLECTION_BOT_SETTINGS: BotSetting,
}


def _model_for(collection: str):
    try:
        return COLLECTIONS[collection]
    except KeyError:
        raise ValueError(f"Unknown collection: {collection}") from None


def _primary_key(model) -> str:
    return sa_inspect(model).primary_key[0].name


def _columns(model) -> set[str]:
    return {attr.key for attr in sa_inspect(model).column_attrs}


def _to_document(row) -> dict:
    return {key: getattr(row, key) for key in _columns(type(row))}


class PersistentStore:
    """get / set_merge / query / max_id / delete / update_if over the ORM tables."""

    def __init__(self, session_factory: Callable[[], Session] | None = None):
        self._session_factory = session_factory or open_session

    def _run(self, operation: str, collection: str, fn: Callable[[Session], Any]) -> Any:
        db = self._session_factory()
        try:
            return fn(db)
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"PersistentStore.{operation} failed on {collection}: {e}")
            raise
        finally:
            db.close()

    def get(self, collection: str, doc_id: Any) -> dict | None:
        model = _model_for(collection)

        def _get(db: Session) -> dict | None:
            row = db.get(model, doc_id)
            return _to_document(row) if row is not None else None

        return self._run("get", collection, _get)

    def set_merge(self, collection: str, doc_id: Any, data: dict) -> None:
        """Create the document or merge the given fields into it."""
        model = _model_for(collection)
        pk = _primary_key(model)
        columns = _columns(model)
        values = {k: v for k, v in data.items() if k in columns and k != pk}

        def _set(db: Session) -> None:
            row = db.get(model, doc_id)
            if row is None:
                row = model(**{pk: doc_id}, **values)
                db.add(row)
            else:
                for key, value in values.items():
                    setattr(row, key, value)
            db.commit()

        self._run("set_merge", collection, _set)

    def query(
        self,
        collection: str,
        where: dict | None = None,
        order_by: str | None = None,
        descending: bool = False,
        limit: int | None = None,
    ) -> list[dict]:
        """Equality filter on fields, optionally ordered by one field."""
        model = _model_for(collection)

        def _query(db: Session) -> list[dict]:
            stmt = select(model)
            for key, value in (where or {}).items():
                stmt = stmt.where(getattr(model, key) == value)
            if order_by:
                column = getattr(model, order_by)
                stmt = stmt.order_by(column.desc() if descending else column.asc())
            if limit is not None:
                stmt = stmt.limit(limit)
            return [_to_document(row) for row in db.execute(stmt).scalars().all()]

        return self._run("query", collection, _query)

    def max_id(self, collection: str) -> int:
        """Highest primary key in the collection, 0 when empty."""
        model = _model_for(collection)
        pk = getattr(model, _primary_key(model))

        def _max(db: Session) -> int:
            return db.execute(select(func.max(pk))).scalar() or 0

        return self._run("max_id", collection, _max)

    def delete(self, collection: str, doc_id: Any) -> bool:
        model = _model_for(collection)

        def _delete(db: Session) -> bool:
            row = db.get(model, doc_id)
            if row is None:
                return False
            db.delete(row)
            db.commit()
            return True

        return self._run("delete", collection, _delete)

    def update_if(
        self,
        collection: str,
        doc_id: Any,
        field: str,
        expected: Any,
        updates: dict,
    ) -> bool:
        """
        Conditional update: apply updates only if field == expected.

        Single UPDATE ... WHERE pk = :id AND field = :expected; the rowcount
        decides whether this caller won.
        """
        model = _model_for(collection)
        pk = _primary_key(model)

        def _update(db: Session) -> bool:
            stmt = (
                update(model)
                .where(getattr(model, pk) == doc_id)
                .where(getattr(model, field) == expected)
                .values(**updates)
            )
            result = db.execute(stmt)
            db.commit()
            return getattr(result, "rowcount", 0) == 1

        return self._run("update_if", collection, _update)
