import hmac
import json
import logging

from fastapi import APIRouter, BackgroundTasks, Depends, Request
from fastapi.responses import JSONResponse
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from marketbot.constants.event_types import (
    EVENT_DISPATCH_FAILURE,
    EVENT_TELEGRAM_SECRET_VERIFICATION_FAILURE,
    EVENT_TELEGRAM_UPDATE,
)
from marketbot.core.config import settings
from marketbot.db.deps import get_db
from marketbot.db.models import ProcessedUpdate
from marketbot.middleware.correlation_id import bind_correlation_id, get_correlation_id
from marketbot.services.bot import get_bot
from marketbot.services.messaging.events import InboundEvent, parse_update
from marketbot.services.metrics import record_duplicate_update, record_store_degraded
from marketbot.services.system_event_service import emit
from marketbot.utils.datetime_utils import iso_or_none

logger = logging.getLogger(__name__)

router = APIRouter()

SECRET_HEADER = "X-Telegram-Bot-Api-Secret-Token"


def _is_processed_update_unique_violation(exc: IntegrityError) -> bool:
    """
    True only for a unique-constraint violation on processed_updates.update_id.
    Other integrity errors are treated like an unavailable database.
    """
    orig = exc.orig
    if orig is None:
        return False
    # Postgres: SQLSTATE 23505 = unique_violation
    if getattr(orig, "pgcode", None) == "23505":
        return True
    return "unique constraint" in str(orig).lower()


def _secret_matches(request: Request) -> bool:
    if not settings.telegram_webhook_secret:
        return True
    provided = request.headers.get(SECRET_HEADER) or ""
    return hmac.compare_digest(provided, settings.telegram_webhook_secret)


def _record_update(db: Session, update_id: int, event: InboundEvent | None) -> dict | None:
    """
    Insert the processed_updates row before any processing.

    Returns the duplicate acknowledgement when the id was seen before. When the
    database is unavailable the update is let through (at-least-once) rather
    than dropped.
    """
    try:
        db.add(
            ProcessedUpdate(
                update_id=update_id,
                event_type=EVENT_TELEGRAM_UPDATE,
                user_id=event.sender.id if event else None,
            )
        )
        db.commit()
        return None
    except SQLAlchemyError as e:
        db.rollback()
        if isinstance(e, IntegrityError) and _is_processed_update_unique_violation(e):
            record_duplicate_update(update_id)
            return _duplicate_response(db, update_id)
        logger.error(f"Could not record update {update_id}, processing without idempotency: {e}")
        record_store_degraded("processed_updates")
        return None


def _duplicate_response(db: Session, update_id: int) -> dict:
    try:
        existing = db.execute(
            select(ProcessedUpdate).where(ProcessedUpdate.update_id == update_id)
        ).scalar_one_or_none()
    except SQLAlchemyError as e:
        db.rollback()
        logger.warning(f"Could not load processed update {update_id}: {e}")
        existing = None
    return {
        "ok": True,
        "type": "duplicate",
        "update_id": update_id,
        "processed_at": iso_or_none(existing.processed_at) if existing else None,
    }


async def dispatch_update_job(event: InboundEvent, correlation_id: str | None = None) -> None:
    """
    Background job: hand one parsed update to the dispatcher.

    Runs after the acknowledgement has been sent; failures end here.
    """
    with bind_correlation_id(correlation_id):
        try:
            await get_bot().dispatcher.dispatch(event)
        except Exception as e:
            logger.error(f"Dispatch job failed for update {event.update_id}: {e}", exc_info=True)
            emit("ERROR", EVENT_DISPATCH_FAILURE, user_id=event.sender.id, payload={"update_id": event.update_id}, exc=e)


@router.post("/telegram")
async def telegram_inbound(
    request: Request,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
):
    correlation_id = get_correlation_id(request)

    if not _secret_matches(request):
        logger.warning(f"Telegram webhook secret mismatch correlation_id={correlation_id}")
        emit("WARN", EVENT_TELEGRAM_SECRET_VERIFICATION_FAILURE, payload={"client": request.client.host if request.client else None})
        return JSONResponse(status_code=403, content={"ok": False, "error": "Invalid secret token"})

    raw_body = await request.body()
    try:
        payload = json.loads(raw_body.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        # Acknowledge anyway; Telegram would otherwise redeliver the same bad body
        logger.warning(f"Invalid JSON payload in Telegram webhook: {e}")
        return {"ok": True, "type": "invalid-json"}

    if not isinstance(payload, dict) or not isinstance(payload.get("update_id"), int):
        return {"ok": True, "type": "ignored"}
    update_id = payload["update_id"]

    try:
        event = parse_update(payload)
    except (KeyError, TypeError, ValueError) as e:
        logger.warning(f"Malformed Telegram update {update_id}: {e}")
        return {"ok": True, "type": "malformed-update", "update_id": update_id}

    duplicate = _record_update(db, update_id, event)
    if duplicate is not None:
        return duplicate

    if event is None:
        return {"ok": True, "type": "unsupported", "update_id": update_id}

    logger.info(
        f"telegram.update_accepted update_id={update_id} kind={type(event).__name__} correlation_id={correlation_id}",
        extra={"correlation_id": correlation_id, "event_type": EVENT_TELEGRAM_UPDATE},
    )
    background_tasks.add_task(dispatch_update_job, event, correlation_id)
    return {"ok": True, "type": "accepted", "update_id": update_id}
