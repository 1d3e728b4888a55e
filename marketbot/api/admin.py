import logging

from fastapi import APIRouter, Depends, HTTPException, Security
from sqlalchemy import desc, select
from sqlalchemy.orm import Session

from marketbot.api.auth import get_admin_auth
from marketbot.constants.statuses import PRODUCT_STATUSES
from marketbot.db.deps import get_db
from marketbot.db.models import SystemEvent
from marketbot.schemas.admin import ChatSessionResponse, ProductResponse, StatsResponse, SystemEventResponse
from marketbot.services.bot import get_bot
from marketbot.services.metrics import get_metrics
from marketbot.services.system_event_service import cleanup_old_events

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/stats", response_model=StatsResponse)
def get_stats(_auth: bool = Security(get_admin_auth)):
    """Same figures as the in-bot stats panel, plus in-process counters."""
    bot = get_bot()
    return {**bot.navigator.stats(), "metrics": get_metrics()}


@router.get("/metrics")
def get_metrics_snapshot(_auth: bool = Security(get_admin_auth)):
    """Duplicate updates, lost compare-and-set races, transport failures, store degradation."""
    return {"metrics": get_metrics()}


@router.get("/products", response_model=list[ProductResponse])
def list_products(
    status: str | None = None,
    seller_id: int | None = None,
    limit: int = 100,
    _auth: bool = Security(get_admin_auth),
):
    """
    List products, newest first.
    Query params: status (pending, approved, rejected), seller_id, limit (max 500).
    """
    if status is not None and status.lower() not in PRODUCT_STATUSES:
        raise HTTPException(status_code=400, detail=f"Unknown status '{status}'. Use one of {list(PRODUCT_STATUSES)}.")
    products = get_bot().store.list_products(
        status=status.lower() if status else None,
        seller_id=seller_id,
        limit=max(0, min(limit, 500)),
    )
    return [p.to_document() for p in products]


@router.get("/chats", response_model=list[ChatSessionResponse])
def list_active_chats(_auth: bool = Security(get_admin_auth)):
    relay = get_bot().relay
    return [relay.summarize(session) for session in relay.active_sessions()]


@router.get("/events", response_model=list[SystemEventResponse])
def get_events(
    limit: int = 100,
    level: str | None = None,
    event_type: str | None = None,
    user_id: int | None = None,
    product_id: int | None = None,
    db: Session = Depends(get_db),
    _auth: bool = Security(get_admin_auth),
):
    """
    Get system events, newest first.

    Args:
        limit: Maximum number of events to return (default 100, max 1000)
        level: Optional INFO / WARN / ERROR filter
        event_type: Optional exact event type filter
        user_id: Optional Telegram user id filter
        product_id: Optional product id filter
    """
    stmt = select(SystemEvent).order_by(desc(SystemEvent.created_at), desc(SystemEvent.id))
    if level:
        stmt = stmt.where(SystemEvent.level == level.upper())
    if event_type:
        stmt = stmt.where(SystemEvent.event_type == event_type)
    if user_id is not None:
        stmt = stmt.where(SystemEvent.user_id == user_id)
    if product_id is not None:
        stmt = stmt.where(SystemEvent.product_id == product_id)
    events = db.execute(stmt.limit(max(0, min(limit, 1000)))).scalars().all()
    return [
        {
            "id": event.id,
            "created_at": event.created_at,
            "level": event.level,
            "event_type": event.event_type,
            "user_id": event.user_id,
            "product_id": event.product_id,
            "payload": event.payload,
        }
        for event in events
    ]


@router.post("/events/retention-cleanup")
def cleanup_system_events_retention(
    retention_days: int = 90,
    db: Session = Depends(get_db),
    _auth: bool = Security(get_admin_auth),
):
    """
    Delete SystemEvents older than retention_days (default 90).
    """
    if retention_days < 1:
        raise HTTPException(status_code=400, detail="retention_days must be at least 1")
    deleted = cleanup_old_events(db, retention_days=retention_days)
    return {"deleted": deleted, "retention_days": retention_days}
