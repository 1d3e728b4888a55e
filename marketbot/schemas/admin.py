"""
Admin API response schemas.
"""

from datetime import datetime
from typing import Any

from pydantic import BaseModel


class ProductResponse(BaseModel):
    id: int
    seller_id: int
    title: str
    price: int
    category: str
    description: str
    images: list[str]
    status: str
    moderator_id: int | None = None
    decided_at: datetime | None = None
    created_at: datetime


class ChatSessionResponse(BaseModel):
    id: str
    product_id: int
    title: str | None = None
    buyer_id: int
    seller_id: int
    messages: int
    started_at: datetime
    duration: str


class StatsResponse(BaseModel):
    users_total: int
    users_joined_30d: int
    users_banned: int
    products: dict[str, int]
    active_chats: int
    admins: int
    store_degraded: bool
    metrics: dict[str, Any]


class SystemEventResponse(BaseModel):
    id: int
    created_at: datetime | None = None
    level: str
    event_type: str
    user_id: int | None = None
    product_id: int | None = None
    payload: dict[str, Any] | None = None
