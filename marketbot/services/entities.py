"""
In-process domain entities.

These are the objects the conversation engine works with; the persistent store
only ever sees their document form (plain dicts keyed like the table columns).
"""

from dataclasses import dataclass, field
from datetime import datetime

from marketbot.constants.statuses import (
    BROADCAST_COMPOSING,
    ROLE_BUYER,
    ROLE_SELLER,
    STATUS_PENDING,
)
from marketbot.utils.datetime_utils import dt_replace_utc, parse_iso, utcnow


@dataclass
class User:
    id: int
    username: str | None = None
    first_name: str | None = None
    last_name: str | None = None
    is_banned: bool = False
    joined_at: datetime = field(default_factory=utcnow)

    @property
    def display_name(self) -> str:
        name = " ".join(p for p in (self.first_name, self.last_name) if p)
        if name:
            return name
        if self.username:
            return f"@{self.username}"
        return str(self.id)

    def to_document(self) -> dict:
        return {
            "id": self.id,
            "username": self.username,
            "first_name": self.first_name,
            "last_name": self.last_name,
            "is_banned": self.is_banned,
            "joined_at": self.joined_at,
        }

    @classmethod
    def from_document(cls, doc: dict) -> "User":
        return cls(
            id=int(doc["id"]),
            username=doc.get("username"),
            first_name=doc.get("first_name"),
            last_name=doc.get("last_name"),
            is_banned=bool(doc.get("is_banned")),
            joined_at=dt_replace_utc(doc.get("joined_at")) or utcnow(),
        )


@dataclass
class Product:
    id: int
    seller_id: int
    title: str
    price: int
    category: str
    description: str
    images: list[str] = field(default_factory=list)
    status: str = STATUS_PENDING
    moderator_id: int | None = None
    decided_at: datetime | None = None
    created_at: datetime = field(default_factory=utcnow)

    @property
    def cover_image(self) -> str | None:
        return self.images[0] if self.images else None

    def to_document(self) -> dict:
        return {
            "id": self.id,
            "seller_id": self.seller_id,
            "title": self.title,
            "price": self.price,
            "category": self.category,
            "description": self.description,
            "images": list(self.images),
            "status": self.status,
            "moderator_id": self.moderator_id,
            "decided_at": self.decided_at,
            "created_at": self.created_at,
        }

    @classmethod
    def from_document(cls, doc: dict) -> "Product":
        return cls(
            id=int(doc["id"]),
            seller_id=int(doc["seller_id"]),
            title=doc["title"],
            price=int(doc["price"]),
            category=doc["category"],
            description=doc.get("description") or "",
            images=list(doc.get("images") or []),
            status=doc.get("status") or STATUS_PENDING,
            moderator_id=doc.get("moderator_id"),
            decided_at=dt_replace_utc(doc.get("decided_at")),
            created_at=dt_replace_utc(doc.get("created_at")) or utcnow(),
        )


@dataclass
class RelayedMessage:
    role: str  # buyer | seller
    text: str
    sent_at: datetime = field(default_factory=utcnow)

    def to_document(self) -> dict:
        return {"role": self.role, "text": self.text, "sent_at": self.sent_at.isoformat()}

    @classmethod
    def from_document(cls, doc: dict) -> "RelayedMessage":
        return cls(role=doc["role"], text=doc["text"], sent_at=parse_iso(doc.get("sent_at")) or utcnow())


@dataclass(eq=False)
class ChatSession:
    """
    A paired buyer/seller relay channel.

    Identity matters: the relay registers the same instance under both
    participant ids, so equality is object identity.
    """

    id: str
    buyer_id: int
    seller_id: int
    product_id: int
    started_at: datetime = field(default_factory=utcnow)
    messages: list[RelayedMessage] = field(default_factory=list)
    ended_at: datetime | None = None

    @property
    def is_active(self) -> bool:
        return self.ended_at is None

    @property
    def participants(self) -> tuple[int, int]:
        return (self.buyer_id, self.seller_id)

    def role_of(self, user_id: int) -> str:
        if user_id == self.buyer_id:
            return ROLE_BUYER
        if user_id == self.seller_id:
            return ROLE_SELLER
        raise ValueError(f"User {user_id} is not a participant of chat {self.id}")

    def partner_of(self, user_id: int) -> int:
        return self.seller_id if self.role_of(user_id) == ROLE_BUYER else self.buyer_id

    def to_document(self) -> dict:
        return {
            "id": self.id,
            "buyer_id": self.buyer_id,
            "seller_id": self.seller_id,
            "product_id": self.product_id,
            "started_at": self.started_at,
            "ended_at": self.ended_at,
            "messages": [m.to_document() for m in self.messages],
            "is_active": self.is_active,
        }

    @classmethod
    def from_document(cls, doc: dict) -> "ChatSession":
        return cls(
            id=doc["id"],
            buyer_id=int(doc["buyer_id"]),
            seller_id=int(doc["seller_id"]),
            product_id=int(doc["product_id"]),
            started_at=dt_replace_utc(doc.get("started_at")) or utcnow(),
            messages=[RelayedMessage.from_document(m) for m in doc.get("messages") or []],
            ended_at=dt_replace_utc(doc.get("ended_at")),
        )


@dataclass
class ConversationState:
    user_id: int
    phase: str
    payload: dict = field(default_factory=dict)

    def to_document(self) -> dict:
        return {"user_id": self.user_id, "phase": self.phase, "payload": dict(self.payload)}

    @classmethod
    def from_document(cls, doc: dict) -> "ConversationState":
        return cls(user_id=int(doc["user_id"]), phase=doc["phase"], payload=dict(doc.get("payload") or {}))


@dataclass
class BroadcastJob:
    token: str
    requester_id: int
    scope: str
    text: str
    recipients: list[int] = field(default_factory=list)
    sent: int = 0
    failed: int = 0
    status: str = BROADCAST_COMPOSING
    stop_requested: bool = False
    created_at: datetime = field(default_factory=utcnow)
    finished_at: datetime | None = None

    @property
    def success_rate(self) -> float:
        """Percentage of recipients reached, one decimal."""
        if not self.recipients:
            return 0.0
        return round(self.sent / len(self.recipients) * 100, 1)

    def to_document(self) -> dict:
        return {
            "id": self.token,
            "requester_id": self.requester_id,
            "scope": self.scope,
            "text": self.text,
            "recipients": list(self.recipients),
            "sent": self.sent,
            "failed": self.failed,
            "status": self.status,
            "created_at": self.created_at,
            "finished_at": self.finished_at,
        }
