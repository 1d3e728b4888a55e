"""
Buyer/seller chat relay.

Two indexes are kept in step: participant id -> session (both participants
point at the same ChatSession object) and product id -> session. A user takes
part in at most one active session at a time; pairing and teardown hold both
participants' key locks, and index updates happen without an await in between
so they are all-or-nothing.
"""

import logging
import uuid

from marketbot.constants.event_types import EVENT_CHAT_ENDED, EVENT_CHAT_OPENED
from marketbot.constants.statuses import ROLE_BUYER, STATUS_APPROVED
from marketbot.core.errors import NotFoundError, ValidationError
from marketbot.services.entities import ChatSession, RelayedMessage
from marketbot.services.messaging.composer import MessageComposer
from marketbot.services.messaging.delivery import deliver, deliver_many, strip_buttons
from marketbot.services.messaging.events import MessageRef
from marketbot.services.messaging.gateway import TelegramGateway
from marketbot.services.messaging.keyboards import end_chat_keyboard
from marketbot.services.store.entity_store import EntityStore
from marketbot.services.store.persistence import COLLECTION_CHAT_SESSIONS
from marketbot.services.system_event_service import emit
from marketbot.utils.datetime_utils import format_duration, utcnow

logger = logging.getLogger(__name__)


class ChatRelay:
    def __init__(
        self,
        store: EntityStore,
        gateway: TelegramGateway,
        composer: MessageComposer,
        admin_ids: list[int],
    ):
        self.store = store
        self.gateway = gateway
        self.composer = composer
        self.admin_ids = list(admin_ids)
        self._by_participant: dict[int, ChatSession] = {}
        self._by_product: dict[int, ChatSession] = {}

    @staticmethod
    def _key(user_id: int) -> tuple:
        return ("chat", user_id)

    def _index(self, session: ChatSession) -> None:
        self._by_participant[session.buyer_id] = session
        self._by_participant[session.seller_id] = session
        self._by_product[session.product_id] = session

    def _unindex(self, session: ChatSession) -> None:
        for user_id in session.participants:
            if self._by_participant.get(user_id) is session:
                del self._by_participant[user_id]
        if self._by_product.get(session.product_id) is session:
            del self._by_product[session.product_id]

    def hydrate(self) -> None:
        for doc in self.store.read_all(COLLECTION_CHAT_SESSIONS, where={"is_active": True}):
            session = ChatSession.from_document(doc)
            if session.buyer_id in self._by_participant or session.seller_id in self._by_participant:
                logger.warning(f"Skipping overlapping chat session {session.id} during hydrate")
                continue
            self._index(session)
        logger.info(f"ChatRelay hydrated: {len(self._by_product)} active chats")

    def flush(self) -> None:
        for session in self.active_sessions():
            self._mirror(session)

    def _mirror(self, session: ChatSession) -> None:
        self.store.write(COLLECTION_CHAT_SESSIONS, session.id, session.to_document())

    def session_for(self, user_id: int) -> ChatSession | None:
        return self._by_participant.get(user_id)

    def session_for_product(self, product_id: int) -> ChatSession | None:
        return self._by_product.get(product_id)

    def active_sessions(self) -> list[ChatSession]:
        return sorted(self._by_product.values(), key=lambda s: s.started_at)

    async def open_chat(self, buyer_id: int, product_id: int) -> ChatSession:
        product = self.store.require_product(product_id)
        if product.status != STATUS_APPROVED:
            raise ValidationError(
                f"Product {product_id} is {product.status}",
                user_message="This product is not available.",
            )
        seller_id = product.seller_id
        if seller_id == buyer_id:
            raise ValidationError(
                f"User {buyer_id} tried to contact themselves",
                user_message="You cannot contact yourself about your own product.",
            )

        async with self.store.locks.hold(self._key(buyer_id), self._key(seller_id)):
            if buyer_id in self._by_participant:
                raise ValidationError(
                    f"Buyer {buyer_id} already in a chat",
                    user_message="You already have an active chat. End it before starting another.",
                )
            if seller_id in self._by_participant:
                raise ValidationError(
                    f"Seller {seller_id} already in a chat",
                    user_message="The seller is currently chatting with someone else. Please try again later.",
                )
            session = ChatSession(id=uuid.uuid4().hex, buyer_id=buyer_id, seller_id=seller_id, product_id=product_id)
            self._index(session)
            self._mirror(session)

        logger.info(f"Chat {session.id} opened: buyer {buyer_id} <-> seller {seller_id} on product {product_id}")
        emit("INFO", EVENT_CHAT_OPENED, user_id=buyer_id, product_id=product_id, payload={"session_id": session.id})

        buyer = self.store.get_user(buyer_id)
        seller = self.store.get_user(seller_id)
        await deliver(
            self.gateway,
            buyer_id,
            self.composer.render("chat_opened_buyer", user_id=buyer_id, title=product.title),
            keyboard=end_chat_keyboard(),
        )
        await deliver(
            self.gateway,
            seller_id,
            self.composer.render("chat_opened_seller", user_id=seller_id, title=product.title),
            keyboard=end_chat_keyboard(),
        )
        await deliver_many(
            self.gateway,
            self.admin_ids,
            self.composer.render(
                "chat_monitor",
                title=product.title,
                product_id=product_id,
                buyer=buyer.display_name if buyer else buyer_id,
                buyer_id=buyer_id,
                seller=seller.display_name if seller else seller_id,
                seller_id=seller_id,
            ),
        )
        return session

    async def relay(self, sender_id: int, text: str) -> bool:
        """Forward text to the sender's chat partner. False if the sender is not in a chat."""
        session = self._by_participant.get(sender_id)
        if session is None:
            return False

        role = session.role_of(sender_id)
        async with self.store.locks.hold(("chat-session", session.id)):
            if self._by_participant.get(sender_id) is not session:
                return False
            session.messages.append(RelayedMessage(role=role, text=text))
            self.store.write(
                COLLECTION_CHAT_SESSIONS, session.id, {"messages": [m.to_document() for m in session.messages]}
            )

        product = self.store.get_product(session.product_id)
        title = product.title if product else f"#{session.product_id}"
        label = "Buyer" if role == ROLE_BUYER else "Seller"
        await self.gateway.send(
            session.partner_of(sender_id),
            self.composer.render("relayed_message", role=label, text=text, title=title),
            keyboard=end_chat_keyboard(),
        )
        await deliver(self.gateway, sender_id, self.composer.render("relay_ack", user_id=sender_id))
        return True

    async def end_chat(self, requester_id: int, origin: MessageRef | None = None) -> ChatSession:
        session = self._by_participant.get(requester_id)
        if session is None:
            raise NotFoundError(f"No active chat for {requester_id}", user_message="You have no active chat.")

        async with self.store.locks.hold(*(self._key(u) for u in session.participants)):
            if self._by_participant.get(requester_id) is not session:
                raise NotFoundError(f"Chat for {requester_id} already ended", user_message="This chat has already ended.")
            self._unindex(session)
            session.ended_at = utcnow()
            self.store.write(
                COLLECTION_CHAT_SESSIONS, session.id, {"is_active": False, "ended_at": session.ended_at}
            )

        logger.info(f"Chat {session.id} ended by {requester_id} after {len(session.messages)} messages")
        emit(
            "INFO",
            EVENT_CHAT_ENDED,
            user_id=requester_id,
            product_id=session.product_id,
            payload={"session_id": session.id, "messages": len(session.messages)},
        )

        await strip_buttons(self.gateway, origin)
        partner_id = session.partner_of(requester_id)
        await deliver(self.gateway, requester_id, self.composer.render("chat_ended_self", user_id=requester_id))
        await deliver(self.gateway, partner_id, self.composer.render("chat_ended_partner", user_id=partner_id))
        return session

    def summarize(self, session: ChatSession) -> dict:
        product = self.store.get_product(session.product_id)
        return {
            "id": session.id,
            "product_id": session.product_id,
            "title": product.title if product else None,
            "buyer_id": session.buyer_id,
            "seller_id": session.seller_id,
            "messages": len(session.messages),
            "started_at": session.started_at.isoformat(),
            "duration": format_duration(session.started_at),
        }
