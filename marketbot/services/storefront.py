"""
User-facing menu: /start and deep links, browsing, my products, help,
contact-admin and product reports.
"""

import logging
import uuid

from marketbot.constants.catalog import CONTACT_TOPICS
from marketbot.constants.event_types import EVENT_PRODUCT_REPORTED
from marketbot.constants.statuses import PHASE_CONTACT_ADMIN_MESSAGE, PHASE_REPORT_REASON, STATUS_APPROVED
from marketbot.core.config import settings
from marketbot.core.errors import NotFoundError, ValidationError
from marketbot.services.chat_relay import ChatRelay
from marketbot.services.conversation_store import ConversationStore
from marketbot.services.entities import User
from marketbot.services.messaging.composer import MessageComposer
from marketbot.services.messaging.delivery import deliver_many
from marketbot.services.messaging.gateway import TelegramGateway
from marketbot.services.messaging.keyboards import (
    admin_inbox_keyboard,
    contact_admin_keyboard,
    contact_seller_keyboard,
    main_menu_keyboard,
)
from marketbot.services.product_cards import product_card
from marketbot.services.runtime_settings import RuntimeSettings
from marketbot.services.store.entity_store import EntityStore
from marketbot.services.system_event_service import emit
from marketbot.services.wizard import ListingWizard

logger = logging.getLogger(__name__)

DEEP_LINK_SELL = "sell"
DEEP_LINK_PRODUCT = "product_"
DEEP_LINK_CONTACT = "contact_"


def _reference_id() -> str:
    return uuid.uuid4().hex[:8].upper()


def _parse_id(raw: str) -> int:
    try:
        return int(raw)
    except (TypeError, ValueError):
        raise NotFoundError(f"Bad id {raw!r}", user_message="Product not found.") from None


class Storefront:
    def __init__(
        self,
        store: EntityStore,
        conversations: ConversationStore,
        gateway: TelegramGateway,
        composer: MessageComposer,
        runtime: RuntimeSettings,
        wizard: ListingWizard,
        relay: ChatRelay,
        admin_ids: list[int],
        browse_limit: int | None = None,
    ):
        self.store = store
        self.conversations = conversations
        self.gateway = gateway
        self.composer = composer
        self.runtime = runtime
        self.wizard = wizard
        self.relay = relay
        self.admin_ids = list(admin_ids)
        self.browse_limit = browse_limit or settings.browse_limit

    def is_admin(self, user_id: int) -> bool:
        return user_id in self.admin_ids

    async def start(self, user: User, chat_id: int, payload: str | None = None) -> None:
        payload = (payload or "").strip()
        if payload == DEEP_LINK_SELL:
            await self.wizard.start(user.id, chat_id)
            return
        if payload.startswith(DEEP_LINK_PRODUCT):
            await self.show_product(chat_id, _parse_id(payload[len(DEEP_LINK_PRODUCT):]))
            return
        if payload.startswith(DEEP_LINK_CONTACT):
            await self.relay.open_chat(user.id, _parse_id(payload[len(DEEP_LINK_CONTACT):]))
            return
        await self.main_menu(user, chat_id)

    async def main_menu(self, user: User, chat_id: int) -> None:
        await self.gateway.send(
            chat_id,
            self.runtime.render_welcome(user.first_name or user.display_name),
            keyboard=main_menu_keyboard(self.is_admin(user.id)),
        )

    async def show_product(self, chat_id: int, product_id: int) -> None:
        product = self.store.require_product(product_id)
        if product.status != STATUS_APPROVED:
            raise NotFoundError(f"Product {product_id} is {product.status}", user_message="This product is not available.")
        await self.gateway.send(
            chat_id,
            product_card(self.composer, product, self.store.get_user(product.seller_id)),
            keyboard=contact_seller_keyboard(product.id),
            photo=product.cover_image,
        )

    async def browse(self, user_id: int, chat_id: int) -> int:
        """Latest approved products, newest first."""
        products = self.store.list_products(status=STATUS_APPROVED, limit=self.browse_limit)
        if not products:
            await self.gateway.send(chat_id, self.composer.render("browse_empty", user_id=user_id))
            return 0
        await self.gateway.send(chat_id, self.composer.render("browse_header", count=len(products)))
        for product in products:
            keyboard = None if product.seller_id == user_id else contact_seller_keyboard(product.id)
            await self.gateway.send(
                chat_id,
                product_card(self.composer, product, self.store.get_user(product.seller_id)),
                keyboard=keyboard,
                photo=product.cover_image,
            )
        return len(products)

    async def my_products(self, user_id: int, chat_id: int) -> int:
        products = self.store.list_products(seller_id=user_id)
        if not products:
            await self.gateway.send(chat_id, self.composer.render("my_products_empty", user_id=user_id))
            return 0
        rows = [
            self.composer.render("my_products_row", id=p.id, title=p.title, price=f"{p.price:,}",
                                 currency=settings.currency, status=p.status)
            for p in products
        ]
        await self.gateway.send(chat_id, self.composer.render("my_products", rows="\n".join(rows)))
        return len(products)

    async def help(self, user_id: int, chat_id: int) -> None:
        text = self.composer.render("help", user_id=user_id)
        if self.is_admin(user_id):
            text += "\n\n" + self.composer.render("help_admin")
        await self.gateway.send(chat_id, text)

    # ---- contact admin / reports ----

    async def contact_admin_menu(self, chat_id: int) -> None:
        await self.gateway.send(chat_id, self.composer.render("contact_admin_menu"), keyboard=contact_admin_keyboard())

    async def choose_topic(self, user_id: int, chat_id: int, topic: str) -> None:
        if topic not in CONTACT_TOPICS:
            raise ValidationError(f"Unknown topic {topic!r}", user_message="Please choose a topic from the buttons.")
        await self.conversations.begin(user_id, PHASE_CONTACT_ADMIN_MESSAGE, {"topic": topic})
        await self.gateway.send(chat_id, self.composer.render("contact_admin_ask", topic=CONTACT_TOPICS[topic]))

    async def begin_report(self, user_id: int, chat_id: int, product_id: int) -> None:
        product = self.store.require_product(product_id)
        await self.conversations.begin(user_id, PHASE_REPORT_REASON, {"product_id": product.id})
        await self.gateway.send(chat_id, self.composer.render("report_ask", title=product.title))

    async def handle_text(self, user: User, chat_id: int, text: str) -> None:
        """Forward the user's message for an open contact/report prompt to every admin."""
        phase = self.conversations.phase_of(user.id)
        body = (text or "").strip()
        if not body:
            raise ValidationError("Empty message", user_message="Please type your message.")

        reference = _reference_id()
        if phase == PHASE_CONTACT_ADMIN_MESSAGE:
            state = await self.conversations.take(user.id, phase)
            topic = CONTACT_TOPICS.get(state.payload.get("topic"), "General")
            admin_text = self.composer.render(
                "admin_inbox", topic=topic, name=user.display_name, id=user.id, text=body, ref=reference
            )
        elif phase == PHASE_REPORT_REASON:
            state = await self.conversations.take(user.id, phase)
            product_id = int(state.payload["product_id"])
            product = self.store.get_product(product_id)
            admin_text = self.composer.render(
                "admin_report",
                product_id=product_id,
                title=product.title if product else "-",
                name=user.display_name,
                id=user.id,
                text=body,
                ref=reference,
            )
            emit("WARN", EVENT_PRODUCT_REPORTED, user_id=user.id, product_id=product_id, payload={"ref": reference})
        else:
            return

        await deliver_many(self.gateway, self.admin_ids, admin_text, keyboard=admin_inbox_keyboard(user.id))
        logger.info(f"User {user.id} message {reference} forwarded to {len(self.admin_ids)} admins")
        await self.gateway.send(chat_id, self.composer.render("contact_admin_sent", ref=reference))
