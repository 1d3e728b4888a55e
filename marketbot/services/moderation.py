"""
Moderation queue: pending -> approved / rejected.

A decision is a compare-and-set on product status (EntityStore.transition_product),
so when two administrators press buttons on the same listing exactly one
decision takes effect. Publication and the seller notice happen only on the
winning path; the losing caller gets an explicit "already decided" result.
"""

import asyncio
import logging
from dataclasses import dataclass

from marketbot.constants.event_types import (
    EVENT_CHANNEL_PUBLISH_FAILURE,
    EVENT_LISTING_SUBMITTED,
    EVENT_PRODUCT_APPROVED,
    EVENT_PRODUCT_REJECTED,
)
from marketbot.constants.statuses import STATUS_APPROVED, STATUS_PENDING, STATUS_REJECTED
from marketbot.core.config import settings
from marketbot.core.errors import PermissionDeniedError, TransportError
from marketbot.services.entities import Product
from marketbot.services.messaging.composer import MessageComposer
from marketbot.services.messaging.delivery import deliver, deliver_many, update_origin
from marketbot.services.messaging.events import MessageRef
from marketbot.services.messaging.gateway import TelegramGateway
from marketbot.services.messaging.keyboards import channel_post_keyboard, moderation_keyboard
from marketbot.services.product_cards import product_card
from marketbot.services.runtime_settings import RuntimeSettings
from marketbot.services.store.entity_store import EntityStore
from marketbot.services.system_event_service import emit

logger = logging.getLogger(__name__)


@dataclass
class ModerationDecision:
    product: Product
    applied: bool
    published: bool = False

    @property
    def already_decided(self) -> bool:
        return not self.applied


class ModerationQueue:
    def __init__(
        self,
        store: EntityStore,
        gateway: TelegramGateway,
        composer: MessageComposer,
        runtime: RuntimeSettings,
        admin_ids: list[int],
        browse_delay_seconds: float | None = None,
    ):
        self.store = store
        self.gateway = gateway
        self.composer = composer
        self.runtime = runtime
        self.admin_ids = list(admin_ids)
        self.browse_delay_seconds = (
            settings.moderation_browse_delay_seconds if browse_delay_seconds is None else browse_delay_seconds
        )

    def is_admin(self, user_id: int) -> bool:
        return user_id in self.admin_ids

    def require_admin(self, user_id: int) -> None:
        if not self.is_admin(user_id):
            logger.warning(f"Non-admin {user_id} attempted a moderation action")
            raise PermissionDeniedError(f"User {user_id} is not an administrator")

    def pending(self) -> list[Product]:
        """Pending products, oldest first (review order)."""
        return self.store.list_products(status=STATUS_PENDING, newest_first=False)

    def _card(self, product: Product, key: str = "product_card") -> str:
        return product_card(self.composer, product, self.store.get_user(product.seller_id), key=key)

    async def submit(self, product: Product) -> dict[int, int | None]:
        """Offer a new pending product to every administrator."""
        sent = await deliver_many(
            self.gateway,
            self.admin_ids,
            self._card(product, key="moderation_card"),
            keyboard=moderation_keyboard(product.id, product.seller_id),
            photo=product.cover_image,
        )
        emit(
            "INFO",
            EVENT_LISTING_SUBMITTED,
            user_id=product.seller_id,
            product_id=product.id,
            payload={"admins_notified": sum(1 for m in sent.values() if m is not None)},
        )
        return sent

    async def show_pending(self, admin_id: int, chat_id: int) -> int:
        """Send every pending product as a decision card. Returns how many were shown."""
        self.require_admin(admin_id)
        products = self.pending()
        if not products:
            await deliver(self.gateway, chat_id, self.composer.render("no_pending"))
            return 0
        await deliver(self.gateway, chat_id, self.composer.render("pending_header", count=len(products)))
        for index, product in enumerate(products):
            if index:
                await asyncio.sleep(self.browse_delay_seconds)
            await deliver(
                self.gateway,
                chat_id,
                self._card(product, key="moderation_card"),
                keyboard=moderation_keyboard(product.id, product.seller_id),
                photo=product.cover_image,
            )
        return len(products)

    async def approve(self, product_id: int, admin_id: int, origin: MessageRef | None = None) -> ModerationDecision:
        return await self._decide(product_id, admin_id, STATUS_APPROVED, origin)

    async def reject(self, product_id: int, admin_id: int, origin: MessageRef | None = None) -> ModerationDecision:
        return await self._decide(product_id, admin_id, STATUS_REJECTED, origin)

    async def _decide(
        self, product_id: int, admin_id: int, new_status: str, origin: MessageRef | None
    ) -> ModerationDecision:
        self.require_admin(admin_id)
        applied, product = await self.store.transition_product(
            product_id, STATUS_PENDING, new_status, moderator_id=admin_id
        )
        decision = ModerationDecision(product=product, applied=applied)

        if applied:
            logger.info(f"Product {product_id} {new_status} by admin {admin_id}")
            if new_status == STATUS_APPROVED:
                decision.published = await self._publish(product)
                await deliver(
                    self.gateway,
                    product.seller_id,
                    self.composer.render("seller_approved", user_id=product.seller_id, title=product.title,
                                         channel=self.runtime.channel_id),
                )
            else:
                await deliver(
                    self.gateway,
                    product.seller_id,
                    self.composer.render("seller_rejected", user_id=product.seller_id, title=product.title),
                )
            emit(
                "INFO",
                EVENT_PRODUCT_APPROVED if new_status == STATUS_APPROVED else EVENT_PRODUCT_REJECTED,
                user_id=admin_id,
                product_id=product_id,
                payload={"published": decision.published},
            )
        else:
            logger.info(f"Product {product_id} already {product.status}; admin {admin_id} decision ignored")

        # Best-effort: the status change above is already committed
        await update_origin(
            self.gateway,
            origin,
            self._card(product, key="moderation_card") + "\n\n" + self._verdict_line(product),
            keyboard=None,
        )
        return decision

    def _verdict_line(self, product: Product) -> str:
        moderator = self.store.get_user(product.moderator_id) if product.moderator_id else None
        return self.composer.render(
            "moderation_verdict",
            status=product.status.upper(),
            moderator=moderator.display_name if moderator else (product.moderator_id or "-"),
        )

    async def _publish(self, product: Product) -> bool:
        """Post an approved product to the public channel."""
        bot_username = self.runtime.bot_username
        keyboard = None
        if bot_username:
            keyboard = channel_post_keyboard(
                contact_url=self.gateway.deep_link(bot_username, f"contact_{product.id}"),
                sell_url=self.gateway.deep_link(bot_username, "sell"),
            )
        try:
            await self.gateway.send(
                self.runtime.channel_id,
                self._card(product, key="channel_post"),
                keyboard=keyboard,
                photo=product.cover_image,
            )
        except TransportError as e:
            logger.error(f"Publishing product {product.id} to {self.runtime.channel_id} failed: {e}")
            emit("ERROR", EVENT_CHANNEL_PUBLISH_FAILURE, product_id=product.id, exc=e)
            return False
        return True
