"""
Listing wizard: photo -> title -> price -> description -> category -> pending product.

Each step is a compare-and-set on the user's conversation phase. Input of the
wrong kind for the current step re-prompts without moving; only valid input
advances. Finalizing atomically takes the state, so a double-tapped category
button produces one product.
"""

import logging
import re
from dataclasses import dataclass

from marketbot.constants.catalog import CATEGORIES
from marketbot.constants.event_types import EVENT_LISTING_ABORTED
from marketbot.constants.statuses import (
    PHASE_AWAITING_CATEGORY,
    PHASE_AWAITING_DESCRIPTION,
    PHASE_AWAITING_IMAGE,
    PHASE_AWAITING_PRICE,
    PHASE_AWAITING_TITLE,
    WIZARD_PHASES,
)
from marketbot.core.config import settings
from marketbot.core.errors import MarketBotError, StoreUnavailableError, ValidationError
from marketbot.services.conversation_store import ConversationStore
from marketbot.services.entities import Product
from marketbot.services.integrations.media_store import MediaStore
from marketbot.services.messaging.composer import MessageComposer
from marketbot.services.messaging.delivery import strip_buttons
from marketbot.services.messaging.events import MessageRef
from marketbot.services.messaging.gateway import TelegramGateway
from marketbot.services.messaging.keyboards import category_keyboard
from marketbot.services.moderation import ModerationQueue
from marketbot.services.store.entity_store import EntityStore
from marketbot.services.system_event_service import emit

logger = logging.getLogger(__name__)

SKIP_TOKEN = "/skip"
MAX_TITLE_LENGTH = 120


@dataclass
class WizardStep:
    """One prompt of the listing wizard."""
    phase: str
    prompt_key: str
    next_phase: str | None


WIZARD_STEPS = {
    PHASE_AWAITING_IMAGE: WizardStep(PHASE_AWAITING_IMAGE, "ask_photo", PHASE_AWAITING_TITLE),
    PHASE_AWAITING_TITLE: WizardStep(PHASE_AWAITING_TITLE, "ask_title", PHASE_AWAITING_PRICE),
    PHASE_AWAITING_PRICE: WizardStep(PHASE_AWAITING_PRICE, "ask_price", PHASE_AWAITING_DESCRIPTION),
    PHASE_AWAITING_DESCRIPTION: WizardStep(PHASE_AWAITING_DESCRIPTION, "ask_description", PHASE_AWAITING_CATEGORY),
    PHASE_AWAITING_CATEGORY: WizardStep(PHASE_AWAITING_CATEGORY, "ask_category", None),
}


def parse_price(text: str) -> int:
    """
    Extract the digits from free text and read them as a positive integer.

    "1500 ETB" -> 1500, "1,200" -> 1200. Raises ValidationError otherwise.
    """
    digits = re.sub(r"\D", "", text or "")
    price = int(digits) if digits else 0
    if price <= 0:
        raise ValidationError(f"Invalid price input: {text!r}", user_message="Please enter a valid price (numbers only, greater than 0).")
    return price


def clean_title(text: str) -> str:
    title = (text or "").strip()
    if not title:
        raise ValidationError("Empty title", user_message="The title cannot be empty. Please send a title.")
    return title[:MAX_TITLE_LENGTH]


def resolve_description(text: str, placeholder: str) -> str:
    stripped = (text or "").strip()
    if not stripped or stripped.lower() == SKIP_TOKEN:
        return placeholder
    return stripped


def resolve_category(index: str | int) -> str:
    try:
        position = int(index)
    except (TypeError, ValueError):
        position = -1
    if not 0 <= position < len(CATEGORIES):
        raise ValidationError(f"Unknown category index {index!r}", user_message="Please choose a category from the buttons.")
    return CATEGORIES[position]


class ListingWizard:
    def __init__(
        self,
        conversations: ConversationStore,
        store: EntityStore,
        gateway: TelegramGateway,
        composer: MessageComposer,
        media: MediaStore,
        moderation: ModerationQueue,
        placeholder: str | None = None,
    ):
        self.conversations = conversations
        self.store = store
        self.gateway = gateway
        self.composer = composer
        self.media = media
        self.moderation = moderation
        self.placeholder = placeholder or settings.description_placeholder

    def is_active(self, user_id: int) -> bool:
        return self.conversations.phase_of(user_id) in WIZARD_PHASES

    async def _prompt(self, chat_id: int, phase: str, user_id: int | None = None) -> None:
        step = WIZARD_STEPS[phase]
        keyboard = category_keyboard() if phase == PHASE_AWAITING_CATEGORY else None
        await self.gateway.send(chat_id, self.composer.render(step.prompt_key, user_id=user_id), keyboard=keyboard)

    async def start(self, user_id: int, chat_id: int) -> None:
        """Enter the wizard, discarding any in-progress interaction."""
        await self.conversations.begin(user_id, PHASE_AWAITING_IMAGE, {"images": []})
        logger.info(f"User {user_id} started a listing")
        await self._prompt(chat_id, PHASE_AWAITING_IMAGE, user_id)

    async def cancel(self, user_id: int, chat_id: int, origin: MessageRef | None = None) -> bool:
        """Abort the wizard without creating a product. False if no wizard was open."""
        if not self.is_active(user_id):
            return False
        await self.conversations.clear(user_id)
        await strip_buttons(self.gateway, origin)
        await self.gateway.send(chat_id, self.composer.render("listing_cancelled", user_id=user_id))
        return True

    async def _guard(self, user_id: int, chat_id: int, coro):
        """Turn an unexpected fault into a cleared wizard plus a restart notice."""
        try:
            return await coro
        except MarketBotError:
            raise
        except Exception as e:
            logger.error(f"Listing wizard failed for user {user_id}: {e}", exc_info=True)
            await self.conversations.clear(user_id)
            emit("ERROR", EVENT_LISTING_ABORTED, user_id=user_id, exc=e)
            raise MarketBotError(
                f"Listing aborted for user {user_id}",
                user_message=self.composer.render("listing_failed", user_id=user_id),
            ) from e

    async def handle_photo(self, user_id: int, chat_id: int, file_id: str) -> None:
        await self._guard(user_id, chat_id, self._handle_photo(user_id, chat_id, file_id))

    async def _handle_photo(self, user_id: int, chat_id: int, file_id: str) -> None:
        phase = self.conversations.phase_of(user_id)
        if phase != PHASE_AWAITING_IMAGE:
            await self._reprompt(user_id, chat_id, phase)
            return
        await self.conversations.transition(user_id, PHASE_AWAITING_IMAGE, PHASE_AWAITING_TITLE, {"images": [file_id]})
        await self._prompt(chat_id, PHASE_AWAITING_TITLE, user_id)

    async def handle_text(self, user_id: int, chat_id: int, text: str) -> None:
        await self._guard(user_id, chat_id, self._handle_text(user_id, chat_id, text))

    async def _handle_text(self, user_id: int, chat_id: int, text: str) -> None:
        phase = self.conversations.phase_of(user_id)
        if phase in (PHASE_AWAITING_IMAGE, PHASE_AWAITING_CATEGORY):
            await self._reprompt(user_id, chat_id, phase)
            return

        if phase == PHASE_AWAITING_TITLE:
            update = {"title": clean_title(text)}
        elif phase == PHASE_AWAITING_PRICE:
            update = {"price": parse_price(text)}
        elif phase == PHASE_AWAITING_DESCRIPTION:
            update = {"description": resolve_description(text, self.placeholder)}
        else:
            return

        next_phase = WIZARD_STEPS[phase].next_phase
        await self.conversations.transition(user_id, phase, next_phase, update)
        await self._prompt(chat_id, next_phase, user_id)

    async def _reprompt(self, user_id: int, chat_id: int, phase: str | None) -> None:
        if phase == PHASE_AWAITING_IMAGE:
            await self.gateway.send(chat_id, self.composer.render("expect_photo", user_id=user_id))
        elif phase == PHASE_AWAITING_CATEGORY:
            await self.gateway.send(
                chat_id, self.composer.render("expect_category", user_id=user_id), keyboard=category_keyboard()
            )
        elif phase in WIZARD_STEPS:
            await self._prompt(chat_id, phase, user_id)

    async def handle_category(
        self, user_id: int, chat_id: int, index: str | int, origin: MessageRef | None = None
    ) -> Product | None:
        if self.conversations.phase_of(user_id) != PHASE_AWAITING_CATEGORY:
            await self._reprompt(user_id, chat_id, self.conversations.phase_of(user_id))
            return None
        category = resolve_category(index)
        return await self._guard(user_id, chat_id, self._finalize(user_id, chat_id, category, origin))

    async def _finalize(self, user_id: int, chat_id: int, category: str, origin: MessageRef | None) -> Product:
        state = await self.conversations.take(user_id, PHASE_AWAITING_CATEGORY)
        payload = state.payload

        images = []
        for position, file_id in enumerate(payload.get("images") or []):
            path = f"products/{user_id}/{file_id[-24:]}-{position}.jpg"
            images.append(await self.media.persist_telegram_file(file_id, path, user_id=user_id))

        try:
            product = await self.store.create_product(
                seller_id=user_id,
                title=payload["title"],
                price=int(payload["price"]),
                category=category,
                description=payload.get("description") or self.placeholder,
                images=images,
            )
        except StoreUnavailableError:
            # Keep the draft so the category can be chosen again later
            await self.conversations.begin(user_id, PHASE_AWAITING_CATEGORY, payload)
            raise
        await strip_buttons(self.gateway, origin)
        await self.gateway.send(
            chat_id,
            self.composer.render("listing_submitted", user_id=user_id, title=product.title, id=product.id),
        )
        await self.moderation.submit(product)
        return product
