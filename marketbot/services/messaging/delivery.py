"""
Best-effort delivery helpers.

Notifications that follow an already-committed state change (seller notices,
admin alerts, edits that strip buttons) must not undo or abort that change
when Telegram refuses them; these helpers log and record the failure instead.
"""

import logging

from marketbot.constants.event_types import EVENT_TELEGRAM_SEND_FAILURE
from marketbot.core.errors import TransportError
from marketbot.services.messaging.events import MessageRef
from marketbot.services.messaging.gateway import TelegramGateway
from marketbot.services.messaging.keyboards import Keyboard
from marketbot.services.system_event_service import emit

logger = logging.getLogger(__name__)


async def deliver(
    gateway: TelegramGateway,
    chat_id: int | str,
    text: str,
    keyboard: Keyboard | None = None,
    photo: str | None = None,
) -> int | None:
    """Send and return the message id, or None if the transport failed."""
    try:
        return await gateway.send(chat_id, text, keyboard=keyboard, photo=photo)
    except TransportError as e:
        logger.warning(f"Delivery to {chat_id} failed: {e}")
        emit(
            "WARN",
            EVENT_TELEGRAM_SEND_FAILURE,
            user_id=chat_id if isinstance(chat_id, int) else None,
            payload={"method": e.method},
            exc=e,
        )
        return None


async def deliver_many(
    gateway: TelegramGateway,
    chat_ids: list[int],
    text: str,
    keyboard: Keyboard | None = None,
    photo: str | None = None,
) -> dict[int, int | None]:
    """Deliver to each chat in turn; one failure does not stop the rest."""
    return {chat_id: await deliver(gateway, chat_id, text, keyboard=keyboard, photo=photo) for chat_id in chat_ids}


async def update_origin(
    gateway: TelegramGateway,
    origin: MessageRef | None,
    text: str,
    keyboard: Keyboard | None = None,
) -> bool:
    """Rewrite the message that carried the pressed buttons (caption for photos)."""
    if origin is None:
        return False
    try:
        if origin.has_media:
            await gateway.edit_caption(origin.chat_id, origin.message_id, text, keyboard)
        else:
            await gateway.edit_text(origin.chat_id, origin.message_id, text, keyboard)
    except TransportError as e:
        logger.info(f"Could not update message {origin.message_id} in {origin.chat_id}: {e}")
        return False
    return True


async def strip_buttons(gateway: TelegramGateway, origin: MessageRef | None) -> bool:
    if origin is None:
        return False
    try:
        await gateway.edit_buttons(origin.chat_id, origin.message_id, None)
    except TransportError as e:
        logger.info(f"Could not remove buttons from {origin.message_id}: {e}")
        return False
    return True
