# Messaging: Telegram gateway, inbound event parsing, keyboards, copy composer
# Re-export so "from marketbot.services.messaging import ..." works for callers.

from marketbot.services.messaging.composer import MessageComposer, get_composer, render_message
from marketbot.services.messaging.events import (
    ButtonPress,
    InboundEvent,
    MessageRef,
    PhotoMessage,
    Sender,
    TextMessage,
    parse_update,
)
from marketbot.services.messaging.gateway import TelegramGateway

__all__ = [
    "ButtonPress",
    "InboundEvent",
    "MessageComposer",
    "MessageRef",
    "PhotoMessage",
    "Sender",
    "TelegramGateway",
    "TextMessage",
    "get_composer",
    "parse_update",
    "render_message",
]
