"""
Inbound Telegram updates as a discriminated union.

parse_update() turns one webhook envelope into a TextMessage, PhotoMessage or
ButtonPress, or None for update kinds the bot does not handle.
"""

from dataclasses import dataclass


@dataclass(frozen=True)
class Sender:
    id: int
    username: str | None = None
    first_name: str | None = None
    last_name: str | None = None


@dataclass(frozen=True)
class MessageRef:
    """A message the bot may later edit (e.g. the one carrying pressed buttons)."""

    chat_id: int
    message_id: int
    has_media: bool = False


@dataclass(frozen=True)
class TextMessage:
    update_id: int
    sender: Sender
    chat_id: int
    message_id: int
    text: str


@dataclass(frozen=True)
class PhotoMessage:
    update_id: int
    sender: Sender
    chat_id: int
    message_id: int
    file_id: str  # Largest available size
    caption: str | None = None


@dataclass(frozen=True)
class ButtonPress:
    update_id: int
    sender: Sender
    chat_id: int
    callback_id: str
    data: str
    origin: MessageRef | None = None


InboundEvent = TextMessage | PhotoMessage | ButtonPress


def _sender(raw: dict) -> Sender:
    return Sender(
        id=int(raw["id"]),
        username=raw.get("username"),
        first_name=raw.get("first_name"),
        last_name=raw.get("last_name"),
    )


def parse_update(payload: dict) -> InboundEvent | None:
    """
    Classify a Telegram update.

    Raises KeyError / TypeError / ValueError on a structurally malformed
    envelope; the webhook treats those as ignorable.
    """
    update_id = int(payload["update_id"])

    callback = payload.get("callback_query")
    if callback:
        message = callback.get("message") or {}
        origin = None
        if message:
            origin = MessageRef(
                chat_id=int(message["chat"]["id"]),
                message_id=int(message["message_id"]),
                has_media=bool(message.get("photo")),
            )
        sender = _sender(callback["from"])
        return ButtonPress(
            update_id=update_id,
            sender=sender,
            chat_id=origin.chat_id if origin else sender.id,
            callback_id=str(callback["id"]),
            data=callback.get("data") or "",
            origin=origin,
        )

    message = payload.get("message")
    if not message or "from" not in message:
        return None

    sender = _sender(message["from"])
    chat_id = int(message["chat"]["id"])
    message_id = int(message["message_id"])

    photos = message.get("photo")
    if photos:
        largest = max(photos, key=lambda p: (p.get("width", 0) * p.get("height", 0), p.get("file_size", 0)))
        return PhotoMessage(
            update_id=update_id,
            sender=sender,
            chat_id=chat_id,
            message_id=message_id,
            file_id=largest["file_id"],
            caption=message.get("caption"),
        )

    text = message.get("text")
    if text is not None:
        return TextMessage(update_id=update_id, sender=sender, chat_id=chat_id, message_id=message_id, text=text)

    return None
