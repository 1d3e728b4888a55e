"""
Telegram Bot API gateway with dry-run mode for development.

All outbound transport calls (send, edit, answer, file lookup) go through
TelegramGateway. Failures surface as TransportError and are counted; callers
decide whether a failure matters (it never aborts a batch).
"""

import itertools
import logging
import os

import httpx

from marketbot.core.errors import TransportError
from marketbot.services.integrations.http_client import DOWNLOAD_READ_TIMEOUT, create_httpx_client
from marketbot.services.messaging.keyboards import Keyboard, to_reply_markup
from marketbot.services.metrics import record_transport_failure

logger = logging.getLogger(__name__)

# Telegram caps photo captions; longer text goes out as a plain message
CAPTION_LIMIT = 1024


class TelegramGateway:
    def __init__(
        self,
        token: str,
        api_base: str = "https://api.telegram.org",
        dry_run: bool = True,
    ):
        self.token = token
        self.api_base = api_base.rstrip("/")
        # Force dry-run in tests or when the token is a placeholder
        self.dry_run = bool(dry_run or os.environ.get("PYTEST_CURRENT_TEST") or token in ("", "test_token"))
        self._dry_run_ids = itertools.count(1)

    def _url(self, method: str) -> str:
        return f"{self.api_base}/bot{self.token}/{method}"

    async def _call(self, method: str, payload: dict) -> dict:
        if self.dry_run:
            logger.info(f"[DRY-RUN] Would call {method}: {payload}")
            return {"message_id": next(self._dry_run_ids)}

        try:
            async with create_httpx_client() as client:
                response = await client.post(self._url(method), json=payload)
            data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            record_transport_failure(method)
            logger.error(f"Telegram {method} failed: {e}")
            raise TransportError(f"Telegram {method} failed: {e}", method=method) from e

        if not data.get("ok"):
            record_transport_failure(method)
            description = data.get("description", "unknown error")
            logger.warning(f"Telegram {method} rejected ({response.status_code}): {description}")
            raise TransportError(f"Telegram {method} rejected: {description}", method=method)

        result = data.get("result")
        return result if isinstance(result, dict) else {"result": result}

    async def send(
        self,
        chat_id: int | str,
        text: str,
        keyboard: Keyboard | None = None,
        photo: str | None = None,
    ) -> int | None:
        """Send a text message, or a photo with `text` as caption. Returns the message id."""
        payload: dict = {"chat_id": chat_id}
        if keyboard is not None:
            payload["reply_markup"] = to_reply_markup(keyboard)
        if photo and len(text) <= CAPTION_LIMIT:
            payload.update({"photo": photo, "caption": text})
            result = await self._call("sendPhoto", payload)
        else:
            payload["text"] = text
            result = await self._call("sendMessage", payload)
        return result.get("message_id")

    async def edit_text(
        self, chat_id: int | str, message_id: int, text: str, keyboard: Keyboard | None = None
    ) -> None:
        payload = {"chat_id": chat_id, "message_id": message_id, "text": text}
        payload["reply_markup"] = to_reply_markup(keyboard)
        await self._call("editMessageText", payload)

    async def edit_caption(
        self, chat_id: int | str, message_id: int, caption: str, keyboard: Keyboard | None = None
    ) -> None:
        payload = {"chat_id": chat_id, "message_id": message_id, "caption": caption[:CAPTION_LIMIT]}
        payload["reply_markup"] = to_reply_markup(keyboard)
        await self._call("editMessageCaption", payload)

    async def edit_buttons(self, chat_id: int | str, message_id: int, keyboard: Keyboard | None = None) -> None:
        """Replace the inline keyboard; None removes all buttons."""
        await self._call(
            "editMessageReplyMarkup",
            {"chat_id": chat_id, "message_id": message_id, "reply_markup": to_reply_markup(keyboard)},
        )

    async def answer(self, callback_id: str, toast: str | None = None, alert: bool = False) -> None:
        payload: dict = {"callback_query_id": callback_id}
        if toast:
            payload.update({"text": toast[:200], "show_alert": alert})
        await self._call("answerCallbackQuery", payload)

    async def resolve_media_url(self, file_id: str) -> str:
        """Resolve a Telegram file_id to a (token-bearing, short-lived) download URL."""
        result = await self._call("getFile", {"file_id": file_id})
        file_path = result.get("file_path")
        if not file_path:
            raise TransportError(f"No file_path for file {file_id}", method="getFile")
        return f"{self.api_base}/file/bot{self.token}/{file_path}"

    async def download(self, url: str) -> tuple[bytes, str]:
        """Download a resolved file. Returns (bytes, content_type)."""
        try:
            async with create_httpx_client(read=DOWNLOAD_READ_TIMEOUT) as client:
                response = await client.get(url)
                response.raise_for_status()
        except httpx.HTTPError as e:
            record_transport_failure("download")
            raise TransportError(f"File download failed: {e}", method="download") from e
        return response.content, response.headers.get("content-type", "image/jpeg")

    async def get_me(self) -> dict:
        return await self._call("getMe", {})

    @staticmethod
    def deep_link(bot_username: str, payload: str) -> str:
        return f"https://t.me/{bot_username.lstrip('@')}?start={payload}"
