"""
Media store for product images.

Telegram file_ids are only resolvable through the bot token, so listing photos
are copied into Supabase Storage and referenced by public URL. Without Supabase
configured (dev, tests) the Telegram file_id itself is kept as the reference;
Telegram accepts it anywhere a photo URL is accepted.
"""

import logging

from marketbot.constants.event_types import EVENT_MEDIA_UPLOAD_FAILURE
from marketbot.core.config import settings
from marketbot.core.errors import TransportError
from marketbot.services.messaging.gateway import TelegramGateway
from marketbot.services.system_event_service import emit

logger = logging.getLogger(__name__)


class MediaStore:
    def __init__(
        self,
        gateway: TelegramGateway,
        supabase_url: str | None = None,
        supabase_key: str | None = None,
        bucket: str | None = None,
    ):
        self.gateway = gateway
        self.supabase_url = supabase_url if supabase_url is not None else settings.supabase_url
        self.supabase_key = supabase_key if supabase_key is not None else settings.supabase_service_role_key
        self.bucket = bucket or settings.supabase_storage_bucket

    @property
    def configured(self) -> bool:
        return bool(self.supabase_url and self.supabase_key)

    def upload(self, data: bytes, path: str, content_type: str = "image/jpeg") -> str:
        """Upload bytes to Supabase Storage and return the public URL."""
        if not self.configured:
            raise ValueError("Supabase not configured: SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY required")

        from supabase import Client, create_client

        client: Client = create_client(self.supabase_url, self.supabase_key)
        bucket = client.storage.from_(self.bucket)
        bucket.upload(
            path=path,
            file=data,
            file_options={"content-type": content_type, "upsert": "true"},
        )
        logger.info(f"Uploaded {len(data)} bytes to {self.bucket}/{path}")
        return bucket.get_public_url(path)

    async def persist_telegram_file(self, file_id: str, path: str, user_id: int | None = None) -> str:
        """
        Copy a Telegram photo into durable storage.

        Returns the public URL, or the file_id itself when storage is not
        configured or the copy fails.
        """
        if not self.configured:
            return file_id
        try:
            url = await self.gateway.resolve_media_url(file_id)
            data, content_type = await self.gateway.download(url)
            return self.upload(data, path, content_type)
        except TransportError as e:
            logger.warning(f"Could not fetch {file_id} from Telegram, keeping file_id: {e}")
            emit("WARN", EVENT_MEDIA_UPLOAD_FAILURE, user_id=user_id, payload={"path": path}, exc=e)
            return file_id
        except Exception as e:
            logger.error(f"Media upload failed for {path}, keeping file_id: {e}", exc_info=True)
            emit("ERROR", EVENT_MEDIA_UPLOAD_FAILURE, user_id=user_id, payload={"path": path}, exc=e)
            return file_id
