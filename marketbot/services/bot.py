"""
Process-scoped bot runtime.

MarketBot wires the store, the conversation engine components and the
Telegram gateway together once per process. The FastAPI app creates it at
startup (hydrate) and tears it down at shutdown (flush).
"""

import logging

from marketbot.core.config import Settings, parse_admin_ids, settings
from marketbot.core.errors import TransportError
from marketbot.services.admin_nav import AdminNavigator
from marketbot.services.broadcast import BroadcastService
from marketbot.services.chat_relay import ChatRelay
from marketbot.services.conversation_store import ConversationStore
from marketbot.services.dispatcher import Dispatcher
from marketbot.services.integrations.media_store import MediaStore
from marketbot.services.messaging.composer import MessageComposer, get_composer
from marketbot.services.messaging.gateway import TelegramGateway
from marketbot.services.moderation import ModerationQueue
from marketbot.services.runtime_settings import KEY_BOT_USERNAME, RuntimeSettings
from marketbot.services.store.entity_store import EntityStore
from marketbot.services.store.persistence import PersistentStore
from marketbot.services.storefront import Storefront
from marketbot.services.wizard import ListingWizard

logger = logging.getLogger(__name__)


class MarketBot:
    def __init__(
        self,
        gateway: TelegramGateway,
        admin_ids: list[int],
        store: EntityStore | None = None,
        composer: MessageComposer | None = None,
        media: MediaStore | None = None,
        config: Settings | None = None,
    ):
        config = config or settings
        self.gateway = gateway
        self.admin_ids = list(admin_ids)
        self.store = store or EntityStore(PersistentStore())
        self.composer = composer or get_composer()
        self.runtime = RuntimeSettings(self.store)
        self.conversations = ConversationStore(self.store)
        self.media = media or MediaStore(gateway)

        self.moderation = ModerationQueue(
            self.store,
            gateway,
            self.composer,
            self.runtime,
            self.admin_ids,
            browse_delay_seconds=config.moderation_browse_delay_seconds,
        )
        self.wizard = ListingWizard(
            self.conversations,
            self.store,
            gateway,
            self.composer,
            self.media,
            self.moderation,
            placeholder=config.description_placeholder,
        )
        self.relay = ChatRelay(self.store, gateway, self.composer, self.admin_ids)
        self.navigator = AdminNavigator(
            self.store,
            self.conversations,
            gateway,
            self.composer,
            self.runtime,
            self.relay,
            self.moderation,
            self.admin_ids,
            page_size=config.admin_page_size,
        )
        self.broadcast = BroadcastService(
            self.store,
            self.conversations,
            gateway,
            self.composer,
            self.admin_ids,
            progress_every=config.broadcast_progress_every,
            send_delay_seconds=config.broadcast_send_delay_seconds,
        )
        self.storefront = Storefront(
            self.store,
            self.conversations,
            gateway,
            self.composer,
            self.runtime,
            self.wizard,
            self.relay,
            self.admin_ids,
            browse_limit=config.browse_limit,
        )
        self.dispatcher = Dispatcher(self)

    @classmethod
    def from_settings(cls, config: Settings | None = None) -> "MarketBot":
        config = config or settings
        gateway = TelegramGateway(
            config.telegram_bot_token,
            api_base=config.telegram_api_base,
            dry_run=config.telegram_dry_run,
        )
        return cls(gateway=gateway, admin_ids=parse_admin_ids(config.admin_ids), config=config)

    async def startup(self) -> None:
        self.store.hydrate()
        self.conversations.hydrate()
        self.relay.hydrate()
        if not self.runtime.bot_username and not self.gateway.dry_run:
            try:
                me = await self.gateway.get_me()
            except TransportError as e:
                logger.warning(f"getMe failed, deep links disabled until BOT_USERNAME is set: {e}")
                me = {}
            username = me.get("username")
            if username:
                await self.store.set_setting(KEY_BOT_USERNAME, username)
                logger.info(f"Resolved bot username @{username}")
        logger.info(f"MarketBot started: {len(self.admin_ids)} admins, channel {self.runtime.channel_id}")

    async def shutdown(self) -> None:
        await self.broadcast.shutdown()
        self.relay.flush()
        self.conversations.flush()
        self.store.flush()
        logger.info("MarketBot stopped")


_bot: MarketBot | None = None


def get_bot() -> MarketBot:
    global _bot
    if _bot is None:
        _bot = MarketBot.from_settings()
    return _bot


def set_bot(bot: MarketBot | None) -> None:
    """Install (or clear) the process bot; used by app startup and tests."""
    global _bot
    _bot = bot
