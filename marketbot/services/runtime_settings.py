"""
Admin-editable settings backed by the bot_settings table.

Environment configuration supplies the defaults; values set from the admin
settings panel override them and survive restarts.
"""

from marketbot.core.config import settings
from marketbot.services.store.entity_store import EntityStore

KEY_CHANNEL_ID = "channel_id"
KEY_BOT_USERNAME = "bot_username"
KEY_WELCOME_MESSAGE = "welcome_message"
KEY_MAINTENANCE = "maintenance_mode"

DEFAULT_WELCOME = (
    "Welcome to {marketplace}, {name}!\n\n"
    "Buy and sell items with fellow students. Approved listings are posted to {channel}."
)


class RuntimeSettings:
    def __init__(self, store: EntityStore):
        self._store = store

    @property
    def channel_id(self) -> str:
        return self._store.get_setting(KEY_CHANNEL_ID, settings.channel_id)

    @property
    def bot_username(self) -> str:
        return self._store.get_setting(KEY_BOT_USERNAME, settings.bot_username)

    @property
    def welcome_message(self) -> str:
        return self._store.get_setting(KEY_WELCOME_MESSAGE, DEFAULT_WELCOME)

    @property
    def maintenance(self) -> bool:
        return self._store.get_setting(KEY_MAINTENANCE, "false") == "true"

    def render_welcome(self, name: str) -> str:
        template = self.welcome_message
        for placeholder, value in (
            ("{name}", name),
            ("{channel}", self.channel_id),
            ("{marketplace}", settings.marketplace_name),
        ):
            template = template.replace(placeholder, value)
        return template

    async def set_channel_id(self, value: str) -> None:
        await self._store.set_setting(KEY_CHANNEL_ID, value)

    async def set_bot_username(self, value: str) -> None:
        await self._store.set_setting(KEY_BOT_USERNAME, value.lstrip("@"))

    async def set_welcome_message(self, value: str) -> None:
        await self._store.set_setting(KEY_WELCOME_MESSAGE, value)

    async def toggle_maintenance(self) -> bool:
        enabled = not self.maintenance
        await self._store.set_setting(KEY_MAINTENANCE, "true" if enabled else "false")
        return enabled
