"""
Administrator navigation.

Each admin has a current panel frame plus a stack of frames to return to.
Frames are plain data (panel id, page, subject id); rendering goes through a
fixed dispatch table, so "back" never replays a stored callable.
"""

import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any

from marketbot.constants import callbacks as cb
from marketbot.constants.event_types import EVENT_SETTING_CHANGED, EVENT_USER_BANNED, EVENT_USER_UNBANNED
from marketbot.constants.statuses import (
    PHASE_ADMIN_DIRECT_MESSAGE,
    PHASE_ADMIN_SET_BOT_USERNAME,
    PHASE_ADMIN_SET_CHANNEL,
    PHASE_ADMIN_SET_WELCOME,
    PRODUCT_STATUSES,
    SCOPE_ADMINS,
    SCOPE_ALL,
    STATUS_PENDING,
)
from marketbot.core.config import settings
from marketbot.core.errors import PermissionDeniedError, TransportError, ValidationError
from marketbot.services.chat_relay import ChatRelay
from marketbot.services.conversation_store import ConversationStore
from marketbot.services.messaging.composer import MessageComposer
from marketbot.services.messaging.delivery import deliver
from marketbot.services.messaging.events import MessageRef
from marketbot.services.messaging.gateway import TelegramGateway
from marketbot.services.messaging.keyboards import Button, Keyboard
from marketbot.services.moderation import ModerationQueue
from marketbot.services.runtime_settings import RuntimeSettings
from marketbot.services.store.entity_store import EntityStore
from marketbot.services.system_event_service import emit
from marketbot.utils.datetime_utils import format_duration, utcnow

logger = logging.getLogger(__name__)

PANEL_ROOT = "root"
PANEL_PENDING = "pending"
PANEL_USERS = "users"
PANEL_USER_DETAIL = "user"
PANEL_CHATS = "chats"
PANEL_BROADCAST = "broadcast"
PANEL_SETTINGS = "settings"
PANEL_STATS = "stats"

SETTING_PROMPTS = {
    "channel": (PHASE_ADMIN_SET_CHANNEL, "settings_ask_channel"),
    "bot_username": (PHASE_ADMIN_SET_BOT_USERNAME, "settings_ask_bot_username"),
    "welcome": (PHASE_ADMIN_SET_WELCOME, "settings_ask_welcome"),
}


@dataclass(frozen=True)
class PanelFrame:
    panel: str
    page: int = 0
    subject: int | None = None


@dataclass
class Screen:
    text: str
    keyboard: Keyboard = field(default_factory=list)


@dataclass
class Page:
    items: list[Any]
    number: int
    has_previous: bool
    has_next: bool
    total: int


def paginate(items: Sequence[Any], page: int, size: int) -> Page:
    """Page p holds items [size*p, size*p + size)."""
    page = max(0, page)
    start = page * size
    window = list(items[start : start + size])
    return Page(
        items=window,
        number=page,
        has_previous=page > 0,
        has_next=len(items) > start + size,
        total=len(items),
    )


def _nav(*parts) -> str:
    return cb.build(cb.CB_ADMIN_NAV, *parts)


class AdminNavigator:
    def __init__(
        self,
        store: EntityStore,
        conversations: ConversationStore,
        gateway: TelegramGateway,
        composer: MessageComposer,
        runtime: RuntimeSettings,
        relay: ChatRelay,
        moderation: ModerationQueue,
        admin_ids: list[int],
        page_size: int | None = None,
    ):
        self.store = store
        self.conversations = conversations
        self.gateway = gateway
        self.composer = composer
        self.runtime = runtime
        self.relay = relay
        self.moderation = moderation
        self.admin_ids = list(admin_ids)
        self.page_size = page_size or settings.admin_page_size
        self._current: dict[int, PanelFrame] = {}
        self._stacks: dict[int, list[PanelFrame]] = {}
        self._renderers = {
            PANEL_ROOT: self._render_root,
            PANEL_PENDING: self._render_pending,
            PANEL_USERS: self._render_users,
            PANEL_USER_DETAIL: self._render_user_detail,
            PANEL_CHATS: self._render_chats,
            PANEL_BROADCAST: self._render_broadcast,
            PANEL_SETTINGS: self._render_settings,
            PANEL_STATS: self._render_stats,
        }

    def is_admin(self, user_id: int) -> bool:
        return user_id in self.admin_ids

    def require_admin(self, user_id: int) -> None:
        if not self.is_admin(user_id):
            raise PermissionDeniedError(f"User {user_id} is not an administrator")

    # ---- stack operations ----

    def current(self, admin_id: int) -> PanelFrame:
        return self._current.get(admin_id, PanelFrame(PANEL_ROOT))

    def stack(self, admin_id: int) -> list[PanelFrame]:
        return list(self._stacks.get(admin_id, []))

    async def open(
        self,
        admin_id: int,
        panel: str,
        chat_id: int,
        origin: MessageRef | None = None,
        subject: int | None = None,
    ) -> Screen:
        """Open a sub-panel; the current panel becomes its back-target."""
        self.require_admin(admin_id)
        if panel not in self._renderers:
            raise ValidationError(f"Unknown panel {panel!r}")
        current = self._current.get(admin_id)
        if current is not None and current.panel != panel:
            self._stacks.setdefault(admin_id, []).append(current)
        frame = PanelFrame(panel, 0, subject)
        self._current[admin_id] = frame
        return await self._show(admin_id, frame, chat_id, origin)

    async def back(self, admin_id: int, chat_id: int, origin: MessageRef | None = None) -> Screen:
        """Pop one level; root when nothing is left."""
        self.require_admin(admin_id)
        stack = self._stacks.get(admin_id) or []
        frame = stack.pop() if stack else PanelFrame(PANEL_ROOT)
        self._current[admin_id] = frame
        return await self._show(admin_id, frame, chat_id, origin)

    async def home(self, admin_id: int, chat_id: int, origin: MessageRef | None = None) -> Screen:
        self.require_admin(admin_id)
        self._stacks.pop(admin_id, None)
        frame = PanelFrame(PANEL_ROOT)
        self._current[admin_id] = frame
        return await self._show(admin_id, frame, chat_id, origin)

    async def goto_page(
        self, admin_id: int, panel: str, page: int, chat_id: int, origin: MessageRef | None = None
    ) -> Screen:
        """Move within a listing panel; paging does not push a back-target."""
        self.require_admin(admin_id)
        current = self.current(admin_id)
        frame = PanelFrame(panel, max(0, page), current.subject if current.panel == panel else None)
        self._current[admin_id] = frame
        return await self._show(admin_id, frame, chat_id, origin)

    async def refresh(self, admin_id: int, chat_id: int, origin: MessageRef | None = None) -> Screen:
        return await self._show(admin_id, self.current(admin_id), chat_id, origin)

    def render(self, admin_id: int, frame: PanelFrame | None = None) -> Screen:
        frame = frame or self.current(admin_id)
        return self._renderers[frame.panel](admin_id, frame)

    async def _show(self, admin_id: int, frame: PanelFrame, chat_id: int, origin: MessageRef | None) -> Screen:
        screen = self.render(admin_id, frame)
        if origin is not None and not origin.has_media:
            try:
                await self.gateway.edit_text(origin.chat_id, origin.message_id, screen.text, screen.keyboard)
                return screen
            except TransportError as e:
                logger.debug(f"Panel edit failed, sending new message: {e}")
        await self.gateway.send(chat_id, screen.text, keyboard=screen.keyboard)
        return screen

    # ---- renderers ----

    def _footer(self) -> list[Button]:
        return [Button("Back", _nav("back")), Button("Home", _nav("home"))]

    def _pager(self, panel: str, page: Page) -> list[Button]:
        row = []
        if page.has_previous:
            row.append(Button("Previous", _nav("page", panel, page.number - 1)))
        if page.has_next:
            row.append(Button("Next", _nav("page", panel, page.number + 1)))
        return row

    def _render_root(self, admin_id: int, frame: PanelFrame) -> Screen:
        pending = len(self.store.list_products(status=STATUS_PENDING))
        text = self.composer.render(
            "admin_root",
            users=len(self.store.list_users()),
            pending=pending,
            chats=len(self.relay.active_sessions()),
            degraded=" (store degraded)" if self.store.degraded else "",
        )
        keyboard = [
            [Button(f"Pending ({pending})", _nav("nav", PANEL_PENDING)), Button("Users", _nav("nav", PANEL_USERS))],
            [Button("Active Chats", _nav("nav", PANEL_CHATS)), Button("Broadcast", _nav("nav", PANEL_BROADCAST))],
            [Button("Settings", _nav("nav", PANEL_SETTINGS)), Button("Stats", _nav("nav", PANEL_STATS))],
        ]
        return Screen(text, keyboard)

    def _render_pending(self, admin_id: int, frame: PanelFrame) -> Screen:
        products = self.moderation.pending()
        page = paginate(products, frame.page, self.page_size)
        lines = [f"#{p.id} {p.title} - {p.price:,} {settings.currency}" for p in page.items]
        text = self.composer.render(
            "admin_pending", count=page.total, rows="\n".join(lines) or self.composer.render("empty_list")
        )
        keyboard: Keyboard = []
        if products:
            keyboard.append([Button("Review Cards", _nav("review"))])
        pager = self._pager(PANEL_PENDING, page)
        if pager:
            keyboard.append(pager)
        keyboard.append(self._footer())
        return Screen(text, keyboard)

    def _render_users(self, admin_id: int, frame: PanelFrame) -> Screen:
        users = self.store.list_users()
        page = paginate(users, frame.page, self.page_size)
        start = page.number * self.page_size
        lines = [
            f"{start + i + 1}. {u.display_name} ({u.id}){' [banned]' if u.is_banned else ''}"
            for i, u in enumerate(page.items)
        ]
        text = self.composer.render(
            "admin_users",
            total=page.total,
            page=page.number + 1,
            rows="\n".join(lines) or self.composer.render("empty_list"),
        )
        keyboard: Keyboard = []
        if page.items:
            # Row actions target the first user on the visible page
            first = page.items[0]
            keyboard.append(
                [
                    Button(f"View {first.display_name}", cb.build(cb.CB_ADMIN_USER, "view", first.id)),
                    Button("Message", cb.build(cb.CB_ADMIN_USER, "msg", first.id)),
                    Button(
                        "Unban" if first.is_banned else "Ban",
                        cb.build(cb.CB_ADMIN_USER, "unban" if first.is_banned else "ban", first.id),
                    ),
                ]
            )
        pager = self._pager(PANEL_USERS, page)
        if pager:
            keyboard.append(pager)
        keyboard.append(self._footer())
        return Screen(text, keyboard)

    def _render_user_detail(self, admin_id: int, frame: PanelFrame) -> Screen:
        user = self.store.require_user(frame.subject)
        counts = self.store.product_counts(seller_id=user.id)
        session = self.relay.session_for(user.id)
        text = self.composer.render(
            "admin_user_detail",
            name=user.display_name,
            id=user.id,
            username=f"@{user.username}" if user.username else "-",
            joined=user.joined_at.strftime("%Y-%m-%d"),
            banned="yes" if user.is_banned else "no",
            pending=counts.get("pending", 0),
            approved=counts.get("approved", 0),
            rejected=counts.get("rejected", 0),
            in_chat="yes" if session else "no",
        )
        action = "unban" if user.is_banned else "ban"
        keyboard = [
            [
                Button(action.capitalize(), cb.build(cb.CB_ADMIN_USER, action, user.id)),
                Button("Message", cb.build(cb.CB_ADMIN_USER, "msg", user.id)),
            ],
            self._footer(),
        ]
        return Screen(text, keyboard)

    def _render_chats(self, admin_id: int, frame: PanelFrame) -> Screen:
        sessions = self.relay.active_sessions()
        page = paginate(sessions, frame.page, self.page_size)
        lines = []
        for session in page.items:
            product = self.store.get_product(session.product_id)
            lines.append(
                f"{product.title if product else '#' + str(session.product_id)}: "
                f"{session.buyer_id} <-> {session.seller_id}, "
                f"{len(session.messages)} msgs, {format_duration(session.started_at)}"
            )
        text = self.composer.render(
            "admin_chats", count=page.total, rows="\n".join(lines) or self.composer.render("empty_list")
        )
        keyboard: Keyboard = []
        pager = self._pager(PANEL_CHATS, page)
        if pager:
            keyboard.append(pager)
        keyboard.append(self._footer())
        return Screen(text, keyboard)

    def _render_broadcast(self, admin_id: int, frame: PanelFrame) -> Screen:
        recipients = sum(1 for u in self.store.list_users() if not u.is_banned)
        text = self.composer.render("admin_broadcast", users=recipients, admins=len(self.admin_ids))
        keyboard = [
            [
                Button("All Users", cb.build(cb.CB_BROADCAST, "scope", SCOPE_ALL)),
                Button("Test (Admins)", cb.build(cb.CB_BROADCAST, "scope", SCOPE_ADMINS)),
            ],
            self._footer(),
        ]
        return Screen(text, keyboard)

    def _render_settings(self, admin_id: int, frame: PanelFrame) -> Screen:
        text = self.composer.render(
            "admin_settings",
            channel=self.runtime.channel_id,
            bot_username=f"@{self.runtime.bot_username}" if self.runtime.bot_username else "-",
            welcome=self.runtime.welcome_message,
            maintenance="ON" if self.runtime.maintenance else "OFF",
        )
        keyboard = [
            [Button("Channel", cb.build(cb.CB_ADMIN_SETTING, "channel")),
             Button("Bot Username", cb.build(cb.CB_ADMIN_SETTING, "bot_username"))],
            [Button("Welcome Message", cb.build(cb.CB_ADMIN_SETTING, "welcome")),
             Button("Toggle Maintenance", cb.build(cb.CB_ADMIN_SETTING, "maintenance"))],
            self._footer(),
        ]
        return Screen(text, keyboard)

    def stats(self) -> dict:
        users = self.store.list_users()
        month_ago = utcnow() - timedelta(days=30)
        counts = self.store.product_counts()
        return {
            "users_total": len(users),
            "users_joined_30d": sum(1 for u in users if u.joined_at >= month_ago),
            "users_banned": sum(1 for u in users if u.is_banned),
            "products": {status: counts.get(status, 0) for status in PRODUCT_STATUSES},
            "active_chats": len(self.relay.active_sessions()),
            "admins": len(self.admin_ids),
            "store_degraded": self.store.degraded,
        }

    def _render_stats(self, admin_id: int, frame: PanelFrame) -> Screen:
        data = self.stats()
        text = self.composer.render(
            "admin_stats",
            users=data["users_total"],
            joined=data["users_joined_30d"],
            banned=data["users_banned"],
            pending=data["products"]["pending"],
            approved=data["products"]["approved"],
            rejected=data["products"]["rejected"],
            chats=data["active_chats"],
            admins=data["admins"],
        )
        return Screen(text, [self._footer()])

    # ---- panel actions ----

    async def review_pending(self, admin_id: int, chat_id: int) -> int:
        return await self.moderation.show_pending(admin_id, chat_id)

    async def set_banned(
        self, admin_id: int, user_id: int, banned: bool, chat_id: int, origin: MessageRef | None = None
    ) -> Screen:
        self.require_admin(admin_id)
        if banned and self.is_admin(user_id):
            raise ValidationError(f"Admin {admin_id} tried to ban admin {user_id}", user_message="Administrators cannot be banned.")
        user = await self.store.set_banned(user_id, banned)
        logger.info(f"Admin {admin_id} {'banned' if banned else 'unbanned'} user {user_id}")
        emit("INFO", EVENT_USER_BANNED if banned else EVENT_USER_UNBANNED, user_id=user_id, payload={"admin_id": admin_id})
        await deliver(self.gateway, user.id, self.composer.render("user_banned" if banned else "user_unbanned"))
        return await self.refresh(admin_id, chat_id, origin)

    async def prompt_direct_message(self, admin_id: int, user_id: int, chat_id: int) -> None:
        self.require_admin(admin_id)
        user = self.store.require_user(user_id)
        await self.conversations.begin(admin_id, PHASE_ADMIN_DIRECT_MESSAGE, {"target_id": user.id})
        await self.gateway.send(chat_id, self.composer.render("admin_ask_direct_message", name=user.display_name))

    async def prompt_setting(self, admin_id: int, key: str, chat_id: int, origin: MessageRef | None = None) -> None:
        self.require_admin(admin_id)
        if key == "maintenance":
            enabled = await self.runtime.toggle_maintenance()
            emit("INFO", EVENT_SETTING_CHANGED, user_id=admin_id, payload={"key": "maintenance", "value": enabled})
            await self.refresh(admin_id, chat_id, origin)
            return
        if key not in SETTING_PROMPTS:
            raise ValidationError(f"Unknown setting {key!r}")
        phase, prompt = SETTING_PROMPTS[key]
        await self.conversations.begin(admin_id, phase, {})
        await self.gateway.send(chat_id, self.composer.render(prompt))

    async def handle_text(self, admin_id: int, chat_id: int, text: str) -> None:
        """Consume the admin's next text for a pending prompt (direct message, settings)."""
        self.require_admin(admin_id)
        phase = self.conversations.phase_of(admin_id)
        value = (text or "").strip()
        if not value:
            raise ValidationError("Empty admin input", user_message="Please send a non-empty value.")

        if phase == PHASE_ADMIN_DIRECT_MESSAGE:
            state = await self.conversations.take(admin_id, phase)
            target_id = int(state.payload["target_id"])
            await self.gateway.send(target_id, self.composer.render("admin_direct_message", text=value))
            await self.gateway.send(chat_id, self.composer.render("admin_direct_message_sent", id=target_id))
            return

        if phase in (PHASE_ADMIN_SET_CHANNEL, PHASE_ADMIN_SET_BOT_USERNAME):
            if not value.startswith("@"):
                raise ValidationError(f"Setting value {value!r} lacks @", user_message="The value must start with @.")
            await self.conversations.take(admin_id, phase)
            if phase == PHASE_ADMIN_SET_CHANNEL:
                await self.runtime.set_channel_id(value)
                key = "channel_id"
            else:
                await self.runtime.set_bot_username(value)
                key = "bot_username"
        elif phase == PHASE_ADMIN_SET_WELCOME:
            await self.conversations.take(admin_id, phase)
            await self.runtime.set_welcome_message(value)
            key = "welcome_message"
        else:
            return

        logger.info(f"Admin {admin_id} changed setting {key}")
        emit("INFO", EVENT_SETTING_CHANGED, user_id=admin_id, payload={"key": key})
        await self.gateway.send(chat_id, self.composer.render("settings_saved"))
        self._current[admin_id] = PanelFrame(PANEL_SETTINGS)
        await self.refresh(admin_id, chat_id)
