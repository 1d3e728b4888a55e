"""
Inbound event dispatcher.

Every Telegram update lands here as one independent unit of work. The sender
is registered (create-if-absent), banned users and maintenance mode are
enforced, then the event goes to exactly one handler:

- text: slash commands, then the sender's open conversation state (listing
  wizard, admin prompt, contact/report prompt), then the chat relay, then the
  main menu
- photo: listing wizard
- button press: routed by callback prefix, always answered

MarketBotError subclasses become a reply or a callback toast; anything else is
logged with traceback, recorded as a system event and answered generically.
Nothing propagates to the webhook.
"""

import logging
from typing import TYPE_CHECKING

from marketbot.constants import callbacks as cb
from marketbot.constants.event_types import EVENT_DISPATCH_FAILURE
from marketbot.constants.statuses import (
    ADMIN_TEXT_PHASES,
    PHASE_ADMIN_BROADCAST_TEXT,
    PHASE_CONTACT_ADMIN_MESSAGE,
    PHASE_REPORT_REASON,
    STATUS_APPROVED,
    WIZARD_PHASES,
)
from marketbot.core.errors import MarketBotError, PermissionDeniedError, TransportError, ValidationError
from marketbot.services.admin_nav import PANEL_USER_DETAIL
from marketbot.services.entities import User
from marketbot.services.messaging.delivery import strip_buttons
from marketbot.services.messaging.events import ButtonPress, InboundEvent, PhotoMessage, TextMessage
from marketbot.services.system_event_service import emit

if TYPE_CHECKING:
    from marketbot.services.bot import MarketBot

logger = logging.getLogger(__name__)


def _int_part(parts: list[str], index: int) -> int:
    try:
        return int(parts[index])
    except (IndexError, ValueError):
        raise ValidationError(f"Malformed callback data {parts!r}", user_message="Unknown action.") from None


class Dispatcher:
    def __init__(self, bot: "MarketBot"):
        self.bot = bot
        self._commands = {
            "/start": self._cmd_start,
            "/cancel": self._cmd_cancel,
            "/help": self._cmd_help,
            "/sell": self._cmd_sell,
            "/browse": self._cmd_browse,
            "/myproducts": self._cmd_my_products,
            "/endchat": self._cmd_end_chat,
            "/admin": self._cmd_admin,
        }

    def is_admin(self, user_id: int) -> bool:
        return user_id in self.bot.admin_ids

    async def dispatch(self, event: InboundEvent) -> None:
        sender = event.sender
        user, created = await self.bot.store.register_user(
            sender.id, username=sender.username, first_name=sender.first_name, last_name=sender.last_name
        )
        if created:
            logger.info(f"New user {user.id} via update {event.update_id}")

        toast = None
        try:
            self._check_access(user)
            if isinstance(event, ButtonPress):
                toast = await self._on_button(event, user)
            elif isinstance(event, PhotoMessage):
                await self._on_photo(event, user)
            elif isinstance(event, TextMessage):
                await self._on_text(event, user)
        except MarketBotError as e:
            logger.info(f"Update {event.update_id} from {user.id}: {type(e).__name__}: {e}")
            await self._report(event, e.user_message)
            return
        except Exception as e:
            logger.error(f"Unhandled error dispatching update {event.update_id} from {user.id}: {e}", exc_info=True)
            emit("ERROR", EVENT_DISPATCH_FAILURE, user_id=user.id, payload={"update_id": event.update_id}, exc=e)
            await self._report(event, self.bot.composer.render("generic_error"))
            return

        if isinstance(event, ButtonPress):
            await self._answer(event, toast)

    def _check_access(self, user: User) -> None:
        if user.is_banned:
            raise PermissionDeniedError(f"Banned user {user.id}", user_message=self.bot.composer.render("banned"))
        if self.bot.runtime.maintenance and not self.is_admin(user.id):
            raise MarketBotError(f"Maintenance mode, user {user.id}", user_message=self.bot.composer.render("maintenance"))

    async def _answer(self, event: ButtonPress, toast: str | None, alert: bool = False) -> None:
        try:
            await self.bot.gateway.answer(event.callback_id, toast, alert=alert)
        except TransportError as e:
            logger.info(f"answerCallbackQuery failed for {event.callback_id}: {e}")

    async def _report(self, event: InboundEvent, message: str) -> None:
        if isinstance(event, ButtonPress):
            await self._answer(event, message, alert=True)
            return
        try:
            await self.bot.gateway.send(event.chat_id, message)
        except TransportError as e:
            logger.warning(f"Could not report error to {event.chat_id}: {e}")

    # ---- text ----

    async def _on_text(self, event: TextMessage, user: User) -> None:
        text = event.text.strip()
        if text.startswith("/"):
            command, _, argument = text.partition(" ")
            handler = self._commands.get(command.split("@")[0].lower())
            if handler is not None:
                await handler(event, user, argument.strip())
                return

        phase = self.bot.conversations.phase_of(user.id)
        if phase in WIZARD_PHASES:
            await self.bot.wizard.handle_text(user.id, event.chat_id, event.text)
        elif phase == PHASE_ADMIN_BROADCAST_TEXT:
            await self.bot.broadcast.compose(user.id, event.chat_id, event.text)
        elif phase in ADMIN_TEXT_PHASES:
            await self.bot.navigator.handle_text(user.id, event.chat_id, event.text)
        elif phase in (PHASE_CONTACT_ADMIN_MESSAGE, PHASE_REPORT_REASON):
            await self.bot.storefront.handle_text(user, event.chat_id, event.text)
        elif await self.bot.relay.relay(user.id, event.text):
            return
        else:
            await self.bot.storefront.main_menu(user, event.chat_id)

    async def _cmd_start(self, event: TextMessage, user: User, argument: str) -> None:
        await self.bot.storefront.start(user, event.chat_id, argument)

    async def _cmd_cancel(self, event: TextMessage, user: User, argument: str) -> None:
        if await self.bot.wizard.cancel(user.id, event.chat_id):
            return
        discarded = await self.bot.conversations.clear(user.id)
        key = "cancelled" if discarded else "nothing_to_cancel"
        await self.bot.gateway.send(event.chat_id, self.bot.composer.render(key, user_id=user.id))

    async def _cmd_help(self, event: TextMessage, user: User, argument: str) -> None:
        await self.bot.storefront.help(user.id, event.chat_id)

    async def _cmd_sell(self, event: TextMessage, user: User, argument: str) -> None:
        await self.bot.wizard.start(user.id, event.chat_id)

    async def _cmd_browse(self, event: TextMessage, user: User, argument: str) -> None:
        await self.bot.storefront.browse(user.id, event.chat_id)

    async def _cmd_my_products(self, event: TextMessage, user: User, argument: str) -> None:
        await self.bot.storefront.my_products(user.id, event.chat_id)

    async def _cmd_end_chat(self, event: TextMessage, user: User, argument: str) -> None:
        await self.bot.relay.end_chat(user.id)

    async def _cmd_admin(self, event: TextMessage, user: User, argument: str) -> None:
        await self.bot.navigator.home(user.id, event.chat_id)

    # ---- photos ----

    async def _on_photo(self, event: PhotoMessage, user: User) -> None:
        if self.bot.wizard.is_active(user.id):
            await self.bot.wizard.handle_photo(user.id, event.chat_id, event.file_id)
        elif self.bot.relay.session_for(user.id) is not None:
            await self.bot.gateway.send(event.chat_id, self.bot.composer.render("relay_text_only", user_id=user.id))
        else:
            await self.bot.gateway.send(event.chat_id, self.bot.composer.render("photo_outside_listing", user_id=user.id))

    # ---- buttons ----

    async def _on_button(self, event: ButtonPress, user: User) -> str | None:
        parts = cb.split(event.data)
        head = parts[0]
        bot = self.bot
        chat_id = event.chat_id
        composer = bot.composer

        if head == cb.CB_CATEGORY:
            product = await bot.wizard.handle_category(user.id, chat_id, parts[1] if len(parts) > 1 else "", event.origin)
            return composer.render("toast_submitted") if product else None
        if head == cb.CB_CANCEL_LISTING:
            cancelled = await bot.wizard.cancel(user.id, chat_id, event.origin)
            return composer.render("toast_cancelled") if cancelled else None

        if head in (cb.CB_APPROVE, cb.CB_REJECT):
            product_id = _int_part(parts, 1)
            if head == cb.CB_APPROVE:
                decision = await bot.moderation.approve(product_id, user.id, event.origin)
            else:
                decision = await bot.moderation.reject(product_id, user.id, event.origin)
            if decision.already_decided:
                return composer.render("toast_already_decided", status=decision.product.status)
            return composer.render(
                "toast_approved" if decision.product.status == STATUS_APPROVED else "toast_rejected"
            )

        if head == cb.CB_CONTACT_SELLER:
            await bot.relay.open_chat(user.id, _int_part(parts, 1))
            return composer.render("toast_chat_started")
        if head == cb.CB_END_CHAT:
            await bot.relay.end_chat(user.id, event.origin)
            return composer.render("toast_chat_ended")

        if head == cb.CB_MAIN_MENU:
            await bot.storefront.main_menu(user, chat_id)
        elif head == cb.CB_BROWSE:
            await bot.storefront.browse(user.id, chat_id)
        elif head == cb.CB_SELL:
            await bot.wizard.start(user.id, chat_id)
        elif head == cb.CB_MY_PRODUCTS:
            await bot.storefront.my_products(user.id, chat_id)
        elif head == cb.CB_HELP:
            await bot.storefront.help(user.id, chat_id)
        elif head == cb.CB_CONTACT_ADMIN:
            if len(parts) > 1:
                await bot.storefront.choose_topic(user.id, chat_id, parts[1])
            else:
                await bot.storefront.contact_admin_menu(chat_id)
        elif head == cb.CB_REPORT_PRODUCT:
            await bot.storefront.begin_report(user.id, chat_id, _int_part(parts, 1))
        elif head == cb.CB_ADMIN_NAV:
            await self._on_admin_nav(parts, user, event)
        elif head == cb.CB_ADMIN_USER:
            await self._on_admin_user(parts, user, event)
        elif head == cb.CB_ADMIN_SETTING:
            await bot.navigator.prompt_setting(user.id, parts[1] if len(parts) > 1 else "", chat_id, event.origin)
        elif head == cb.CB_BROADCAST:
            return await self._on_broadcast(parts, user, event)
        else:
            logger.info(f"Unknown callback data from {user.id}: {event.data!r}")
            return composer.render("toast_unknown")
        return None

    async def _on_admin_nav(self, parts: list[str], user: User, event: ButtonPress) -> None:
        navigator = self.bot.navigator
        action = parts[1] if len(parts) > 1 else "home"
        if action == "nav" and len(parts) > 2:
            await navigator.open(user.id, parts[2], event.chat_id, event.origin)
        elif action == "back":
            await navigator.back(user.id, event.chat_id, event.origin)
        elif action == "page" and len(parts) > 3:
            await navigator.goto_page(user.id, parts[2], _int_part(parts, 3), event.chat_id, event.origin)
        elif action == "review":
            await navigator.review_pending(user.id, event.chat_id)
        else:
            await navigator.home(user.id, event.chat_id, event.origin)

    async def _on_admin_user(self, parts: list[str], user: User, event: ButtonPress) -> None:
        navigator = self.bot.navigator
        action = parts[1] if len(parts) > 1 else ""
        target_id = _int_part(parts, 2)
        if action == "view":
            await navigator.open(user.id, PANEL_USER_DETAIL, event.chat_id, event.origin, subject=target_id)
        elif action in ("ban", "unban"):
            await navigator.set_banned(user.id, target_id, action == "ban", event.chat_id, event.origin)
        elif action == "msg":
            await navigator.prompt_direct_message(user.id, target_id, event.chat_id)
        else:
            raise ValidationError(f"Unknown user action {action!r}", user_message="Unknown action.")

    async def _on_broadcast(self, parts: list[str], user: User, event: ButtonPress) -> str | None:
        broadcast = self.bot.broadcast
        composer = self.bot.composer
        action = parts[1] if len(parts) > 1 else ""
        argument = parts[2] if len(parts) > 2 else ""
        if action == "scope":
            await broadcast.begin_compose(user.id, event.chat_id, argument)
            return None
        if action == "confirm":
            await broadcast.confirm(argument, user.id, event.chat_id)
            await self._strip(event)
            return composer.render("toast_broadcast_started")
        if action == "cancel":
            await broadcast.cancel(argument, user.id)
            await self._strip(event)
            return composer.render("toast_broadcast_cancelled")
        if action == "stop":
            broadcast.stop(argument, user.id)
            return composer.render("toast_broadcast_stopping")
        raise ValidationError(f"Unknown broadcast action {action!r}", user_message="Unknown action.")

    async def _strip(self, event: ButtonPress) -> None:
        await strip_buttons(self.bot.gateway, event.origin)
