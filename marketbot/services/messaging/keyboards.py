"""
Inline keyboard construction.

Layout is not significant to the bot's behavior; only the callback data each
button carries is.
"""

from dataclasses import dataclass

from marketbot.constants import callbacks as cb
from marketbot.constants.catalog import CATEGORIES, CONTACT_TOPICS


@dataclass(frozen=True)
class Button:
    text: str
    data: str | None = None
    url: str | None = None

    def to_dict(self) -> dict:
        if self.url:
            return {"text": self.text, "url": self.url}
        return {"text": self.text, "callback_data": self.data or self.text}


Keyboard = list[list[Button]]


def to_reply_markup(keyboard: Keyboard | None) -> dict:
    """Telegram reply_markup; an empty keyboard removes existing buttons."""
    return {"inline_keyboard": [[b.to_dict() for b in row] for row in keyboard or []]}


def chunk(buttons: list[Button], per_row: int = 2) -> Keyboard:
    return [buttons[i : i + per_row] for i in range(0, len(buttons), per_row)]


def category_keyboard() -> Keyboard:
    rows = chunk([Button(name, cb.build(cb.CB_CATEGORY, i)) for i, name in enumerate(CATEGORIES)])
    rows.append([Button("Cancel", cb.CB_CANCEL_LISTING)])
    return rows


def moderation_keyboard(product_id: int, seller_id: int) -> Keyboard:
    return [
        [
            Button("Approve", cb.build(cb.CB_APPROVE, product_id)),
            Button("Reject", cb.build(cb.CB_REJECT, product_id)),
        ],
        [
            Button("Message Seller", cb.build(cb.CB_ADMIN_USER, "msg", seller_id)),
            Button("View Seller", cb.build(cb.CB_ADMIN_USER, "view", seller_id)),
        ],
    ]


def contact_seller_keyboard(product_id: int) -> Keyboard:
    return [
        [Button("Contact Seller", cb.build(cb.CB_CONTACT_SELLER, product_id))],
        [Button("Report", cb.build(cb.CB_REPORT_PRODUCT, product_id))],
    ]


def channel_post_keyboard(contact_url: str, sell_url: str) -> Keyboard:
    return [[Button("Contact Seller", url=contact_url)], [Button("Sell Your Item", url=sell_url)]]


def end_chat_keyboard() -> Keyboard:
    return [[Button("End Chat", cb.CB_END_CHAT)]]


def main_menu_keyboard(is_admin: bool = False) -> Keyboard:
    rows = [
        [Button("Browse", cb.CB_BROWSE), Button("Sell Item", cb.CB_SELL)],
        [Button("My Products", cb.CB_MY_PRODUCTS), Button("Contact Admin", cb.CB_CONTACT_ADMIN)],
        [Button("Help", cb.CB_HELP)],
    ]
    if is_admin:
        rows.append([Button("Admin Panel", cb.build(cb.CB_ADMIN_NAV, "home"))])
    return rows


def contact_admin_keyboard() -> Keyboard:
    rows = chunk([Button(label, cb.build(cb.CB_CONTACT_ADMIN, key)) for key, label in CONTACT_TOPICS.items()])
    rows.append([Button("Main Menu", cb.CB_MAIN_MENU)])
    return rows


def admin_inbox_keyboard(user_id: int) -> Keyboard:
    """Buttons under a user's message forwarded to admins."""
    return [
        [
            Button("Reply", cb.build(cb.CB_ADMIN_USER, "msg", user_id)),
            Button("View User", cb.build(cb.CB_ADMIN_USER, "view", user_id)),
        ]
    ]
