"""
Tests for event dispatch: access checks, routing, error replies, toasts.
"""

import asyncio
from unittest.mock import patch

import pytest
from sqlalchemy import select

from marketbot.constants.event_types import EVENT_DISPATCH_FAILURE
from marketbot.constants.statuses import (
    PHASE_AWAITING_IMAGE,
    PHASE_AWAITING_PRICE,
    PHASE_REPORT_REASON,
    STATUS_APPROVED,
    STATUS_PENDING,
)
from marketbot.db.models import SystemEvent
from tests.conftest import ADMIN_ID, SECOND_ADMIN_ID
from tests.helpers.factories import make_product, make_user
from tests.helpers.updates import button_event, photo_event, text_event

USER = 7001
BUYER = 7002


async def _dispatch(bot, event):
    await bot.dispatcher.dispatch(event)


@pytest.mark.asyncio
async def test_first_message_registers_sender(bot):
    await _dispatch(bot, text_event(USER, "hello", first_name="Liya"))

    user = bot.store.get_user(USER)
    assert user is not None
    assert user.first_name == "Liya"


@pytest.mark.asyncio
async def test_plain_text_shows_main_menu(bot, gateway):
    await _dispatch(bot, text_event(USER, "hello", first_name="Liya"))

    menu = gateway.sent(USER)[-1]
    assert "Liya" in menu["text"]
    assert menu["reply_markup"]["inline_keyboard"]


@pytest.mark.asyncio
async def test_listing_flow_through_dispatch(bot, gateway):
    await _dispatch(bot, text_event(USER, "/sell"))
    assert bot.conversations.phase_of(USER) == PHASE_AWAITING_IMAGE

    await _dispatch(bot, photo_event(USER, "AgACAgDeskPhoto"))
    await _dispatch(bot, text_event(USER, "Study desk"))
    await _dispatch(bot, text_event(USER, "free please"))

    # Invalid price is reported and the wizard stays put
    assert bot.conversations.phase_of(USER) == PHASE_AWAITING_PRICE
    assert "valid price" in gateway.last_text(USER)

    await _dispatch(bot, text_event(USER, "800"))
    await _dispatch(bot, text_event(USER, "/skip"))
    await _dispatch(bot, button_event(USER, "cat:5"))

    products = bot.store.list_products(seller_id=USER)
    assert len(products) == 1
    assert products[0].status == STATUS_PENDING
    assert products[0].price == 800
    assert gateway.answers()[-1]["text"] == "Submitted for review"


@pytest.mark.asyncio
async def test_approve_button_answers_with_toast(bot, gateway):
    product = await make_product(bot, USER)

    await _dispatch(bot, button_event(ADMIN_ID, f"approve:{product.id}", has_media=True))
    await _dispatch(bot, button_event(SECOND_ADMIN_ID, f"reject:{product.id}", has_media=True))

    answers = gateway.answers()
    assert answers[0]["text"] == "Approved"
    assert answers[1]["text"] == "Already decided (approved)"
    assert product.status == STATUS_APPROVED


@pytest.mark.asyncio
async def test_non_admin_approve_is_refused_with_alert(bot, gateway):
    product = await make_product(bot, USER)

    await _dispatch(bot, button_event(BUYER, f"approve:{product.id}"))

    answer = gateway.answers()[-1]
    assert answer["show_alert"] is True
    assert product.status == STATUS_PENDING


@pytest.mark.asyncio
async def test_chat_relay_through_dispatch(bot, gateway):
    product = await make_product(bot, USER, title="Bicycle", status=STATUS_APPROVED)

    await _dispatch(bot, button_event(BUYER, f"contact:{product.id}"))
    await _dispatch(bot, text_event(BUYER, "is this available?"))

    relayed = gateway.last_text(USER)
    assert "Buyer" in relayed and "Bicycle" in relayed and "is this available?" in relayed

    await _dispatch(bot, text_event(USER, "/endchat"))
    assert bot.relay.session_for(BUYER) is None

    # After the chat ends, free text falls through to the menu again
    gateway.reset()
    await _dispatch(bot, text_event(BUYER, "still there?"))
    assert gateway.sent(USER) == []


@pytest.mark.asyncio
async def test_photo_during_chat_is_not_relayed(bot, gateway):
    product = await make_product(bot, USER, status=STATUS_APPROVED)
    await bot.relay.open_chat(BUYER, product.id)
    gateway.reset()

    await _dispatch(bot, photo_event(BUYER))

    assert "Only text" in gateway.last_text(BUYER)
    assert gateway.sent(USER) == []


@pytest.mark.asyncio
async def test_photo_outside_listing_points_to_sell(bot, gateway):
    await _dispatch(bot, photo_event(USER))
    assert "/sell" in gateway.last_text(USER)


@pytest.mark.asyncio
async def test_banned_user_is_refused(bot, gateway):
    await make_user(bot, USER)
    await bot.store.set_banned(USER, True)

    await _dispatch(bot, text_event(USER, "/sell"))

    assert bot.conversations.phase_of(USER) is None
    assert "banned" in gateway.last_text(USER)


@pytest.mark.asyncio
async def test_banned_user_button_gets_alert(bot, gateway):
    await make_user(bot, USER)
    await bot.store.set_banned(USER, True)

    await _dispatch(bot, button_event(USER, "browse"))

    answer = gateway.answers()[-1]
    assert "banned" in answer["text"]
    assert answer["show_alert"] is True


@pytest.mark.asyncio
async def test_maintenance_blocks_users_but_not_admins(bot, gateway):
    await bot.runtime.toggle_maintenance()

    await _dispatch(bot, text_event(USER, "/browse"))
    assert "maintenance" in gateway.last_text(USER)

    await _dispatch(bot, text_event(ADMIN_ID, "/admin"))
    assert "maintenance" not in gateway.last_text(ADMIN_ID)


@pytest.mark.asyncio
async def test_cancel_command(bot, gateway):
    await _dispatch(bot, text_event(USER, "/cancel"))
    assert "nothing to cancel" in gateway.last_text(USER)

    product = await make_product(bot, 7010, status=STATUS_APPROVED)
    await _dispatch(bot, button_event(USER, f"report:{product.id}"))
    assert bot.conversations.phase_of(USER) == PHASE_REPORT_REASON

    await _dispatch(bot, text_event(USER, "/cancel"))
    assert bot.conversations.phase_of(USER) is None
    assert gateway.last_text(USER) == "Cancelled."


@pytest.mark.asyncio
async def test_cancel_command_discards_listing(bot, gateway):
    await _dispatch(bot, text_event(USER, "/sell"))
    await _dispatch(bot, text_event(USER, "/cancel"))

    assert bot.conversations.phase_of(USER) is None
    assert "Listing cancelled" in gateway.last_text(USER)


@pytest.mark.asyncio
async def test_unknown_button_gets_toast(bot, gateway):
    await _dispatch(bot, button_event(USER, "mystery:1"))

    assert gateway.answers()[-1]["text"] == "This button is no longer active"


@pytest.mark.asyncio
async def test_malformed_callback_id_is_reported(bot, gateway):
    await _dispatch(bot, button_event(ADMIN_ID, "approve:abc"))

    answer = gateway.answers()[-1]
    assert answer["text"] == "Unknown action."
    assert answer["show_alert"] is True


@pytest.mark.asyncio
async def test_unexpected_error_is_recorded_and_answered_generically(bot, gateway, db):
    with patch.object(bot.storefront, "browse", side_effect=RuntimeError("boom")):
        await _dispatch(bot, text_event(USER, "/browse"))

    assert "Something went wrong" in gateway.last_text(USER)
    events = db.execute(select(SystemEvent).where(SystemEvent.event_type == EVENT_DISPATCH_FAILURE)).scalars().all()
    assert len(events) == 1
    assert events[0].user_id == USER


@pytest.mark.asyncio
async def test_admin_navigation_buttons(bot, gateway):
    await _dispatch(bot, text_event(ADMIN_ID, "/admin"))
    await _dispatch(bot, button_event(ADMIN_ID, "adm:nav:settings"))
    assert bot.navigator.current(ADMIN_ID).panel == "settings"

    await _dispatch(bot, button_event(ADMIN_ID, "adm:back"))
    assert bot.navigator.current(ADMIN_ID).panel == "root"


@pytest.mark.asyncio
async def test_admin_setting_text_routed_to_navigator(bot, gateway):
    await _dispatch(bot, button_event(ADMIN_ID, "set:channel"))
    await _dispatch(bot, text_event(ADMIN_ID, "@newchannel"))

    assert bot.runtime.channel_id == "@newchannel"


@pytest.mark.asyncio
async def test_broadcast_through_buttons(bot, gateway):
    await make_user(bot, USER)
    await make_user(bot, BUYER)

    await _dispatch(bot, button_event(ADMIN_ID, "bc:scope:all"))
    await _dispatch(bot, text_event(ADMIN_ID, "Exam week sale!"))
    job = next(iter(bot.broadcast._jobs.values()))

    await _dispatch(bot, button_event(ADMIN_ID, f"bc:confirm:{job.token}"))
    await asyncio.gather(*bot.broadcast._tasks.values())

    # The admin registered by pressing buttons is a recipient too
    assert sorted(job.recipients) == sorted([ADMIN_ID, USER, BUYER])
    assert job.sent == 3
    assert "Exam week sale!" in gateway.last_text(USER)
    assert gateway.answers()[-1]["text"] == "Broadcast started"
