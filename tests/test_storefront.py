"""
Tests for /start deep links, browsing, my products, help and contact-admin.
"""

import pytest
from sqlalchemy import select

from marketbot.constants.event_types import EVENT_PRODUCT_REPORTED
from marketbot.constants.statuses import (
    PHASE_AWAITING_IMAGE,
    PHASE_CONTACT_ADMIN_MESSAGE,
    STATUS_APPROVED,
    STATUS_REJECTED,
)
from marketbot.core.errors import NotFoundError, ValidationError
from marketbot.db.models import SystemEvent
from tests.conftest import ADMIN_ID, SECOND_ADMIN_ID
from tests.helpers.factories import make_product, make_user
from tests.helpers.recording_gateway import button_texts, callback_data

USER = 8001
SELLER = 8002


@pytest.mark.asyncio
async def test_start_without_payload_sends_welcome(bot, gateway):
    user = await make_user(bot, USER, first_name="Hana")

    await bot.storefront.start(user, USER)

    welcome = gateway.sent(USER)[-1]
    assert "Hana" in welcome["text"]
    assert "@jumarket" in welcome["text"]
    assert "Admin Panel" not in button_texts(welcome)


@pytest.mark.asyncio
async def test_admin_menu_has_admin_button(bot, gateway):
    admin = await make_user(bot, ADMIN_ID, first_name="Admin")

    await bot.storefront.main_menu(admin, ADMIN_ID)

    assert "adm:home" in callback_data(gateway.sent(ADMIN_ID)[-1])


@pytest.mark.asyncio
async def test_start_sell_deep_link_opens_wizard(bot):
    user = await make_user(bot, USER)

    await bot.storefront.start(user, USER, "sell")

    assert bot.conversations.phase_of(USER) == PHASE_AWAITING_IMAGE


@pytest.mark.asyncio
async def test_start_contact_deep_link_opens_chat(bot):
    user = await make_user(bot, USER)
    product = await make_product(bot, SELLER, status=STATUS_APPROVED)

    await bot.storefront.start(user, USER, f"contact_{product.id}")

    assert bot.relay.session_for(USER).seller_id == SELLER


@pytest.mark.asyncio
async def test_start_product_deep_link_shows_card(bot, gateway):
    user = await make_user(bot, USER)
    product = await make_product(bot, SELLER, title="Microscope", status=STATUS_APPROVED)

    await bot.storefront.start(user, USER, f"product_{product.id}")

    card = gateway.sent(USER)[-1]
    assert "Microscope" in card["caption"]
    assert f"contact:{product.id}" in callback_data(card)


@pytest.mark.asyncio
async def test_deep_link_to_rejected_or_bad_product(bot):
    user = await make_user(bot, USER)
    product = await make_product(bot, SELLER, status=STATUS_REJECTED)

    with pytest.raises(NotFoundError):
        await bot.storefront.start(user, USER, f"product_{product.id}")
    with pytest.raises(NotFoundError):
        await bot.storefront.start(user, USER, "product_abc")


@pytest.mark.asyncio
async def test_browse_lists_latest_approved(bot, gateway):
    await make_product(bot, SELLER, title="Pending one")
    await make_product(bot, SELLER, title="Old lamp", status=STATUS_APPROVED)
    await make_product(bot, SELLER, title="New kettle", status=STATUS_APPROVED)
    own = await make_product(bot, USER, title="My chair", status=STATUS_APPROVED)

    shown = await bot.storefront.browse(USER, USER)

    assert shown == 3
    texts = gateway.texts(USER)
    assert "3" in texts[0]
    assert "My chair" in texts[1]
    assert "New kettle" in texts[2]
    assert "Old lamp" in texts[3]
    assert all("Pending one" not in t for t in texts)
    # No contact button on the user's own listing
    own_card = gateway.sent(USER)[1]
    assert f"contact:{own.id}" not in callback_data(own_card)


@pytest.mark.asyncio
async def test_browse_respects_limit(bot, gateway):
    for i in range(12):
        await make_product(bot, SELLER, title=f"Item {i}", status=STATUS_APPROVED)

    assert await bot.storefront.browse(USER, USER) == 10


@pytest.mark.asyncio
async def test_browse_empty(bot, gateway):
    assert await bot.storefront.browse(USER, USER) == 0
    assert "No products" in gateway.last_text(USER)


@pytest.mark.asyncio
async def test_my_products_shows_every_status(bot, gateway):
    await make_product(bot, SELLER, title="Lamp", price=1200)
    await make_product(bot, SELLER, title="Desk", status=STATUS_REJECTED)

    assert await bot.storefront.my_products(SELLER, SELLER) == 2

    text = gateway.last_text(SELLER)
    assert "Lamp - 1,200 ETB (pending)" in text
    assert "Desk" in text and "(rejected)" in text


@pytest.mark.asyncio
async def test_help_adds_admin_section_for_admins(bot, gateway):
    await bot.storefront.help(USER, USER)
    await bot.storefront.help(ADMIN_ID, ADMIN_ID)

    assert "/admin" not in gateway.last_text(USER)
    assert "/admin" in gateway.last_text(ADMIN_ID)


@pytest.mark.asyncio
async def test_contact_admin_forwards_to_every_admin(bot, gateway):
    user = await make_user(bot, USER, first_name="Hana")

    await bot.storefront.choose_topic(USER, USER, "give_suggestion")
    assert bot.conversations.phase_of(USER) == PHASE_CONTACT_ADMIN_MESSAGE

    await bot.storefront.handle_text(user, USER, "Please add a Furniture category")

    for admin_id in (ADMIN_ID, SECOND_ADMIN_ID):
        text = gateway.last_text(admin_id)
        assert "Please add a Furniture category" in text
        assert "Hana" in text
    assert "Reference" in gateway.last_text(USER)
    assert bot.conversations.phase_of(USER) is None


@pytest.mark.asyncio
async def test_unknown_contact_topic_rejected(bot):
    with pytest.raises(ValidationError):
        await bot.storefront.choose_topic(USER, USER, "complaints")


@pytest.mark.asyncio
async def test_report_product_notifies_admins_and_records_event(bot, gateway, db):
    user = await make_user(bot, USER)
    product = await make_product(bot, SELLER, title="Suspicious phone", status=STATUS_APPROVED)

    await bot.storefront.begin_report(USER, USER, product.id)
    await bot.storefront.handle_text(user, USER, "Looks stolen")

    report = gateway.last_text(ADMIN_ID)
    assert "Suspicious phone" in report
    assert "Looks stolen" in report
    events = db.execute(select(SystemEvent).where(SystemEvent.event_type == EVENT_PRODUCT_REPORTED)).scalars().all()
    assert [e.product_id for e in events] == [product.id]


@pytest.mark.asyncio
async def test_empty_contact_message_keeps_prompt(bot):
    user = await make_user(bot, USER)
    await bot.storefront.choose_topic(USER, USER, "urgent_help")

    with pytest.raises(ValidationError):
        await bot.storefront.handle_text(user, USER, "   ")

    assert bot.conversations.phase_of(USER) == PHASE_CONTACT_ADMIN_MESSAGE
