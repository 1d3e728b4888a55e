"""
Tests for the buyer/seller chat relay.
"""

import asyncio

import pytest
from sqlalchemy import select

from marketbot.constants.statuses import STATUS_APPROVED
from marketbot.core.errors import NotFoundError, ValidationError
from marketbot.db.models import ChatSessionRecord
from marketbot.services.chat_relay import ChatRelay
from tests.conftest import ADMIN_ID, SECOND_ADMIN_ID
from tests.helpers.factories import make_product, make_user
from tests.helpers.recording_gateway import callback_data

BUYER = 3001
SELLER = 3002
OTHER_BUYER = 3003


async def _approved(bot, title="Bicycle"):
    return await make_product(bot, SELLER, title=title, status=STATUS_APPROVED)


@pytest.mark.asyncio
async def test_buyer_message_reaches_seller_tagged_buyer(bot, gateway):
    await make_user(bot, BUYER)
    product = await _approved(bot)

    session = await bot.relay.open_chat(BUYER, product.id)
    assert bot.relay.session_for(BUYER) is session
    assert bot.relay.session_for(SELLER) is session
    assert bot.relay.session_for_product(product.id) is session

    # Both sides get an End Chat button; admins get a monitor notice
    assert callback_data(gateway.sent(BUYER)[-1]) == ["end_chat"]
    assert callback_data(gateway.sent(SELLER)[-1]) == ["end_chat"]
    assert "Bicycle" in gateway.last_text(ADMIN_ID)
    assert "Bicycle" in gateway.last_text(SECOND_ADMIN_ID)

    assert await bot.relay.relay(BUYER, "is this available?") is True

    relayed = gateway.last_text(SELLER)
    assert "Buyer" in relayed
    assert "Bicycle" in relayed
    assert "is this available?" in relayed
    assert "Delivered" in gateway.last_text(BUYER)

    assert await bot.relay.relay(SELLER, "yes, still available") is True
    assert "Seller" in gateway.last_text(BUYER)
    assert [m.role for m in session.messages] == ["buyer", "seller"]


@pytest.mark.asyncio
async def test_end_chat_unindexes_both_participants(bot, gateway):
    product = await _approved(bot)
    await bot.relay.open_chat(BUYER, product.id)

    ended = await bot.relay.end_chat(SELLER)

    assert ended.ended_at is not None
    assert bot.relay.session_for(BUYER) is None
    assert bot.relay.session_for(SELLER) is None
    assert bot.relay.session_for_product(product.id) is None
    assert "ended" in gateway.last_text(BUYER)
    assert await bot.relay.relay(BUYER, "hello?") is False


@pytest.mark.asyncio
async def test_end_chat_without_session_raises(bot):
    with pytest.raises(NotFoundError):
        await bot.relay.end_chat(BUYER)


@pytest.mark.asyncio
async def test_buyer_cannot_open_second_chat(bot):
    first = await _approved(bot, title="Bicycle")
    second = await make_product(bot, 3010, title="Kettle", status=STATUS_APPROVED)
    await bot.relay.open_chat(BUYER, first.id)

    with pytest.raises(ValidationError) as exc_info:
        await bot.relay.open_chat(BUYER, second.id)

    assert "already have an active chat" in exc_info.value.user_message
    assert bot.relay.session_for(3010) is None


@pytest.mark.asyncio
async def test_busy_seller_is_refused(bot):
    product = await _approved(bot)
    await bot.relay.open_chat(BUYER, product.id)

    with pytest.raises(ValidationError) as exc_info:
        await bot.relay.open_chat(OTHER_BUYER, product.id)

    assert "seller is currently chatting" in exc_info.value.user_message
    assert bot.relay.session_for(OTHER_BUYER) is None


@pytest.mark.asyncio
async def test_concurrent_opens_pair_the_seller_once(bot):
    product = await _approved(bot)

    results = await asyncio.gather(
        bot.relay.open_chat(BUYER, product.id),
        bot.relay.open_chat(OTHER_BUYER, product.id),
        return_exceptions=True,
    )

    errors = [r for r in results if isinstance(r, ValidationError)]
    assert len(errors) == 1
    assert len(bot.relay.active_sessions()) == 1


@pytest.mark.asyncio
async def test_cannot_contact_own_product(bot):
    product = await _approved(bot)

    with pytest.raises(ValidationError):
        await bot.relay.open_chat(SELLER, product.id)

    assert bot.relay.session_for(SELLER) is None


@pytest.mark.asyncio
async def test_pending_product_cannot_be_contacted(bot):
    product = await make_product(bot, SELLER)

    with pytest.raises(ValidationError):
        await bot.relay.open_chat(BUYER, product.id)


@pytest.mark.asyncio
async def test_unknown_product_raises_not_found(bot):
    with pytest.raises(NotFoundError):
        await bot.relay.open_chat(BUYER, 4040)


@pytest.mark.asyncio
async def test_sessions_are_mirrored_and_rehydrated(bot, db):
    product = await _approved(bot)
    session = await bot.relay.open_chat(BUYER, product.id)
    await bot.relay.relay(BUYER, "hi")

    row = db.execute(select(ChatSessionRecord)).scalar_one()
    assert row.id == session.id
    assert row.is_active is True
    assert row.messages == [{"role": "buyer", "text": "hi", "sent_at": row.messages[0]["sent_at"]}]

    restored = ChatRelay(bot.store, bot.gateway, bot.composer, bot.admin_ids)
    restored.hydrate()
    assert restored.session_for(SELLER).id == session.id

    await bot.relay.end_chat(BUYER)
    fresh = ChatRelay(bot.store, bot.gateway, bot.composer, bot.admin_ids)
    fresh.hydrate()
    assert fresh.active_sessions() == []


@pytest.mark.asyncio
async def test_summary_reports_title_and_message_count(bot):
    product = await _approved(bot, title="Lab coat")
    session = await bot.relay.open_chat(BUYER, product.id)
    await bot.relay.relay(BUYER, "size?")

    summary = bot.relay.summarize(session)

    assert summary["title"] == "Lab coat"
    assert summary["messages"] == 1
    assert summary["buyer_id"] == BUYER
    assert summary["seller_id"] == SELLER
