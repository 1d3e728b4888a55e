"""
Tests for the moderation queue: approve/reject compare-and-set, publication, notices.
"""

import asyncio

import pytest
from sqlalchemy import select

from marketbot.constants.event_types import EVENT_CHANNEL_PUBLISH_FAILURE, EVENT_PRODUCT_APPROVED
from marketbot.constants.statuses import STATUS_APPROVED, STATUS_PENDING, STATUS_REJECTED
from marketbot.core.errors import NotFoundError, PermissionDeniedError
from marketbot.db.models import Product as ProductRow
from marketbot.db.models import SystemEvent
from marketbot.services.messaging.events import MessageRef
from marketbot.services.metrics import get_metrics
from tests.conftest import ADMIN_ID, SECOND_ADMIN_ID
from tests.helpers.factories import make_product, make_user
from tests.helpers.recording_gateway import button_texts, callback_data

SELLER = 2001
CHANNEL = "@jumarket"


def _channel_posts(gateway):
    return gateway.sent(CHANNEL)


@pytest.mark.asyncio
async def test_approve_publishes_and_notifies_seller(bot, gateway):
    await make_user(bot, ADMIN_ID, first_name="Admin")
    product = await make_product(bot, SELLER, title="Graphing Calculator")

    decision = await bot.moderation.approve(product.id, ADMIN_ID)

    assert decision.applied is True
    assert decision.published is True
    assert product.status == STATUS_APPROVED
    assert product.moderator_id == ADMIN_ID
    assert product.decided_at is not None

    posts = _channel_posts(gateway)
    assert len(posts) == 1
    assert "Graphing Calculator" in posts[0]["caption"]
    urls = [b["url"] for row in posts[0]["reply_markup"]["inline_keyboard"] for b in row]
    assert f"https://t.me/jumarket_bot?start=contact_{product.id}" in urls
    assert "https://t.me/jumarket_bot?start=sell" in urls

    assert "approved" in gateway.last_text(SELLER)


@pytest.mark.asyncio
async def test_reject_notifies_seller_without_publishing(bot, gateway):
    product = await make_product(bot, SELLER)

    decision = await bot.moderation.reject(product.id, ADMIN_ID)

    assert decision.applied is True
    assert product.status == STATUS_REJECTED
    assert _channel_posts(gateway) == []
    assert "not approved" in gateway.last_text(SELLER)


@pytest.mark.asyncio
async def test_second_decision_reports_already_decided(bot, gateway):
    product = await make_product(bot, SELLER)

    first = await bot.moderation.approve(product.id, ADMIN_ID)
    second = await bot.moderation.reject(product.id, SECOND_ADMIN_ID)

    assert first.applied is True
    assert second.already_decided is True
    assert second.product.status == STATUS_APPROVED
    assert len(_channel_posts(gateway)) == 1
    assert len(gateway.sent(SELLER)) == 1
    assert get_metrics()["counters"]["atomic_update_failed.transition_product"] == 1


@pytest.mark.asyncio
async def test_concurrent_approvals_take_effect_once(bot, gateway, db):
    product = await make_product(bot, SELLER)

    decisions = await asyncio.gather(
        bot.moderation.approve(product.id, ADMIN_ID),
        bot.moderation.approve(product.id, SECOND_ADMIN_ID),
    )

    assert sorted(d.applied for d in decisions) == [False, True]
    assert len(_channel_posts(gateway)) == 1
    assert len(gateway.sent(SELLER)) == 1

    approved_events = db.execute(
        select(SystemEvent).where(SystemEvent.event_type == EVENT_PRODUCT_APPROVED)
    ).scalars().all()
    assert len(approved_events) == 1


@pytest.mark.asyncio
async def test_database_status_wins_over_stale_cache(bot, db):
    product = await make_product(bot, SELLER)
    # Another process already decided this product
    row = db.get(ProductRow, product.id)
    row.status = STATUS_REJECTED
    db.commit()

    decision = await bot.moderation.approve(product.id, ADMIN_ID)

    assert decision.already_decided is True
    assert product.status == STATUS_REJECTED


@pytest.mark.asyncio
async def test_non_admin_cannot_decide(bot):
    product = await make_product(bot, SELLER)

    with pytest.raises(PermissionDeniedError):
        await bot.moderation.approve(product.id, SELLER)

    assert product.status == STATUS_PENDING


@pytest.mark.asyncio
async def test_unknown_product_raises_not_found(bot):
    with pytest.raises(NotFoundError):
        await bot.moderation.approve(999, ADMIN_ID)


@pytest.mark.asyncio
async def test_channel_failure_keeps_approval(bot, gateway, db):
    gateway.fail_chat_ids.add(CHANNEL)
    product = await make_product(bot, SELLER)

    decision = await bot.moderation.approve(product.id, ADMIN_ID)

    assert decision.applied is True
    assert decision.published is False
    assert product.status == STATUS_APPROVED
    events = db.execute(
        select(SystemEvent).where(SystemEvent.event_type == EVENT_CHANNEL_PUBLISH_FAILURE)
    ).scalars().all()
    assert len(events) == 1
    assert events[0].product_id == product.id


@pytest.mark.asyncio
async def test_decision_rewrites_the_card_without_buttons(bot, gateway):
    product = await make_product(bot, SELLER)
    origin = MessageRef(chat_id=ADMIN_ID, message_id=55, has_media=True)

    await bot.moderation.approve(product.id, ADMIN_ID, origin)

    edits = gateway.calls_for("editMessageCaption")
    assert len(edits) == 1
    assert edits[0]["message_id"] == 55
    assert "APPROVED" in edits[0]["caption"]
    assert edits[0]["reply_markup"] == {"inline_keyboard": []}


@pytest.mark.asyncio
async def test_show_pending_lists_oldest_first(bot, gateway):
    first = await make_product(bot, SELLER, title="First")
    second = await make_product(bot, SELLER, title="Second")
    await make_product(bot, SELLER, title="Done", status=STATUS_APPROVED)

    shown = await bot.moderation.show_pending(ADMIN_ID, ADMIN_ID)

    assert shown == 2
    texts = gateway.texts(ADMIN_ID)
    assert "2" in texts[0]
    assert "First" in texts[1] and f"#{first.id}" in texts[1]
    assert "Second" in texts[2] and f"#{second.id}" in texts[2]


@pytest.mark.asyncio
async def test_show_pending_empty(bot, gateway):
    assert await bot.moderation.show_pending(ADMIN_ID, ADMIN_ID) == 0
    assert "No products" in gateway.last_text(ADMIN_ID)


@pytest.mark.asyncio
async def test_submission_card_offers_seller_contact(bot, gateway):
    product = await make_product(bot, SELLER, title="Mini Fridge")

    await bot.moderation.submit(product)

    for admin_id in (ADMIN_ID, SECOND_ADMIN_ID):
        card = gateway.sent(admin_id)[-1]
        assert callback_data(card) == [
            f"approve:{product.id}",
            f"reject:{product.id}",
            f"usr:msg:{SELLER}",
            f"usr:view:{SELLER}",
        ]
        assert button_texts(card) == ["Approve", "Reject", "Message Seller", "View Seller"]
