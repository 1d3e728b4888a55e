"""
Tests for per-user conversation state (compare-and-set transitions, mirroring).
"""

import asyncio

import pytest
from sqlalchemy import select

from marketbot.core.errors import ConcurrencyConflict
from marketbot.db.models import ConversationStateRecord
from marketbot.services.conversation_store import ConversationStore
from marketbot.services.metrics import get_metrics
from marketbot.services.store.entity_store import EntityStore


@pytest.fixture
def conversations(db):
    return ConversationStore(EntityStore())


@pytest.mark.asyncio
async def test_begin_overwrites_existing_state(conversations):
    await conversations.begin(1, "awaiting_title", {"images": ["a"]})
    await conversations.begin(1, "report_reason", {"product_id": 3})

    state = conversations.get(1)
    assert state.phase == "report_reason"
    assert state.payload == {"product_id": 3}


@pytest.mark.asyncio
async def test_transition_merges_payload(conversations):
    await conversations.begin(1, "a", {"x": 1})
    state = await conversations.transition(1, "a", "b", {"y": 2})
    assert state.phase == "b"
    assert state.payload == {"x": 1, "y": 2}


@pytest.mark.asyncio
async def test_stale_transition_raises_conflict(conversations):
    await conversations.begin(1, "a")
    await conversations.transition(1, "a", "b")

    with pytest.raises(ConcurrencyConflict):
        await conversations.transition(1, "a", "c")

    assert conversations.phase_of(1) == "b"
    assert get_metrics()["counters"]["atomic_update_failed.conversation_transition"] == 1


@pytest.mark.asyncio
async def test_concurrent_takes_only_one_wins(conversations):
    await conversations.begin(7, "awaiting_category", {"title": "Lamp"})

    results = await asyncio.gather(
        conversations.take(7, "awaiting_category"),
        conversations.take(7, "awaiting_category"),
        return_exceptions=True,
    )

    winners = [r for r in results if not isinstance(r, BaseException)]
    losers = [r for r in results if isinstance(r, ConcurrencyConflict)]
    assert len(winners) == 1
    assert winners[0].payload == {"title": "Lamp"}
    assert len(losers) == 1
    assert conversations.get(7) is None


@pytest.mark.asyncio
async def test_clear_returns_discarded_state(conversations):
    assert await conversations.clear(5) is None
    await conversations.begin(5, "a")
    discarded = await conversations.clear(5)
    assert discarded.phase == "a"
    assert conversations.phase_of(5) is None


@pytest.mark.asyncio
async def test_states_are_mirrored_and_hydrated(db, conversations):
    await conversations.begin(11, "awaiting_price", {"title": "Chair"})
    await conversations.begin(12, "awaiting_title", {})
    await conversations.take(12, "awaiting_title")

    rows = db.execute(select(ConversationStateRecord)).scalars().all()
    assert [(r.user_id, r.phase) for r in rows] == [(11, "awaiting_price")]

    restored = ConversationStore(EntityStore())
    restored.hydrate()
    assert restored.get(11).payload == {"title": "Chair"}
    assert restored.get(12) is None
