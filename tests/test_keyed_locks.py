"""
Tests for per-key asyncio locks.
"""

import asyncio

import pytest

from marketbot.services.store.locks import KeyedLocks


@pytest.mark.asyncio
async def test_same_key_is_serialized():
    locks = KeyedLocks()
    order = []

    async def worker(name: str):
        async with locks.hold(("product", 1)):
            order.append(f"{name}-in")
            await asyncio.sleep(0)
            order.append(f"{name}-out")

    await asyncio.gather(worker("a"), worker("b"))

    assert order == ["a-in", "a-out", "b-in", "b-out"]


@pytest.mark.asyncio
async def test_different_keys_interleave():
    locks = KeyedLocks()
    order = []

    async def worker(key: int):
        async with locks.hold(("user", key)):
            order.append(f"{key}-in")
            await asyncio.sleep(0)
            order.append(f"{key}-out")

    await asyncio.gather(worker(1), worker(2))

    assert order[:2] == ["1-in", "2-in"]


@pytest.mark.asyncio
async def test_pair_in_opposite_order_does_not_deadlock():
    locks = KeyedLocks()

    async def pair(first: int, second: int):
        async with locks.hold(("user", first), ("user", second)):
            await asyncio.sleep(0)

    await asyncio.wait_for(asyncio.gather(pair(1, 2), pair(2, 1)), timeout=1)


@pytest.mark.asyncio
async def test_unused_locks_are_dropped():
    locks = KeyedLocks()

    async with locks.hold("a", "b"):
        assert len(locks) == 2

    assert len(locks) == 0
