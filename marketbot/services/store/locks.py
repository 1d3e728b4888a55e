import asyncio
from collections import defaultdict
from collections.abc import Hashable
from contextlib import asynccontextmanager


class KeyedLocks:
    """
    One asyncio.Lock per entity key, created on demand and dropped when unused.

    Multiple keys are always acquired in a stable sorted order so two
    coroutines locking the same pair cannot deadlock.
    """

    def __init__(self):
        self._locks: dict[Hashable, asyncio.Lock] = {}
        self._refs: dict[Hashable, int] = defaultdict(int)

    @asynccontextmanager
    async def hold(self, *keys: Hashable):
        ordered = sorted(set(keys), key=repr)
        for key in ordered:
            self._refs[key] += 1
            self._locks.setdefault(key, asyncio.Lock())
        acquired: list[Hashable] = []
        try:
            for key in ordered:
                await self._locks[key].acquire()
                acquired.append(key)
            yield
        finally:
            for key in reversed(acquired):
                self._locks[key].release()
            for key in ordered:
                self._refs[key] -= 1
                if self._refs[key] <= 0:
                    del self._refs[key]
                    del self._locks[key]

    def __len__(self) -> int:
        return len(self._locks)
