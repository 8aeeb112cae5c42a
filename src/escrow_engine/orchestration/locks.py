"""Per-key asyncio locks.

Concurrency in the engine is scoped per contract and per account, never
global. A KeyedLock hands out one asyncio.Lock per key and forgets it once
nobody holds or waits for it, so idle contracts cost nothing.

Lock order is always: the contract lock first, then account locks sorted by
key (``hold_many`` sorts for you).
"""

from __future__ import annotations

import asyncio
from collections import Counter
from contextlib import AsyncExitStack, asynccontextmanager
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Hashable, Iterable


class KeyedLock:
    """A family of mutexes addressed by key."""

    def __init__(self, name: str = "lock") -> None:
        self.name = name
        self._locks: dict[Hashable, asyncio.Lock] = {}
        self._refs: Counter = Counter()

    @asynccontextmanager
    async def hold(self, key: Hashable) -> AsyncIterator[None]:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        self._refs[key] += 1
        try:
            async with lock:
                yield
        finally:
            self._refs[key] -= 1
            if self._refs[key] <= 0:
                del self._refs[key]
                self._locks.pop(key, None)

    @asynccontextmanager
    async def hold_many(self, keys: Iterable[Hashable]) -> AsyncIterator[None]:
        """Acquire several keys in sorted order, release them all on exit."""
        async with AsyncExitStack() as stack:
            for key in sorted(set(keys), key=str):
                await stack.enter_async_context(self.hold(key))
            yield

    def locked(self, key: Hashable) -> bool:
        lock = self._locks.get(key)
        return lock is not None and lock.locked()

    def __len__(self) -> int:
        return len(self._locks)
