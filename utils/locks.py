"""Keyed asyncio locks — one lock per key, created on demand, dropped when idle."""
from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Hashable


class _Entry:
    __slots__ = ("lock", "users")

    def __init__(self):
        self.lock = asyncio.Lock()
        self.users = 0      # holders plus waiters


class KeyedLocks:
    """
    Hands out one asyncio.Lock per key.

    A key's lock lives while at least one task holds or waits on it and is
    forgotten when the last one leaves, so the map only holds keys in use.

    Usage:
        locks = KeyedLocks()
        async with locks.lock(user_id):
            ...
    """

    def __init__(self):
        self._entries: dict[Hashable, _Entry] = {}

    @asynccontextmanager
    async def lock(self, key: Hashable) -> AsyncIterator[None]:
        entry = self._entries.get(key)
        if entry is None:
            entry = self._entries[key] = _Entry()
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            if entry.users == 0:
                del self._entries[key]

    def __len__(self) -> int:
        return len(self._entries)
