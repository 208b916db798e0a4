"""
Keyed asyncio locks — one lock per (user_id, provider_id) pair.

Entries are reference counted and dropped once nobody holds or waits on
them, so the table only ever contains pairs with work in flight.
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Tuple

PairKey = Tuple[str, str]


class _Entry:
    __slots__ = ("lock", "users")

    def __init__(self) -> None:
        self.lock = asyncio.Lock()
        self.users = 0


class PairLocks:
    def __init__(self) -> None:
        self._entries: Dict[PairKey, _Entry] = {}

    @asynccontextmanager
    async def hold(self, user_id: str, provider_id: str) -> AsyncIterator[None]:
        key = (user_id, provider_id)
        entry = self._entries.get(key)
        if entry is None:
            entry = self._entries[key] = _Entry()
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            if entry.users == 0 and self._entries.get(key) is entry:
                del self._entries[key]

    def is_locked(self, user_id: str, provider_id: str) -> bool:
        entry = self._entries.get((user_id, provider_id))
        return entry is not None and entry.lock.locked()

    def __len__(self) -> int:
        return len(self._entries)
