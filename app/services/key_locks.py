"""Per-key asyncio locks that are dropped once no task holds or awaits them."""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Optional


class KeySlot:
    """Lock for one key plus the unresolved failure a holder left behind.

    ``pending_failure`` lives as long as the slot, so only tasks that queued
    while that holder ran can see it.
    """

    __slots__ = ("lock", "users", "pending_failure")

    def __init__(self) -> None:
        self.lock = asyncio.Lock()
        self.users = 0
        self.pending_failure: Optional[Exception] = None


class KeyedLocks:
    """Serialize work per key while letting different keys run in parallel."""

    def __init__(self) -> None:
        self._entries: Dict[str, KeySlot] = {}

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[KeySlot]:
        slot = self._entries.get(key)
        if slot is None:
            slot = self._entries[key] = KeySlot()
        slot.users += 1
        try:
            async with slot.lock:
                yield slot
        finally:
            slot.users -= 1
            if slot.users == 0:
                self._entries.pop(key, None)

    def is_held(self, key: str) -> bool:
        slot = self._entries.get(key)
        return slot is not None and slot.lock.locked()

    def __len__(self) -> int:
        return len(self._entries)


__all__ = ["KeySlot", "KeyedLocks"]
