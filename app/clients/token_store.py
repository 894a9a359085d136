"""In-process token store used for local development and tests."""

from __future__ import annotations

import asyncio
from typing import Any, Dict, Optional

from app.models.token import TokenRecord


class InMemoryTokenStore:
    """Dict-backed store keeping serialized items, like the durable adapters."""

    def __init__(self) -> None:
        self._items: Dict[str, Dict[str, Any]] = {}
        self._guard = asyncio.Lock()

    async def get(self, integration_id: str) -> Optional[TokenRecord]:
        async with self._guard:
            item = self._items.get(integration_id)
        if item is None:
            return None
        return TokenRecord.from_item(item)

    async def put(self, record: TokenRecord) -> None:
        item = record.to_item()
        async with self._guard:
            self._items[record.integration_id] = item

    async def delete(self, integration_id: str) -> None:
        async with self._guard:
            self._items.pop(integration_id, None)

    def __len__(self) -> int:
        return len(self._items)


__all__ = ["InMemoryTokenStore"]
