"""SQLite-backed token store keyed DynamoDB-style by (pk, sk)."""

from __future__ import annotations

import asyncio
import json
import sqlite3
from pathlib import Path
from typing import Optional

from app.models.token import TokenRecord


def token_keys(integration_id: str, provider: str) -> tuple[str, str]:
    """Partition and sort key for an integration's token record."""
    return f"integration#{integration_id}", f"token#{provider}"


class SQLiteTokenStore:
    """Persist one serialized token record per integration in a local database."""

    def __init__(self, db_path: str, *, provider: str = "meta") -> None:
        self._db_path = Path(db_path)
        self._provider = provider
        if self._db_path.parent and not self._db_path.parent.exists():
            self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._ensure_schema()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        return conn

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS token_records (
                    pk TEXT NOT NULL,
                    sk TEXT NOT NULL,
                    data TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    PRIMARY KEY (pk, sk)
                )
                """
            )

    def _get_sync(self, integration_id: str) -> Optional[TokenRecord]:
        pk, sk = token_keys(integration_id, self._provider)
        with self._connect() as conn:
            row = conn.execute(
                "SELECT data FROM token_records WHERE pk = ? AND sk = ?",
                (pk, sk),
            ).fetchone()
        if not row:
            return None
        return TokenRecord.from_item(json.loads(row["data"]))

    def _put_sync(self, record: TokenRecord) -> None:
        pk, sk = token_keys(record.integration_id, self._provider)
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO token_records (pk, sk, data, updated_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(pk, sk) DO UPDATE SET
                    data = excluded.data,
                    updated_at = excluded.updated_at
                """,
                (pk, sk, json.dumps(record.to_item()), record.updated_at.isoformat()),
            )

    def _delete_sync(self, integration_id: str) -> None:
        pk, sk = token_keys(integration_id, self._provider)
        with self._connect() as conn:
            conn.execute(
                "DELETE FROM token_records WHERE pk = ? AND sk = ?",
                (pk, sk),
            )

    async def get(self, integration_id: str) -> Optional[TokenRecord]:
        return await asyncio.to_thread(self._get_sync, integration_id)

    async def put(self, record: TokenRecord) -> None:
        await asyncio.to_thread(self._put_sync, record)

    async def delete(self, integration_id: str) -> None:
        await asyncio.to_thread(self._delete_sync, integration_id)


__all__ = ["SQLiteTokenStore", "token_keys"]
