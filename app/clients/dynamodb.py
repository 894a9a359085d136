"""
DynamoDB-backed token store for deployments on AWS.
"""

from __future__ import annotations

import asyncio
from typing import Any, Dict, Optional

import boto3

from app.clients.sqlite_store import token_keys
from app.core.config import StorageSettings
from app.models.token import TokenRecord


class DynamoDBTokenStore:
    """Store token records as single items in a (pk, sk) keyed table."""

    def __init__(self, settings: StorageSettings, *, provider: str = "meta", table: Any = None) -> None:
        if table is None:
            if not settings.dynamodb_table_name:
                raise ValueError("DYNAMODB_TABLE_NAME is required for the dynamodb backend.")
            resource = boto3.resource("dynamodb", region_name=settings.region_name)
            table = resource.Table(settings.dynamodb_table_name)
        self._table = table
        self._provider = provider

    def _key(self, integration_id: str) -> Dict[str, str]:
        pk, sk = token_keys(integration_id, self._provider)
        return {"pk": pk, "sk": sk}

    async def get(self, integration_id: str) -> Optional[TokenRecord]:
        response = await asyncio.to_thread(
            self._table.get_item, Key=self._key(integration_id), ConsistentRead=True
        )
        item = response.get("Item")
        if not item:
            return None
        return TokenRecord.from_item(item["record"])

    async def put(self, record: TokenRecord) -> None:
        item: Dict[str, Any] = {**self._key(record.integration_id), "record": record.to_item()}
        await asyncio.to_thread(self._table.put_item, Item=item)

    async def delete(self, integration_id: str) -> None:
        await asyncio.to_thread(self._table.delete_item, Key=self._key(integration_id))


__all__ = ["DynamoDBTokenStore"]
