"""Expose constructed client wrappers."""

from .dynamodb import DynamoDBTokenStore
from .interfaces import ProviderVerifier, TokenRefresher, TokenStore
from .meta_graph import MetaGraphClient, MetaTokenRefresher, MetaTokenVerifier
from .sqlite_store import SQLiteTokenStore
from .token_store import InMemoryTokenStore

__all__ = [
    "DynamoDBTokenStore",
    "InMemoryTokenStore",
    "MetaGraphClient",
    "MetaTokenRefresher",
    "MetaTokenVerifier",
    "ProviderVerifier",
    "SQLiteTokenStore",
    "TokenRefresher",
    "TokenStore",
]
