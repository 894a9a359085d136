"""
Factory functions to provide shared clients and services as FastAPI dependencies.

Each factory is cached so the encryption key is derived once per process and
every request shares the same lifecycle manager and per-key locks.
"""

from functools import lru_cache

from app.clients import (
    DynamoDBTokenStore,
    InMemoryTokenStore,
    MetaGraphClient,
    MetaTokenRefresher,
    MetaTokenVerifier,
    SQLiteTokenStore,
    TokenStore,
)
from app.core.config import get_settings
from app.services import IntegrationBinding, TokenCipherService, TokenLifecycleManager


@lru_cache()
def _settings():
    """Internal helper to cache settings for client factories."""
    return get_settings()


@lru_cache()
def get_token_cipher_service() -> TokenCipherService:
    """Provide the authenticated cipher keyed from the master secret."""
    return TokenCipherService.from_settings(_settings().security)


@lru_cache()
def get_token_store() -> TokenStore:
    """Provide the configured token store backend."""
    storage = _settings().storage
    if storage.backend == "memory":
        return InMemoryTokenStore()
    if storage.backend == "dynamodb":
        return DynamoDBTokenStore(storage)
    return SQLiteTokenStore(storage.db_path)


@lru_cache()
def get_meta_graph_client() -> MetaGraphClient:
    """Create a singleton Graph API client."""
    settings = _settings()
    return MetaGraphClient(
        settings.meta, timeout=settings.tokens.provider_timeout_seconds
    )


@lru_cache()
def get_token_verifier() -> MetaTokenVerifier:
    return MetaTokenVerifier(get_meta_graph_client())


@lru_cache()
def get_token_refresher() -> MetaTokenRefresher:
    return MetaTokenRefresher(get_meta_graph_client())


@lru_cache()
def get_token_lifecycle_manager() -> TokenLifecycleManager:
    """Provide the process-wide token lifecycle manager."""
    settings = _settings()
    return TokenLifecycleManager(
        cipher=get_token_cipher_service(),
        store=get_token_store(),
        verifier=get_token_verifier(),
        refresher=get_token_refresher(),
        settings=settings.tokens,
    )


@lru_cache()
def get_integration_binding() -> IntegrationBinding:
    return IntegrationBinding(get_token_lifecycle_manager())


__all__ = [
    "get_integration_binding",
    "get_meta_graph_client",
    "get_token_cipher_service",
    "get_token_lifecycle_manager",
    "get_token_refresher",
    "get_token_store",
    "get_token_verifier",
]
