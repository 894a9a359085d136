"""Expose dependency helpers for FastAPI routers."""

from .clients import (
    get_integration_binding,
    get_meta_graph_client,
    get_token_cipher_service,
    get_token_lifecycle_manager,
    get_token_refresher,
    get_token_store,
    get_token_verifier,
)

__all__ = [
    "get_integration_binding",
    "get_meta_graph_client",
    "get_token_cipher_service",
    "get_token_lifecycle_manager",
    "get_token_refresher",
    "get_token_store",
    "get_token_verifier",
]
