"""
Collaborator contracts consumed by the token lifecycle manager.
"""

from __future__ import annotations

from typing import Optional, Protocol, runtime_checkable

from app.models.token import TokenIntrospection, TokenMetadata, TokenRecord


@runtime_checkable
class TokenStore(Protocol):
    """Keyed persistence for token records, one record per integration.

    A ``get`` following a ``put`` for the same key must observe the write.
    """

    async def get(self, integration_id: str) -> Optional[TokenRecord]:
        ...

    async def put(self, record: TokenRecord) -> None:
        ...

    async def delete(self, integration_id: str) -> None:
        ...


@runtime_checkable
class ProviderVerifier(Protocol):
    """Token introspection against the issuing provider.

    Raises ``ProviderRejected`` when the provider reports the token invalid and
    ``ProviderUnavailable`` on network failure or timeout.
    """

    async def introspect(self, token: str) -> TokenIntrospection:
        ...


@runtime_checkable
class TokenRefresher(Protocol):
    """Obtains a replacement token for an integration.

    Raises ``RenewalFailed`` when the provider declines to issue one.
    """

    async def refresh(
        self, integration_id: str, current_token: str, metadata: TokenMetadata
    ) -> str:
        ...


__all__ = ["ProviderVerifier", "TokenRefresher", "TokenStore"]
