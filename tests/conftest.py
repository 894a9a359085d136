"""Pytest configuration shared across the suite."""

from __future__ import annotations

try:
    from . import _bootstrap  # noqa: F401
except Exception:  # pragma: no cover - fallback for direct execution
    import _bootstrap  # type: ignore # noqa: F401

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Optional

import pytest

from app.clients.token_store import InMemoryTokenStore
from app.core.config import TokenSettings
from app.core.errors import ProviderRejected, RenewalFailed
from app.models.token import TokenIntrospection, TokenMetadata, TokenRecord, TokenStatus
from app.services.token_cipher import TokenCipherService, fingerprint_token
from app.services.token_lifecycle import TokenLifecycleManager


@pytest.fixture
def anyio_backend() -> str:
    """Force AnyIO-powered tests to run against asyncio backend only."""
    return "asyncio"


class FakeVerifier:
    """Counts introspection calls and answers from configurable state."""

    def __init__(self, *, expires_in: Optional[int] = 3600) -> None:
        self.expires_in = expires_in
        self.is_valid = True
        self.rejected: set[str] = set()
        self.error: Optional[Exception] = None
        self.delay = 0.0
        self.scopes = {"ads_read"}
        self.calls: list[str] = []

    async def introspect(self, token: str) -> TokenIntrospection:
        self.calls.append(token)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        if token in self.rejected:
            raise ProviderRejected("Token has been invalidated.", cause="graph_error_190")
        expires_at = None
        if self.expires_in is not None:
            expires_at = datetime.now(timezone.utc) + timedelta(seconds=self.expires_in)
        return TokenIntrospection(
            is_valid=self.is_valid,
            expires_at=expires_at,
            subject_id="u1",
            scopes=set(self.scopes),
        )


class FakeRefresher:
    """Hands out a fixed replacement token, slowly enough to overlap callers."""

    def __init__(self, new_token: str = "tok-new", *, delay: float = 0.01) -> None:
        self.new_token = new_token
        self.delay = delay
        self.decline = False
        self.calls: list[tuple[str, str]] = []

    async def refresh(self, integration_id: str, current_token: str, metadata: TokenMetadata) -> str:
        self.calls.append((integration_id, current_token))
        await asyncio.sleep(self.delay)
        if self.decline:
            raise RenewalFailed("Refresh grant revoked.", cause="graph_error_190")
        return self.new_token


@pytest.fixture
def cipher() -> TokenCipherService:
    return TokenCipherService(secret="test-master-secret", salt="test-salt", cost=2**10)


@pytest.fixture
def token_store() -> InMemoryTokenStore:
    return InMemoryTokenStore()


@pytest.fixture
def verifier() -> FakeVerifier:
    return FakeVerifier()


@pytest.fixture
def refresher() -> FakeRefresher:
    return FakeRefresher()


@pytest.fixture
def make_manager(cipher, token_store, verifier, refresher):
    def _factory(*, renewal_enabled: bool = False, timeout: float = 1.0, with_refresher: bool = True):
        settings = TokenSettings(
            TOKEN_RENEWAL_ENABLED=renewal_enabled,
            TOKEN_PROVIDER_TIMEOUT_SECONDS=timeout,
        )
        return TokenLifecycleManager(
            cipher=cipher,
            store=token_store,
            verifier=verifier,
            refresher=refresher if with_refresher else None,
            settings=settings,
        )

    return _factory


@pytest.fixture
def seed_record(cipher, token_store):
    """Write a record directly, bypassing the manager."""

    async def _seed(
        integration_id: str,
        token: str,
        *,
        expires_in: Optional[int],
        status: TokenStatus = TokenStatus.ACTIVE,
    ) -> TokenRecord:
        expires_at = None
        if expires_in is not None:
            expires_at = datetime.now(timezone.utc) + timedelta(seconds=expires_in)
        record = TokenRecord(
            integration_id=integration_id,
            encrypted=cipher.encrypt(token),
            fingerprint=fingerprint_token(token),
            expires_at=expires_at,
            metadata=TokenMetadata(subject_id="u1", scopes={"ads_read"}),
            status=status,
        )
        await token_store.put(record)
        return record

    return _seed
