"""
Bridge between tenant-owned integration records and token custody.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Iterable, Optional

from pydantic import BaseModel, Field

from app.core.errors import NotFound, RevokedAccess
from app.models.token import (
    RetrievedToken,
    StoreResult,
    TokenKind,
    TokenMetadata,
    TokenStatus,
    VerificationResult,
)
from app.services.token_lifecycle import TokenLifecycleManager

logger = logging.getLogger(__name__)


class IntegrationRef(BaseModel):
    """Identifies an ad-platform integration owned by a company."""

    company_id: str = Field(..., min_length=1)
    integration_id: str = Field(..., min_length=1)
    provider: str = "meta"

    @property
    def token_key(self) -> str:
        return f"{self.provider}:{self.integration_id}"


class IntegrationTokenStatus(BaseModel):
    """Token health as shown next to an integration."""

    company_id: str
    integration_id: str
    token_status: str
    expires_at: Optional[datetime] = None
    scopes: list[str] = Field(default_factory=list)
    last_verified_at: Optional[datetime] = None


class IntegrationBinding:
    """Maps integration records to their token lifecycle key."""

    def __init__(self, manager: TokenLifecycleManager) -> None:
        self._manager = manager

    async def connect(
        self,
        ref: IntegrationRef,
        access_token: str,
        *,
        scopes: Iterable[str] = (),
        token_kind: TokenKind = TokenKind.SHORT_LIVED,
        subject_id: Optional[str] = None,
    ) -> StoreResult:
        metadata = TokenMetadata(
            subject_id=subject_id, scopes=set(scopes), token_kind=token_kind
        )
        result = await self._manager.store(ref.token_key, access_token, metadata)
        logger.info(
            "Integration connected",
            extra={"company_id": ref.company_id, "integration_id": ref.integration_id},
        )
        return result

    async def access_token(self, ref: IntegrationRef) -> RetrievedToken:
        """Plaintext token for an immediate outbound provider call."""
        return await self._manager.retrieve(ref.token_key)

    async def token_status(self, ref: IntegrationRef) -> IntegrationTokenStatus:
        """Provider-verified status; a missing token reports ``not_found``."""
        try:
            result: VerificationResult = await self._manager.verify(ref.token_key)
        except NotFound as exc:
            revoked = isinstance(exc, RevokedAccess)
            status = TokenStatus.REVOKED.value if revoked else "not_found"
            return IntegrationTokenStatus(
                company_id=ref.company_id,
                integration_id=ref.integration_id,
                token_status=status,
            )
        return IntegrationTokenStatus(
            company_id=ref.company_id,
            integration_id=ref.integration_id,
            token_status=result.status.value,
            expires_at=result.expires_at,
            scopes=sorted(result.scopes),
            last_verified_at=result.last_verified_at,
        )

    async def disconnect(self, ref: IntegrationRef) -> None:
        await self._manager.revoke(ref.token_key)
        logger.info(
            "Integration disconnected",
            extra={"company_id": ref.company_id, "integration_id": ref.integration_id},
        )


__all__ = ["IntegrationBinding", "IntegrationRef", "IntegrationTokenStatus"]
