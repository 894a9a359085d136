"""
Domain models for provider token custody.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional, Set

from pydantic import BaseModel, ConfigDict, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TokenStatus(str, Enum):
    """Lifecycle states of a stored token."""

    ACTIVE = "active"
    EXPIRED = "expired"
    INVALID = "invalid"
    REVOKED = "revoked"


class TokenKind(str, Enum):
    SHORT_LIVED = "short_lived"
    LONG_LIVED = "long_lived"


class EncryptedToken(BaseModel):
    """AEAD output for one token; the three parts only ever travel together."""

    model_config = ConfigDict(frozen=True)

    ciphertext: str = Field(..., description="Hex-encoded AES-GCM ciphertext.")
    iv: str = Field(..., description="Hex-encoded 96-bit nonce.")
    auth_tag: str = Field(..., description="Hex-encoded 128-bit authentication tag.")

    def __repr__(self) -> str:
        return f"EncryptedToken(ciphertext=<{len(self.ciphertext) // 2} bytes>)"


class TokenMetadata(BaseModel):
    """Provider metadata stored alongside the ciphertext, never encrypted."""

    subject_id: Optional[str] = None
    scopes: Set[str] = Field(default_factory=set)
    token_kind: TokenKind = TokenKind.SHORT_LIVED
    app_id: Optional[str] = None


class TokenIntrospection(BaseModel):
    """What the provider reports about a token."""

    is_valid: bool
    expires_at: Optional[datetime] = None
    subject_id: Optional[str] = None
    scopes: Set[str] = Field(default_factory=set)
    app_id: Optional[str] = None
    token_kind: Optional[TokenKind] = None
    reason: Optional[str] = Field(
        None, description="Provider-supplied explanation when the token is invalid."
    )


class TokenRecord(BaseModel):
    """The unit of custody: one encrypted token per integration."""

    model_config = ConfigDict(validate_assignment=True)

    integration_id: str = Field(..., min_length=1)
    encrypted: Optional[EncryptedToken] = None
    fingerprint: Optional[str] = None
    expires_at: Optional[datetime] = None
    metadata: TokenMetadata = Field(default_factory=TokenMetadata)
    status: TokenStatus = TokenStatus.ACTIVE
    last_verified_at: Optional[datetime] = None
    last_verification_note: Optional[str] = None
    last_verification_success: Optional[bool] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    revoked_at: Optional[datetime] = None

    def is_expired(self, now: datetime, leeway_seconds: int = 0) -> bool:
        """A missing expiry means the provider declared none."""
        if self.expires_at is None:
            return False
        return self.expires_at.timestamp() - leeway_seconds <= now.timestamp()

    def record_verification(self, *, success: bool, note: str, at: datetime) -> None:
        """Update the audit trail of the most recent check as one unit."""
        self.last_verified_at = at
        self.last_verification_note = note
        self.last_verification_success = success
        self.updated_at = at

    def to_item(self) -> Dict[str, Any]:
        """Serialize to a JSON-safe dict for the key-value store."""
        item = self.model_dump(mode="json")
        item["metadata"]["scopes"] = sorted(self.metadata.scopes)
        return item

    @classmethod
    def from_item(cls, item: Dict[str, Any]) -> "TokenRecord":
        return cls.model_validate(item)


class StoreResult(BaseModel):
    """Outcome of storing or renewing a token; never carries the token itself."""

    integration_id: str
    status: TokenStatus
    is_new: bool = False
    reencrypted: bool = True
    expires_at: Optional[datetime] = None
    scopes: Set[str] = Field(default_factory=set)


class RetrievedToken(BaseModel):
    """Plaintext token handed to in-process callers for immediate use."""

    integration_id: str
    token: str = Field(..., repr=False)
    expires_at: Optional[datetime] = None
    metadata: TokenMetadata
    renewed: bool = False


class VerificationResult(BaseModel):
    """Result of an on-demand provider health check."""

    integration_id: str
    status: TokenStatus
    scopes: Set[str] = Field(default_factory=set)
    expires_at: Optional[datetime] = None
    subject_id: Optional[str] = None
    last_verified_at: Optional[datetime] = None
    note: Optional[str] = None


class TokenStatusView(BaseModel):
    """Cached status of a record, read without contacting the provider."""

    integration_id: str
    status: TokenStatus
    expires_at: Optional[datetime] = None
    scopes: Set[str] = Field(default_factory=set)
    last_verified_at: Optional[datetime] = None
    last_verification_note: Optional[str] = None


__all__ = [
    "EncryptedToken",
    "RetrievedToken",
    "StoreResult",
    "TokenIntrospection",
    "TokenKind",
    "TokenMetadata",
    "TokenRecord",
    "TokenStatus",
    "TokenStatusView",
    "VerificationResult",
    "utcnow",
]
