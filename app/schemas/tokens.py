"""
Request and response bodies for the token custody API.
"""

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field

from app.models.token import TokenKind, TokenStatus


class TokenStoreRequest(BaseModel):
    """Token handed over by the integration layer after the OAuth exchange."""

    access_token: str = Field(..., min_length=1, description="Provider access token.")
    subject_id: Optional[str] = Field(
        None, description="Provider account the token was issued for."
    )
    scopes: List[str] = Field(default_factory=list)
    token_kind: TokenKind = TokenKind.SHORT_LIVED


class TokenRenewRequest(BaseModel):
    """Replacement token obtained by the OAuth layer's refresh exchange."""

    access_token: Optional[str] = Field(
        None,
        min_length=1,
        description="When omitted, the configured refresher exchanges the stored token.",
    )


class TokenStateResponse(BaseModel):
    """Token state returned to HTTP clients; never includes the token itself."""

    integration_id: str
    status: TokenStatus
    expires_at: Optional[datetime] = None
    scopes: List[str] = Field(default_factory=list)
    last_verified_at: Optional[datetime] = None
    note: Optional[str] = None
    is_new: Optional[bool] = None


class ErrorResponse(BaseModel):
    """Body of every credential error response."""

    error: str
    message: str
    integration_id: Optional[str] = None
    retryable: bool = False


__all__ = [
    "ErrorResponse",
    "TokenRenewRequest",
    "TokenStateResponse",
    "TokenStoreRequest",
]
