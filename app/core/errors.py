"""
Error taxonomy for credential custody operations.

Every error carries the integration identifier and a short, token-free cause
so callers can audit-log it directly. Messages never include plaintext
tokens, ciphertext, or key material.
"""

from __future__ import annotations

from http import HTTPStatus
from typing import Any, Dict, Optional


class CredentialError(Exception):
    """Base class for all credential custody failures."""

    http_status: HTTPStatus = HTTPStatus.INTERNAL_SERVER_ERROR
    error_code: str = "credential_error"

    def __init__(
        self,
        message: str,
        *,
        integration_id: Optional[str] = None,
        cause: Optional[str] = None,
    ) -> None:
        self.integration_id = integration_id
        self.cause = cause
        super().__init__(message)

    def to_log_extra(self) -> Dict[str, Any]:
        """Structured fields safe to attach to a log record."""
        return {
            "integration_id": self.integration_id,
            "error_type": type(self).__name__,
            "error_code": self.error_code,
            "cause": self.cause,
        }


class EncryptionFailure(CredentialError):
    """Raised when a token cannot be encrypted."""

    error_code = "credential_integrity_failure"


class IntegrityError(CredentialError):
    """Authentication tag mismatch: stored ciphertext was tampered with or corrupted."""

    error_code = "credential_integrity_failure"


class NotFound(CredentialError):
    """No usable token record exists for the integration."""

    http_status = HTTPStatus.CONFLICT
    error_code = "reconnect_required"


class RevokedAccess(NotFound):
    """The token record was revoked; it can never be used again."""


class Expired(CredentialError):
    """The stored token expired and could not be renewed."""

    http_status = HTTPStatus.CONFLICT
    error_code = "reconnect_required"


class ProviderRejected(CredentialError):
    """The provider explicitly reported the token as invalid."""

    http_status = HTTPStatus.UNPROCESSABLE_ENTITY
    error_code = "provider_rejected"


class VerificationFailed(ProviderRejected):
    """A token offered for storage failed provider verification."""


class ProviderUnavailable(CredentialError):
    """Transient provider failure (network error or timeout); safe to retry."""

    http_status = HTTPStatus.SERVICE_UNAVAILABLE
    error_code = "provider_unavailable"


class RenewalFailed(CredentialError):
    """The provider declined to issue a replacement token."""

    http_status = HTTPStatus.CONFLICT
    error_code = "reconnect_required"


__all__ = [
    "CredentialError",
    "EncryptionFailure",
    "Expired",
    "IntegrityError",
    "NotFound",
    "ProviderRejected",
    "ProviderUnavailable",
    "RenewalFailed",
    "RevokedAccess",
    "VerificationFailed",
]
