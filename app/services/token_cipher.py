"""Authenticated encryption utilities for protecting stored provider tokens."""

from __future__ import annotations

import binascii
import hashlib
import logging
import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt

from app.core.config import SecuritySettings
from app.core.errors import EncryptionFailure, IntegrityError
from app.models.token import EncryptedToken

logger = logging.getLogger(__name__)

KEY_BYTES = 32
NONCE_BYTES = 12
TAG_BYTES = 16


def derive_key(secret: str, salt: str, *, cost: int = 2**14) -> bytes:
    """Derive the 256-bit token key from the master secret with scrypt."""
    kdf = Scrypt(salt=salt.encode("utf-8"), length=KEY_BYTES, n=cost, r=8, p=1)
    return kdf.derive(secret.encode("utf-8"))


def fingerprint_token(plaintext: str) -> str:
    """Return a one-way SHA-256 fingerprint used only for equality checks."""
    return hashlib.sha256(plaintext.encode("utf-8")).hexdigest()


class TokenCipherService:
    """Encrypt and decrypt token strings with AES-256-GCM under a derived key."""

    def __init__(self, *, secret: str, salt: str, cost: int = 2**14) -> None:
        if not secret:
            raise ValueError("Token encryption secret must be provided.")
        if not salt:
            raise ValueError("Token key-derivation salt must be provided.")
        self._aead = AESGCM(derive_key(secret, salt, cost=cost))

    @classmethod
    def from_settings(cls, settings: SecuritySettings) -> "TokenCipherService":
        return cls(
            secret=settings.master_secret.get_secret_value(),
            salt=settings.kdf_salt,
            cost=settings.kdf_cost,
        )

    def __repr__(self) -> str:
        return "TokenCipherService(algorithm='AES-256-GCM')"

    def encrypt(self, plaintext: str) -> EncryptedToken:
        """Encrypt a plaintext token under a fresh random nonce."""
        if not plaintext:
            raise EncryptionFailure("Cannot encrypt an empty token.", cause="empty_plaintext")
        nonce = os.urandom(NONCE_BYTES)
        try:
            sealed = self._aead.encrypt(nonce, plaintext.encode("utf-8"), None)
        except (OverflowError, ValueError) as exc:
            logger.error("Token encryption failed", extra={"error_type": type(exc).__name__})
            raise EncryptionFailure(
                "Failed to encrypt token.", cause=type(exc).__name__
            ) from exc
        return EncryptedToken(
            ciphertext=sealed[:-TAG_BYTES].hex(),
            iv=nonce.hex(),
            auth_tag=sealed[-TAG_BYTES:].hex(),
        )

    def decrypt(self, encrypted: EncryptedToken) -> str:
        """Decrypt a stored token, verifying its authentication tag."""
        try:
            ciphertext = binascii.unhexlify(encrypted.ciphertext)
            nonce = binascii.unhexlify(encrypted.iv)
            tag = binascii.unhexlify(encrypted.auth_tag)
        except (binascii.Error, ValueError) as exc:
            raise IntegrityError(
                "Stored token is malformed.", cause="malformed_encoding"
            ) from exc
        if len(nonce) != NONCE_BYTES or len(tag) != TAG_BYTES:
            raise IntegrityError("Stored token is malformed.", cause="malformed_lengths")

        try:
            plaintext = self._aead.decrypt(nonce, ciphertext + tag, None)
        except InvalidTag as exc:
            raise IntegrityError(
                "Token authentication failed; ciphertext was tampered with or the key changed.",
                cause="auth_tag_mismatch",
            ) from exc
        try:
            return plaintext.decode("utf-8")
        except UnicodeDecodeError as exc:  # pragma: no cover - tag already verified
            raise IntegrityError("Stored token is not valid UTF-8.", cause="bad_utf8") from exc


__all__ = ["TokenCipherService", "derive_key", "fingerprint_token"]
