"""
Lifecycle management for provider access tokens held in custody.

The manager is the only writer of token records. It encrypts tokens before
they reach the store, verifies them against the issuing provider, renews
expired tokens at most once at a time per integration, and revokes them.

State machine::

    active -> expired -> active (renewed) | invalid
    active | expired -> invalid (failed verification)
    any -> revoked (terminal)
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Awaitable, Callable, Optional, TypeVar

from app.clients.interfaces import ProviderVerifier, TokenRefresher, TokenStore
from app.core.config import TokenSettings
from app.core.errors import (
    CredentialError,
    EncryptionFailure,
    Expired,
    IntegrityError,
    NotFound,
    ProviderRejected,
    ProviderUnavailable,
    RenewalFailed,
    RevokedAccess,
    VerificationFailed,
)
from app.models.token import (
    EncryptedToken,
    RetrievedToken,
    StoreResult,
    TokenIntrospection,
    TokenMetadata,
    TokenRecord,
    TokenStatus,
    TokenStatusView,
    VerificationResult,
    utcnow,
)
from app.services.key_locks import KeyedLocks, KeySlot
from app.services.token_cipher import TokenCipherService, fingerprint_token

logger = logging.getLogger(__name__)

T = TypeVar("T")
Clock = Callable[[], datetime]


class TokenLifecycleManager:
    """Store, retrieve, verify, renew and revoke encrypted provider tokens."""

    def __init__(
        self,
        *,
        cipher: TokenCipherService,
        store: TokenStore,
        verifier: ProviderVerifier,
        settings: TokenSettings,
        refresher: Optional[TokenRefresher] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        self._cipher = cipher
        self._store = store
        self._verifier = verifier
        self._refresher = refresher
        self._settings = settings
        self._clock = clock or utcnow
        self._locks = KeyedLocks()

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------
    async def store(
        self,
        integration_id: str,
        plaintext_token: str,
        metadata: Optional[TokenMetadata] = None,
    ) -> StoreResult:
        """Verify and persist a token, replacing any previous one."""
        if not plaintext_token:
            raise EncryptionFailure(
                "Cannot store an empty token.",
                integration_id=integration_id,
                cause="empty_plaintext",
            )
        fingerprint = fingerprint_token(plaintext_token)

        async with self._locks.hold(integration_id):
            existing = await self._store.get(integration_id)
            if existing is not None and existing.status is TokenStatus.REVOKED:
                raise RevokedAccess(
                    "Integration token was revoked; connect a new integration.",
                    integration_id=integration_id,
                    cause="revoked",
                )

            same_token = (
                existing is not None
                and existing.encrypted is not None
                and existing.fingerprint == fingerprint
            )
            if same_token and existing.status is TokenStatus.ACTIVE and not self._expired(existing):
                existing.record_verification(
                    success=True,
                    note="Token unchanged; verification timestamp refreshed.",
                    at=self._clock(),
                )
                await self._store.put(existing)
                return self._store_result(existing, is_new=False, reencrypted=False)
            if same_token and existing.status in (TokenStatus.ACTIVE, TokenStatus.EXPIRED):
                return await self._reverify_unchanged(existing)

            try:
                introspection = await self._introspect(integration_id, plaintext_token)
            except ProviderRejected as exc:
                logger.info(
                    "Refusing to store token rejected by provider",
                    extra={"integration_id": integration_id, "cause": exc.cause},
                )
                raise VerificationFailed(
                    "Provider rejected the token; it was not stored.",
                    integration_id=integration_id,
                    cause=exc.cause,
                ) from exc

            now = self._clock()
            record = TokenRecord(
                integration_id=integration_id,
                encrypted=self._encrypt(integration_id, plaintext_token),
                fingerprint=fingerprint,
                expires_at=introspection.expires_at,
                metadata=_merge_metadata(metadata, introspection),
                created_at=existing.created_at if existing is not None else now,
            )
            record.status = TokenStatus.EXPIRED if self._expired(record) else TokenStatus.ACTIVE
            record.record_verification(
                success=True, note="Token verified during storage.", at=now
            )
            await self._store.put(record)
            logger.info(
                "Token stored",
                extra={
                    "integration_id": integration_id,
                    "status": record.status.value,
                    "replaced": existing is not None,
                },
            )
            return self._store_result(record, is_new=existing is None, reencrypted=True)

    async def retrieve(self, integration_id: str) -> RetrievedToken:
        """Return the plaintext token, renewing it first when it has expired."""
        record = await self._load(integration_id)
        if self._usable(record):
            return await self._open_unlocked(record)

        async with self._locks.hold(integration_id) as slot:
            record = await self._load(integration_id)
            if self._usable(record):
                # A concurrent caller renewed while this one waited.
                return await self._open_locked(record, renewed=True)
            if record.status is TokenStatus.INVALID:
                raise Expired(
                    "Token is invalid; the integration must be reconnected.",
                    integration_id=integration_id,
                    cause="invalid",
                )
            if not self._settings.renewal_enabled:
                await self._transition(
                    record,
                    TokenStatus.INVALID,
                    note="Token expired and automatic renewal is disabled.",
                    success=False,
                )
                raise Expired(
                    "Token expired and automatic renewal is disabled.",
                    integration_id=integration_id,
                    cause="renewal_disabled",
                )
            self._raise_if_renewal_in_doubt(slot, integration_id)
            try:
                record = await self._renew_locked(record, None, slot)
            except RenewalFailed as exc:
                raise Expired(
                    "Token expired and could not be renewed.",
                    integration_id=integration_id,
                    cause=exc.cause,
                ) from exc
            return await self._open_locked(record, renewed=True)

    async def verify(self, integration_id: str) -> VerificationResult:
        """Check the stored token with the provider and record the outcome."""
        async with self._locks.hold(integration_id):
            record = await self._load(integration_id)
            plaintext = await self._decrypt_or_quarantine(record)
            try:
                introspection = await self._introspect(integration_id, plaintext)
            except ProviderRejected as exc:
                await self._transition(
                    record,
                    TokenStatus.INVALID,
                    note=f"Provider rejected token ({exc.cause}).",
                    success=False,
                )
                return self._verification_result(record)

            now = self._clock()
            record.expires_at = introspection.expires_at
            record.metadata = _merge_metadata(record.metadata, introspection)
            if record.status is TokenStatus.INVALID:
                note = "Provider accepted token; record stays invalid until reconnected."
            elif self._expired(record):
                record.status = TokenStatus.EXPIRED
                note = "Provider reports token past its expiry."
            else:
                record.status = TokenStatus.ACTIVE
                note = "Token verified with provider."
            record.record_verification(success=True, note=note, at=now)
            await self._store.put(record)
            logger.info(
                "Token verified",
                extra={"integration_id": integration_id, "status": record.status.value},
            )
            return self._verification_result(record)

    async def renew(
        self, integration_id: str, new_token: Optional[str] = None
    ) -> StoreResult:
        """Replace the stored token with a fresh one from the provider.

        ``new_token`` is supplied by the OAuth layer when it ran the refresh
        exchange itself; otherwise the configured refresher obtains one.
        """
        async with self._locks.hold(integration_id) as slot:
            record = await self._load(integration_id)
            if record.status is TokenStatus.INVALID:
                raise RenewalFailed(
                    "Token is invalid; the integration must be reconnected.",
                    integration_id=integration_id,
                    cause="invalid",
                )
            if new_token is None:
                self._raise_if_renewal_in_doubt(slot, integration_id)
            record = await self._renew_locked(record, new_token, slot)
        return self._store_result(record, is_new=False, reencrypted=True)

    async def revoke(self, integration_id: str) -> None:
        """Irreversibly revoke the token; a no-op when absent or already revoked."""
        async with self._locks.hold(integration_id):
            record = await self._store.get(integration_id)
            if record is None or record.status is TokenStatus.REVOKED:
                logger.debug(
                    "Revoke skipped; nothing active",
                    extra={"integration_id": integration_id},
                )
                return
            now = self._clock()
            record.encrypted = None
            record.fingerprint = None
            record.revoked_at = now
            await self._transition(
                record, TokenStatus.REVOKED, note="Token revoked.", success=False
            )

    async def status(self, integration_id: str) -> TokenStatusView:
        """Cached status of the record, without contacting the provider."""
        record = await self._store.get(integration_id)
        if record is None:
            raise NotFound(
                "No token stored for this integration.",
                integration_id=integration_id,
                cause="missing",
            )
        return TokenStatusView(
            integration_id=record.integration_id,
            status=record.status,
            expires_at=record.expires_at,
            scopes=record.metadata.scopes,
            last_verified_at=record.last_verified_at,
            last_verification_note=record.last_verification_note,
        )

    # ------------------------------------------------------------------
    # Renewal
    # ------------------------------------------------------------------
    def _raise_if_renewal_in_doubt(self, slot: KeySlot, integration_id: str) -> None:
        """Refuse a second exchange while an earlier one has an unknown outcome."""
        failure = slot.pending_failure
        if failure is None:
            return
        logger.warning(
            "Skipping renewal; an earlier exchange for this key did not complete",
            extra={"integration_id": integration_id},
        )
        raise ProviderUnavailable(
            "An earlier renewal attempt did not complete; retry later.",
            integration_id=integration_id,
            cause="renewal_in_doubt",
        ) from failure

    async def _renew_locked(
        self, record: TokenRecord, new_token: Optional[str], slot: KeySlot
    ) -> TokenRecord:
        """Renew ``record``; the caller must hold the integration's lock."""
        integration_id = record.integration_id
        from_refresher = new_token is None

        if new_token is None:
            if self._refresher is None:
                await self._transition(
                    record,
                    TokenStatus.INVALID,
                    note="Renewal unavailable: no token refresher configured.",
                    success=False,
                )
                raise RenewalFailed(
                    "No token refresher is configured.",
                    integration_id=integration_id,
                    cause="no_refresher",
                )
            current = await self._decrypt_or_quarantine(record)
            try:
                new_token = await self._call_provider(
                    integration_id,
                    lambda: self._refresher.refresh(integration_id, current, record.metadata),
                )
            except ProviderUnavailable as exc:
                # The provider may have consumed the grant; tasks queued behind
                # this one must not exchange it again.
                slot.pending_failure = exc
                raise
            except (RenewalFailed, ProviderRejected) as exc:
                await self._transition(
                    record,
                    TokenStatus.INVALID,
                    note=f"Provider declined renewal ({exc.cause}).",
                    success=False,
                )
                if isinstance(exc, RenewalFailed):
                    raise
                raise RenewalFailed(
                    "Provider declined to renew the token.",
                    integration_id=integration_id,
                    cause=exc.cause,
                ) from exc

        if not new_token:
            if from_refresher:
                await self._transition(
                    record,
                    TokenStatus.INVALID,
                    note="Provider returned an empty renewed token.",
                    success=False,
                )
            raise RenewalFailed(
                "Renewal produced an empty token.",
                integration_id=integration_id,
                cause="empty_token",
            )

        try:
            introspection: Optional[TokenIntrospection] = await self._introspect(
                integration_id, new_token
            )
        except ProviderRejected as exc:
            await self._transition(
                record,
                TokenStatus.INVALID,
                note=f"Renewed token rejected by provider ({exc.cause}).",
                success=False,
            )
            raise RenewalFailed(
                "Provider rejected the renewed token.",
                integration_id=integration_id,
                cause=exc.cause,
            ) from exc
        except ProviderUnavailable:
            if not from_refresher:
                raise
            # The exchange already consumed the old grant; keep the new token.
            introspection = None

        now = self._clock()
        record.encrypted = self._encrypt(integration_id, new_token)
        record.fingerprint = fingerprint_token(new_token)
        record.status = TokenStatus.ACTIVE
        if introspection is None:
            record.expires_at = None
            record.last_verified_at = now
            record.last_verification_note = "Token renewed; provider verification pending."
            record.last_verification_success = None
            record.updated_at = now
        else:
            record.expires_at = introspection.expires_at
            record.metadata = _merge_metadata(record.metadata, introspection)
            record.record_verification(success=True, note="Token renewed.", at=now)
        await self._store.put(record)
        slot.pending_failure = None
        logger.info(
            "Token renewed",
            extra={"integration_id": integration_id, "source": "refresher" if from_refresher else "caller"},
        )
        return record

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    async def _load(self, integration_id: str) -> TokenRecord:
        record = await self._store.get(integration_id)
        if record is None:
            raise NotFound(
                "No token stored for this integration.",
                integration_id=integration_id,
                cause="missing",
            )
        if record.status is TokenStatus.REVOKED:
            raise RevokedAccess(
                "Integration token was revoked.",
                integration_id=integration_id,
                cause="revoked",
            )
        return record

    def _expired(self, record: TokenRecord) -> bool:
        return record.is_expired(self._clock(), self._settings.expiry_leeway_seconds)

    def _usable(self, record: TokenRecord) -> bool:
        return (
            record.status is TokenStatus.ACTIVE
            and record.encrypted is not None
            and not self._expired(record)
        )

    def _encrypt(self, integration_id: str, plaintext: str) -> EncryptedToken:
        try:
            return self._cipher.encrypt(plaintext)
        except EncryptionFailure as exc:
            exc.integration_id = integration_id
            raise

    def _decrypt(self, record: TokenRecord) -> str:
        if record.encrypted is None:
            raise IntegrityError(
                "Token record carries no ciphertext.",
                integration_id=record.integration_id,
                cause="missing_ciphertext",
            )
        try:
            return self._cipher.decrypt(record.encrypted)
        except IntegrityError as exc:
            exc.integration_id = record.integration_id
            raise

    def _open(self, record: TokenRecord, *, renewed: bool = False) -> RetrievedToken:
        return RetrievedToken(
            integration_id=record.integration_id,
            token=self._decrypt(record),
            expires_at=record.expires_at,
            metadata=record.metadata,
            renewed=renewed,
        )

    async def _open_unlocked(self, record: TokenRecord) -> RetrievedToken:
        try:
            return self._open(record)
        except IntegrityError as exc:
            async with self._locks.hold(record.integration_id):
                current = await self._store.get(record.integration_id)
                # Only quarantine the ciphertext that actually failed.
                if current is not None and current.encrypted == record.encrypted:
                    await self._quarantine(current, exc)
            raise

    async def _open_locked(
        self, record: TokenRecord, *, renewed: bool = False
    ) -> RetrievedToken:
        try:
            return self._open(record, renewed=renewed)
        except IntegrityError as exc:
            await self._quarantine(record, exc)
            raise

    async def _decrypt_or_quarantine(self, record: TokenRecord) -> str:
        try:
            return self._decrypt(record)
        except IntegrityError as exc:
            await self._quarantine(record, exc)
            raise

    async def _quarantine(self, record: TokenRecord, exc: IntegrityError) -> None:
        logger.error("Stored token failed integrity check", extra=exc.to_log_extra())
        await self._transition(
            record,
            TokenStatus.INVALID,
            note="Integrity check failed; stored ciphertext rejected.",
            success=False,
        )

    async def _transition(
        self, record: TokenRecord, status: TokenStatus, *, note: str, success: bool
    ) -> None:
        previous = record.status
        record.status = status
        record.record_verification(success=success, note=note, at=self._clock())
        await self._store.put(record)
        logger.info(
            "Token status changed",
            extra={
                "integration_id": record.integration_id,
                "from_status": previous.value,
                "status": status.value,
            },
        )

    async def _introspect(self, integration_id: str, token: str) -> TokenIntrospection:
        result = await self._call_provider(
            integration_id, lambda: self._verifier.introspect(token)
        )
        if not result.is_valid:
            raise ProviderRejected(
                result.reason or "Provider reported the token invalid.",
                integration_id=integration_id,
                cause="reported_invalid",
            )
        return result

    async def _call_provider(
        self, integration_id: str, call: Callable[[], Awaitable[T]]
    ) -> T:
        """Run one provider call under the configured timeout."""
        try:
            return await asyncio.wait_for(
                call(), timeout=self._settings.provider_timeout_seconds
            )
        except asyncio.TimeoutError:
            logger.warning(
                "Provider call timed out",
                extra={"integration_id": integration_id},
            )
            raise ProviderUnavailable(
                "Provider call timed out.",
                integration_id=integration_id,
                cause="timeout",
            ) from None
        except CredentialError as exc:
            if exc.integration_id is None:
                exc.integration_id = integration_id
            raise

    @staticmethod
    def _store_result(
        record: TokenRecord, *, is_new: bool, reencrypted: bool
    ) -> StoreResult:
        return StoreResult(
            integration_id=record.integration_id,
            status=record.status,
            is_new=is_new,
            reencrypted=reencrypted,
            expires_at=record.expires_at,
            scopes=record.metadata.scopes,
        )

    @staticmethod
    def _verification_result(record: TokenRecord) -> VerificationResult:
        return VerificationResult(
            integration_id=record.integration_id,
            status=record.status,
            scopes=record.metadata.scopes,
            expires_at=record.expires_at,
            subject_id=record.metadata.subject_id,
            last_verified_at=record.last_verified_at,
            note=record.last_verification_note,
        )

    async def _reverify_unchanged(self, record: TokenRecord) -> StoreResult:
        """Re-check a resubmitted token whose cached record has expired."""
        integration_id = record.integration_id
        plaintext = await self._decrypt_or_quarantine(record)
        try:
            introspection = await self._introspect(integration_id, plaintext)
        except ProviderRejected as exc:
            await self._transition(
                record,
                TokenStatus.INVALID,
                note=f"Provider rejected resubmitted token ({exc.cause}).",
                success=False,
            )
            raise VerificationFailed(
                "Provider rejected the token; it was not stored.",
                integration_id=integration_id,
                cause=exc.cause,
            ) from exc

        record.expires_at = introspection.expires_at
        record.metadata = _merge_metadata(record.metadata, introspection)
        record.status = TokenStatus.EXPIRED if self._expired(record) else TokenStatus.ACTIVE
        record.record_verification(
            success=True, note="Unchanged token re-verified with provider.", at=self._clock()
        )
        await self._store.put(record)
        return self._store_result(record, is_new=False, reencrypted=False)


def _merge_metadata(
    base: Optional[TokenMetadata], introspection: TokenIntrospection
) -> TokenMetadata:
    """Provider-reported facts win over caller-supplied ones."""
    base = base or TokenMetadata()
    return TokenMetadata(
        subject_id=introspection.subject_id or base.subject_id,
        scopes=introspection.scopes or base.scopes,
        token_kind=introspection.token_kind or base.token_kind,
        app_id=introspection.app_id or base.app_id,
    )


__all__ = ["TokenLifecycleManager"]
