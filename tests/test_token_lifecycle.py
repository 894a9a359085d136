from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from app.core.errors import (
    Expired,
    IntegrityError,
    NotFound,
    ProviderRejected,
    ProviderUnavailable,
    RenewalFailed,
    RevokedAccess,
    VerificationFailed,
)
from app.models.token import TokenMetadata, TokenStatus

pytestmark = pytest.mark.anyio


async def test_store_then_retrieve_returns_plaintext(make_manager, token_store, verifier) -> None:
    manager = make_manager()

    result = await manager.store("int-1", "tok-abc", TokenMetadata(subject_id="u1"))

    assert result.is_new is True
    assert result.status is TokenStatus.ACTIVE
    stored = await token_store.get("int-1")
    assert stored is not None
    assert "tok-abc" not in stored.model_dump_json()
    assert stored.last_verified_at is not None
    assert stored.metadata.scopes == {"ads_read"}

    retrieved = await manager.retrieve("int-1")
    assert retrieved.token == "tok-abc"
    assert retrieved.metadata.subject_id == "u1"
    assert "tok-abc" not in repr(retrieved)
    assert verifier.calls == ["tok-abc"]


async def test_store_rejected_by_provider_persists_nothing(make_manager, token_store, verifier) -> None:
    verifier.is_valid = False
    manager = make_manager()

    with pytest.raises(ProviderRejected) as excinfo:
        await manager.store("int-1", "tok-abc", TokenMetadata(subject_id="u1"))

    assert isinstance(excinfo.value, VerificationFailed)
    assert excinfo.value.integration_id == "int-1"
    assert "tok-abc" not in str(excinfo.value)
    assert await token_store.get("int-1") is None


async def test_store_provider_error_persists_nothing(make_manager, token_store, verifier) -> None:
    verifier.rejected.add("tok-abc")
    manager = make_manager()

    with pytest.raises(VerificationFailed):
        await manager.store("int-1", "tok-abc")

    assert await token_store.get("int-1") is None


async def test_store_same_token_only_refreshes_verification(make_manager, token_store, verifier) -> None:
    manager = make_manager()
    await manager.store("int-1", "tok-abc")
    before = await token_store.get("int-1")

    result = await manager.store("int-1", "tok-abc")

    after = await token_store.get("int-1")
    assert result.reencrypted is False
    assert result.is_new is False
    assert after.encrypted == before.encrypted
    assert after.last_verified_at >= before.last_verified_at
    assert verifier.calls == ["tok-abc"]


async def test_store_same_token_reverifies_when_cached_record_expired(
    make_manager, seed_record, token_store, verifier
) -> None:
    original = await seed_record("int-1", "tok-abc", expires_in=-10)
    manager = make_manager()

    result = await manager.store("int-1", "tok-abc")

    assert verifier.calls == ["tok-abc"]
    assert result.status is TokenStatus.ACTIVE
    assert result.reencrypted is False
    stored = await token_store.get("int-1")
    assert stored.encrypted == original.encrypted
    assert stored.expires_at > datetime.now(timezone.utc)


async def test_store_different_token_replaces_record(make_manager, token_store) -> None:
    manager = make_manager()
    await manager.store("int-1", "tok-abc")
    first = await token_store.get("int-1")

    result = await manager.store("int-1", "tok-xyz")

    second = await token_store.get("int-1")
    assert result.is_new is False
    assert result.reencrypted is True
    assert second.fingerprint != first.fingerprint
    assert second.created_at == first.created_at
    assert (await manager.retrieve("int-1")).token == "tok-xyz"


async def test_store_without_declared_expiry_never_expires(make_manager, verifier, token_store) -> None:
    verifier.expires_in = None
    manager = make_manager()

    await manager.store("int-1", "tok-abc")

    stored = await token_store.get("int-1")
    assert stored.expires_at is None
    assert (await manager.retrieve("int-1")).token == "tok-abc"


async def test_retrieve_missing_raises_not_found(make_manager) -> None:
    manager = make_manager()

    with pytest.raises(NotFound):
        await manager.retrieve("missing")


async def test_expired_token_is_renewed_on_retrieve(make_manager, seed_record, token_store) -> None:
    await seed_record("int-1", "tok-abc", expires_in=-10)
    manager = make_manager(renewal_enabled=True)

    retrieved = await manager.retrieve("int-1")

    assert retrieved.token == "tok-new"
    assert retrieved.renewed is True
    stored = await token_store.get("int-1")
    assert stored.status is TokenStatus.ACTIVE


async def test_explicit_renew_with_supplied_token(make_manager, seed_record, token_store, refresher) -> None:
    await seed_record("int-1", "tok-abc", expires_in=-10)
    manager = make_manager(renewal_enabled=True)

    result = await manager.renew("int-1", "tok-new")

    assert result.status is TokenStatus.ACTIVE
    assert refresher.calls == []
    assert (await manager.retrieve("int-1")).token == "tok-new"
    assert (await token_store.get("int-1")).status is TokenStatus.ACTIVE


async def test_expired_token_with_renewal_disabled_becomes_invalid(
    make_manager, seed_record, token_store, refresher
) -> None:
    await seed_record("int-1", "tok-abc", expires_in=-10)
    manager = make_manager(renewal_enabled=False)

    with pytest.raises(Expired):
        await manager.retrieve("int-1")

    assert refresher.calls == []
    stored = await token_store.get("int-1")
    assert stored.status is TokenStatus.INVALID
    assert stored.last_verification_success is False

    with pytest.raises(Expired):
        await manager.retrieve("int-1")


async def test_failed_renewal_marks_invalid_and_raises_expired(
    make_manager, seed_record, token_store, refresher
) -> None:
    await seed_record("int-1", "tok-abc", expires_in=-10)
    refresher.decline = True
    manager = make_manager(renewal_enabled=True)

    with pytest.raises(Expired) as excinfo:
        await manager.retrieve("int-1")

    assert isinstance(excinfo.value.__cause__, RenewalFailed)
    assert (await token_store.get("int-1")).status is TokenStatus.INVALID


async def test_renewed_token_rejected_by_provider_fails_renewal(
    make_manager, seed_record, token_store, verifier
) -> None:
    await seed_record("int-1", "tok-abc", expires_in=-10)
    verifier.rejected.add("tok-bad")
    manager = make_manager(renewal_enabled=True)

    with pytest.raises(RenewalFailed):
        await manager.renew("int-1", "tok-bad")

    assert (await token_store.get("int-1")).status is TokenStatus.INVALID


async def test_renew_without_refresher_fails(make_manager, seed_record, token_store) -> None:
    await seed_record("int-1", "tok-abc", expires_in=-10)
    manager = make_manager(renewal_enabled=True, with_refresher=False)

    with pytest.raises(RenewalFailed):
        await manager.renew("int-1")

    assert (await token_store.get("int-1")).status is TokenStatus.INVALID


async def test_concurrent_retrieves_share_one_renewal(
    make_manager, seed_record, refresher, verifier
) -> None:
    await seed_record("int-1", "tok-abc", expires_in=-10)
    manager = make_manager(renewal_enabled=True)

    results = await asyncio.gather(*(manager.retrieve("int-1") for _ in range(5)))

    assert [result.token for result in results] == ["tok-new"] * 5
    assert len(refresher.calls) == 1
    assert verifier.calls == ["tok-new"]


async def test_renewals_for_different_keys_run_in_parallel(
    make_manager, seed_record, refresher
) -> None:
    refresher.delay = 0.2
    await seed_record("int-1", "tok-a", expires_in=-10)
    await seed_record("int-2", "tok-b", expires_in=-10)
    manager = make_manager(renewal_enabled=True)

    loop = asyncio.get_running_loop()
    started = loop.time()
    await asyncio.gather(manager.retrieve("int-1"), manager.retrieve("int-2"))
    elapsed = loop.time() - started

    assert len(refresher.calls) == 2
    assert elapsed < 0.38


async def test_renewal_timeout_leaves_status_unchanged(
    make_manager, seed_record, token_store, refresher
) -> None:
    await seed_record("int-1", "tok-abc", expires_in=-10)
    refresher.delay = 1.0
    manager = make_manager(renewal_enabled=True, timeout=0.05)

    with pytest.raises(ProviderUnavailable):
        await manager.retrieve("int-1")

    assert (await token_store.get("int-1")).status is TokenStatus.ACTIVE


async def test_renewal_keeps_new_token_when_verification_is_unavailable(
    make_manager, seed_record, token_store, verifier
) -> None:
    await seed_record("int-1", "tok-abc", expires_in=-10)
    verifier.error = ProviderUnavailable("Graph API down.", cause="http_503")
    manager = make_manager(renewal_enabled=True)

    retrieved = await manager.retrieve("int-1")

    assert retrieved.token == "tok-new"
    stored = await token_store.get("int-1")
    assert stored.status is TokenStatus.ACTIVE
    assert stored.expires_at is None
    assert stored.last_verification_success is None


async def test_verify_updates_audit_trail(make_manager, seed_record, token_store) -> None:
    await seed_record("int-1", "tok-abc", expires_in=60)
    manager = make_manager()

    result = await manager.verify("int-1")

    assert result.status is TokenStatus.ACTIVE
    assert result.scopes == {"ads_read"}
    assert result.subject_id == "u1"
    stored = await token_store.get("int-1")
    assert stored.last_verified_at == result.last_verified_at
    assert stored.last_verification_note == result.note
    assert stored.expires_at > datetime.now(timezone.utc) + timedelta(minutes=30)


async def test_verify_marks_rejected_token_invalid(
    make_manager, seed_record, token_store, verifier, refresher
) -> None:
    await seed_record("int-1", "tok-abc", expires_in=3600)
    verifier.rejected.add("tok-abc")
    manager = make_manager(renewal_enabled=True)

    result = await manager.verify("int-1")

    assert result.status is TokenStatus.INVALID
    assert refresher.calls == []
    assert (await token_store.get("int-1")).status is TokenStatus.INVALID
    with pytest.raises(Expired):
        await manager.retrieve("int-1")


async def test_verify_reports_expired_token(make_manager, seed_record, verifier) -> None:
    await seed_record("int-1", "tok-abc", expires_in=3600)
    verifier.expires_in = -5
    manager = make_manager(renewal_enabled=True)

    result = await manager.verify("int-1")

    assert result.status is TokenStatus.EXPIRED


async def test_verify_timeout_leaves_status_unchanged(
    make_manager, seed_record, token_store, verifier
) -> None:
    record = await seed_record("int-1", "tok-abc", expires_in=3600)
    verifier.delay = 1.0
    manager = make_manager(timeout=0.05)

    with pytest.raises(ProviderUnavailable) as excinfo:
        await manager.verify("int-1")

    assert excinfo.value.integration_id == "int-1"
    stored = await token_store.get("int-1")
    assert stored.status is TokenStatus.ACTIVE
    assert stored.last_verified_at == record.last_verified_at


async def test_tampered_ciphertext_is_reported_and_quarantined(
    make_manager, seed_record, token_store
) -> None:
    record = await seed_record("int-1", "tok-abc", expires_in=3600)
    raw = bytearray(bytes.fromhex(record.encrypted.ciphertext))
    raw[0] ^= 0x01
    record.encrypted = record.encrypted.model_copy(update={"ciphertext": raw.hex()})
    await token_store.put(record)
    manager = make_manager()

    with pytest.raises(IntegrityError) as excinfo:
        await manager.retrieve("int-1")

    assert excinfo.value.integration_id == "int-1"
    stored = await token_store.get("int-1")
    assert stored.status is TokenStatus.INVALID
    assert "Integrity" in stored.last_verification_note


async def test_revoke_is_idempotent_and_terminal(make_manager, token_store) -> None:
    manager = make_manager()
    await manager.store("int-1", "tok-abc")

    await manager.revoke("int-1")
    await manager.revoke("int-1")
    await manager.revoke("never-stored")

    stored = await token_store.get("int-1")
    assert stored.status is TokenStatus.REVOKED
    assert stored.encrypted is None
    assert stored.fingerprint is None
    assert stored.revoked_at is not None
    with pytest.raises(NotFound):
        await manager.retrieve("int-1")
    with pytest.raises(RevokedAccess):
        await manager.verify("int-1")
    with pytest.raises(RevokedAccess):
        await manager.renew("int-1", "tok-new")
    with pytest.raises(RevokedAccess):
        await manager.store("int-1", "tok-abc")


async def test_status_reads_cached_state_without_provider(make_manager, verifier) -> None:
    manager = make_manager()
    await manager.store("int-1", "tok-abc")
    verifier.calls.clear()

    view = await manager.status("int-1")

    assert view.status is TokenStatus.ACTIVE
    assert view.scopes == {"ads_read"}
    assert verifier.calls == []
    with pytest.raises(NotFound):
        await manager.status("missing")


async def test_waiters_do_not_repeat_an_unresolved_renewal(
    make_manager, seed_record, token_store, refresher
) -> None:
    await seed_record("int-1", "tok-abc", expires_in=-10)
    refresher.delay = 0.2
    manager = make_manager(renewal_enabled=True, timeout=0.05)

    results = await asyncio.gather(
        manager.retrieve("int-1"), manager.retrieve("int-1"), return_exceptions=True
    )

    assert [type(result) for result in results] == [ProviderUnavailable] * 2
    assert results[1].cause == "renewal_in_doubt"
    assert len(refresher.calls) == 1
    assert (await token_store.get("int-1")).status is TokenStatus.ACTIVE


async def test_renewal_is_retried_once_earlier_attempt_settles(
    make_manager, seed_record, refresher
) -> None:
    await seed_record("int-1", "tok-abc", expires_in=-10)
    refresher.delay = 0.2
    manager = make_manager(renewal_enabled=True, timeout=0.05)

    with pytest.raises(ProviderUnavailable):
        await manager.retrieve("int-1")

    refresher.delay = 0.0
    retrieved = await manager.retrieve("int-1")

    assert retrieved.token == "tok-new"
    assert len(refresher.calls) == 2


async def test_store_keeps_provider_reported_past_expiry(
    make_manager, token_store, verifier
) -> None:
    verifier.expires_in = -5
    manager = make_manager()

    result = await manager.store("int-1", "tok-abc")

    assert result.status is TokenStatus.EXPIRED
    stored = await token_store.get("int-1")
    assert stored.status is TokenStatus.EXPIRED
    assert stored.last_verification_success is True


async def test_empty_token_from_refresher_marks_invalid(
    make_manager, seed_record, token_store, refresher
) -> None:
    await seed_record("int-1", "tok-abc", expires_in=-10)
    refresher.new_token = ""
    manager = make_manager(renewal_enabled=True)

    with pytest.raises(RenewalFailed) as excinfo:
        await manager.renew("int-1")

    assert excinfo.value.cause == "empty_token"
    stored = await token_store.get("int-1")
    assert stored.status is TokenStatus.INVALID
    assert stored.last_verification_success is False
