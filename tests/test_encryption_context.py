"""
Tests for passkey_vault/crypto/encryption_context.py

End-to-end through the real API (httpx ASGI transport) with software
authenticators:
- First-time setup, lock and unlock
- New sessions and additional devices
- Failure paths: tampered wrapped key, cancelled ceremony, missing setup
- Per-operation key derivation when session storage is blocked
"""

from dataclasses import replace

import pytest
import pytest_asyncio

from passkey_vault.auth_middleware import create_access_token
from passkey_vault.core.exceptions import (
    CapabilityUnavailableError,
    EncryptionLockedError,
    ResourceAlreadyExistsError,
    ResourceNotFoundError,
    WrapUnwrapAuthenticationError,
)
from passkey_vault.crypto.ceremony import PasskeyClient
from passkey_vault.crypto.encryption_context import EncryptionContext, EncryptionState
from passkey_vault.crypto.key_cache import LocalKeyCache
from passkey_vault.crypto.server_client import VaultServerClient

from conftest import LOCAL_ORIGIN, BlockedStorage, SoftwareAuthenticator


@pytest.fixture
def server(async_http, settings):
    token = create_access_token(settings, "user-alice", "alice")
    return VaultServerClient(async_http, LOCAL_ORIGIN, access_token=token)


def new_session(server, authenticator, cache=None) -> EncryptionContext:
    return EncryptionContext(PasskeyClient(authenticator, server), cache=cache)


@pytest_asyncio.fixture
async def context(server, authenticator):
    ctx = new_session(server, authenticator)
    await ctx.initialize("user-alice")
    return ctx


class TestSetup:
    """setup_encryption()"""

    @pytest.mark.asyncio
    async def test_first_time_setup(self, context, db):
        assert context.has_encryption_setup is False

        assert await context.setup_encryption() is True

        assert context.state is EncryptionState.UNLOCKED
        assert context.has_passkey and context.has_encryption_setup
        assert context.last_unlocked_at is not None
        assert context.cache.has("user-alice")

        params = db.get_prf_params("user-alice")
        assert params.salt == context.params.salt
        wrapped = db.list_wrapped_keys("user-alice", "user-alice")
        assert [w.credential_id for w in wrapped] == [params.credential_id]
        # Only the wrapped form reached the server
        assert context.cache.get("user-alice") not in wrapped[0].ciphertext

    @pytest.mark.asyncio
    async def test_setup_twice(self, context):
        await context.setup_encryption()

        assert await context.setup_encryption() is False

        assert isinstance(context.error, ResourceAlreadyExistsError)
        assert context.state is EncryptionState.LOCKED

    @pytest.mark.asyncio
    async def test_setup_without_prf(self, server, db):
        ctx = new_session(server, SoftwareAuthenticator(prf=False))
        await ctx.initialize("user-alice")

        assert await ctx.setup_encryption() is False

        assert isinstance(ctx.error, CapabilityUnavailableError)
        assert db.get_prf_params("user-alice") is None

    @pytest.mark.asyncio
    async def test_setup_cancelled(self, context, authenticator, db):
        authenticator.cancel_next = True

        assert await context.setup_encryption() is False

        assert context.error is None
        assert db.get_prf_params("user-alice") is None

    @pytest.mark.asyncio
    async def test_concurrent_setup_keeps_first_wrapped_key(self, server, authenticator, db):
        await new_session(server, authenticator).passkeys.register()
        tab_a = new_session(server, authenticator)
        tab_b = new_session(server, authenticator)
        await tab_a.initialize("user-alice")
        await tab_b.initialize("user-alice")

        assert await tab_a.setup_encryption() is True
        envelope = await tab_a.encrypt("medical notes")
        stored = db.list_wrapped_keys("user-alice", "user-alice")
        salt = db.get_prf_params("user-alice").salt

        assert await tab_b.setup_encryption() is False

        assert isinstance(tab_b.error, ResourceAlreadyExistsError)
        assert db.list_wrapped_keys("user-alice", "user-alice") == stored
        assert db.get_prf_params("user-alice").salt == salt

        fresh = new_session(server, authenticator)
        await fresh.initialize("user-alice")
        assert await fresh.unlock_with_passkey("user-alice") is True
        assert await fresh.decrypt(envelope) == b"medical notes"


class TestLockUnlock:
    """lock() / unlock_with_passkey()"""

    @pytest.mark.asyncio
    async def test_lock_then_unlock(self, context):
        await context.setup_encryption()
        unit_key = context.cache.get("user-alice")

        context.lock()
        assert context.state is EncryptionState.LOCKED
        assert len(context.cache) == 0

        assert await context.unlock_with_passkey("user-alice") is True
        assert context.state is EncryptionState.UNLOCKED
        assert context.cache.get("user-alice") == unit_key
        assert context.error is None

    @pytest.mark.asyncio
    async def test_new_session_reads_old_data(self, context, server, authenticator):
        await context.setup_encryption()
        envelope = await context.encrypt("medical notes")

        later = new_session(server, authenticator)
        status = await later.initialize("user-alice")
        assert status["has_encryption_setup"] is True

        assert await later.unlock_with_passkey("user-alice") is True
        assert await later.decrypt(envelope) == b"medical notes"

    @pytest.mark.asyncio
    async def test_tampered_wrapped_key(self, context, db):
        await context.setup_encryption()
        context.lock()
        wrapped = db.list_wrapped_keys("user-alice", "user-alice")[0]
        ciphertext = bytearray(wrapped.ciphertext)
        ciphertext[0] ^= 0xFF
        db.upsert_wrapped_key("user-alice", replace(wrapped, ciphertext=bytes(ciphertext)))

        assert await context.unlock_with_passkey("user-alice") is False

        assert isinstance(context.error, WrapUnwrapAuthenticationError)
        assert context.state is EncryptionState.LOCKED
        assert len(context.cache) == 0

    @pytest.mark.asyncio
    async def test_unsupported_params_version(self, context):
        await context.setup_encryption()
        params = context.params
        context.lock()

        assert await context.unlock_with_passkey("user-alice", replace(params, version=2)) is False

        assert isinstance(context.error, WrapUnwrapAuthenticationError)
        assert context.state is EncryptionState.LOCKED
        assert len(context.cache) == 0

    @pytest.mark.asyncio
    async def test_cancelled_unlock(self, context, authenticator):
        await context.setup_encryption()
        context.lock()
        authenticator.cancel_next = True

        assert await context.unlock_with_passkey("user-alice") is False

        assert context.error is None
        assert context.state is EncryptionState.LOCKED

    @pytest.mark.asyncio
    async def test_unlock_without_setup(self, context):
        assert await context.unlock_with_passkey("user-alice") is False
        assert isinstance(context.error, ResourceNotFoundError)

    @pytest.mark.asyncio
    async def test_teardown(self, context):
        await context.setup_encryption()

        context.teardown()

        assert context.state is EncryptionState.LOCKED
        assert context.user_id is None
        assert context.params is None
        assert context.has_encryption_setup is False
        assert len(context.cache) == 0
        with pytest.raises(EncryptionLockedError):
            await context.encrypt("x")


class TestDataOperations:
    """encrypt/decrypt helpers"""

    @pytest.mark.asyncio
    async def test_locked_operations_raise(self, context):
        with pytest.raises(EncryptionLockedError):
            await context.encrypt("x")
        with pytest.raises(EncryptionLockedError):
            await context.encrypt_fields({"notes": "x"}, ["notes"])

    @pytest.mark.asyncio
    async def test_round_trips(self, context):
        await context.setup_encryption()

        envelope = await context.encrypt("hello")
        assert await context.decrypt(envelope) == b"hello"

        obj = await context.encrypt_object({"dose": 5, "unit": "mg"})
        assert await context.decrypt_object(obj) == {"dose": 5, "unit": "mg"}

        record = {"id": 1, "notes": "private"}
        encrypted = await context.encrypt_fields(record, ["notes"])
        assert encrypted["notes"] != "private"
        assert await context.decrypt_fields(encrypted, ["notes"]) == record

    @pytest.mark.asyncio
    async def test_locked_after_lock(self, context):
        await context.setup_encryption()
        envelope = await context.encrypt("hello")
        context.lock()
        with pytest.raises(EncryptionLockedError):
            await context.decrypt(envelope)


class TestAddDevice:
    @pytest.mark.asyncio
    async def test_either_device_unlocks(self, context, server, authenticator, db):
        await context.setup_encryption()
        envelope = await context.encrypt("shared secret")
        second_device = SoftwareAuthenticator()
        context.passkeys.authenticator = second_device

        assert await context.add_device() is True

        assert len(db.list_wrapped_keys("user-alice", "user-alice")) == 2
        for device in (second_device, authenticator):
            session = new_session(server, device)
            await session.initialize("user-alice")
            assert await session.unlock_with_passkey("user-alice") is True
            assert await session.decrypt(envelope) == b"shared secret"

    @pytest.mark.asyncio
    async def test_requires_unlock(self, context):
        with pytest.raises(EncryptionLockedError):
            await context.add_device()

    @pytest.mark.asyncio
    async def test_failure_keeps_session_unlocked(self, context, db):
        await context.setup_encryption()
        context.passkeys.authenticator = SoftwareAuthenticator(prf=False)

        assert await context.add_device() is False

        assert isinstance(context.error, CapabilityUnavailableError)
        assert context.state is EncryptionState.UNLOCKED
        assert len(db.list_wrapped_keys("user-alice", "user-alice")) == 1


class TestBlockedSessionStorage:
    """Keys are re-derived per operation when the cache cannot be used"""

    @pytest.mark.asyncio
    async def test_per_operation_derivation(self, server, authenticator):
        ctx = new_session(server, authenticator, cache=LocalKeyCache(BlockedStorage()))
        await ctx.initialize("user-alice")
        assert await ctx.setup_encryption() is True
        assert len(ctx.cache) == 0
        calls = authenticator.calls

        envelope = await ctx.encrypt("hello")
        assert await ctx.decrypt(envelope) == b"hello"

        # One ceremony per operation
        assert authenticator.calls == calls + 2
        assert len(ctx.cache) == 0
