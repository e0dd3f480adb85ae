"""
Tests for passkey_vault/crypto/key_cache.py
"""

import pytest

from passkey_vault.core.exceptions import StorageUnavailableError
from passkey_vault.crypto.key_cache import LocalKeyCache

from conftest import BlockedStorage


class TestLocalKeyCache:
    def test_store_and_get(self):
        cache = LocalKeyCache()
        cache.store("user-1", b"k" * 32)
        assert cache.get("user-1") == b"k" * 32
        assert cache.has("user-1")
        assert len(cache) == 1

    def test_missing_scope(self):
        cache = LocalKeyCache()
        assert cache.get("nobody") is None
        assert not cache.has("nobody")

    def test_store_replaces_and_wipes_previous(self):
        backend = {}
        cache = LocalKeyCache(backend)
        cache.store("user-1", b"a" * 32)
        previous = backend["user-1"]

        cache.store("user-1", b"b" * 32)

        assert cache.get("user-1") == b"b" * 32
        assert previous == bytearray(32)

    def test_delete_wipes(self):
        backend = {}
        cache = LocalKeyCache(backend)
        cache.store("user-1", b"a" * 32)
        held = backend["user-1"]

        cache.delete("user-1")

        assert cache.get("user-1") is None
        assert held == bytearray(32)

    def test_delete_missing_is_noop(self):
        LocalKeyCache().delete("nobody")

    def test_clear_all(self):
        backend = {}
        cache = LocalKeyCache(backend)
        cache.store("user-1", b"a" * 32)
        cache.store("user-2", b"b" * 32)
        held = list(backend.values())

        cache.clear_all()

        assert len(cache) == 0
        assert all(key == bytearray(32) for key in held)

    def test_get_returns_copy(self):
        cache = LocalKeyCache()
        cache.store("user-1", b"a" * 32)
        cache.get("user-1")
        cache.delete("user-1")
        assert cache.get("user-1") is None

    def test_available(self):
        cache = LocalKeyCache()
        assert cache.is_available() is True
        assert len(cache) == 0


class TestBlockedStorage:
    """Environments where session storage is disabled"""

    def test_not_available(self):
        assert LocalKeyCache(BlockedStorage()).is_available() is False

    def test_store_raises(self):
        with pytest.raises(StorageUnavailableError):
            LocalKeyCache(BlockedStorage()).store("user-1", b"a" * 32)
