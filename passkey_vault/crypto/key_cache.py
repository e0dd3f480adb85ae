"""
Session-scoped cache of unwrapped unit keys.

Keys live only in process memory for the lifetime of the owning
EncryptionContext and are never written to durable storage. Each key is held
in a bytearray so it can be wiped on delete or clear.

The backing mapping is injectable so environments where session storage is
blocked can be modelled; callers check ``is_available()`` and fall back to
re-deriving keys per operation.
"""

from __future__ import annotations

import logging
import threading
from typing import MutableMapping, Optional

from passkey_vault.core.exceptions import StorageUnavailableError
from passkey_vault.crypto.zeroize import wipe

logger = logging.getLogger(__name__)

_PROBE_KEY = "__passkey_vault_probe__"


class LocalKeyCache:
    """scope id -> unwrapped key, for one session only"""

    def __init__(self, backend: Optional[MutableMapping[str, bytearray]] = None):
        self._backend: MutableMapping[str, bytearray] = backend if backend is not None else {}
        self._lock = threading.Lock()

    def is_available(self) -> bool:
        """Write, read back and remove a sentinel entry."""
        probe = bytearray(b"\x01")
        try:
            with self._lock:
                self._backend[_PROBE_KEY] = probe
                ok = self._backend.get(_PROBE_KEY) == probe
                del self._backend[_PROBE_KEY]
            return ok
        except (OSError, KeyError) as e:
            logger.warning(f"Session key storage unavailable: {type(e).__name__}")
            return False

    def store(self, scope_id: str, key: bytes) -> None:
        try:
            with self._lock:
                previous = self._backend.get(scope_id)
                self._backend[scope_id] = bytearray(key)
        except OSError as e:
            raise StorageUnavailableError() from e
        if previous is not None:
            wipe(previous)

    def get(self, scope_id: str) -> Optional[bytes]:
        try:
            with self._lock:
                key = self._backend.get(scope_id)
        except OSError:
            return None
        return bytes(key) if key is not None else None

    def has(self, scope_id: str) -> bool:
        return self.get(scope_id) is not None

    def delete(self, scope_id: str) -> None:
        with self._lock:
            key = self._backend.pop(scope_id, None)
        if key is not None:
            wipe(key)

    def clear_all(self) -> None:
        with self._lock:
            keys = list(self._backend.values())
            self._backend.clear()
        for key in keys:
            wipe(key)
        logger.debug("Cleared session key cache", extra={"entries": len(keys)})

    def __len__(self) -> int:
        return len(self._backend)
