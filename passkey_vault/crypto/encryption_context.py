"""
Encryption Context - session state for end-to-end encryption

One EncryptionContext is owned per signed-in session. It is either LOCKED or
UNLOCKED and every transition goes through its methods:

    initialize(user_id)        on sign-in; loads status and PRF params
    setup_encryption()         first-time setup: passkey + salt + unit key
    unlock_with_passkey(...)   PRF ceremony -> root key -> unwrap -> cache
    add_device()               wrap the unit key for another passkey
    lock()                     clear cached keys
    teardown()                 sign-out; forget everything

encrypt/decrypt helpers require UNLOCKED and raise EncryptionLockedError
otherwise. When session key storage is unavailable the context stays usable
by re-deriving the unit key with a passkey ceremony for each operation.
"""

from __future__ import annotations

import logging
import time
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Union

from passkey_vault.core.exceptions import (
    CapabilityUnavailableError,
    CeremonyCancelledError,
    EncryptionLockedError,
    ResourceAlreadyExistsError,
    ResourceNotFoundError,
    StorageUnavailableError,
    VaultError,
    WrapUnwrapAuthenticationError,
)
from passkey_vault.crypto import encryption
from passkey_vault.crypto.ceremony import PasskeyClient
from passkey_vault.crypto.key_cache import LocalKeyCache
from passkey_vault.crypto.key_wrapping import KeyWrappingService
from passkey_vault.crypto.prf_key_derivation import (
    generate_prf_params,
    initialize_prf_encryption,
    unlock_prf_encryption,
    wrap_for_credential,
)
from passkey_vault.crypto.types import EncryptedData, PRFKeyParams

logger = logging.getLogger(__name__)


class EncryptionState(str, Enum):
    LOCKED = "locked"
    UNLOCKED = "unlocked"


class EncryptionContext:
    """Owned session object driving lock/unlock for one user"""

    def __init__(
        self,
        passkeys: PasskeyClient,
        cache: Optional[LocalKeyCache] = None,
        wrapper: Optional[KeyWrappingService] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.passkeys = passkeys
        self.server = passkeys.server
        self.cache = cache if cache is not None else LocalKeyCache()
        self.wrapper = wrapper or KeyWrappingService()
        self._clock = clock

        self.state = EncryptionState.LOCKED
        self.last_unlocked_at: Optional[float] = None
        self.error: Optional[VaultError] = None

        self.user_id: Optional[str] = None
        self.params: Optional[PRFKeyParams] = None
        self.has_passkey = False
        self.has_encryption_setup = False
        self._scope_id: Optional[str] = None
        self._cache_available = True

    @property
    def is_unlocked(self) -> bool:
        return self.state is EncryptionState.UNLOCKED

    # ===== Transitions =====

    async def initialize(self, user_id: str) -> Dict[str, Any]:
        """Load encryption status for a freshly signed-in user."""
        self.user_id = user_id
        status = await self.server.get_encryption_status()
        self.has_passkey = bool(status.get("has_passkey"))
        self.has_encryption_setup = bool(status.get("has_encryption_setup"))
        self.params = await self.server.get_prf_params() if self.has_encryption_setup else None
        self._cache_available = self.cache.is_available()
        if not self._cache_available:
            logger.warning("Session key storage unavailable; keys will be re-derived per operation")
        return status

    async def setup_encryption(
        self,
        scope_id: Optional[str] = None,
        register_new: Optional[bool] = None,
    ) -> bool:
        """
        First-time setup on this account.

        Registers a passkey (unless one exists and ``register_new`` is False),
        evaluates its PRF under a new salt, wraps a new unit key and stores
        the wrapped key and params on the server in one step. Returns whether
        the session ended up unlocked.
        """
        scope_id = scope_id or self.user_id
        if scope_id is None:
            raise ValueError("initialize() must be called before setup_encryption()")
        if register_new is None:
            register_new = not self.has_passkey

        try:
            if self.has_encryption_setup:
                raise ResourceAlreadyExistsError("encryption_params", self.user_id or scope_id)

            credential_ids = None
            if register_new:
                registration = await self.passkeys.register()
                if registration.cancelled:
                    return False
                if not registration.prf_enabled:
                    raise CapabilityUnavailableError("This passkey does not support the PRF extension")
                credential_ids = [registration.credential_id]
                self.has_passkey = True

            params = generate_prf_params()
            outcome = await self.passkeys.authenticate(prf_salt=params.salt, credential_ids=credential_ids)
            if outcome.cancelled:
                return False
            if outcome.prf_output is None:
                raise CapabilityUnavailableError("Passkey did not return a PRF result")

            params = params.with_credential(outcome.credential_id)
            unit_key, wrapped = initialize_prf_encryption(
                outcome.prf_output,
                params,
                scope_id=scope_id,
                credential_id=outcome.credential_id,
                wrapper=self.wrapper,
            )
            # Params and first wrapped key are stored together or not at all
            await self.server.complete_setup(params, wrapped)
        except VaultError as e:
            self._fail(e)
            return False

        self.params = params
        self.has_encryption_setup = True
        self._set_unlocked(scope_id, unit_key)
        logger.info("Encryption set up", extra={"scope_id": scope_id})
        return True

    async def unlock_with_passkey(
        self,
        user_id: str,
        params: Optional[PRFKeyParams] = None,
        scope_id: Optional[str] = None,
    ) -> bool:
        """
        Run a PRF ceremony and unwrap the unit key.

        Returns True when the session became unlocked. Any failure (cancelled
        ceremony, verification error, wrong passkey, tampered wrapped key)
        returns False, leaves the cache empty and records ``self.error``.
        """
        self.user_id = self.user_id or user_id
        scope_id = scope_id or user_id

        try:
            unit_key = await self._derive_unit_key(params, scope_id)
        except VaultError as e:
            self._fail(e)
            return False

        if unit_key is None:
            logger.info("Unlock cancelled by user")
            self.error = None
            return False

        self._set_unlocked(scope_id, unit_key)
        logger.info("Encryption unlocked", extra={"scope_id": scope_id})
        return True

    async def add_device(self) -> bool:
        """Register another passkey and wrap the current unit key for it."""
        if not self.is_unlocked or self.params is None:
            raise EncryptionLockedError()
        scope_id = self._scope_id

        try:
            unit_key = await self._current_unit_key(scope_id)
            registration = await self.passkeys.register()
            if registration.cancelled:
                return False
            if not registration.prf_enabled:
                raise CapabilityUnavailableError("This passkey does not support the PRF extension")

            outcome = await self.passkeys.authenticate(
                prf_salt=self.params.salt,
                credential_ids=[registration.credential_id],
            )
            if outcome.cancelled:
                return False
            if outcome.prf_output is None:
                raise CapabilityUnavailableError("Passkey did not return a PRF result")

            wrapped = wrap_for_credential(
                unit_key,
                outcome.prf_output,
                self.params,
                scope_id=scope_id,
                credential_id=outcome.credential_id,
                wrapper=self.wrapper,
            )
            await self.server.put_wrapped_key(wrapped)
        except VaultError as e:
            # The session stays unlocked; existing wrapped keys are untouched
            self.error = e
            logger.warning(f"Adding device failed: {e.code}")
            return False

        logger.info("Added passkey device", extra={"scope_id": scope_id})
        return True

    def lock(self) -> None:
        self.cache.clear_all()
        self.state = EncryptionState.LOCKED
        self._scope_id = None

    def teardown(self) -> None:
        """Sign-out: lock and drop everything known about the user."""
        self.passkeys.runner.cancel()
        self.lock()
        self.user_id = None
        self.params = None
        self.has_passkey = False
        self.has_encryption_setup = False
        self.last_unlocked_at = None
        self.error = None

    # ===== Data operations =====

    async def encrypt(self, plaintext: Union[str, bytes]) -> EncryptedData:
        key = await self._current_unit_key(self._scope_id)
        return encryption.encrypt(plaintext, key)

    async def decrypt(self, data: EncryptedData) -> bytes:
        key = await self._current_unit_key(self._scope_id)
        return encryption.decrypt(data, key)

    async def encrypt_object(self, value: Any) -> EncryptedData:
        key = await self._current_unit_key(self._scope_id)
        return encryption.encrypt_object(value, key)

    async def decrypt_object(self, data: EncryptedData) -> Any:
        key = await self._current_unit_key(self._scope_id)
        return encryption.decrypt_object(data, key)

    async def encrypt_fields(self, record: Mapping[str, Any], fields: Iterable[str]) -> Dict[str, Any]:
        key = await self._current_unit_key(self._scope_id)
        return encryption.encrypt_fields(record, fields, key)

    async def decrypt_fields(self, record: Mapping[str, Any], fields: Iterable[str]) -> Dict[str, Any]:
        key = await self._current_unit_key(self._scope_id)
        return encryption.decrypt_fields(record, fields, key)

    # ===== Internals =====

    async def _derive_unit_key(self, params: Optional[PRFKeyParams], scope_id: str) -> Optional[bytes]:
        """Ceremony + derivation + unwrap; None when the user cancels."""
        params = params or self.params or await self.server.get_prf_params()
        if params is None:
            raise ResourceNotFoundError("encryption_params", scope_id)
        self.params = params

        credential_ids: Optional[List[str]] = [params.credential_id] if params.credential_id else None
        wrapped_list = await self.server.list_wrapped_keys(scope_id)
        if wrapped_list:
            credential_ids = [w.credential_id for w in wrapped_list]

        outcome = await self.passkeys.authenticate(prf_salt=params.salt, credential_ids=credential_ids)
        if outcome.cancelled:
            return None
        if outcome.prf_output is None:
            raise CapabilityUnavailableError("Passkey did not return a PRF result")

        wrapped = next((w for w in wrapped_list if w.credential_id == outcome.credential_id), None)
        if wrapped is None:
            raise WrapUnwrapAuthenticationError()
        return unlock_prf_encryption(outcome.prf_output, params, wrapped, self.wrapper)

    async def _current_unit_key(self, scope_id: Optional[str]) -> bytes:
        if not self.is_unlocked or scope_id is None:
            raise EncryptionLockedError()

        if self._cache_available:
            key = self.cache.get(scope_id)
            if key is None:
                raise EncryptionLockedError()
            return key

        key = await self._derive_unit_key(self.params, scope_id)
        if key is None:
            raise CeremonyCancelledError()
        return key

    def _set_unlocked(self, scope_id: str, unit_key: bytes) -> None:
        if self._cache_available:
            try:
                self.cache.store(scope_id, unit_key)
            except StorageUnavailableError:
                logger.warning("Session key storage failed; falling back to per-operation derivation")
                self._cache_available = False
        self._scope_id = scope_id
        self.state = EncryptionState.UNLOCKED
        self.last_unlocked_at = self._clock()
        self.error = None

    def _fail(self, error: VaultError) -> None:
        self.error = error
        self.cache.clear_all()
        self.state = EncryptionState.LOCKED
        self._scope_id = None
        logger.warning(f"Passkey encryption failed: {error.code}")
