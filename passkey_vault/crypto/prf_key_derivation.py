"""
PRF Key Derivation

Turns the output of a passkey's PRF extension into a deterministic root key.

The authenticator evaluates its PRF under a stored, non-secret salt; the
output never leaves the device. HKDF-SHA256 with a versioned info string
expands it into the root key, so the same credential and salt always give
the same key and the server cannot compute it.

Setup path:
    params = generate_prf_params()
    # ceremony evaluates PRF(params.salt) -> prf_output
    unit_key, wrapped = initialize_prf_encryption(prf_output, params, ...)

Unlock path:
    # ceremony evaluates PRF(params.salt) again -> prf_output
    unit_key = unlock_prf_encryption(prf_output, params, wrapped)

Root keys are held in bytearrays and wiped as soon as the wrap or unwrap
that needs them has run.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Optional, Tuple

from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from passkey_vault.core.exceptions import WrapUnwrapAuthenticationError
from passkey_vault.crypto.encoding import generate_salt
from passkey_vault.crypto.key_wrapping import KeyWrappingService, ROOT_KEY_SIZE
from passkey_vault.crypto.types import PRFKeyParams, PRFSupportInfo, WrappedKey
from passkey_vault.crypto.zeroize import wipe

if TYPE_CHECKING:
    from passkey_vault.crypto.ceremony import DeviceAuthenticator

logger = logging.getLogger(__name__)

PRF_VERSION = 1
PRF_SALT_SIZE = 32
SUPPORTED_VERSIONS = frozenset({PRF_VERSION})

_INFO_PREFIX = b"passkey-vault/e2ee/root-key/v"


def generate_prf_params(credential_id: Optional[str] = None) -> PRFKeyParams:
    """Fresh random salt for a new encryption setup."""
    return PRFKeyParams(
        salt=generate_salt(PRF_SALT_SIZE),
        version=PRF_VERSION,
        credential_id=credential_id,
    )


def derive_key_from_prf(prf_output: bytes, salt: bytes, version: int = PRF_VERSION) -> bytearray:
    """
    Derive the 32-byte root key from a PRF output.

    Args:
        prf_output: PRF extension result computed on the device under ``salt``
        salt: the stored, non-secret salt
        version: derivation version tag; unknown versions are rejected

    Returns:
        Root key in a bytearray, to be wiped by the caller
    """
    if version not in SUPPORTED_VERSIONS:
        raise ValueError(f"Unsupported PRF key derivation version: {version}")
    if not prf_output:
        raise ValueError("PRF output is empty")
    if len(salt) < 16:
        raise ValueError("PRF salt must be at least 16 bytes")

    hkdf = HKDF(
        algorithm=hashes.SHA256(),
        length=ROOT_KEY_SIZE,
        salt=bytes(salt),
        info=_INFO_PREFIX + str(version).encode("ascii"),
    )
    return bytearray(hkdf.derive(bytes(prf_output)))


def _derive_for_existing(prf_output: bytes, params: PRFKeyParams) -> bytearray:
    """Derivation for stored params; bad params look like any other unwrap failure."""
    try:
        return derive_key_from_prf(prf_output, params.salt, params.version)
    except ValueError as e:
        logger.warning(f"Root key derivation rejected stored params: {e}")
        raise WrapUnwrapAuthenticationError() from e


def get_prf_support_info(authenticator: "DeviceAuthenticator") -> PRFSupportInfo:
    """Probe whether a device can run passkey ceremonies with the PRF extension."""
    if not authenticator.is_available():
        return PRFSupportInfo(supported=False, reason="No passkey authenticator is available")
    if not authenticator.supports_prf():
        return PRFSupportInfo(
            supported=False,
            reason="This authenticator does not support the PRF extension",
        )
    return PRFSupportInfo(supported=True)


def initialize_prf_encryption(
    prf_output: bytes,
    params: PRFKeyParams,
    *,
    scope_id: str,
    credential_id: str,
    wrapper: Optional[KeyWrappingService] = None,
) -> Tuple[bytes, WrappedKey]:
    """
    Setup path: derive the root key, wrap a newly generated unit key, discard the root key.

    Returns:
        (unit_key, wrapped_key) - only the wrapped form may be sent to the server
    """
    wrapper = wrapper or KeyWrappingService()
    unit_key = wrapper.generate_unit_key()
    root_key = derive_key_from_prf(prf_output, params.salt, params.version)
    try:
        wrapped = wrapper.wrap(unit_key, root_key, scope_id=scope_id, credential_id=credential_id)
    finally:
        wipe(root_key)

    logger.info(
        "Initialized passkey encryption",
        extra={"scope_id": scope_id, "algorithm": wrapped.algorithm, "version": params.version},
    )
    return unit_key, wrapped


def unlock_prf_encryption(
    prf_output: bytes,
    params: PRFKeyParams,
    wrapped: WrappedKey,
    wrapper: Optional[KeyWrappingService] = None,
) -> bytes:
    """
    Unlock path: re-derive the root key under the stored salt and unwrap once.

    Raises:
        WrapUnwrapAuthenticationError: wrong credential, tampered record or
            unknown version (indistinguishable to the caller)
    """
    wrapper = wrapper or KeyWrappingService()
    root_key = _derive_for_existing(prf_output, params)
    try:
        return wrapper.unwrap(wrapped, root_key)
    finally:
        wipe(root_key)


def wrap_for_credential(
    unit_key: bytes,
    prf_output: bytes,
    params: PRFKeyParams,
    *,
    scope_id: str,
    credential_id: str,
    wrapper: Optional[KeyWrappingService] = None,
) -> WrappedKey:
    """Wrap an existing unit key under another device's root key (adding a device)."""
    wrapper = wrapper or KeyWrappingService()
    root_key = _derive_for_existing(prf_output, params)
    try:
        return wrapper.wrap(unit_key, root_key, scope_id=scope_id, credential_id=credential_id)
    finally:
        wipe(root_key)
