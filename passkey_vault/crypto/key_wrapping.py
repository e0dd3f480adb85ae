"""
Key wrapping for passkey-derived root keys.

Provides two authenticated wrapping schemes for unit data keys:
- AES-256-GCM via cryptography (default)
- XChaCha20-Poly1305 via libsodium/PyNaCl

Usage:
    service = KeyWrappingService()
    wrapped = service.wrap(unit_key, root_key, scope_id="user-1", credential_id=cred_id)
    unit_key = service.unwrap(wrapped, root_key)

Notes:
- Every wrap draws a fresh nonce (12 bytes for AES-GCM, 24 for XChaCha20)
- The associated data binds scope, credential, algorithm and version, so a
  record copied to another scope or credential does not unwrap
- All unwrap failures raise the same WrapUnwrapAuthenticationError
"""

from __future__ import annotations

import logging
import secrets
from typing import Literal

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from nacl.bindings import (
    crypto_aead_xchacha20poly1305_ietf_decrypt,
    crypto_aead_xchacha20poly1305_ietf_encrypt,
)
from nacl.exceptions import CryptoError

from passkey_vault.core.exceptions import WrapUnwrapAuthenticationError
from passkey_vault.crypto.types import WrappedKey
from passkey_vault.crypto.zeroize import wipe

logger = logging.getLogger(__name__)

WrapAlgorithm = Literal["aes-256-gcm", "xchacha20-poly1305"]

WRAP_VERSION = 1
UNIT_KEY_SIZE = 32
ROOT_KEY_SIZE = 32

_NONCE_SIZES = {
    "aes-256-gcm": 12,
    "xchacha20-poly1305": 24,
}


def _associated_data(scope_id: str, credential_id: str, algorithm: str, version: int) -> bytes:
    return f"passkey-vault/wrap|{scope_id}|{credential_id}|{algorithm}|v{version}".encode("utf-8")


def wrap_key_aes_gcm(key: bytes, wrapping_key: bytes, aad: bytes) -> tuple[bytes, bytes]:
    """Wrap key with AES-256-GCM.

    Args:
        key: key material to wrap
        wrapping_key: 32-byte AES key
        aad: associated data bound to the ciphertext
    Returns:
        (nonce, ciphertext+auth_tag)
    """
    if len(wrapping_key) != ROOT_KEY_SIZE:
        raise ValueError("wrapping_key must be 32 bytes for AES-256-GCM")
    nonce = secrets.token_bytes(_NONCE_SIZES["aes-256-gcm"])
    return nonce, AESGCM(bytes(wrapping_key)).encrypt(nonce, bytes(key), aad)


def unwrap_key_aes_gcm(ciphertext: bytes, nonce: bytes, wrapping_key: bytes, aad: bytes) -> bytes:
    if len(wrapping_key) != ROOT_KEY_SIZE:
        raise ValueError("wrapping_key must be 32 bytes for AES-256-GCM")
    return AESGCM(bytes(wrapping_key)).decrypt(nonce, ciphertext, aad)


def wrap_key_xchacha(key: bytes, wrapping_key: bytes, aad: bytes) -> tuple[bytes, bytes]:
    """Wrap key with XChaCha20-Poly1305.

    Args:
        key: key material to wrap
        wrapping_key: 32-byte key (symmetric)
        aad: associated data bound to the ciphertext
    Returns:
        (24-byte nonce, ciphertext+auth_tag)
    """
    if len(wrapping_key) != ROOT_KEY_SIZE:
        raise ValueError("wrapping_key must be 32 bytes for XChaCha20-Poly1305")
    nonce = secrets.token_bytes(_NONCE_SIZES["xchacha20-poly1305"])
    ct = crypto_aead_xchacha20poly1305_ietf_encrypt(bytes(key), aad, nonce, bytes(wrapping_key))
    return nonce, ct


def unwrap_key_xchacha(ciphertext: bytes, nonce: bytes, wrapping_key: bytes, aad: bytes) -> bytes:
    if len(wrapping_key) != ROOT_KEY_SIZE:
        raise ValueError("wrapping_key must be 32 bytes for XChaCha20-Poly1305")
    return crypto_aead_xchacha20poly1305_ietf_decrypt(ciphertext, aad, nonce, bytes(wrapping_key))


class KeyWrappingService:
    """Wraps and unwraps unit data keys under device-derived root keys."""

    def __init__(self, algorithm: WrapAlgorithm = "aes-256-gcm"):
        if algorithm not in _NONCE_SIZES:
            raise ValueError(f"Unknown wrap algorithm: {algorithm}")
        self.algorithm = algorithm

    @staticmethod
    def generate_unit_key() -> bytes:
        return secrets.token_bytes(UNIT_KEY_SIZE)

    def wrap(
        self,
        unit_key: bytes,
        root_key: bytes,
        *,
        scope_id: str,
        credential_id: str,
    ) -> WrappedKey:
        """Wrap a unit key; a fresh nonce is drawn for every call."""
        if len(unit_key) != UNIT_KEY_SIZE:
            raise ValueError(f"unit key must be {UNIT_KEY_SIZE} bytes")

        aad = _associated_data(scope_id, credential_id, self.algorithm, WRAP_VERSION)
        if self.algorithm == "aes-256-gcm":
            nonce, ciphertext = wrap_key_aes_gcm(unit_key, root_key, aad)
        else:
            nonce, ciphertext = wrap_key_xchacha(unit_key, root_key, aad)

        return WrappedKey(
            scope_id=scope_id,
            credential_id=credential_id,
            ciphertext=ciphertext,
            nonce=nonce,
            algorithm=self.algorithm,
            version=WRAP_VERSION,
        )

    def unwrap(self, wrapped: WrappedKey, root_key: bytes) -> bytes:
        """Recover the unit key.

        Raises:
            WrapUnwrapAuthenticationError: for a wrong root key, tampered
                ciphertext or nonce, or an unknown algorithm/version
        """
        try:
            if wrapped.version != WRAP_VERSION:
                raise ValueError("unsupported wrap version")
            if len(wrapped.nonce) != _NONCE_SIZES.get(wrapped.algorithm, -1):
                raise ValueError("bad nonce")

            aad = _associated_data(wrapped.scope_id, wrapped.credential_id, wrapped.algorithm, wrapped.version)
            if wrapped.algorithm == "aes-256-gcm":
                unit_key = unwrap_key_aes_gcm(wrapped.ciphertext, wrapped.nonce, root_key, aad)
            else:
                unit_key = unwrap_key_xchacha(wrapped.ciphertext, wrapped.nonce, root_key, aad)
        except (InvalidTag, CryptoError, ValueError, TypeError):
            logger.debug("Wrapped key failed to authenticate", extra={"scope_id": wrapped.scope_id})
            raise WrapUnwrapAuthenticationError()

        if len(unit_key) != UNIT_KEY_SIZE:
            raise WrapUnwrapAuthenticationError()
        return unit_key

    def rewrap(
        self,
        wrapped: WrappedKey,
        old_root_key: bytes,
        new_root_key: bytes,
        *,
        credential_id: str | None = None,
    ) -> WrappedKey:
        """Unwrap under the old root key and wrap under the new one.

        Pure function of its inputs: the caller persists the returned record
        only after this succeeds, so a failure leaves the prior record valid.
        """
        unit_key = bytearray(self.unwrap(wrapped, old_root_key))
        try:
            return self.wrap(
                bytes(unit_key),
                new_root_key,
                scope_id=wrapped.scope_id,
                credential_id=credential_id or wrapped.credential_id,
            )
        finally:
            wipe(unit_key)
