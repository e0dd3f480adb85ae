"""
Encryption Engine - AES-256-GCM envelopes for application data

All values leave the device as an EncryptedData envelope:
- AES-256-GCM authenticated encryption
- 96-bit nonce generated internally for every call (callers cannot supply one)
- Any tag mismatch raises DecryptionError; no partial plaintext is returned

Usage:
    envelope = encrypt("patient notes", unit_key)
    text = decrypt_string(envelope, unit_key)

    record = encrypt_fields({"id": 7, "notes": "..."}, ["notes"], unit_key)
    record = decrypt_fields(record, ["notes"], unit_key)
"""

from __future__ import annotations

import binascii
import json
import logging
from typing import Any, Dict, Iterable, Mapping, Optional, Union

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from passkey_vault.core.exceptions import DecryptionError
from passkey_vault.crypto.encoding import base64_decode, base64_encode, generate_nonce
from passkey_vault.crypto.types import EncryptedData

logger = logging.getLogger(__name__)

ENCRYPTION_ALGORITHM = "aes-256-gcm"
ENCRYPTION_VERSION = 1
KEY_SIZE = 32
NONCE_SIZE = 12


def _check_key(key: bytes) -> None:
    if len(key) != KEY_SIZE:
        raise ValueError(f"key must be {KEY_SIZE} bytes for AES-256-GCM")


def encrypt(
    plaintext: Union[str, bytes],
    key: bytes,
    associated_data: Optional[bytes] = None,
) -> EncryptedData:
    """Encrypt a value under a unit key with a fresh nonce."""
    _check_key(key)
    if isinstance(plaintext, str):
        plaintext = plaintext.encode("utf-8")

    nonce = generate_nonce(NONCE_SIZE)
    ciphertext = AESGCM(bytes(key)).encrypt(nonce, plaintext, associated_data)
    return EncryptedData(
        ciphertext=ciphertext,
        nonce=nonce,
        algorithm=ENCRYPTION_ALGORITHM,
        version=ENCRYPTION_VERSION,
    )


def decrypt(
    data: EncryptedData,
    key: bytes,
    associated_data: Optional[bytes] = None,
) -> bytes:
    """Decrypt an envelope, failing closed on any integrity problem."""
    _check_key(key)
    if data.algorithm != ENCRYPTION_ALGORITHM or data.version != ENCRYPTION_VERSION:
        raise DecryptionError("Unsupported encryption format")
    if len(data.nonce) != NONCE_SIZE:
        raise DecryptionError()

    try:
        return AESGCM(bytes(key)).decrypt(data.nonce, data.ciphertext, associated_data)
    except InvalidTag:
        raise DecryptionError()


def decrypt_string(
    data: EncryptedData,
    key: bytes,
    associated_data: Optional[bytes] = None,
) -> str:
    return decrypt(data, key, associated_data).decode("utf-8")


# ===== Structured values =====

def encrypt_object(value: Any, key: bytes) -> EncryptedData:
    """Serialize a JSON-compatible value and encrypt it."""
    return encrypt(json.dumps(value, separators=(",", ":")), key)


def decrypt_object(data: EncryptedData, key: bytes) -> Any:
    return json.loads(decrypt(data, key))


# ===== Envelope serialization =====

def serialize_encrypted_data(data: EncryptedData) -> str:
    """Compact JSON form for storing an envelope in a text column."""
    return json.dumps(
        {
            "v": data.version,
            "alg": data.algorithm,
            "iv": base64_encode(data.nonce),
            "ct": base64_encode(data.ciphertext),
        },
        separators=(",", ":"),
    )


def parse_encrypted_data(serialized: str) -> EncryptedData:
    try:
        raw = json.loads(serialized)
        return EncryptedData(
            ciphertext=base64_decode(raw["ct"]),
            nonce=base64_decode(raw["iv"]),
            algorithm=raw["alg"],
            version=int(raw["v"]),
        )
    except (ValueError, KeyError, TypeError, binascii.Error):
        raise DecryptionError("Malformed encrypted payload")


def is_encrypted_data(value: Any) -> bool:
    """Check whether a value looks like a serialized envelope."""
    if not isinstance(value, str) or not value.startswith("{"):
        return False
    try:
        raw = json.loads(value)
    except ValueError:
        return False
    return isinstance(raw, dict) and {"v", "alg", "iv", "ct"} <= raw.keys()


# ===== Mixed-sensitivity records =====

def encrypt_fields(record: Mapping[str, Any], fields: Iterable[str], key: bytes) -> Dict[str, Any]:
    """Encrypt the named fields of a record, leaving the rest untouched."""
    result = dict(record)
    for field in fields:
        if field in result and result[field] is not None:
            result[field] = serialize_encrypted_data(encrypt_object(result[field], key))
    return result


def decrypt_fields(record: Mapping[str, Any], fields: Iterable[str], key: bytes) -> Dict[str, Any]:
    """Decrypt the named fields of a record; plain values are passed through."""
    result = dict(record)
    for field in fields:
        value = result.get(field)
        if is_encrypted_data(value):
            result[field] = decrypt_object(parse_encrypted_data(value), key)
    return result
