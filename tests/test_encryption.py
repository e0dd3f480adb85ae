"""
Tests for passkey_vault/crypto/encryption.py

Covers:
- AES-256-GCM envelopes with internally generated nonces
- Tamper detection (ciphertext, nonce, algorithm/version)
- Structured values and mixed-sensitivity records
- Envelope serialization
"""

import json
import secrets

import pytest

from passkey_vault.core.exceptions import DecryptionError
from passkey_vault.crypto.encryption import (
    ENCRYPTION_ALGORITHM,
    NONCE_SIZE,
    decrypt,
    decrypt_fields,
    decrypt_object,
    decrypt_string,
    encrypt,
    encrypt_fields,
    encrypt_object,
    is_encrypted_data,
    parse_encrypted_data,
    serialize_encrypted_data,
)
from passkey_vault.crypto.types import EncryptedData


@pytest.fixture
def key():
    return secrets.token_bytes(32)


def _flip_bit(data: bytes, index: int = 0) -> bytes:
    flipped = bytearray(data)
    flipped[index] ^= 0x01
    return bytes(flipped)


class TestEncryptDecrypt:
    """Round trips and nonce freshness"""

    @pytest.mark.parametrize("plaintext", ["", "hello", "ünïcødé ✓", "x" * 10000])
    def test_string_round_trip(self, key, plaintext):
        assert decrypt_string(encrypt(plaintext, key), key) == plaintext

    def test_bytes_round_trip(self, key):
        data = secrets.token_bytes(257)
        assert decrypt(encrypt(data, key), key) == data

    def test_envelope_fields(self, key):
        envelope = encrypt("notes", key)
        assert envelope.algorithm == ENCRYPTION_ALGORITHM
        assert envelope.version == 1
        assert len(envelope.nonce) == NONCE_SIZE
        assert b"notes" not in envelope.ciphertext

    def test_same_input_gives_different_ciphertexts(self, key):
        first = encrypt("same plaintext", key)
        second = encrypt("same plaintext", key)
        assert first.nonce != second.nonce
        assert first.ciphertext != second.ciphertext

    def test_associated_data_must_match(self, key):
        envelope = encrypt("bound", key, associated_data=b"record-1")
        assert decrypt(envelope, key, associated_data=b"record-1") == b"bound"
        with pytest.raises(DecryptionError):
            decrypt(envelope, key, associated_data=b"record-2")

    def test_wrong_key_length_rejected(self):
        with pytest.raises(ValueError):
            encrypt("x", b"short")


class TestTamperDetection:
    """Any integrity problem fails closed with DecryptionError"""

    def test_wrong_key(self, key):
        envelope = encrypt("secret", key)
        with pytest.raises(DecryptionError):
            decrypt(envelope, secrets.token_bytes(32))

    @pytest.mark.parametrize("index", [0, 5, -1])
    def test_ciphertext_bit_flip(self, key, index):
        envelope = encrypt("secret value", key)
        tampered = EncryptedData(
            ciphertext=_flip_bit(envelope.ciphertext, index),
            nonce=envelope.nonce,
            algorithm=envelope.algorithm,
            version=envelope.version,
        )
        with pytest.raises(DecryptionError):
            decrypt(tampered, key)

    def test_nonce_bit_flip(self, key):
        envelope = encrypt("secret value", key)
        tampered = EncryptedData(
            ciphertext=envelope.ciphertext,
            nonce=_flip_bit(envelope.nonce),
            algorithm=envelope.algorithm,
            version=envelope.version,
        )
        with pytest.raises(DecryptionError):
            decrypt(tampered, key)

    def test_truncated_nonce(self, key):
        envelope = encrypt("secret value", key)
        tampered = EncryptedData(envelope.ciphertext, envelope.nonce[:8], envelope.algorithm, envelope.version)
        with pytest.raises(DecryptionError):
            decrypt(tampered, key)

    def test_unknown_version(self, key):
        envelope = encrypt("secret value", key)
        tampered = EncryptedData(envelope.ciphertext, envelope.nonce, envelope.algorithm, 99)
        with pytest.raises(DecryptionError):
            decrypt(tampered, key)


class TestStructuredValues:
    """encrypt_object / encrypt_fields"""

    def test_object_round_trip(self, key):
        value = {"name": "Ada", "tags": ["a", "b"], "age": 36, "active": True}
        assert decrypt_object(encrypt_object(value, key), key) == value

    def test_encrypt_fields_only_touches_named_fields(self, key):
        record = {"id": 7, "title": "visible", "notes": "private", "ssn": "123-45-6789"}
        encrypted = encrypt_fields(record, ["notes", "ssn"], key)

        assert encrypted["id"] == 7
        assert encrypted["title"] == "visible"
        assert is_encrypted_data(encrypted["notes"])
        assert is_encrypted_data(encrypted["ssn"])
        assert "private" not in encrypted["notes"]
        assert record["notes"] == "private"

        assert decrypt_fields(encrypted, ["notes", "ssn"], key) == record

    def test_encrypt_fields_skips_missing_and_none(self, key):
        encrypted = encrypt_fields({"id": 1, "notes": None}, ["notes", "absent"], key)
        assert encrypted == {"id": 1, "notes": None}

    def test_decrypt_fields_passes_plain_values_through(self, key):
        assert decrypt_fields({"notes": "plain"}, ["notes"], key) == {"notes": "plain"}

    def test_decrypt_fields_with_wrong_key_fails(self, key):
        encrypted = encrypt_fields({"notes": "private"}, ["notes"], key)
        with pytest.raises(DecryptionError):
            decrypt_fields(encrypted, ["notes"], secrets.token_bytes(32))


class TestSerialization:
    """Compact JSON envelope form"""

    def test_serialized_shape(self, key):
        serialized = serialize_encrypted_data(encrypt("x", key))
        raw = json.loads(serialized)
        assert set(raw) == {"v", "alg", "iv", "ct"}
        assert raw["v"] == 1
        assert raw["alg"] == "aes-256-gcm"

    def test_parse_then_decrypt(self, key):
        serialized = serialize_encrypted_data(encrypt("stored", key))
        assert decrypt_string(parse_encrypted_data(serialized), key) == "stored"

    @pytest.mark.parametrize("bad", ["not json", "{}", '{"v":1,"alg":"aes-256-gcm","iv":"***","ct":"AA=="}'])
    def test_parse_malformed(self, bad):
        with pytest.raises(DecryptionError):
            parse_encrypted_data(bad)

    @pytest.mark.parametrize("value,expected", [
        (None, False),
        (42, False),
        ("plain text", False),
        ('{"v":1}', False),
        ("{not json", False),
    ])
    def test_is_encrypted_data(self, value, expected):
        assert is_encrypted_data(value) is expected

    def test_is_encrypted_data_for_envelope(self, key):
        assert is_encrypted_data(serialize_encrypted_data(encrypt("x", key))) is True
