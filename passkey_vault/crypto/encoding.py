"""
Encoding helpers shared by the device-side crypto modules.

Wire formats use unpadded base64url for WebAuthn fields (matching the
credential JSON) and standard base64 for envelopes and wrapped keys.
"""

import base64
import secrets


def base64_encode(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def base64_decode(value: str) -> bytes:
    return base64.b64decode(value.encode("ascii"), validate=True)


def base64url_encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def base64url_decode(value: str) -> bytes:
    padding = "=" * (-len(value) % 4)
    return base64.urlsafe_b64decode(value + padding)


def generate_salt(length: int = 32) -> bytes:
    """Random, non-secret salt (PRF input and HKDF salt)"""
    return secrets.token_bytes(length)


def generate_nonce(length: int = 12) -> bytes:
    """Fresh AEAD nonce; never accepted from callers"""
    return secrets.token_bytes(length)
