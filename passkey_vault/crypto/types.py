"""
Crypto data types

Records shared between the device-side crypto modules and the server:
- PRFKeyParams: non-secret inputs for root key derivation
- WrappedKey: a unit key encrypted under a device-derived root key
- EncryptedData: the envelope sensitive values take outside the device

Only these forms ever cross the wire; unwrapped keys never do.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Any, Dict, Optional

from passkey_vault.crypto.encoding import base64_decode, base64_encode


@dataclass(frozen=True)
class PRFKeyParams:
    """Salt and version for PRF-based root key derivation (immutable once created)"""
    salt: bytes
    version: int
    credential_id: Optional[str] = None

    def with_credential(self, credential_id: str) -> "PRFKeyParams":
        return replace(self, credential_id=credential_id)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "prf_salt": base64_encode(self.salt),
            "credential_id": self.credential_id,
            "version": self.version,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PRFKeyParams":
        return cls(
            salt=base64_decode(data["prf_salt"]),
            version=int(data["version"]),
            credential_id=data.get("credential_id"),
        )


@dataclass(frozen=True)
class WrappedKey:
    """Unit data key wrapped under one credential's root key"""
    scope_id: str
    credential_id: str
    ciphertext: bytes
    nonce: bytes
    algorithm: str
    version: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "scope_id": self.scope_id,
            "credential_id": self.credential_id,
            "ciphertext": base64_encode(self.ciphertext),
            "nonce": base64_encode(self.nonce),
            "algorithm": self.algorithm,
            "version": self.version,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "WrappedKey":
        return cls(
            scope_id=data["scope_id"],
            credential_id=data["credential_id"],
            ciphertext=base64_decode(data["ciphertext"]),
            nonce=base64_decode(data["nonce"]),
            algorithm=data["algorithm"],
            version=int(data["version"]),
        )


@dataclass(frozen=True)
class EncryptedData:
    """AEAD envelope: ciphertext (with tag), nonce, algorithm and version"""
    ciphertext: bytes
    nonce: bytes
    algorithm: str
    version: int


@dataclass(frozen=True)
class PRFSupportInfo:
    """Result of probing a device for passkey + PRF support"""
    supported: bool
    reason: Optional[str] = None
