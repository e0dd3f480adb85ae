"""
Device-side passkey encryption

Public API:
- EncryptionContext: session lock/unlock state and data encryption
- PasskeyClient / CeremonyRunner / DeviceAuthenticator: passkey ceremonies
- KeyWrappingService, LocalKeyCache: key wrapping and session key cache
- encrypt / decrypt and friends: AES-256-GCM envelopes
"""

from passkey_vault.crypto.ceremony import (
    CeremonyOutcome,
    CeremonyRunner,
    CeremonyState,
    DeviceAuthenticator,
    PasskeyClient,
)
from passkey_vault.crypto.encryption import (
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
from passkey_vault.crypto.encryption_context import EncryptionContext, EncryptionState
from passkey_vault.crypto.key_cache import LocalKeyCache
from passkey_vault.crypto.key_wrapping import KeyWrappingService
from passkey_vault.crypto.prf_key_derivation import (
    PRF_VERSION,
    derive_key_from_prf,
    generate_prf_params,
    get_prf_support_info,
)
from passkey_vault.crypto.server_client import VaultServerClient
from passkey_vault.crypto.types import EncryptedData, PRFKeyParams, PRFSupportInfo, WrappedKey

__all__ = [
    "CeremonyOutcome",
    "CeremonyRunner",
    "CeremonyState",
    "DeviceAuthenticator",
    "EncryptedData",
    "EncryptionContext",
    "EncryptionState",
    "KeyWrappingService",
    "LocalKeyCache",
    "PRFKeyParams",
    "PRFSupportInfo",
    "PRF_VERSION",
    "PasskeyClient",
    "VaultServerClient",
    "WrappedKey",
    "decrypt",
    "decrypt_fields",
    "decrypt_object",
    "decrypt_string",
    "derive_key_from_prf",
    "encrypt",
    "encrypt_fields",
    "encrypt_object",
    "generate_prf_params",
    "get_prf_support_info",
    "is_encrypted_data",
    "parse_encrypted_data",
    "serialize_encrypted_data",
]
