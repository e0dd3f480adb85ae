"""
Request and response models for the Passkey Vault API.

Every successful response is wrapped in SuccessResponse; errors are rendered
by the global error handlers as {"success": false, "error_code", "message"}.
"""

from datetime import datetime, UTC
from typing import Generic, List, Optional, TypeVar

from pydantic import BaseModel, Field, field_validator

from passkey_vault.crypto.prf_key_derivation import SUPPORTED_VERSIONS

T = TypeVar('T')


class SuccessResponse(BaseModel, Generic[T]):
    """
    Standard success response wrapper.

    Response:
        ```json
        {
            "success": true,
            "data": { ... },
            "message": "Passkey registered",
            "timestamp": "2025-12-13T10:30:00.000Z"
        }
        ```
    """
    success: bool = Field(True, description="Always true for success responses")
    data: T = Field(..., description="Response payload")
    message: Optional[str] = Field(None, description="Optional success message")
    timestamp: datetime = Field(
        default_factory=lambda: datetime.now(UTC),
        description="Response timestamp (UTC)"
    )


# ===== Passkeys =====

class AuthenticationOptionsRequest(BaseModel):
    """Optional narrowing of the allow-list to specific credentials"""
    credential_ids: Optional[List[str]] = Field(None, max_length=32)


class RegistrationResult(BaseModel):
    credential_id: str
    device_type: str
    backed_up: bool
    prf_enabled: bool


class AuthenticationResult(BaseModel):
    user_id: str
    credential_id: str
    access_token: str
    token_type: str = "bearer"


class CredentialInfo(BaseModel):
    credential_id: str
    counter: int
    transports: List[str]
    device_type: str
    backed_up: bool
    created_at: Optional[str] = None
    last_used_at: Optional[str] = None


# ===== Encryption =====

class PRFParamsModel(BaseModel):
    """PRF key parameters; the salt is non-secret and stored once"""
    prf_salt: str = Field(..., min_length=16, max_length=256, description="Base64 salt")
    credential_id: Optional[str] = Field(None, max_length=1024)
    version: int = Field(..., ge=1)

    @field_validator("version")
    @classmethod
    def supported_version(cls, v: int) -> int:
        if v not in SUPPORTED_VERSIONS:
            raise ValueError(f"Unsupported PRF key derivation version: {v}")
        return v


class WrappedKeyModel(BaseModel):
    """Unit key wrapped under one credential's root key"""
    scope_id: str = Field(..., min_length=1, max_length=256)
    credential_id: str = Field(..., min_length=1, max_length=1024)
    ciphertext: str = Field(..., min_length=1, max_length=4096, description="Base64 ciphertext + tag")
    nonce: str = Field(..., min_length=1, max_length=64, description="Base64 nonce")
    algorithm: str = Field(..., pattern=r"^(aes-256-gcm|xchacha20-poly1305)$")
    version: int = Field(..., ge=1)


class EncryptionSetupRequest(BaseModel):
    """First-time setup: params and the first wrapped key, stored together"""
    params: PRFParamsModel
    wrapped_key: WrappedKeyModel


class EncryptionStatus(BaseModel):
    has_passkey: bool
    has_encryption_setup: bool
    credential_count: int
