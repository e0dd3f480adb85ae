"""
Custom exceptions for Passkey Vault.

Provides structured error handling with consistent error codes and messages.

Security-relevant failures (clone detection, user mismatch, signature/origin
problems) keep their precise type and message for server-side logging, but
share one public code and message so callers cannot tell them apart.
"""

from typing import Optional, Dict, Any
from fastapi import HTTPException, status


GENERIC_VERIFICATION_MESSAGE = "Passkey verification failed"


class VaultError(Exception):
    """Base exception for all Passkey Vault errors."""

    public_code: Optional[str] = None
    public_message: Optional[str] = None

    def __init__(
        self,
        message: str,
        code: str = "INTERNAL_ERROR",
        status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.code = code
        self.status_code = status_code
        self.details = details or {}
        super().__init__(self.message)

    @property
    def caller_code(self) -> str:
        return self.public_code or self.code

    @property
    def caller_message(self) -> str:
        return self.public_message or self.message

    def to_http_exception(self) -> HTTPException:
        """Convert to FastAPI HTTPException."""
        return HTTPException(
            status_code=self.status_code,
            detail={
                "code": self.caller_code,
                "message": self.caller_message,
            }
        )


# Device / capability
class CapabilityUnavailableError(VaultError):
    """Raised when the device lacks passkey or PRF support."""

    def __init__(self, message: str = "Passkey encryption is not supported on this device"):
        super().__init__(
            message=message,
            code="CAPABILITY_UNAVAILABLE",
            status_code=status.HTTP_400_BAD_REQUEST
        )


class CeremonyInProgressError(VaultError):
    """Raised when a second ceremony is started while one is in flight."""

    def __init__(self):
        super().__init__(
            message="Another passkey ceremony is already in progress",
            code="CEREMONY_IN_PROGRESS",
            status_code=status.HTTP_409_CONFLICT
        )


class CeremonyCancelledError(VaultError):
    """Raised by an authenticator when the user dismisses the ceremony."""

    def __init__(self, message: str = "Passkey ceremony was cancelled"):
        super().__init__(
            message=message,
            code="CEREMONY_CANCELLED",
            status_code=status.HTTP_400_BAD_REQUEST
        )


class CeremonyTimeoutError(VaultError):
    """Raised when the device does not answer within the ceremony timeout."""

    def __init__(self, timeout_ms: int):
        super().__init__(
            message="Passkey ceremony timed out",
            code="CEREMONY_TIMEOUT",
            status_code=status.HTTP_408_REQUEST_TIMEOUT,
            details={"timeout_ms": timeout_ms}
        )


# Challenge
class ChallengeExpiredOrMissingError(VaultError):
    """Raised when no valid challenge is pending for the ceremony."""

    def __init__(self):
        super().__init__(
            message="Challenge expired or not found",
            code="CHALLENGE_EXPIRED_OR_MISSING",
            status_code=status.HTTP_400_BAD_REQUEST,
            details={"hint": "Restart the passkey ceremony"}
        )


# Verification (generic to callers)
class VerificationFailedError(VaultError):
    """Raised when a signature, origin or RP id check fails."""

    public_code = "VERIFICATION_FAILED"
    public_message = GENERIC_VERIFICATION_MESSAGE

    def __init__(self, reason: str = GENERIC_VERIFICATION_MESSAGE, code: str = "VERIFICATION_FAILED"):
        super().__init__(
            message=reason,
            code=code,
            status_code=status.HTTP_401_UNAUTHORIZED
        )


class UserMismatchError(VerificationFailedError):
    """Raised when a challenge was issued to a different user."""

    def __init__(self):
        super().__init__(reason="Challenge was issued to a different user", code="USER_MISMATCH")


class CloneDetectedError(VerificationFailedError):
    """Raised when an authenticator presents a non-increasing signature counter."""

    def __init__(self, stored_counter: int, presented_counter: int):
        super().__init__(
            reason=f"Signature counter {presented_counter} is not greater than stored {stored_counter}",
            code="CLONE_DETECTED"
        )
        self.stored_counter = stored_counter
        self.presented_counter = presented_counter


class InvalidPayloadError(VaultError):
    """Raised when a ceremony payload fails boundary validation."""

    public_code = "VERIFICATION_FAILED"
    public_message = GENERIC_VERIFICATION_MESSAGE

    def __init__(self, reason: str):
        super().__init__(
            message=reason,
            code="INVALID_PAYLOAD",
            status_code=status.HTTP_400_BAD_REQUEST
        )


# Key material
class WrapUnwrapAuthenticationError(VaultError):
    """Raised when a wrapped key fails to authenticate under the root key.

    Wrong key, corrupted ciphertext and unknown version all raise this same
    error with the same message.
    """

    def __init__(self):
        super().__init__(
            message="Unable to unlock encryption key",
            code="KEY_UNWRAP_FAILED",
            status_code=status.HTTP_400_BAD_REQUEST
        )


class DecryptionError(VaultError):
    """Raised when an encrypted envelope fails to authenticate."""

    def __init__(self, message: str = "Failed to decrypt data"):
        super().__init__(
            message=message,
            code="DECRYPTION_FAILED",
            status_code=status.HTTP_400_BAD_REQUEST
        )


class EncryptionLockedError(VaultError):
    """Raised when encrypt/decrypt is attempted while the session is locked."""

    def __init__(self):
        super().__init__(
            message="Encryption is locked",
            code="ENCRYPTION_LOCKED",
            status_code=status.HTTP_423_LOCKED
        )


class StorageUnavailableError(VaultError):
    """Raised when session key storage cannot be used."""

    def __init__(self, message: str = "Session key storage is unavailable"):
        super().__init__(
            message=message,
            code="STORAGE_UNAVAILABLE",
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE
        )


# Authentication & resources
class AuthenticationError(VaultError):
    """Raised when the request has no valid signed-in user."""

    def __init__(self, message: str = "Not authenticated"):
        super().__init__(
            message=message,
            code="AUTHENTICATION_ERROR",
            status_code=status.HTTP_401_UNAUTHORIZED
        )


class AuthorizationError(VaultError):
    """Raised when a user touches a record owned by someone else."""

    def __init__(self, message: str = "Insufficient permissions"):
        super().__init__(
            message=message,
            code="AUTHORIZATION_ERROR",
            status_code=status.HTTP_403_FORBIDDEN
        )


class ResourceNotFoundError(VaultError):
    """Raised when a requested resource doesn't exist."""

    def __init__(self, resource_type: str, resource_id: str):
        super().__init__(
            message=f"{resource_type} not found",
            code="RESOURCE_NOT_FOUND",
            status_code=status.HTTP_404_NOT_FOUND,
            details={"resource_type": resource_type, "id": resource_id}
        )


class ResourceAlreadyExistsError(VaultError):
    """Raised when attempting to create a duplicate resource."""

    def __init__(self, resource_type: str, identifier: str):
        super().__init__(
            message=f"{resource_type} already exists",
            code="RESOURCE_ALREADY_EXISTS",
            status_code=status.HTTP_409_CONFLICT,
            details={"resource_type": resource_type, "identifier": identifier}
        )


class RateLimitExceededError(VaultError):
    """Raised when rate limit is exceeded."""

    def __init__(self, retry_after: int):
        super().__init__(
            message="Too many attempts. Please wait before retrying.",
            code="RATE_LIMIT_EXCEEDED",
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            details={"retry_after_seconds": retry_after}
        )

