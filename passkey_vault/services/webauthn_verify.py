"""
WebAuthn verification helpers (registration and assertion).

Thin wrappers over py_webauthn. Every library failure is logged here with its
detailed cause and re-raised as VerificationFailedError, whose caller-facing
message is generic.
"""

from __future__ import annotations

import logging
from typing import Optional

from webauthn import verify_authentication_response, verify_registration_response
from webauthn.helpers import bytes_to_base64url
from webauthn.helpers.exceptions import WebAuthnException

from passkey_vault.core.exceptions import VerificationFailedError
from passkey_vault.services.rp_scope import RPScope
from passkey_vault.services.webauthn_types import (
    AuthenticationCredential,
    RegistrationCredential,
    VerifiedAssertion,
    VerifiedRegistration,
)
from passkey_vault.utils import short_id

logger = logging.getLogger(__name__)


def verify_registration(
    credential: RegistrationCredential,
    expected_challenge: bytes,
    scope: RPScope,
) -> VerifiedRegistration:
    """Verify a registration response.

    Args:
        credential: validated registration credential
        expected_challenge: challenge consumed from the challenge store
        scope: RP scope re-derived from the challenge's origin
    Returns:
        VerifiedRegistration with public key, counter, device type and backup flag
    """
    try:
        verified = verify_registration_response(
            credential=credential.to_webauthn_dict(),
            expected_challenge=expected_challenge,
            expected_rp_id=scope.rp_id,
            expected_origin=list(scope.expected_origins),
            require_user_verification=True,
        )
    except (WebAuthnException, ValueError, KeyError, TypeError) as e:
        logger.warning(
            f"Registration verification failed: {e}",
            extra={"credential_id": short_id(credential.id), "rp_id": scope.rp_id},
        )
        raise VerificationFailedError(f"Registration verification failed: {e}")

    credential_id = bytes_to_base64url(verified.credential_id)
    if credential_id != credential.id:
        logger.warning(
            "Attested credential id differs from the submitted id",
            extra={"credential_id": short_id(credential.id)},
        )
        raise VerificationFailedError("Credential id mismatch")

    return VerifiedRegistration(
        credential_id=credential_id,
        public_key=verified.credential_public_key,
        sign_count=verified.sign_count,
        device_type=verified.credential_device_type.value,
        backed_up=verified.credential_backed_up,
        transports=list(credential.response.transports),
    )


def verify_assertion(
    credential: AuthenticationCredential,
    expected_challenge: bytes,
    scope: RPScope,
    public_key: bytes,
    user_handle: Optional[str] = None,
) -> VerifiedAssertion:
    """Verify an assertion signature against a stored public key.

    Args:
        credential: validated authentication credential
        expected_challenge: challenge consumed from the challenge store
        scope: RP scope re-derived from the challenge's origin
        public_key: COSE public key stored at registration
    Returns:
        VerifiedAssertion details; the caller compares ``sign_count`` with
        the stored counter
    """
    try:
        verified = verify_authentication_response(
            credential=credential.to_webauthn_dict(),
            expected_challenge=expected_challenge,
            expected_rp_id=scope.rp_id,
            expected_origin=list(scope.expected_origins),
            credential_public_key=public_key,
            # Counter policy is stricter than the library's and applied by the caller
            credential_current_sign_count=0,
            require_user_verification=True,
        )
    except (WebAuthnException, ValueError, KeyError, TypeError) as e:
        logger.warning(
            f"Assertion verification failed: {e}",
            extra={"credential_id": short_id(credential.id), "rp_id": scope.rp_id},
        )
        raise VerificationFailedError(f"Assertion verification failed: {e}")

    return VerifiedAssertion(
        credential_id=credential.id,
        user_handle=user_handle or credential.response.user_handle,
        sign_count=verified.new_sign_count,
        device_type=verified.credential_device_type.value,
        backed_up=verified.credential_backed_up,
    )


__all__ = [
    "verify_assertion",
    "verify_registration",
]
