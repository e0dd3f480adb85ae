"""
Passkey Credential Manager - server side of passkey ceremonies

Registration:
    options (exclude existing credentials, resident key + UV required,
    cross-device hint) -> device ceremony -> verify against the stored
    challenge, its origin's RP scope and allow-list -> persist credential

Authentication:
    options (allow-list from stored credentials, or empty for discoverable
    sign-in) -> device ceremony -> verify signature, origin, RP id -> require
    a strictly increasing counter -> compare-and-set the stored counter

Client origins are matched exactly against the scope's allow-list before any
cryptographic check. The counter is only compared once the signature over
the authenticator data has verified. A failed verification never leaves a
credential row behind and never moves the stored counter.
"""

import binascii
import json
import logging
from typing import Any, Dict, List, Optional, Tuple

from webauthn import generate_authentication_options, generate_registration_options, options_to_json
from webauthn.helpers.structs import (
    AttestationConveyancePreference,
    AuthenticatorAttachment,
    AuthenticatorSelectionCriteria,
    AuthenticatorTransport,
    PublicKeyCredentialDescriptor,
    ResidentKeyRequirement,
    UserVerificationRequirement,
)

from passkey_vault.config import PasskeyVaultSettings
from passkey_vault.core.exceptions import (
    ChallengeExpiredOrMissingError,
    CloneDetectedError,
    UserMismatchError,
    VerificationFailedError,
)
from passkey_vault.crypto.encoding import base64url_decode
from passkey_vault.db import VaultDatabase
from passkey_vault.services.challenge_store import ChallengeStore
from passkey_vault.services.rp_scope import RPScope, resolve_rp_scope
from passkey_vault.services.webauthn_types import (
    StoredPasskeyCredential,
    VerifiedAssertion,
    parse_authentication_credential,
    parse_registration_credential,
)
from passkey_vault.services.webauthn_verify import verify_assertion, verify_registration
from passkey_vault.utils import short_id

logger = logging.getLogger(__name__)

CROSS_DEVICE_HINTS = ["hybrid"]


def _require_allowed_origin(scope: RPScope, origin: Optional[str]) -> None:
    if not scope.allows(origin):
        logger.warning("Client origin not allowed for RP scope", extra={"origin": origin, "rp_id": scope.rp_id})
        raise VerificationFailedError("Origin not allowed", code="ORIGIN_MISMATCH")


def _descriptor(credential: StoredPasskeyCredential) -> PublicKeyCredentialDescriptor:
    transports = []
    for value in credential.transports:
        try:
            transports.append(AuthenticatorTransport(value))
        except ValueError:
            continue
    return PublicKeyCredentialDescriptor(
        id=base64url_decode(credential.credential_id),
        transports=transports or None,
    )


class PasskeyCredentialManager:
    """Issues ceremony options and verifies ceremony responses"""

    def __init__(self, db: VaultDatabase, settings: PasskeyVaultSettings):
        self.db = db
        self.settings = settings

    # ===== Registration =====

    def registration_options(
        self,
        store: ChallengeStore,
        user_id: str,
        user_name: str,
        origin: Optional[str],
    ) -> Dict[str, Any]:
        """Creation options for a new passkey on the signed-in user's account."""
        scope = resolve_rp_scope(origin, self.settings)
        existing = self.db.list_credentials(user_id)
        challenge = store.issue(user_id=user_id, origin=origin)

        options = generate_registration_options(
            rp_id=scope.rp_id,
            rp_name=scope.rp_name,
            user_id=user_id.encode("utf-8"),
            user_name=user_name,
            user_display_name=user_name,
            challenge=challenge,
            timeout=self.settings.ceremony_timeout_ms,
            attestation=AttestationConveyancePreference.NONE,
            authenticator_selection=AuthenticatorSelectionCriteria(
                authenticator_attachment=AuthenticatorAttachment.CROSS_PLATFORM,
                resident_key=ResidentKeyRequirement.REQUIRED,
                require_resident_key=True,
                user_verification=UserVerificationRequirement.REQUIRED,
            ),
            exclude_credentials=[_descriptor(c) for c in existing],
        )

        payload = json.loads(options_to_json(options))
        payload["hints"] = CROSS_DEVICE_HINTS
        payload["extensions"] = {"prf": {}}

        logger.info(
            "Issued registration options",
            extra={"user_id": user_id, "rp_id": scope.rp_id, "excluded": len(existing)},
        )
        return payload

    def verify_registration(
        self,
        store: ChallengeStore,
        user_id: str,
        payload: Dict[str, Any],
    ) -> Tuple[StoredPasskeyCredential, bool]:
        """
        Verify a registration response and persist the credential.

        Returns:
            (stored credential, whether the authenticator enabled PRF)
        """
        credential = parse_registration_credential(payload)
        stored = store.consume(user_id=user_id, challenge=credential.client_challenge())
        if stored is None:
            raise ChallengeExpiredOrMissingError()

        scope = resolve_rp_scope(stored.origin, self.settings)
        _require_allowed_origin(scope, credential.client_origin())
        verified = verify_registration(credential, stored.challenge, scope)

        record = self.db.insert_credential(StoredPasskeyCredential(
            credential_id=verified.credential_id,
            user_id=user_id,
            public_key=verified.public_key,
            counter=verified.sign_count,
            transports=verified.transports,
            device_type=verified.device_type,
            backed_up=verified.backed_up,
        ))

        logger.info(
            "Registered passkey",
            extra={
                "user_id": user_id,
                "credential_id": short_id(record.credential_id),
                "device_type": record.device_type,
                "backed_up": record.backed_up,
            },
        )
        return record, credential.prf_enabled

    # ===== Authentication =====

    def authentication_options(
        self,
        store: ChallengeStore,
        user_id: Optional[str],
        origin: Optional[str],
        credential_ids: Optional[List[str]] = None,
    ) -> Dict[str, Any]:
        """Assertion options; an empty allow-list means discoverable sign-in."""
        scope = resolve_rp_scope(origin, self.settings)
        allowed: List[StoredPasskeyCredential] = []
        if user_id is not None:
            allowed = self.db.list_credentials(user_id)
            if credential_ids:
                wanted = set(credential_ids)
                allowed = [c for c in allowed if c.credential_id in wanted]

        challenge = store.issue(user_id=user_id, origin=origin)
        options = generate_authentication_options(
            rp_id=scope.rp_id,
            challenge=challenge,
            timeout=self.settings.ceremony_timeout_ms,
            allow_credentials=[_descriptor(c) for c in allowed],
            user_verification=UserVerificationRequirement.REQUIRED,
        )

        payload = json.loads(options_to_json(options))
        payload["hints"] = CROSS_DEVICE_HINTS
        return payload

    def verify_authentication(
        self,
        store: ChallengeStore,
        payload: Dict[str, Any],
        user_id: Optional[str] = None,
    ) -> Tuple[StoredPasskeyCredential, VerifiedAssertion]:
        """
        Verify an assertion and advance the stored counter.

        Raises:
            ChallengeExpiredOrMissingError: no pending challenge matches
            UserMismatchError: credential owner differs from the challenge's user
            CloneDetectedError: counter did not strictly increase
            VerificationFailedError: unknown credential, bad signature/origin/RP id
        """
        credential = parse_authentication_credential(payload)
        stored = store.consume(challenge=credential.client_challenge())
        if stored is None:
            raise ChallengeExpiredOrMissingError()

        record = self.db.get_credential(credential.id)
        if record is None:
            logger.warning("Assertion for unknown credential", extra={"credential_id": short_id(credential.id)})
            raise VerificationFailedError("Unknown credential")

        expected_users = {u for u in (stored.user_id, user_id) if u is not None}
        if expected_users - {record.user_id}:
            logger.warning(
                "Credential owner does not match the ceremony user",
                extra={"credential_id": short_id(record.credential_id), "owner": record.user_id},
            )
            raise UserMismatchError()

        user_handle = self._decode_user_handle(credential.response.user_handle)
        if user_handle is not None and user_handle != record.user_id:
            logger.warning("User handle does not match credential owner", extra={"owner": record.user_id})
            raise UserMismatchError()

        scope = resolve_rp_scope(stored.origin, self.settings)
        _require_allowed_origin(scope, credential.client_origin())
        verified = verify_assertion(
            credential,
            stored.challenge,
            scope,
            public_key=record.public_key,
            user_handle=user_handle,
        )

        if verified.sign_count <= record.counter:
            logger.error(
                "Possible cloned authenticator: signature counter did not increase",
                extra={
                    "credential_id": short_id(record.credential_id),
                    "stored_counter": record.counter,
                    "presented_counter": verified.sign_count,
                },
            )
            raise CloneDetectedError(record.counter, verified.sign_count)

        if not self.db.update_counter(record.credential_id, verified.sign_count):
            # Another assertion advanced the counter first
            current = self.db.get_credential(record.credential_id)
            stored_counter = current.counter if current else record.counter
            logger.error(
                "Signature counter lost compare-and-set",
                extra={"credential_id": short_id(record.credential_id), "stored_counter": stored_counter},
            )
            raise CloneDetectedError(stored_counter, verified.sign_count)

        record.counter = verified.sign_count
        logger.info(
            "Passkey authentication verified",
            extra={"user_id": record.user_id, "credential_id": short_id(record.credential_id)},
        )
        return record, verified

    @staticmethod
    def _decode_user_handle(user_handle: Optional[str]) -> Optional[str]:
        if not user_handle:
            return None
        try:
            return base64url_decode(user_handle).decode("utf-8")
        except (binascii.Error, UnicodeDecodeError, ValueError):
            raise VerificationFailedError("Malformed user handle")

    # ===== Credential management =====

    def list_credentials(self, user_id: str) -> List[StoredPasskeyCredential]:
        return self.db.list_credentials(user_id)

    def delete_credential(self, user_id: str, credential_id: str) -> bool:
        deleted = self.db.delete_credential(user_id, credential_id)
        if deleted:
            logger.info("Deleted passkey", extra={"user_id": user_id, "credential_id": short_id(credential_id)})
        return deleted

    def has_passkey_credentials(self, user_id: str) -> bool:
        return self.db.has_credentials(user_id)
