"""
WebAuthn Types - boundary models and verification results

Contains:
- RegistrationCredential / AuthenticationCredential: strict models for the
  credential JSON a device returns, discriminated by response shape
- parse_registration_credential / parse_authentication_credential
- StoredPasskeyCredential (persisted credential row)
- VerifiedRegistration / VerifiedAssertion (verification results)

Payloads are validated here before any field is trusted. PRF results that
reach the server are dropped during validation and never stored or logged.
"""

from __future__ import annotations

import binascii
import json
import logging
from dataclasses import dataclass, field
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import (
    AfterValidator,
    BaseModel,
    ConfigDict,
    Discriminator,
    Field,
    Tag,
    TypeAdapter,
    ValidationError,
    field_validator,
    model_validator,
)

from passkey_vault.core.exceptions import InvalidPayloadError
from passkey_vault.crypto.encoding import base64url_decode

logger = logging.getLogger(__name__)


def _check_base64url(value: str) -> str:
    if not value or any(c in value for c in "+/="):
        raise ValueError("expected unpadded base64url")
    try:
        base64url_decode(value)
    except (binascii.Error, ValueError):
        raise ValueError("expected unpadded base64url")
    return value


Base64URL = Annotated[str, AfterValidator(_check_base64url)]


class _CeremonyModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore", frozen=True)


class AttestationResponse(_CeremonyModel):
    client_data_json: Base64URL = Field(alias="clientDataJSON")
    attestation_object: Base64URL = Field(alias="attestationObject")
    transports: List[str] = Field(default_factory=list)


class AssertionResponse(_CeremonyModel):
    client_data_json: Base64URL = Field(alias="clientDataJSON")
    authenticator_data: Base64URL = Field(alias="authenticatorData")
    signature: Base64URL
    user_handle: Optional[str] = Field(default=None, alias="userHandle")


class _CredentialBase(_CeremonyModel):
    id: Base64URL
    raw_id: Base64URL = Field(alias="rawId")
    type: Literal["public-key"]
    authenticator_attachment: Optional[Literal["platform", "cross-platform"]] = Field(
        default=None, alias="authenticatorAttachment"
    )
    client_extension_results: Dict[str, Any] = Field(
        default_factory=dict, alias="clientExtensionResults"
    )

    @field_validator("client_extension_results")
    @classmethod
    def drop_prf_results(cls, v: Dict[str, Any]) -> Dict[str, Any]:
        prf = v.get("prf")
        if isinstance(prf, dict) and "results" in prf:
            logger.warning("Client submitted PRF results; discarding them")
            v = dict(v)
            v["prf"] = {k: val for k, val in prf.items() if k != "results"}
        return v

    @model_validator(mode="after")
    def check_raw_id(self):
        if self.id != self.raw_id:
            raise ValueError("id and rawId differ")
        return self

    def client_data(self) -> Dict[str, Any]:
        try:
            data = json.loads(base64url_decode(self.response.client_data_json))
        except (ValueError, UnicodeDecodeError) as e:
            raise InvalidPayloadError(f"clientDataJSON is not valid JSON: {type(e).__name__}")
        if not isinstance(data, dict):
            raise InvalidPayloadError("clientDataJSON is not an object")
        return data

    def client_challenge(self) -> bytes:
        """Challenge the device signed over, as reported in clientDataJSON."""
        challenge = self.client_data().get("challenge")
        if not isinstance(challenge, str):
            raise InvalidPayloadError("clientDataJSON has no challenge")
        try:
            return base64url_decode(challenge)
        except (binascii.Error, ValueError):
            raise InvalidPayloadError("clientDataJSON challenge is not base64url")

    def client_origin(self) -> Optional[str]:
        origin = self.client_data().get("origin")
        return origin if isinstance(origin, str) else None

    def to_webauthn_dict(self) -> Dict[str, Any]:
        """Credential JSON in the shape py_webauthn parses."""
        return self.model_dump(by_alias=True, exclude_none=True)


class RegistrationCredential(_CredentialBase):
    response: AttestationResponse

    @property
    def prf_enabled(self) -> bool:
        prf = self.client_extension_results.get("prf")
        return isinstance(prf, dict) and bool(prf.get("enabled"))


class AuthenticationCredential(_CredentialBase):
    response: AssertionResponse


def _credential_kind(value: Any) -> Optional[str]:
    if isinstance(value, dict):
        response = value.get("response")
        if not isinstance(response, dict):
            return None
        if "attestationObject" in response:
            return "registration"
        if "authenticatorData" in response:
            return "authentication"
        return None
    if isinstance(value, RegistrationCredential):
        return "registration"
    if isinstance(value, AuthenticationCredential):
        return "authentication"
    return None


CeremonyCredential = Annotated[
    Union[
        Annotated[RegistrationCredential, Tag("registration")],
        Annotated[AuthenticationCredential, Tag("authentication")],
    ],
    Discriminator(_credential_kind),
]

_credential_adapter: TypeAdapter = TypeAdapter(CeremonyCredential)


def parse_ceremony_credential(payload: Any) -> Union[RegistrationCredential, AuthenticationCredential]:
    try:
        return _credential_adapter.validate_python(payload)
    except ValidationError as e:
        fields = ", ".join(".".join(str(p) for p in err["loc"]) for err in e.errors()[:5])
        raise InvalidPayloadError(f"Malformed credential payload ({fields})")


def parse_registration_credential(payload: Any) -> RegistrationCredential:
    credential = parse_ceremony_credential(payload)
    if not isinstance(credential, RegistrationCredential):
        raise InvalidPayloadError("Expected a registration response")
    return credential


def parse_authentication_credential(payload: Any) -> AuthenticationCredential:
    credential = parse_ceremony_credential(payload)
    if not isinstance(credential, AuthenticationCredential):
        raise InvalidPayloadError("Expected an authentication response")
    return credential


# ===== Persisted and verified records =====

@dataclass
class StoredPasskeyCredential:
    """Credential row owned by one user; public key and id never change"""
    credential_id: str
    user_id: str
    public_key: bytes
    counter: int
    transports: List[str] = field(default_factory=list)
    device_type: str = "single_device"
    backed_up: bool = False
    created_at: Optional[str] = None
    last_used_at: Optional[str] = None

    def to_public_dict(self) -> Dict[str, Any]:
        return {
            "credential_id": self.credential_id,
            "counter": self.counter,
            "transports": self.transports,
            "device_type": self.device_type,
            "backed_up": self.backed_up,
            "created_at": self.created_at,
            "last_used_at": self.last_used_at,
        }


@dataclass
class VerifiedRegistration:
    """Result of WebAuthn registration verification"""
    credential_id: str
    public_key: bytes
    sign_count: int
    device_type: str
    backed_up: bool
    transports: List[str] = field(default_factory=list)


@dataclass
class VerifiedAssertion:
    """Result of WebAuthn assertion verification"""
    credential_id: str
    user_handle: Optional[str]
    sign_count: int
    device_type: str
    backed_up: bool


__all__ = [
    "AuthenticationCredential",
    "CeremonyCredential",
    "RegistrationCredential",
    "StoredPasskeyCredential",
    "VerifiedAssertion",
    "VerifiedRegistration",
    "parse_authentication_credential",
    "parse_ceremony_credential",
    "parse_registration_credential",
]
