"""
Shared pytest fixtures for Passkey Vault tests.

Provides:
- Settings and app fixtures (temporary sqlite database per test)
- API client fixtures (TestClient and an async httpx client on the ASGI app)
- Access token headers for signed-in users
- SoftwareAuthenticator: an in-process passkey that produces real ES256
  attestation/assertion payloads and PRF outputs
"""

import asyncio
import hashlib
import hmac
import json
import secrets
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import cbor2
import httpx
import pytest
import pytest_asyncio
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec
from fastapi.testclient import TestClient

from passkey_vault.app_factory import create_app
from passkey_vault.auth_middleware import create_access_token
from passkey_vault.config import PasskeyVaultSettings
from passkey_vault.core.exceptions import CeremonyCancelledError
from passkey_vault.crypto.ceremony import DeviceAuthenticator
from passkey_vault.crypto.encoding import base64url_decode, base64url_encode
from passkey_vault.services.challenge_store import get_challenge_ledger

LOCAL_ORIGIN = "http://localhost:3000"
TEST_SECRET = "test-secret-key-that-is-long-enough-for-hs256"

FLAG_UP = 0x01
FLAG_UV = 0x04
FLAG_BE = 0x08
FLAG_BS = 0x10
FLAG_AT = 0x40


# ============================================================================
# Software authenticator
# ============================================================================

@dataclass
class SoftCredential:
    credential_id: bytes
    private_key: ec.EllipticCurvePrivateKey
    user_handle: bytes
    rp_id: str
    counter: int
    prf_secret: bytes


def _sha256(data: bytes) -> bytes:
    return hashlib.sha256(data).digest()


class SoftwareAuthenticator(DeviceAuthenticator):
    """Passkey authenticator implemented with cryptography + cbor2."""

    def __init__(
        self,
        origin: str = LOCAL_ORIGIN,
        prf: bool = True,
        available: bool = True,
        initial_counter: int = 0,
        backed_up: bool = False,
    ):
        self.origin = origin
        self.prf = prf
        self.available = available
        self.initial_counter = initial_counter
        self.backed_up = backed_up
        self.credentials: Dict[str, SoftCredential] = {}
        self.cancel_next = False
        self.delay = 0.0
        self.calls = 0

    # ----- DeviceAuthenticator -----

    def is_available(self) -> bool:
        return self.available

    def supports_prf(self) -> bool:
        return self.prf

    async def create(self, options: Dict[str, Any]) -> Dict[str, Any]:
        await self._device_wait()
        return self.make_registration(options)

    async def get(self, options: Dict[str, Any]) -> Dict[str, Any]:
        await self._device_wait()
        return self.make_assertion(options)

    async def _device_wait(self) -> None:
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.cancel_next:
            self.cancel_next = False
            raise CeremonyCancelledError()

    # ----- Payload builders -----

    def _flags(self, base: int) -> int:
        flags = base | FLAG_UP | FLAG_UV
        if self.backed_up:
            flags |= FLAG_BE | FLAG_BS
        return flags

    def make_registration(
        self,
        options: Dict[str, Any],
        origin: Optional[str] = None,
        challenge: Optional[str] = None,
    ) -> Dict[str, Any]:
        rp_id = options["rp"]["id"]
        credential_id = secrets.token_bytes(32)
        private_key = ec.generate_private_key(ec.SECP256R1())
        numbers = private_key.public_key().public_numbers()
        cose_key = cbor2.dumps({
            1: 2,
            3: -7,
            -1: 1,
            -2: numbers.x.to_bytes(32, "big"),
            -3: numbers.y.to_bytes(32, "big"),
        })

        auth_data = (
            _sha256(rp_id.encode())
            + bytes([self._flags(FLAG_AT)])
            + self.initial_counter.to_bytes(4, "big")
            + b"\x00" * 16
            + len(credential_id).to_bytes(2, "big")
            + credential_id
            + cose_key
        )
        attestation_object = cbor2.dumps({"fmt": "none", "attStmt": {}, "authData": auth_data})
        client_data = json.dumps({
            "type": "webauthn.create",
            "challenge": challenge or options["challenge"],
            "origin": origin or self.origin,
            "crossOrigin": False,
        }).encode()

        cred_id_b64 = base64url_encode(credential_id)
        self.credentials[cred_id_b64] = SoftCredential(
            credential_id=credential_id,
            private_key=private_key,
            user_handle=base64url_decode(options["user"]["id"]),
            rp_id=rp_id,
            counter=self.initial_counter,
            prf_secret=secrets.token_bytes(32),
        )

        extensions: Dict[str, Any] = {}
        if "prf" in (options.get("extensions") or {}):
            extensions["prf"] = {"enabled": self.prf}

        return {
            "id": cred_id_b64,
            "rawId": cred_id_b64,
            "type": "public-key",
            "authenticatorAttachment": "cross-platform",
            "response": {
                "clientDataJSON": base64url_encode(client_data),
                "attestationObject": base64url_encode(attestation_object),
                "transports": ["hybrid", "internal"],
            },
            "clientExtensionResults": extensions,
        }

    def prf_output(self, credential_id: str, salt: bytes) -> bytes:
        """PRF as a CTAP2 hmac-secret over the WebAuthn PRF salt."""
        cred = self.credentials[credential_id]
        return hmac.new(cred.prf_secret, _sha256(b"WebAuthn PRF\x00" + salt), hashlib.sha256).digest()

    def _pick_credential(self, options: Dict[str, Any]) -> SoftCredential:
        allowed: List[str] = [c["id"] for c in options.get("allowCredentials") or []]
        for cred_id, cred in self.credentials.items():
            if cred.rp_id == options["rpId"] and (not allowed or cred_id in allowed):
                return cred
        raise LookupError("No matching credential on this authenticator")

    def make_assertion(
        self,
        options: Dict[str, Any],
        credential_id: Optional[str] = None,
        origin: Optional[str] = None,
        counter: Optional[int] = None,
        challenge: Optional[str] = None,
    ) -> Dict[str, Any]:
        cred = self.credentials[credential_id] if credential_id else self._pick_credential(options)
        cred_id_b64 = base64url_encode(cred.credential_id)

        if counter is None:
            cred.counter += 1
            counter = cred.counter

        auth_data = (
            _sha256(cred.rp_id.encode())
            + bytes([self._flags(0)])
            + counter.to_bytes(4, "big")
        )
        client_data = json.dumps({
            "type": "webauthn.get",
            "challenge": challenge or options["challenge"],
            "origin": origin or self.origin,
            "crossOrigin": False,
        }).encode()
        signature = cred.private_key.sign(auth_data + _sha256(client_data), ec.ECDSA(hashes.SHA256()))

        extensions: Dict[str, Any] = {}
        prf_eval = ((options.get("extensions") or {}).get("prf") or {}).get("eval")
        if prf_eval and self.prf:
            salt = base64url_decode(prf_eval["first"])
            extensions["prf"] = {"results": {"first": base64url_encode(self.prf_output(cred_id_b64, salt))}}

        return {
            "id": cred_id_b64,
            "rawId": cred_id_b64,
            "type": "public-key",
            "authenticatorAttachment": "cross-platform",
            "response": {
                "clientDataJSON": base64url_encode(client_data),
                "authenticatorData": base64url_encode(auth_data),
                "signature": base64url_encode(signature),
                "userHandle": base64url_encode(cred.user_handle),
            },
            "clientExtensionResults": extensions,
        }


class BlockedStorage(dict):
    """Session storage that refuses every write"""

    def __setitem__(self, key, value):
        raise PermissionError("storage disabled")


# ============================================================================
# App fixtures
# ============================================================================

@pytest.fixture(autouse=True)
def clear_challenge_ledger():
    get_challenge_ledger().clear()
    yield
    get_challenge_ledger().clear()


@pytest.fixture
def settings(tmp_path) -> PasskeyVaultSettings:
    return PasskeyVaultSettings(
        _env_file=None,
        environment="development",
        jwt_secret_key=TEST_SECRET,
        data_dir=tmp_path,
    )


@pytest.fixture
def app(settings):
    return create_app(settings)


@pytest.fixture
def client(app):
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def db(app):
    return app.state.db


def auth_headers_for(settings: PasskeyVaultSettings, user_id: str, username: str) -> Dict[str, str]:
    token = create_access_token(settings, user_id, username)
    return {"Authorization": f"Bearer {token}", "Origin": LOCAL_ORIGIN}


@pytest.fixture
def auth_headers(settings) -> Dict[str, str]:
    return auth_headers_for(settings, "user-alice", "alice")


@pytest.fixture
def other_headers(settings) -> Dict[str, str]:
    return auth_headers_for(settings, "user-bob", "bob")


@pytest.fixture
def authenticator() -> SoftwareAuthenticator:
    return SoftwareAuthenticator()


@pytest_asyncio.fixture
async def async_http(app):
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as http:
        yield http


# ============================================================================
# Ceremony helpers
# ============================================================================

class PasskeyFlow:
    """Drives full ceremonies through the TestClient."""

    def __init__(self, client: TestClient, authenticator: SoftwareAuthenticator, headers: Dict[str, str]):
        self.client = client
        self.authenticator = authenticator
        self.headers = headers

    def registration_options(self) -> Dict[str, Any]:
        response = self.client.post("/api/v1/passkeys/registration/options", headers=self.headers)
        assert response.status_code == 200, response.text
        return response.json()["data"]

    def register(self) -> Dict[str, Any]:
        options = self.registration_options()
        credential = self.authenticator.make_registration(options)
        response = self.client.post(
            "/api/v1/passkeys/registration/verify", json=credential, headers=self.headers
        )
        assert response.status_code == 201, response.text
        return response.json()["data"]

    def authentication_options(self, headers: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
        response = self.client.post(
            "/api/v1/passkeys/authentication/options", headers=headers or self.headers
        )
        assert response.status_code == 200, response.text
        return response.json()["data"]

    def verify_authentication(self, assertion: Dict[str, Any], headers: Optional[Dict[str, str]] = None):
        return self.client.post(
            "/api/v1/passkeys/authentication/verify", json=assertion, headers=headers or self.headers
        )


@pytest.fixture
def passkey_flow(client, authenticator, auth_headers) -> PasskeyFlow:
    return PasskeyFlow(client, authenticator, auth_headers)
