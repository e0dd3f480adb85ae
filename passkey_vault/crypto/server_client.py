"""
HTTP client for the Passkey Vault server routes.

Used by PasskeyClient and EncryptionContext on the device. Only ceremony
payloads (PRF results stripped), PRF params and wrapped keys are sent; the
challenge cookie rides in the client's cookie jar.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

import httpx

from passkey_vault.core.exceptions import (
    AuthenticationError,
    ChallengeExpiredOrMissingError,
    RateLimitExceededError,
    ResourceAlreadyExistsError,
    ResourceNotFoundError,
    VaultError,
    VerificationFailedError,
)
from passkey_vault.crypto.types import PRFKeyParams, WrappedKey

logger = logging.getLogger(__name__)

API_PREFIX = "/api/v1"


class VaultServerClient:
    """Thin async wrapper over the passkey and encryption routes"""

    def __init__(
        self,
        http: httpx.AsyncClient,
        origin: str,
        access_token: Optional[str] = None,
    ):
        self.http = http
        self.origin = origin
        self.access_token = access_token

    def _headers(self) -> Dict[str, str]:
        headers = {"Origin": self.origin}
        if self.access_token:
            headers["Authorization"] = f"Bearer {self.access_token}"
        return headers

    async def _request(self, method: str, path: str, json: Any = None) -> Any:
        try:
            response = await self.http.request(
                method, API_PREFIX + path, json=json, headers=self._headers()
            )
        except httpx.HTTPError as e:
            logger.error(f"Vault server request failed: {type(e).__name__}")
            raise VaultError(
                message="Vault server is unreachable",
                code="SERVER_UNAVAILABLE",
                status_code=503,
            ) from e

        if response.is_success:
            return response.json().get("data")
        raise self._to_error(response, path)

    @staticmethod
    def _to_error(response: httpx.Response, path: str) -> VaultError:
        try:
            body = response.json()
        except ValueError:
            body = {}
        code = body.get("error_code") or "INTERNAL_ERROR"
        message = body.get("message") or "Request failed"

        if code == "VERIFICATION_FAILED":
            return VerificationFailedError(message)
        if code == "CHALLENGE_EXPIRED_OR_MISSING":
            return ChallengeExpiredOrMissingError()
        if code == "AUTHENTICATION_ERROR":
            return AuthenticationError(message)
        if code == "RESOURCE_NOT_FOUND":
            return ResourceNotFoundError("resource", path)
        if code == "RESOURCE_ALREADY_EXISTS":
            return ResourceAlreadyExistsError("resource", path)
        if code == "RATE_LIMIT_EXCEEDED":
            return RateLimitExceededError(int(response.headers.get("Retry-After", "60")))
        return VaultError(message=message, code=code, status_code=response.status_code)

    # ===== Passkey ceremonies =====

    async def registration_options(self) -> Dict[str, Any]:
        return await self._request("POST", "/passkeys/registration/options")

    async def verify_registration(self, credential: Dict[str, Any]) -> Dict[str, Any]:
        return await self._request("POST", "/passkeys/registration/verify", json=credential)

    async def authentication_options(self, credential_ids: Optional[List[str]] = None) -> Dict[str, Any]:
        body = {"credential_ids": credential_ids} if credential_ids else None
        return await self._request("POST", "/passkeys/authentication/options", json=body)

    async def verify_authentication(self, credential: Dict[str, Any]) -> Dict[str, Any]:
        return await self._request("POST", "/passkeys/authentication/verify", json=credential)

    async def list_credentials(self) -> List[Dict[str, Any]]:
        return await self._request("GET", "/passkeys/credentials")

    async def delete_credential(self, credential_id: str) -> None:
        await self._request("DELETE", f"/passkeys/credentials/{credential_id}")

    # ===== Encryption params and wrapped keys =====

    async def get_encryption_status(self) -> Dict[str, Any]:
        return await self._request("GET", "/encryption/status")

    async def get_prf_params(self) -> Optional[PRFKeyParams]:
        try:
            data = await self._request("GET", "/encryption/params")
        except ResourceNotFoundError:
            return None
        return PRFKeyParams.from_dict(data)

    async def complete_setup(self, params: PRFKeyParams, wrapped: WrappedKey) -> None:
        body = {"params": params.to_dict(), "wrapped_key": wrapped.to_dict()}
        await self._request("POST", "/encryption/setup", json=body)

    async def put_wrapped_key(self, wrapped: WrappedKey) -> None:
        await self._request("PUT", "/encryption/wrapped-keys", json=wrapped.to_dict())

    async def get_wrapped_key(self, scope_id: str, credential_id: str) -> Optional[WrappedKey]:
        try:
            data = await self._request("GET", f"/encryption/wrapped-keys/{scope_id}/{credential_id}")
        except ResourceNotFoundError:
            return None
        return WrappedKey.from_dict(data)

    async def list_wrapped_keys(self, scope_id: str) -> List[WrappedKey]:
        data = await self._request("GET", f"/encryption/wrapped-keys/{scope_id}")
        return [WrappedKey.from_dict(item) for item in data]
