"""
Passkey Routes

WebAuthn registration, authentication and credential management.

Ceremony payloads are taken as raw JSON and validated by the credential
manager before any field is trusted. The request Origin header decides the
RP scope; the challenge cookie records it for the verify step.
"""

import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Body, Depends, Request, Response, status

from passkey_vault.auth_middleware import User, create_access_token, get_current_user, get_current_user_optional
from passkey_vault.config import PasskeyVaultSettings
from passkey_vault.core.exceptions import RateLimitExceededError, ResourceNotFoundError, VaultError
from passkey_vault.db import VaultDatabase
from passkey_vault.rate_limiter import get_client_ip
from passkey_vault.routes.schemas import (
    AuthenticationOptionsRequest,
    AuthenticationResult,
    CredentialInfo,
    RegistrationResult,
    SuccessResponse,
)
from passkey_vault.services.challenge_store import ChallengeStore
from passkey_vault.services.passkey_manager import PasskeyCredentialManager
from passkey_vault.utils import short_id

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/passkeys", tags=["passkeys"])


def get_settings_dep(request: Request) -> PasskeyVaultSettings:
    return request.app.state.settings


def get_db(request: Request) -> VaultDatabase:
    return request.app.state.db


def get_manager(request: Request) -> PasskeyCredentialManager:
    return PasskeyCredentialManager(request.app.state.db, request.app.state.settings)


def get_challenge_store(
    request: Request,
    response: Response,
    settings: PasskeyVaultSettings = Depends(get_settings_dep),
) -> ChallengeStore:
    return ChallengeStore(request, response, settings)


def request_origin(request: Request) -> Optional[str]:
    return request.headers.get("origin")


# ===== Registration =====

@router.post(
    "/registration/options",
    response_model=SuccessResponse[Dict[str, Any]],
    summary="Passkey registration options",
    description="Creation options for a new passkey; existing credentials are excluded"
)
async def registration_options(
    request: Request,
    store: ChallengeStore = Depends(get_challenge_store),
    manager: PasskeyCredentialManager = Depends(get_manager),
    current_user: User = Depends(get_current_user),
) -> SuccessResponse[Dict[str, Any]]:
    options = manager.registration_options(
        store,
        user_id=current_user.user_id,
        user_name=current_user.username,
        origin=request_origin(request),
    )
    return SuccessResponse(data=options)


@router.post(
    "/registration/verify",
    response_model=SuccessResponse[RegistrationResult],
    status_code=status.HTTP_201_CREATED,
    summary="Verify passkey registration"
)
async def registration_verify(
    payload: Dict[str, Any] = Body(...),
    store: ChallengeStore = Depends(get_challenge_store),
    manager: PasskeyCredentialManager = Depends(get_manager),
    current_user: User = Depends(get_current_user),
) -> SuccessResponse[RegistrationResult]:
    record, prf_enabled = manager.verify_registration(store, current_user.user_id, payload)
    return SuccessResponse(
        data=RegistrationResult(
            credential_id=record.credential_id,
            device_type=record.device_type,
            backed_up=record.backed_up,
            prf_enabled=prf_enabled,
        ),
        message="Passkey registered",
    )


# ===== Authentication =====

@router.post(
    "/authentication/options",
    response_model=SuccessResponse[Dict[str, Any]],
    summary="Passkey authentication options",
    description="Allow-list of the signed-in user's passkeys, or empty for discoverable sign-in"
)
async def authentication_options(
    request: Request,
    body: Optional[AuthenticationOptionsRequest] = Body(None),
    store: ChallengeStore = Depends(get_challenge_store),
    manager: PasskeyCredentialManager = Depends(get_manager),
    current_user: Optional[User] = Depends(get_current_user_optional),
) -> SuccessResponse[Dict[str, Any]]:
    options = manager.authentication_options(
        store,
        user_id=current_user.user_id if current_user else None,
        origin=request_origin(request),
        credential_ids=body.credential_ids if body else None,
    )
    return SuccessResponse(data=options)


@router.post(
    "/authentication/verify",
    response_model=SuccessResponse[AuthenticationResult],
    summary="Verify passkey authentication",
    description="Verifies the assertion, advances the signature counter and issues an access token"
)
async def authentication_verify(
    request: Request,
    payload: Dict[str, Any] = Body(...),
    store: ChallengeStore = Depends(get_challenge_store),
    manager: PasskeyCredentialManager = Depends(get_manager),
    current_user: Optional[User] = Depends(get_current_user_optional),
) -> SuccessResponse[AuthenticationResult]:
    settings: PasskeyVaultSettings = request.app.state.settings
    db: VaultDatabase = request.app.state.db
    client_ip = get_client_ip(request)
    user_id = current_user.user_id if current_user else None
    submitted_id = payload.get("id") if isinstance(payload.get("id"), str) else None

    rate_key = f"passkey_unlock:{user_id or client_ip}"
    if not request.app.state.rate_limiter.check_rate_limit(
        rate_key,
        max_requests=settings.unlock_rate_limit,
        window_seconds=settings.unlock_window_seconds,
    ):
        db.record_unlock_attempt(user_id, submitted_id, client_ip, False, "RATE_LIMIT_EXCEEDED")
        logger.warning("Passkey verification rate limited", extra={"user_id": user_id, "client_ip": client_ip})
        raise RateLimitExceededError(retry_after=settings.unlock_window_seconds)

    try:
        record, _ = manager.verify_authentication(store, payload, user_id=user_id)
    except VaultError as e:
        db.record_unlock_attempt(user_id, submitted_id, client_ip, False, e.code)
        raise

    db.record_unlock_attempt(record.user_id, record.credential_id, client_ip, True)
    username = current_user.username if current_user else None
    return SuccessResponse(
        data=AuthenticationResult(
            user_id=record.user_id,
            credential_id=record.credential_id,
            access_token=create_access_token(settings, record.user_id, username),
        ),
    )


# ===== Credential management =====

@router.get(
    "/credentials",
    response_model=SuccessResponse[List[CredentialInfo]],
    summary="List passkeys"
)
async def list_credentials(
    manager: PasskeyCredentialManager = Depends(get_manager),
    current_user: User = Depends(get_current_user),
) -> SuccessResponse[List[CredentialInfo]]:
    credentials = manager.list_credentials(current_user.user_id)
    return SuccessResponse(data=[CredentialInfo(**c.to_public_dict()) for c in credentials])


@router.delete(
    "/credentials/{credential_id}",
    response_model=SuccessResponse[Dict[str, Any]],
    summary="Delete a passkey",
    description="Removes the passkey and every key wrapped for it"
)
async def delete_credential(
    credential_id: str,
    manager: PasskeyCredentialManager = Depends(get_manager),
    current_user: User = Depends(get_current_user),
) -> SuccessResponse[Dict[str, Any]]:
    if not manager.delete_credential(current_user.user_id, credential_id):
        raise ResourceNotFoundError("passkey_credential", short_id(credential_id))
    return SuccessResponse(data={"credential_id": credential_id}, message="Passkey deleted")
