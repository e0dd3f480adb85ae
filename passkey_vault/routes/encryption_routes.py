"""
Encryption Routes

PRF key parameters and wrapped keys for the signed-in user.

The server only ever sees the non-secret salt and wrapped (encrypted) unit
keys. First-time setup stores the PRF params and the first wrapped key in one
step, so a second setup racing it cannot replace a working wrapped key.
Afterwards wrapped keys are upserted per (scope_id, credential_id) and must
belong to one of the user's passkeys.
"""

import binascii
import logging
from typing import List

from fastapi import APIRouter, Depends, Request, status

from passkey_vault.auth_middleware import User, get_current_user
from passkey_vault.core.exceptions import AuthorizationError, InvalidPayloadError, ResourceNotFoundError
from passkey_vault.crypto.types import PRFKeyParams, WrappedKey
from passkey_vault.db import VaultDatabase
from passkey_vault.routes.schemas import (
    EncryptionSetupRequest,
    EncryptionStatus,
    PRFParamsModel,
    SuccessResponse,
    WrappedKeyModel,
)
from passkey_vault.utils import short_id

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/encryption", tags=["encryption"])


def get_db(request: Request) -> VaultDatabase:
    return request.app.state.db


@router.get(
    "/status",
    response_model=SuccessResponse[EncryptionStatus],
    summary="Encryption setup status"
)
async def encryption_status(
    db: VaultDatabase = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> SuccessResponse[EncryptionStatus]:
    credentials = db.list_credentials(current_user.user_id)
    params = db.get_prf_params(current_user.user_id)
    return SuccessResponse(data=EncryptionStatus(
        has_passkey=bool(credentials),
        has_encryption_setup=params is not None,
        credential_count=len(credentials),
    ))


@router.get(
    "/params",
    response_model=SuccessResponse[PRFParamsModel],
    summary="Get PRF key parameters"
)
async def get_params(
    db: VaultDatabase = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> SuccessResponse[PRFParamsModel]:
    params = db.get_prf_params(current_user.user_id)
    if params is None:
        raise ResourceNotFoundError("encryption_params", current_user.user_id)
    return SuccessResponse(data=PRFParamsModel(**params.to_dict()))


@router.post(
    "/params",
    response_model=SuccessResponse[PRFParamsModel],
    status_code=status.HTTP_201_CREATED,
    summary="Save PRF key parameters",
    description="Stored once per user; the salt can never be replaced"
)
async def save_params(
    body: PRFParamsModel,
    db: VaultDatabase = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> SuccessResponse[PRFParamsModel]:
    params = _parse_params(body)
    if params.credential_id is not None:
        _require_own_credential(db, params.credential_id, current_user)

    db.insert_prf_params(current_user.user_id, params)
    logger.info("Saved PRF params", extra={"user_id": current_user.user_id, "version": params.version})
    return SuccessResponse(data=body, message="Encryption parameters saved")


@router.post(
    "/setup",
    response_model=SuccessResponse[EncryptionSetupRequest],
    status_code=status.HTTP_201_CREATED,
    summary="Complete first-time encryption setup",
    description="Stores the PRF params and the first wrapped key atomically; fails if either exists"
)
async def complete_setup(
    body: EncryptionSetupRequest,
    db: VaultDatabase = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> SuccessResponse[EncryptionSetupRequest]:
    params = _parse_params(body.params)
    wrapped = _parse_wrapped(body.wrapped_key)
    if params.credential_id is not None and params.credential_id != wrapped.credential_id:
        raise InvalidPayloadError("Wrapped key and params name different credentials")
    _require_own_credential(db, wrapped.credential_id, current_user)

    db.complete_setup(current_user.user_id, params, wrapped)
    logger.info(
        "Encryption setup completed",
        extra={"user_id": current_user.user_id, "credential_id": short_id(wrapped.credential_id)},
    )
    return SuccessResponse(data=body, message="Encryption set up")


@router.put(
    "/wrapped-keys",
    response_model=SuccessResponse[WrappedKeyModel],
    summary="Store a wrapped key",
    description="Insert or replace the wrapped key for one (scope, credential) pair after setup"
)
async def put_wrapped_key(
    body: WrappedKeyModel,
    db: VaultDatabase = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> SuccessResponse[WrappedKeyModel]:
    wrapped = _parse_wrapped(body)
    _require_own_credential(db, wrapped.credential_id, current_user)

    # The first wrapped key is only written by /setup, together with the params
    if db.get_prf_params(current_user.user_id) is None:
        raise ResourceNotFoundError("encryption_params", current_user.user_id)

    owner = db.get_wrapped_key_owner(wrapped.scope_id, wrapped.credential_id)
    if owner is not None and owner != current_user.user_id:
        raise AuthorizationError("Wrapped key belongs to another user")

    db.upsert_wrapped_key(current_user.user_id, wrapped)
    logger.info(
        "Stored wrapped key",
        extra={"scope_id": wrapped.scope_id, "credential_id": short_id(wrapped.credential_id)},
    )
    return SuccessResponse(data=body)


@router.get(
    "/wrapped-keys/{scope_id}",
    response_model=SuccessResponse[List[WrappedKeyModel]],
    summary="List wrapped keys for a scope"
)
async def list_wrapped_keys(
    scope_id: str,
    db: VaultDatabase = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> SuccessResponse[List[WrappedKeyModel]]:
    keys = db.list_wrapped_keys(current_user.user_id, scope_id)
    return SuccessResponse(data=[WrappedKeyModel(**k.to_dict()) for k in keys])


@router.get(
    "/wrapped-keys/{scope_id}/{credential_id}",
    response_model=SuccessResponse[WrappedKeyModel],
    summary="Get one wrapped key"
)
async def get_wrapped_key(
    scope_id: str,
    credential_id: str,
    db: VaultDatabase = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> SuccessResponse[WrappedKeyModel]:
    wrapped = db.get_wrapped_key(current_user.user_id, scope_id, credential_id)
    if wrapped is None:
        raise ResourceNotFoundError("wrapped_key", short_id(credential_id))
    return SuccessResponse(data=WrappedKeyModel(**wrapped.to_dict()))


def _parse_params(body: PRFParamsModel) -> PRFKeyParams:
    try:
        return PRFKeyParams.from_dict(body.model_dump())
    except (binascii.Error, ValueError):
        raise InvalidPayloadError("prf_salt is not valid base64")


def _parse_wrapped(body: WrappedKeyModel) -> WrappedKey:
    try:
        return WrappedKey.from_dict(body.model_dump())
    except (binascii.Error, ValueError):
        raise InvalidPayloadError("wrapped key fields are not valid base64")


def _require_own_credential(db: VaultDatabase, credential_id: str, current_user: User) -> None:
    credential = db.get_credential(credential_id)
    if credential is None or credential.user_id != current_user.user_id:
        raise AuthorizationError("Credential does not belong to this user")
