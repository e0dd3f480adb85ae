"""
Authentication dependencies for Passkey Vault routes

Sign-in itself belongs to the surrounding application; these routes only
need the signed-in user. Access tokens are HS256 JWTs signed with
settings.jwt_secret_key and carry user_id and username. A successful passkey
sign-in also issues one through create_access_token().
"""

import logging
from datetime import datetime, timedelta, UTC
from typing import Optional

import jwt
from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel

from passkey_vault.config import PasskeyVaultSettings
from passkey_vault.core.exceptions import AuthenticationError
from passkey_vault.utils import sanitize_for_log

logger = logging.getLogger(__name__)

security = HTTPBearer(auto_error=False)


class User(BaseModel):
    """Signed-in user"""
    user_id: str
    username: str


def create_access_token(settings: PasskeyVaultSettings, user_id: str, username: Optional[str] = None) -> str:
    now = datetime.now(UTC)
    payload = {
        "user_id": user_id,
        "username": username or user_id,
        "iat": now,
        "exp": now + timedelta(minutes=settings.jwt_access_token_expire_minutes),
    }
    return jwt.encode(payload, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)


def verify_token(settings: PasskeyVaultSettings, token: str) -> Optional[User]:
    """Verify JWT token and return the user it names"""
    try:
        payload = jwt.decode(
            token,
            settings.jwt_secret_key,
            algorithms=[settings.jwt_algorithm],
            options={"verify_iat": False, "require": ["exp", "user_id"]},
            leeway=60,
        )
    except jwt.ExpiredSignatureError:
        logger.warning("Token expired")
        return None
    except jwt.InvalidTokenError as e:
        logger.warning(f"Invalid token: {sanitize_for_log(str(e))}")
        return None

    return User(user_id=payload["user_id"], username=payload.get("username") or payload["user_id"])


async def get_current_user_optional(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> Optional[User]:
    """Signed-in user, or None for anonymous requests"""
    if credentials is None:
        return None
    user = verify_token(request.app.state.settings, credentials.credentials)
    if user is None:
        raise AuthenticationError("Invalid or expired token")
    return user


async def get_current_user(user: Optional[User] = Depends(get_current_user_optional)) -> User:
    """Signed-in user; raises AuthenticationError otherwise"""
    if user is None:
        raise AuthenticationError()
    return user
