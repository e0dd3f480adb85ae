"""
WebAuthn Challenge Management

One pending challenge per browser session, kept in a signed, http-only,
SameSite=strict cookie with a 5 minute TTL.

Cookie value is an HS256 token (PyJWT) carrying:
    chl  base64url challenge
    sub  user id the challenge is bound to (optional)
    org  request origin, used to re-derive the RP scope at verify time
    iat  issue time
    jti  challenge id, recorded in the consumed-challenge ledger

A later issue() overwrites an earlier unconsumed challenge. Consumption is
read-and-invalidate: the cookie is deleted and the jti is recorded, so a
challenge can be consumed at most once even if the cookie is replayed.
"""

from __future__ import annotations

import logging
import secrets
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

import jwt
from fastapi import Request, Response

from passkey_vault.config import PasskeyVaultSettings
from passkey_vault.core.exceptions import UserMismatchError
from passkey_vault.crypto.encoding import base64url_decode, base64url_encode
from passkey_vault.utils import short_id

logger = logging.getLogger(__name__)

CHALLENGE_SIZE = 32


@dataclass(frozen=True)
class StoredChallenge:
    challenge: bytes
    user_id: Optional[str]
    issued_at: float
    origin: Optional[str]
    challenge_id: str


class ConsumedChallengeLedger:
    """Process-wide record of consumed challenge ids (jti -> expiry)"""

    def __init__(self):
        self._consumed: Dict[str, float] = {}
        self._lock = threading.Lock()

    def mark_consumed(self, challenge_id: str, expires_at: float, now: float) -> bool:
        """Atomically record a challenge id; False if it was already consumed."""
        with self._lock:
            for key, exp in list(self._consumed.items()):
                if exp < now:
                    self._consumed.pop(key, None)
            if challenge_id in self._consumed:
                return False
            self._consumed[challenge_id] = expires_at
            return True

    def clear(self) -> None:
        with self._lock:
            self._consumed.clear()


_ledger = ConsumedChallengeLedger()


def get_challenge_ledger() -> ConsumedChallengeLedger:
    return _ledger


class ChallengeStore:
    """Issues and consumes ceremony challenges for one request/response pair"""

    def __init__(
        self,
        request: Request,
        response: Response,
        settings: PasskeyVaultSettings,
        ledger: Optional[ConsumedChallengeLedger] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.request = request
        self.response = response
        self.settings = settings
        self.ledger = ledger or _ledger
        self._clock = clock

    @property
    def cookie_name(self) -> str:
        return self.settings.challenge_cookie_name

    def issue(self, user_id: Optional[str] = None, origin: Optional[str] = None) -> bytes:
        """Create a fresh challenge and persist it in the cookie."""
        challenge = secrets.token_bytes(CHALLENGE_SIZE)
        now = self._clock()
        claims = {
            "chl": base64url_encode(challenge),
            "iat": int(now),
            "jti": secrets.token_urlsafe(16),
            "org": origin,
        }
        if user_id is not None:
            claims["sub"] = user_id

        token = jwt.encode(claims, self.settings.jwt_secret_key, algorithm=self.settings.jwt_algorithm)
        self.response.set_cookie(
            key=self.cookie_name,
            value=token,
            max_age=self.settings.challenge_ttl_seconds,
            path="/",
            httponly=True,
            secure=self.settings.cookie_secure,
            samesite="strict",
        )
        return challenge

    def _load(self) -> Optional[StoredChallenge]:
        token = self.request.cookies.get(self.cookie_name)
        if not token:
            return None

        try:
            claims = jwt.decode(
                token,
                self.settings.jwt_secret_key,
                algorithms=[self.settings.jwt_algorithm],
                options={"require": ["chl", "iat", "jti"], "verify_iat": False},
            )
            challenge = base64url_decode(claims["chl"])
            issued_at = float(claims["iat"])
        except (jwt.InvalidTokenError, ValueError, TypeError) as e:
            logger.warning(f"Rejected malformed challenge cookie: {type(e).__name__}")
            return None

        if self._clock() - issued_at > self.settings.challenge_ttl_seconds:
            logger.info("Challenge expired", extra={"challenge_id": short_id(claims["jti"])})
            return None

        return StoredChallenge(
            challenge=challenge,
            user_id=claims.get("sub"),
            issued_at=issued_at,
            origin=claims.get("org"),
            challenge_id=claims["jti"],
        )

    def consume(
        self,
        user_id: Optional[str] = None,
        challenge: Optional[bytes] = None,
    ) -> Optional[StoredChallenge]:
        """
        Read and invalidate the pending challenge.

        Args:
            user_id: when given, the challenge must have been issued to this user
            challenge: when given, the challenge the client signed; a different
                pending challenge is left in place for its own ceremony

        Returns:
            StoredChallenge, or None if missing, malformed, expired, superseded
            or already consumed

        Raises:
            UserMismatchError: challenge was issued to a different user
        """
        stored = self._load()
        if stored is None:
            return None

        if challenge is not None and not secrets.compare_digest(stored.challenge, challenge):
            logger.info(
                "Client challenge does not match the pending challenge",
                extra={"challenge_id": short_id(stored.challenge_id)},
            )
            return None

        self.clear()
        now = self._clock()
        expires_at = stored.issued_at + self.settings.challenge_ttl_seconds
        if not self.ledger.mark_consumed(stored.challenge_id, expires_at, now):
            logger.warning(
                "Replayed challenge rejected",
                extra={"challenge_id": short_id(stored.challenge_id)},
            )
            return None

        if user_id is not None and stored.user_id != user_id:
            logger.warning(
                "Challenge user mismatch",
                extra={"expected_user": user_id, "challenge_user": stored.user_id},
            )
            raise UserMismatchError()

        return stored

    def clear(self) -> None:
        self.response.delete_cookie(
            key=self.cookie_name,
            path="/",
            httponly=True,
            secure=self.settings.cookie_secure,
            samesite="strict",
        )
