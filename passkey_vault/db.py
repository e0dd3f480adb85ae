"""
Passkey Vault Database

Persistence for passkey credentials, PRF key parameters and wrapped keys.

Rules enforced here:
- credentials and PRF params are insert-once; public keys and salts are
  never updated
- the signature counter only moves forward (compare-and-set update)
- first-time setup writes the PRF params and the first wrapped key in one
  transaction; later wrapped keys are upserted per (scope_id, credential_id)
  and only once params exist
- unwrapped keys are never stored
"""

import json
import logging
import secrets
import sqlite3
from datetime import datetime, UTC
from pathlib import Path
from typing import List, Optional

from passkey_vault.core.exceptions import ResourceAlreadyExistsError
from passkey_vault.crypto.types import PRFKeyParams, WrappedKey
from passkey_vault.services.webauthn_types import StoredPasskeyCredential
from passkey_vault.utils import short_id

logger = logging.getLogger(__name__)


def _now() -> str:
    return datetime.now(UTC).isoformat()


class VaultDatabase:
    """sqlite3-backed store for the passkey vault records"""

    def __init__(self, db_path: Path):
        self.db_path = Path(db_path)

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self.db_path))
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    def init_db(self) -> None:
        """Create tables and indexes."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        with self._connect() as conn:
            cursor = conn.cursor()

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS user_auth_credentials (
                    credential_id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    public_key BLOB NOT NULL,
                    counter INTEGER NOT NULL DEFAULT 0,
                    transports TEXT NOT NULL DEFAULT '[]',
                    device_type TEXT NOT NULL,
                    backed_up INTEGER NOT NULL DEFAULT 0,
                    created_at TEXT NOT NULL,
                    last_used_at TEXT
                )
            """)

            cursor.execute("""
                CREATE INDEX IF NOT EXISTS idx_credentials_user
                ON user_auth_credentials(user_id)
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS user_passkey_params (
                    user_id TEXT PRIMARY KEY,
                    prf_salt TEXT NOT NULL,
                    credential_id TEXT,
                    version INTEGER NOT NULL,
                    created_at TEXT NOT NULL
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS wrapped_keys (
                    scope_id TEXT NOT NULL,
                    credential_id TEXT NOT NULL,
                    owner_user_id TEXT NOT NULL,
                    ciphertext TEXT NOT NULL,
                    nonce TEXT NOT NULL,
                    algorithm TEXT NOT NULL,
                    version INTEGER NOT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    UNIQUE(scope_id, credential_id)
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS unlock_attempts (
                    id TEXT PRIMARY KEY,
                    user_id TEXT,
                    credential_id TEXT,
                    client_ip TEXT,
                    attempt_time TEXT NOT NULL,
                    success INTEGER NOT NULL,
                    reason TEXT
                )
            """)

            cursor.execute("""
                CREATE INDEX IF NOT EXISTS idx_unlock_attempts_user
                ON unlock_attempts(user_id, attempt_time DESC)
            """)

            conn.commit()

        logger.info("Passkey vault database initialized", extra={"db_path": str(self.db_path)})

    # ===== Credentials =====

    @staticmethod
    def _row_to_credential(row: sqlite3.Row) -> StoredPasskeyCredential:
        return StoredPasskeyCredential(
            credential_id=row["credential_id"],
            user_id=row["user_id"],
            public_key=bytes(row["public_key"]),
            counter=row["counter"],
            transports=json.loads(row["transports"]),
            device_type=row["device_type"],
            backed_up=bool(row["backed_up"]),
            created_at=row["created_at"],
            last_used_at=row["last_used_at"],
        )

    def insert_credential(self, credential: StoredPasskeyCredential) -> StoredPasskeyCredential:
        created_at = credential.created_at or _now()
        try:
            with self._connect() as conn:
                conn.execute("""
                    INSERT INTO user_auth_credentials
                        (credential_id, user_id, public_key, counter, transports,
                         device_type, backed_up, created_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """, (
                    credential.credential_id,
                    credential.user_id,
                    credential.public_key,
                    credential.counter,
                    json.dumps(credential.transports),
                    credential.device_type,
                    1 if credential.backed_up else 0,
                    created_at,
                ))
                conn.commit()
        except sqlite3.IntegrityError:
            raise ResourceAlreadyExistsError("passkey_credential", short_id(credential.credential_id))

        credential.created_at = created_at
        return credential

    def get_credential(self, credential_id: str) -> Optional[StoredPasskeyCredential]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM user_auth_credentials WHERE credential_id = ?",
                (credential_id,),
            ).fetchone()
        return self._row_to_credential(row) if row else None

    def list_credentials(self, user_id: str) -> List[StoredPasskeyCredential]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM user_auth_credentials WHERE user_id = ? ORDER BY created_at",
                (user_id,),
            ).fetchall()
        return [self._row_to_credential(row) for row in rows]

    def has_credentials(self, user_id: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT 1 FROM user_auth_credentials WHERE user_id = ? LIMIT 1",
                (user_id,),
            ).fetchone()
        return row is not None

    def update_counter(self, credential_id: str, new_counter: int) -> bool:
        """Advance the counter only if it increases; returns whether it advanced."""
        with self._connect() as conn:
            cursor = conn.execute("""
                UPDATE user_auth_credentials
                SET counter = ?, last_used_at = ?
                WHERE credential_id = ? AND counter < ?
            """, (new_counter, _now(), credential_id, new_counter))
            conn.commit()
            return cursor.rowcount == 1

    def delete_credential(self, user_id: str, credential_id: str) -> bool:
        """Remove a user's credential and every key wrapped for it."""
        with self._connect() as conn:
            cursor = conn.execute(
                "DELETE FROM user_auth_credentials WHERE credential_id = ? AND user_id = ?",
                (credential_id, user_id),
            )
            if cursor.rowcount == 0:
                return False
            conn.execute(
                "DELETE FROM wrapped_keys WHERE credential_id = ? AND owner_user_id = ?",
                (credential_id, user_id),
            )
            conn.commit()
        return True

    # ===== PRF params =====

    def insert_prf_params(self, user_id: str, params: PRFKeyParams) -> None:
        data = params.to_dict()
        try:
            with self._connect() as conn:
                conn.execute("""
                    INSERT INTO user_passkey_params (user_id, prf_salt, credential_id, version, created_at)
                    VALUES (?, ?, ?, ?, ?)
                """, (user_id, data["prf_salt"], params.credential_id, params.version, _now()))
                conn.commit()
        except sqlite3.IntegrityError:
            raise ResourceAlreadyExistsError("encryption_params", user_id)

    def complete_setup(self, user_id: str, params: PRFKeyParams, wrapped: WrappedKey) -> None:
        """
        Store the PRF params and the first wrapped key together.

        Both rows are insert-once; if either already exists nothing is written,
        so a losing concurrent setup cannot replace a working wrapped key.
        """
        params_data = params.to_dict()
        wrapped_data = wrapped.to_dict()
        now = _now()
        try:
            with self._connect() as conn:
                conn.execute("""
                    INSERT INTO user_passkey_params (user_id, prf_salt, credential_id, version, created_at)
                    VALUES (?, ?, ?, ?, ?)
                """, (user_id, params_data["prf_salt"], params.credential_id, params.version, now))
                conn.execute("""
                    INSERT INTO wrapped_keys
                        (scope_id, credential_id, owner_user_id, ciphertext, nonce,
                         algorithm, version, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """, (
                    wrapped.scope_id,
                    wrapped.credential_id,
                    user_id,
                    wrapped_data["ciphertext"],
                    wrapped_data["nonce"],
                    wrapped.algorithm,
                    wrapped.version,
                    now,
                    now,
                ))
                conn.commit()
        except sqlite3.IntegrityError:
            logger.warning("Encryption setup rejected; already set up", extra={"user_id": user_id})
            raise ResourceAlreadyExistsError("encryption_params", user_id)

    def get_prf_params(self, user_id: str) -> Optional[PRFKeyParams]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT prf_salt, credential_id, version FROM user_passkey_params WHERE user_id = ?",
                (user_id,),
            ).fetchone()
        return PRFKeyParams.from_dict(dict(row)) if row else None

    # ===== Wrapped keys =====

    def get_wrapped_key_owner(self, scope_id: str, credential_id: str) -> Optional[str]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT owner_user_id FROM wrapped_keys WHERE scope_id = ? AND credential_id = ?",
                (scope_id, credential_id),
            ).fetchone()
        return row["owner_user_id"] if row else None

    def upsert_wrapped_key(self, owner_user_id: str, wrapped: WrappedKey) -> None:
        data = wrapped.to_dict()
        now = _now()
        with self._connect() as conn:
            conn.execute("""
                INSERT INTO wrapped_keys
                    (scope_id, credential_id, owner_user_id, ciphertext, nonce,
                     algorithm, version, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(scope_id, credential_id) DO UPDATE SET
                    ciphertext = excluded.ciphertext,
                    nonce = excluded.nonce,
                    algorithm = excluded.algorithm,
                    version = excluded.version,
                    updated_at = excluded.updated_at
                WHERE wrapped_keys.owner_user_id = excluded.owner_user_id
            """, (
                wrapped.scope_id,
                wrapped.credential_id,
                owner_user_id,
                data["ciphertext"],
                data["nonce"],
                wrapped.algorithm,
                wrapped.version,
                now,
                now,
            ))
            conn.commit()

    @staticmethod
    def _row_to_wrapped(row: sqlite3.Row) -> WrappedKey:
        return WrappedKey.from_dict({
            "scope_id": row["scope_id"],
            "credential_id": row["credential_id"],
            "ciphertext": row["ciphertext"],
            "nonce": row["nonce"],
            "algorithm": row["algorithm"],
            "version": row["version"],
        })

    def get_wrapped_key(self, owner_user_id: str, scope_id: str, credential_id: str) -> Optional[WrappedKey]:
        with self._connect() as conn:
            row = conn.execute("""
                SELECT * FROM wrapped_keys
                WHERE scope_id = ? AND credential_id = ? AND owner_user_id = ?
            """, (scope_id, credential_id, owner_user_id)).fetchone()
        return self._row_to_wrapped(row) if row else None

    def list_wrapped_keys(self, owner_user_id: str, scope_id: str) -> List[WrappedKey]:
        with self._connect() as conn:
            rows = conn.execute("""
                SELECT * FROM wrapped_keys
                WHERE scope_id = ? AND owner_user_id = ?
                ORDER BY created_at
            """, (scope_id, owner_user_id)).fetchall()
        return [self._row_to_wrapped(row) for row in rows]

    # ===== Audit =====

    def record_unlock_attempt(
        self,
        user_id: Optional[str],
        credential_id: Optional[str],
        client_ip: str,
        success: bool,
        reason: Optional[str] = None,
    ) -> None:
        with self._connect() as conn:
            conn.execute("""
                INSERT INTO unlock_attempts (id, user_id, credential_id, client_ip, attempt_time, success, reason)
                VALUES (?, ?, ?, ?, ?, ?, ?)
            """, (
                secrets.token_urlsafe(16),
                user_id,
                credential_id,
                client_ip,
                _now(),
                1 if success else 0,
                reason,
            ))
            conn.commit()

    def count_unlock_attempts(self, user_id: str) -> int:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT COUNT(*) FROM unlock_attempts WHERE user_id = ?",
                (user_id,),
            ).fetchone()
        return row[0]
