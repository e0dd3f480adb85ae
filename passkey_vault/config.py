"""
Unified Configuration Management for Passkey Vault

Consolidates all configuration into a single source of truth using Pydantic BaseSettings.
All settings can be overridden via environment variables with PASSKEY_VAULT_ prefix.

Usage:
    from passkey_vault.config import get_settings

    settings = get_settings()
    print(settings.root_domain)
    print(settings.challenge_ttl_seconds)
"""

import secrets
import warnings
from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class PasskeyVaultSettings(BaseSettings):
    """
    Unified configuration for Passkey Vault

    All settings can be overridden via environment variables with PASSKEY_VAULT_ prefix.
    Example: PASSKEY_VAULT_JWT_SECRET_KEY=mysecret
    """

    model_config = SettingsConfigDict(
        env_prefix="PASSKEY_VAULT_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ============================================
    # SYSTEM SETTINGS
    # ============================================

    environment: Literal["development", "production", "testing"] = Field(
        default="development",
        description="Application environment"
    )

    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)"
    )

    # ============================================
    # SECURITY SETTINGS
    # ============================================

    jwt_secret_key: str = Field(
        default="",
        description="Signing key for access tokens and challenge cookies (REQUIRED in production)"
    )

    jwt_algorithm: Literal["HS256", "HS384", "HS512"] = Field(
        default="HS256",
        description="JWT signing algorithm (only HMAC algorithms allowed)"
    )

    jwt_access_token_expire_minutes: int = Field(
        default=60,
        description="Access token expiration in minutes"
    )

    unlock_rate_limit: int = Field(
        default=5,
        description="Passkey verification attempts allowed per window"
    )

    unlock_window_seconds: int = Field(
        default=300,
        description="Rate limit window for passkey verification attempts"
    )

    # ============================================
    # WEBAUTHN SETTINGS
    # ============================================

    rp_name: str = Field(
        default="Helvety",
        description="WebAuthn Relying Party name (displayed to user)"
    )

    root_domain: str = Field(
        default="helvety.com",
        description="Shared root domain used as RP ID for every product subdomain"
    )

    local_rp_id: str = Field(
        default="localhost",
        description="RP ID used for local development origins"
    )

    local_origins: list[str] = Field(
        default=[
            "http://localhost:3000",
            "http://localhost:3001",
            "http://localhost:3002",
        ],
        description="Exact origins accepted for the local RP scope"
    )

    production_origins: list[str] = Field(
        default=[
            "https://helvety.com",
            "https://auth.helvety.com",
            "https://pdf.helvety.com",
            "https://store.helvety.com",
        ],
        description="Exact origins accepted for the root-domain RP scope"
    )

    challenge_cookie_name: str = Field(
        default="webauthn_encryption_challenge",
        description="Cookie holding the pending ceremony challenge"
    )

    challenge_ttl_seconds: int = Field(
        default=300,
        description="Challenge lifetime in seconds"
    )

    ceremony_timeout_ms: int = Field(
        default=60000,
        description="Timeout advertised to authenticators for a ceremony"
    )

    # ============================================
    # PATH CONFIGURATION
    # ============================================

    data_dir: Path = Field(
        default_factory=lambda: Path.cwd() / ".passkey_vault_data",
        description="Base data directory"
    )

    @field_validator("data_dir", mode="after")
    @classmethod
    def ensure_data_dir_exists(cls, v: Path) -> Path:
        """Ensure data directory exists"""
        v.mkdir(parents=True, exist_ok=True)
        return v

    @model_validator(mode="after")
    def validate_jwt_secret(self) -> "PasskeyVaultSettings":
        """Validate signing secret is properly configured"""
        insecure_defaults = ["", "secret", "changeme"]

        if self.jwt_secret_key.lower() in insecure_defaults:
            if self.environment == "production":
                raise ValueError(
                    "JWT_SECRET_KEY must be set in production! "
                    "Set PASSKEY_VAULT_JWT_SECRET_KEY to a secure random string (at least 32 chars)"
                )
            object.__setattr__(self, "jwt_secret_key", secrets.token_urlsafe(32))
            warnings.warn(
                "JWT_SECRET_KEY not set - using auto-generated secret. "
                "Pending challenges and access tokens are invalidated on restart.",
                UserWarning,
                stacklevel=2
            )

        if len(self.jwt_secret_key) < 32 and self.environment == "production":
            raise ValueError(
                f"JWT_SECRET_KEY is too short ({len(self.jwt_secret_key)} chars). "
                "Must be at least 32 characters for security."
            )

        return self

    @property
    def db_path(self) -> Path:
        return self.data_dir / "passkey_vault.db"

    @property
    def cookie_secure(self) -> bool:
        """Challenge cookie carries the Secure flag everywhere except local development"""
        return self.environment != "development"


@lru_cache()
def get_settings() -> PasskeyVaultSettings:
    """Get cached settings instance"""
    return PasskeyVaultSettings()
