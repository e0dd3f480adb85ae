"""
FastAPI Application Factory for Passkey Vault

create_app() wires:
- settings, database and rate limiter on app.state
- passkey and encryption routers
- global error handlers

Usage:
    uvicorn passkey_vault.app_factory:create_app --factory
"""

import logging
from typing import Optional

from fastapi import FastAPI

from passkey_vault.config import PasskeyVaultSettings, get_settings
from passkey_vault.db import VaultDatabase
from passkey_vault.middleware import register_error_handlers
from passkey_vault.rate_limiter import SimpleRateLimiter
from passkey_vault.routes import encryption_router, passkey_router

logger = logging.getLogger(__name__)


def create_app(settings: Optional[PasskeyVaultSettings] = None) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Args:
        settings: overrides for tests; defaults to get_settings()

    Returns:
        Configured FastAPI application instance
    """
    settings = settings or get_settings()
    logging.basicConfig(level=getattr(logging, settings.log_level.upper(), logging.INFO))

    app = FastAPI(
        title="Passkey Vault API",
        description="Passkey (WebAuthn PRF) based end-to-end encryption key management",
        version="0.1.0",
        docs_url="/api/docs",
        redoc_url="/api/redoc",
        openapi_url="/api/openapi.json",
    )

    db = VaultDatabase(settings.db_path)
    db.init_db()

    app.state.settings = settings
    app.state.db = db
    app.state.rate_limiter = SimpleRateLimiter()

    register_error_handlers(app)
    app.include_router(passkey_router)
    app.include_router(encryption_router)

    logger.info(
        "Passkey Vault API ready",
        extra={"environment": settings.environment, "rp_id": settings.root_domain},
    )
    return app
