"""API routers"""

from passkey_vault.routes.encryption_routes import router as encryption_router
from passkey_vault.routes.passkey_routes import router as passkey_router

__all__ = ["encryption_router", "passkey_router"]
