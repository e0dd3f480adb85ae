"""
Global error handlers for the Passkey Vault API.

- VaultError subclasses render their caller-facing code and message; the
  security kinds (user mismatch, clone detection, signature/origin/RP id
  failures, malformed payloads) all share one generic message
- Request validation errors become 400 VALIDATION_ERROR
- Anything else is logged with its stack trace and returned as a generic 500
"""

import logging

from fastapi import FastAPI, Request, HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from passkey_vault.core.exceptions import RateLimitExceededError, VaultError

logger = logging.getLogger(__name__)


def _error_body(code: str, message: str) -> dict:
    return {"success": False, "error_code": code, "message": message}


def register_error_handlers(app: FastAPI) -> None:
    """
    Register global error handlers on the app.

    Args:
        app: FastAPI application instance
    """

    @app.exception_handler(VaultError)
    async def vault_error_handler(request: Request, exc: VaultError) -> JSONResponse:
        # Full cause stays in the server log
        log = logger.error if exc.status_code >= 500 else logger.warning
        log(
            "%s: %s | path=%s",
            exc.code,
            exc.message,
            request.url.path,
        )

        headers = None
        if isinstance(exc, RateLimitExceededError):
            headers = {"Retry-After": str(exc.details.get("retry_after_seconds", 60))}

        return JSONResponse(
            status_code=exc.status_code,
            content=_error_body(exc.caller_code, exc.caller_message),
            headers=headers,
        )

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
        logger.warning("HTTP %d: %s | path=%s", exc.status_code, exc.detail, request.url.path)
        message = exc.detail if exc.status_code < 500 else "An internal error occurred. Please try again later."
        return JSONResponse(
            status_code=exc.status_code,
            content=_error_body("HTTP_ERROR", str(message)),
        )

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        fields = [".".join(str(p) for p in err.get("loc", ())) for err in exc.errors()]
        logger.warning("Request validation failed: %s | path=%s", fields, request.url.path)
        return JSONResponse(
            status_code=400,
            content=_error_body("VALIDATION_ERROR", "Invalid request body"),
        )

    @app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Catch-all; internal details never reach the client."""
        logger.exception(
            "Unhandled exception | path=%s | type=%s",
            request.url.path,
            type(exc).__name__
        )
        return JSONResponse(
            status_code=500,
            content=_error_body("INTERNAL_ERROR", "An unexpected error occurred. Please try again later."),
        )
