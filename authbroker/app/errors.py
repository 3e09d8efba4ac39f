"""
Error Taxonomy and Exception Handlers
=====================================

Every failure the broker reports to a client is an ``AppError`` subclass.
The boundary serializes it as::

    {"error": {"code": "...", "message": "..."}, "timestamp": "..."}

Internal detail (tracebacks, exception text of unexpected errors) is only
exposed when the service runs with ENVIRONMENT=development.
"""

import logging
import traceback
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

logger = logging.getLogger(__name__)


# =============================================================================
# Exceptions
# =============================================================================

class AppError(Exception):
    """Base exception for all errors surfaced to clients"""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    code: str = "INTERNAL_ERROR"
    default_message: str = "Internal Server Error"

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        code: Optional[str] = None,
        details: Optional[Any] = None,
    ):
        self.message = message or self.default_message
        if code:
            self.code = code
        self.details = details
        super().__init__(self.message)


class ValidationError(AppError):
    status_code = status.HTTP_400_BAD_REQUEST
    code = "VALIDATION_ERROR"
    default_message = "Validation failed"


class AuthenticationError(AppError):
    status_code = status.HTTP_401_UNAUTHORIZED
    code = "AUTHENTICATION_ERROR"
    default_message = "Authentication failed"


class InvalidSession(AuthenticationError):
    code = "INVALID_SESSION"
    default_message = "Invalid or expired session"


class StateMismatch(AuthenticationError):
    code = "STATE_MISMATCH"
    default_message = "Invalid state parameter"


class NonceMismatch(AuthenticationError):
    code = "NONCE_MISMATCH"
    default_message = "Invalid nonce in ID token"


class ExpiredCredential(AuthenticationError):
    code = "TOKEN_EXPIRED"
    default_message = "Token has expired"


class MalformedCredential(AuthenticationError):
    code = "INVALID_TOKEN"
    default_message = "Invalid token"


class WrongCredentialType(AuthenticationError):
    code = "INVALID_TOKEN_TYPE"
    default_message = "Invalid token type"


class NoTokenProvided(AuthenticationError):
    code = "NO_TOKEN_PROVIDED"
    default_message = "No token provided"


class InvalidCredential(AuthenticationError):
    code = "INVALID_REFRESH_TOKEN"
    default_message = "Invalid refresh token"


class InvalidAccessToken(AuthenticationError):
    """The identity provider rejected its own access token (HTTP 401)"""
    code = "INVALID_PROVIDER_ACCESS_TOKEN"
    default_message = "Invalid or expired access token"


class InvalidRefreshToken(AuthenticationError):
    """The identity provider rejected its own refresh token (HTTP 400)"""
    code = "INVALID_PROVIDER_REFRESH_TOKEN"
    default_message = "Invalid refresh token"


class ExternalServiceError(AppError):
    """
    The identity provider failed or could not be reached.

    Carries the provider's HTTP status (None on transport failures) and its
    error payload so callers can classify the failure.
    """

    status_code = status.HTTP_502_BAD_GATEWAY
    code = "EXTERNAL_SERVICE_ERROR"
    default_message = "Identity provider request failed"

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        service: str = "identity_provider",
        provider_status: Optional[int] = None,
        provider_error: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.service = service
        self.provider_status = provider_status
        self.provider_error = provider_error or {}


class NotFoundError(AppError):
    status_code = status.HTTP_404_NOT_FOUND
    code = "NOT_FOUND"
    default_message = "Resource not found"


# =============================================================================
# Serialization
# =============================================================================

def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


def error_body(code: str, message: str, details: Optional[Any] = None) -> Dict[str, Any]:
    error: Dict[str, Any] = {"code": code, "message": message}
    if details is not None:
        error["details"] = details
    return {"error": error, "timestamp": _timestamp()}


def register_exception_handlers(app: FastAPI, development: bool = False) -> None:
    """
    Install the broker's exception handlers on a FastAPI app.

    Args:
        app: Application to configure
        development: Expose exception text and traceback of unexpected errors
    """

    @app.exception_handler(AppError)
    async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
        log = logger.error if exc.status_code >= 500 else logger.warning
        log(
            f"{'Server' if exc.status_code >= 500 else 'Client'} error: {exc.code}",
            extra={
                "path": request.url.path,
                "method": request.method,
                "error_code": exc.code,
                "error_message": exc.message,
            },
        )
        headers = None
        if isinstance(exc, AuthenticationError):
            headers = {"WWW-Authenticate": "Bearer"}
        return JSONResponse(
            status_code=exc.status_code,
            content=error_body(exc.code, exc.message, exc.details),
            headers=headers,
        )

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        details = [
            {
                "field": ".".join(str(part) for part in err.get("loc", ())[1:]),
                "message": err.get("msg", ""),
            }
            for err in exc.errors()
        ]
        logger.warning(
            "Client error: VALIDATION_ERROR",
            extra={"path": request.url.path, "method": request.method},
        )
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content=error_body(ValidationError.code, "Validation failed", details),
        )

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(
        request: Request, exc: StarletteHTTPException
    ) -> JSONResponse:
        if exc.status_code == status.HTTP_404_NOT_FOUND:
            body = error_body(NotFoundError.code, "Resource not found")
        else:
            body = error_body("HTTP_ERROR", str(exc.detail))
        return JSONResponse(status_code=exc.status_code, content=body)

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.error(
            f"Unhandled exception: {exc}",
            extra={
                "path": request.url.path,
                "method": request.method,
                "exception_type": type(exc).__name__,
            },
            exc_info=True,
        )
        message = str(exc) if development else "Internal Server Error"
        details = None
        if development:
            details = {"stack": traceback.format_exception(type(exc), exc, exc.__traceback__)}
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=error_body("INTERNAL_ERROR", message, details),
        )
