"""
Error taxonomy for SecureShare.
Every error carries the HTTP status it maps to, so the API layer can render
all of them with a single handler.
"""

from typing import Any, Dict, Optional

import structlog
from fastapi import Request, status
from fastapi.responses import JSONResponse

logger = structlog.get_logger(__name__)


class SecureShareError(Exception):
    """Base class for all application exceptions."""
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    default_message = "An unexpected error occurred."

    def __init__(self, message: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        self.message = message or self.default_message
        self.details = details or {}
        super().__init__(self.message)

    @property
    def code(self) -> str:
        return self.__class__.__name__


class AuthenticationRequired(SecureShareError):
    status_code = status.HTTP_401_UNAUTHORIZED
    default_message = "Authentication required."


class InvalidCredentials(SecureShareError):
    status_code = status.HTTP_401_UNAUTHORIZED
    default_message = "Invalid username or password."


class AccountInactive(SecureShareError):
    status_code = status.HTTP_403_FORBIDDEN
    default_message = "Account is inactive."


class PermissionDenied(SecureShareError):
    status_code = status.HTTP_403_FORBIDDEN
    default_message = "Permission denied."


class MaintenanceMode(PermissionDenied):
    default_message = "Platform is currently under maintenance. Please try again later."


class PathTraversal(PermissionDenied):
    default_message = "Forbidden."


class NotFound(SecureShareError):
    status_code = status.HTTP_404_NOT_FOUND
    default_message = "Not found."


class DataMissing(SecureShareError):
    """Metadata exists but the backing bytes do not."""
    status_code = status.HTTP_404_NOT_FOUND
    default_message = "File data is missing."


class FileVanished(DataMissing):
    """The bytes disappeared between the access check and the read."""
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    default_message = "File is no longer available, please retry."
    retryable = True


class TooLarge(SecureShareError):
    status_code = 413
    default_message = "File is too large."


class QuotaExceeded(TooLarge):
    default_message = "Storage quota exceeded."


class TypeNotAllowed(SecureShareError):
    status_code = status.HTTP_415_UNSUPPORTED_MEDIA_TYPE
    default_message = "File type is not allowed."


class ValidationError(SecureShareError):
    status_code = 422
    default_message = "Invalid input."


class InternalError(SecureShareError):
    """Unexpected failure. The message never carries internals."""
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    default_message = "An internal server error occurred."


async def secureshare_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Render errors as ``{"error": {...}}`` documents."""

    if isinstance(exc, SecureShareError):
        headers = {}
        if getattr(exc, "retryable", False):
            headers["Retry-After"] = "1"
        if isinstance(exc, AuthenticationRequired):
            headers["WWW-Authenticate"] = "Bearer"
        return JSONResponse(
            status_code=exc.status_code,
            headers=headers or None,
            content={
                "error": {
                    "code": exc.code,
                    "message": exc.message,
                    "details": exc.details,
                    "path": request.url.path,
                }
            },
        )

    logger.exception("Unhandled error", path=request.url.path)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "error": {
                "code": "InternalError",
                "message": InternalError.default_message,
                "path": request.url.path,
            }
        },
    )
