"""Application exceptions and the handlers that turn them into responses.

Every error leaves the API in the same envelope:

    {"success": false, "error": "<message>", "code": "<ERROR_CODE>", "details": ...}
"""

import logging
from typing import Union

from fastapi import HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from sqlalchemy.exc import IntegrityError, OperationalError
from starlette.exceptions import HTTPException as StarletteHTTPException

from app.config import settings

logger = logging.getLogger(__name__)


class BoutiqueException(Exception):
    """Base exception for application errors."""

    def __init__(
        self,
        message: str,
        status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
        error_code: str = "INTERNAL_ERROR",
        details: Union[dict, list, None] = None,
    ):
        self.message = message
        self.status_code = status_code
        self.error_code = error_code
        self.details = details
        super().__init__(self.message)


class InvalidRequestError(BoutiqueException):
    """Missing or malformed input."""

    def __init__(self, message: str, error_code: str = "VALIDATION_ERROR"):
        super().__init__(
            message=message,
            status_code=status.HTTP_400_BAD_REQUEST,
            error_code=error_code,
        )


class BusinessLogicError(BoutiqueException):
    """A business rule refused the operation (stock, overpayment, ...)."""

    def __init__(self, message: str, error_code: str = "BUSINESS_RULE_VIOLATION"):
        super().__init__(
            message=message,
            status_code=status.HTTP_400_BAD_REQUEST,
            error_code=error_code,
        )


class ResourceNotFoundError(BoutiqueException):
    """Exception for resources not found."""

    def __init__(self, resource: str, identifier: str):
        self.resource = resource
        self.identifier = identifier
        super().__init__(
            message=f"{resource} not found: {identifier}",
            status_code=status.HTTP_404_NOT_FOUND,
            error_code="RESOURCE_NOT_FOUND",
        )


class ConflictError(BoutiqueException):
    """A unique value is already taken."""

    def __init__(self, message: str, error_code: str = "CONFLICT"):
        super().__init__(
            message=message,
            status_code=status.HTTP_409_CONFLICT,
            error_code=error_code,
        )


class AuthenticationError(BoutiqueException):
    """Missing, invalid or expired credentials.

    `reason` keeps the internal cause (e.g. "expired" vs "malformed") for
    logging and callers; the HTTP response does not expose it.
    """

    def __init__(
        self,
        message: str = "Invalid or expired token",
        error_code: str = "INVALID_TOKEN",
        reason: str | None = None,
    ):
        self.reason = reason
        super().__init__(
            message=message,
            status_code=status.HTTP_401_UNAUTHORIZED,
            error_code=error_code,
        )


class PermissionDeniedError(BoutiqueException):
    """Exception for permission denied."""

    def __init__(self, message: str = "Permission denied", error_code: str = "PERMISSION_DENIED"):
        super().__init__(
            message=message,
            status_code=status.HTTP_403_FORBIDDEN,
            error_code=error_code,
        )


def create_error_response(
    status_code: int,
    message: str,
    error_code: str = "ERROR",
    details: Union[dict, list, None] = None,
    headers: dict | None = None,
) -> JSONResponse:
    """Create standardized error response."""
    content = {
        "success": False,
        "error": message,
        "code": error_code,
    }

    if details:
        content["details"] = details

    return JSONResponse(
        status_code=status_code,
        content=content,
        headers=headers,
    )


def _context(request: Request, **extra) -> dict:
    return {"path": request.url.path, "method": request.method, **extra}


async def boutique_exception_handler(request: Request, exc: BoutiqueException) -> JSONResponse:
    """Application errors carry their own status and code."""
    reason = getattr(exc, "reason", None)
    logger.warning(
        "Request refused: %s - %s",
        exc.error_code, exc.message,
        extra=_context(request, error_code=exc.error_code, reason=reason),
    )

    headers = None
    if exc.status_code == status.HTTP_401_UNAUTHORIZED:
        headers = {"WWW-Authenticate": "Bearer"}
    return create_error_response(
        exc.status_code, exc.message, exc.error_code, details=exc.details, headers=headers
    )


async def http_exception_handler(
    request: Request,
    exc: Union[HTTPException, StarletteHTTPException],
) -> JSONResponse:
    """Routing errors (404 on unknown paths, 405, ...) use the same envelope."""
    if exc.status_code >= 500:
        logger.error("HTTP %s: %s", exc.status_code, exc.detail, extra=_context(request))
    return create_error_response(
        exc.status_code,
        str(exc.detail),
        f"HTTP_{exc.status_code}",
        headers=getattr(exc, "headers", None),
    )


async def validation_exception_handler(
    request: Request,
    exc: Union[RequestValidationError, ValidationError],
) -> JSONResponse:
    """Pydantic failures become 400 VALIDATION_ERROR with one entry per field."""
    logger.warning("Validation error on %s", request.url.path, extra=_context(request))
    errors = [
        {
            "field": " -> ".join(str(loc) for loc in error["loc"]),
            "message": error["msg"],
            "type": error["type"],
        }
        for error in exc.errors()
    ]
    return create_error_response(
        status.HTTP_400_BAD_REQUEST,
        "Validation error",
        "VALIDATION_ERROR",
        details={"errors": errors},
    )


# Substring of the driver message -> (status, message, code)
_INTEGRITY_ERRORS = (
    ("unique", status.HTTP_409_CONFLICT,
     "A record with this value already exists", "DUPLICATE_RECORD"),
    ("foreign key", status.HTTP_400_BAD_REQUEST,
     "Referenced record does not exist or is still referenced", "FOREIGN_KEY_VIOLATION"),
    ("not null", status.HTTP_400_BAD_REQUEST,
     "Required field is missing", "NULL_VALUE_NOT_ALLOWED"),
    ("check", status.HTTP_400_BAD_REQUEST,
     "Value out of the allowed range", "CHECK_VIOLATION"),
)


async def database_exception_handler(request: Request, exc: IntegrityError) -> JSONResponse:
    """Constraint violations that slipped past the service checks."""
    logger.error("Integrity error on %s: %s", request.url.path, exc, extra=_context(request))
    driver_message = str(getattr(exc, "orig", exc)).lower()
    for needle, status_code, message, code in _INTEGRITY_ERRORS:
        if needle in driver_message:
            return create_error_response(status_code, message, code)
    return create_error_response(
        status.HTTP_400_BAD_REQUEST, "Database constraint violation", "INTEGRITY_ERROR"
    )


async def operational_exception_handler(request: Request, exc: OperationalError) -> JSONResponse:
    logger.error("Database unavailable on %s: %s", request.url.path, exc, extra=_context(request))
    return create_error_response(
        status.HTTP_500_INTERNAL_SERVER_ERROR,
        "Database unavailable. Please try again later.",
        "DATABASE_UNAVAILABLE",
    )


async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Anything else: log the traceback, answer with a generic 500."""
    logger.error(
        "Unhandled exception on %s: %s", request.url.path, exc,
        extra=_context(request), exc_info=True,
    )
    message = "An unexpected error occurred. Please try again later."
    if settings.debug and not settings.is_production:
        message = f"{message} ({type(exc).__name__}: {exc})"
    return create_error_response(
        status.HTTP_500_INTERNAL_SERVER_ERROR, message, "INTERNAL_SERVER_ERROR"
    )


def register_exception_handlers(app) -> None:
    app.add_exception_handler(BoutiqueException, boutique_exception_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(ValidationError, validation_exception_handler)
    app.add_exception_handler(IntegrityError, database_exception_handler)
    app.add_exception_handler(OperationalError, operational_exception_handler)
    app.add_exception_handler(Exception, general_exception_handler)
