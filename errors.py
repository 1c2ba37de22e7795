"""
Error taxonomy and exception handlers.

Every failure raised by a handler or service ends up as the JSON envelope
``{"success": false, "message": ...}``, optionally with per-field ``errors``.
"""

import logging
from typing import Dict, Optional

from fastapi import Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pymongo.errors import DuplicateKeyError

logger = logging.getLogger(__name__)


class APIError(Exception):
    """Base API error with consistent structure"""

    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    default_message = "Server error"

    def __init__(
        self,
        message: Optional[str] = None,
        errors: Optional[Dict[str, str]] = None,
        headers: Optional[Dict[str, str]] = None,
    ):
        self.message = message or self.default_message
        self.errors = errors
        self.headers = headers
        super().__init__(self.message)


class ValidationError(APIError):
    status_code = status.HTTP_400_BAD_REQUEST
    default_message = "Validation failed"


class NotFound(APIError):
    status_code = status.HTTP_404_NOT_FOUND
    default_message = "Resource not found"


class Unauthorized(APIError):
    status_code = status.HTTP_401_UNAUTHORIZED
    default_message = "Not authorized to access this route"


class Forbidden(APIError):
    status_code = status.HTTP_403_FORBIDDEN
    default_message = "Not allowed to access this resource"


class AdmissionDenied(APIError):
    """A business rule (the reservation cap) refused the request."""

    status_code = status.HTTP_400_BAD_REQUEST
    default_message = "Reservation limit reached"


class InvalidCredentials(APIError):
    status_code = status.HTTP_401_UNAUTHORIZED
    default_message = "Invalid credentials"


class Internal(APIError):
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    default_message = "Server error"


def envelope(message: str, errors: Optional[Dict[str, str]] = None) -> Dict:
    body = {"success": False, "message": message}
    if errors:
        body["errors"] = errors
    return body


def field_errors(raw_errors) -> Dict[str, str]:
    """Flatten pydantic error dicts into ``{field: message}``."""
    out: Dict[str, str] = {}
    for err in raw_errors:
        loc = [str(p) for p in err.get("loc", ()) if p not in ("body", "query", "path")]
        field = ".".join(loc) or "__root__"
        out.setdefault(field, err.get("msg", "Invalid value"))
    return out


async def handle_api_error(request: Request, exc: APIError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s at %s: %s", type(exc).__name__, request.url.path, exc.message)
    else:
        logger.warning("%s at %s: %s", type(exc).__name__, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content=envelope(exc.message, exc.errors), headers=exc.headers)


async def handle_request_validation(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = field_errors(exc.errors())
    logger.warning("Request validation failed at %s: %s", request.url.path, errors)
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content=envelope("Validation failed", errors),
    )


async def handle_duplicate_key(request: Request, exc: DuplicateKeyError) -> JSONResponse:
    fields = list((exc.details or {}).get("keyValue", {}).keys())
    message = f"Duplicate value for {', '.join(fields)}" if fields else "Duplicate field value entered"
    logger.warning("Duplicate key at %s: %s", request.url.path, fields)
    return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content=envelope(message))


async def handle_unexpected(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error at %s", request.url.path)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=envelope(Internal.default_message),
    )


def register_exception_handlers(app) -> None:
    """Register all exception handlers with the FastAPI app"""
    app.add_exception_handler(APIError, handle_api_error)
    app.add_exception_handler(RequestValidationError, handle_request_validation)
    app.add_exception_handler(DuplicateKeyError, handle_duplicate_key)
    app.add_exception_handler(Exception, handle_unexpected)
