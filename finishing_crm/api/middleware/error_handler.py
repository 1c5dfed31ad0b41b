"""
Exception handlers producing the API error body

    {"error": str, "correlation_id": str, "details"?: {...}}

Service-layer errors are mapped to HTTP statuses here so services stay
framework-free. Request validation failures are reported as 400.
"""
import logging
from typing import Any, Dict, Optional

from fastapi import Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from finishing_crm.lib.logging import get_logger
from finishing_crm.services.errors import (
    AlreadyExistsError,
    InvalidRequestError,
    InvalidTransitionError,
    NotFoundError,
    PermissionDeniedError,
    ServiceError,
)

logger = get_logger(__name__)

# First match wins
SERVICE_ERROR_STATUSES = (
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (PermissionDeniedError, status.HTTP_403_FORBIDDEN),
    (InvalidRequestError, status.HTTP_400_BAD_REQUEST),
    (InvalidTransitionError, status.HTTP_409_CONFLICT),
    (AlreadyExistsError, status.HTTP_409_CONFLICT),
)


class AppException(Exception):
    """HTTP-level error raised by the API layer itself (auth)."""

    def __init__(self, message: str, status_code: int, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.status_code = status_code
        self.details = details or {}
        super().__init__(message)


class UnauthorizedException(AppException):
    def __init__(self, message: str = "Unauthorized"):
        super().__init__(message, status.HTTP_401_UNAUTHORIZED)


class ForbiddenException(AppException):
    def __init__(self, message: str = "Forbidden"):
        super().__init__(message, status.HTTP_403_FORBIDDEN)


def service_error_status(exc: ServiceError) -> int:
    for error_type, status_code in SERVICE_ERROR_STATUSES:
        if isinstance(exc, error_type):
            return status_code
    return status.HTTP_500_INTERNAL_SERVER_ERROR


def _respond(
    request: Request,
    status_code: int,
    message: str,
    details: Optional[Dict[str, Any]] = None,
    exc: Optional[BaseException] = None,
) -> JSONResponse:
    """Log the failure at a level matching its status and build the error body."""
    level = logging.ERROR if status_code >= 500 else logging.WARNING
    logger.log(
        level,
        message,
        extra={
            "status_code": status_code,
            "method": request.method,
            "path": request.url.path,
            "details": details,
        },
        exc_info=exc,
    )

    content: Dict[str, Any] = {
        "error": message,
        "correlation_id": getattr(request.state, "correlation_id", "unknown"),
    }
    if details:
        content["details"] = details
    return JSONResponse(status_code=status_code, content=content)


async def app_exception_handler(request: Request, exc: AppException) -> JSONResponse:
    return _respond(request, exc.status_code, exc.message, exc.details)


async def service_exception_handler(request: Request, exc: ServiceError) -> JSONResponse:
    return _respond(request, service_error_status(exc), exc.message, exc.details)


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = [
        {"loc": [str(part) for part in err["loc"]], "msg": err["msg"], "type": err["type"]}
        for err in exc.errors()
    ]
    return _respond(request, status.HTTP_400_BAD_REQUEST, "Validation error", {"errors": errors})


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    return _respond(request, exc.status_code, str(exc.detail))


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Log the traceback; the client only sees a generic message."""
    return _respond(request, status.HTTP_500_INTERNAL_SERVER_ERROR, "Internal server error", exc=exc)
