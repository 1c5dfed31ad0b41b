"""
Exception handlers and the HTTP exceptions raised by API dependencies.
"""
from finishing_crm.api.middleware.error_handler import (
    AppException,
    ForbiddenException,
    UnauthorizedException,
    app_exception_handler,
    http_exception_handler,
    service_error_status,
    service_exception_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)

__all__ = [
    "AppException",
    "ForbiddenException",
    "UnauthorizedException",
    "app_exception_handler",
    "http_exception_handler",
    "service_error_status",
    "service_exception_handler",
    "unhandled_exception_handler",
    "validation_exception_handler",
]
