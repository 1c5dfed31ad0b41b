"""
Domain errors raised by the service layer.

Routers translate these into HTTP responses: NotFoundError -> 404,
PermissionDeniedError -> 403, InvalidRequestError -> 400,
InvalidTransitionError and AlreadyExistsError -> 409.
"""
from typing import Any, Dict, Optional


class ServiceError(Exception):
    """Base class for service-layer errors."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)


class NotFoundError(ServiceError):
    def __init__(self, resource: str, resource_id: Optional[str] = None):
        self.resource = resource
        self.resource_id = resource_id
        message = f"{resource} not found"
        if resource_id:
            message = f"{resource} with id '{resource_id}' not found"
        super().__init__(message, {"resource": resource, "resource_id": resource_id})


class PermissionDeniedError(ServiceError):
    pass


class InvalidRequestError(ServiceError, ValueError):
    """Caller supplied data the operation cannot accept."""


class PayloadValidationError(InvalidRequestError):
    """Outbox payload does not match the schema registered for its job type."""


class UnknownJobTypeError(InvalidRequestError):
    pass


class NoEligibleRecipientsError(InvalidRequestError):
    pass


class InvalidTransitionError(ServiceError):
    """Requested status change is not allowed from the job's current status."""


class DistributorSelectionError(InvalidRequestError):
    """Bulk tier update requested with no distributors selected."""


class AlreadyExistsError(ServiceError):
    pass
