"""
Shared error handling for the Table Access Layer.
"""

from typing import Dict, Any, Optional
from pydantic import BaseModel


class ErrorResponse(BaseModel):
    """Standard error response format."""

    request_id: Optional[str] = None
    code: str
    message: str
    details: Dict[str, Any] = {}


class AccessLayerException(Exception):
    """Base exception for Access Layer services."""

    status_code: int = 400

    def __init__(self, code: str, message: str, details: Optional[Dict[str, Any]] = None):
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_response(self, request_id: Optional[str] = None) -> ErrorResponse:
        """Convert to error response."""
        return ErrorResponse(
            request_id=request_id,
            code=self.code,
            message=self.message,
            details=self.details
        )


class InstanceNotFoundError(AccessLayerException):
    """Requested storage instance is not served by this process."""

    status_code = 404

    def __init__(self, instance: str):
        self.instance = instance
        super().__init__(
            "INSTANCE_NOT_FOUND",
            f"Storage instance {instance} is not available",
            {"instance": instance},
        )


class ResourceCacheError(AccessLayerException):
    """Base class for resource cache failures."""


class ConstructionError(ResourceCacheError):
    """
    Opening an instance, table or reader failed.

    The original failure is kept on ``cause`` (and chained as ``__cause__`` by
    the raiser). Construction failures are never cached, so the next lookup
    retries the open.
    """

    status_code = 503

    def __init__(self, resource: str, name: str, cause: BaseException):
        self.resource = resource
        self.name = name
        self.cause = cause
        super().__init__(
            "RESOURCE_UNAVAILABLE",
            f"Unable to open {resource} {name}: {cause}",
            {"resource": resource, "name": name, "cause": type(cause).__name__},
        )


class ClosedCacheError(ResourceCacheError):
    """A lookup reached a cache that has stopped accepting loads."""

    status_code = 410

    def __init__(self, resource: str, name: str):
        self.resource = resource
        self.name = name
        super().__init__(
            "INSTANCE_CLOSED",
            f"Cannot open {resource} {name} in closed cache",
            {"resource": resource, "name": name},
        )


class ReleaseError(ResourceCacheError):
    """Releasing a handle failed. Logged and counted, never raised by the caches."""

    status_code = 500

    def __init__(self, resource: str, name: str, cause: BaseException):
        self.resource = resource
        self.name = name
        self.cause = cause
        super().__init__(
            "RESOURCE_RELEASE_FAILED",
            f"Unable to release {resource} {name}: {cause}",
            {"resource": resource, "name": name, "cause": type(cause).__name__},
        )
