"""Error hierarchy for the dispatch engine.

Three families reach callers: validation errors (the request itself is
wrong), not-found errors, and conflict errors (the request raced or
contradicts current state). Business outcomes such as "no drivers available"
are returned as values and never raised.
"""

from typing import Any


class DispatchError(Exception):
    """Base class for all dispatch errors."""

    error_code = "DISPATCH_ERROR"

    def __init__(
        self,
        message: str,
        error_code: str | None = None,
        context: dict[str, Any] | None = None,
    ):
        super().__init__(message)
        self.message = message
        if error_code is not None:
            self.error_code = error_code
        self.context = context or {}

    def to_dict(self) -> dict[str, Any]:
        return {
            "error": self.__class__.__name__,
            "message": self.message,
            "error_code": self.error_code,
            "context": {key: str(value) for key, value in self.context.items()},
        }


class DispatchValidationError(DispatchError):
    """The request is malformed."""

    error_code = "VALIDATION_ERROR"


class NotFoundError(DispatchError):
    """A referenced record does not exist."""

    error_code = "NOT_FOUND"


class AssignmentNotFoundError(NotFoundError):
    error_code = "ASSIGNMENT_NOT_FOUND"


class OrderNotFoundError(NotFoundError):
    error_code = "ORDER_NOT_FOUND"


class DriverNotFoundError(NotFoundError):
    error_code = "DRIVER_NOT_FOUND"


class ConflictError(DispatchError):
    """The request contradicts the current state of a record."""

    error_code = "CONFLICT"


class DuplicateAssignmentError(ConflictError):
    error_code = "DUPLICATE_ASSIGNMENT"


class InvalidTransitionError(ConflictError):
    error_code = "INVALID_TRANSITION"


class ConcurrentModificationError(ConflictError):
    error_code = "CONCURRENT_MODIFICATION"


class TrackingRejectedError(ConflictError):
    error_code = "TRACKING_REJECTED"
