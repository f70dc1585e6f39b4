"""Custom application exceptions."""

from typing import Any


class AppException(Exception):
    """Base application exception."""

    def __init__(
        self,
        message: str,
        status_code: int = 500,
        details: dict[str, Any] | None = None,
    ):
        """Initialize exception with message, status code and optional details."""
        self.message = message
        self.status_code = status_code
        self.details = details
        super().__init__(self.message)


class NotFoundException(AppException):
    """Resource not found exception."""

    def __init__(self, message: str = "Resource not found"):
        """Initialize with 404 status code."""
        super().__init__(message, status_code=404)


class ValidationException(AppException):
    """Validation error exception."""

    def __init__(self, message: str = "Validation error"):
        """Initialize with 422 status code."""
        super().__init__(message, status_code=422)


class InvalidIntervalException(AppException):
    """Time window is empty, inverted or outside the configured duration bounds."""

    def __init__(self, message: str = "End time must be after start time"):
        """Initialize with 422 status code."""
        super().__init__(message, status_code=422)


class ConflictException(AppException):
    """Proposed window overlaps an active booking of the same resource."""

    def __init__(self, message: str = "Conflict", conflicts: list[Any] | None = None):
        """Initialize with 409 status code and the colliding bookings."""
        self.conflicts = list(conflicts or [])
        details = None
        if self.conflicts:
            details = {
                "conflicts": [
                    c.model_dump(mode="json") if hasattr(c, "model_dump") else c
                    for c in self.conflicts
                ]
            }
        super().__init__(message, status_code=409, details=details)


class InvalidTransitionException(AppException):
    """Requested status change is not a legal edge from the current status."""

    def __init__(self, message: str = "Invalid status transition"):
        """Initialize with 409 status code."""
        super().__init__(message, status_code=409)


class TooLateToCancelException(AppException):
    """Cancellation requested inside the minimum lead time."""

    def __init__(self, message: str = "Appointment can no longer be cancelled"):
        """Initialize with 422 status code."""
        super().__init__(message, status_code=422)


class TooLateToRescheduleException(AppException):
    """Reschedule requested inside the minimum lead time."""

    def __init__(self, message: str = "Appointment can no longer be rescheduled"):
        """Initialize with 422 status code."""
        super().__init__(message, status_code=422)


class InvalidAttendanceOrderException(AppException):
    """Attendance step would break arrival <= session start <= session end."""

    def __init__(self, message: str = "Invalid attendance order"):
        """Initialize with 409 status code."""
        super().__init__(message, status_code=409)


class VersionConflictException(AppException):
    """Appointment was modified concurrently; the caller may retry."""

    def __init__(self, message: str = "Appointment was modified concurrently"):
        """Initialize with 409 status code."""
        super().__init__(message, status_code=409)


class ResourceBusyException(AppException):
    """Schedule lock for a resource could not be acquired in time."""

    def __init__(self, message: str = "Schedule is busy, please retry"):
        """Initialize with 503 status code."""
        super().__init__(message, status_code=503)
