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


class BadRequestException(AppException):
    """Bad request exception."""

    def __init__(self, message: str = "Bad request"):
        """Initialize with 400 status code."""
        super().__init__(message, status_code=400)


class ConflictException(AppException):
    """Conflict exception."""

    def __init__(self, message: str = "Conflict", details: dict[str, Any] | None = None):
        """Initialize with 409 status code."""
        super().__init__(message, status_code=409, details=details)


class ValidationException(AppException):
    """Validation error exception."""

    def __init__(self, message: str = "Validation error", details: dict[str, Any] | None = None):
        """Initialize with 422 status code."""
        super().__init__(message, status_code=422, details=details)


class ConflictError(ConflictException):
    """Booking collides with an existing active appointment.

    Carries the competing appointment's window and concrete alternative
    start times so the caller can offer them instead of a bare rejection.
    """

    def __init__(
        self,
        message: str = "Requested time slot is already booked",
        conflicting: dict[str, Any] | None = None,
        alternatives: list[str] | None = None,
    ):
        """Initialize with the competing window and suggested slots."""
        self.conflicting = conflicting
        self.alternatives = alternatives or []
        super().__init__(
            message,
            details={"conflicting": conflicting, "alternatives": self.alternatives},
        )


class InvalidTransitionError(ValidationException):
    """Requested status change is not on the appointment state graph."""

    def __init__(self, current_status: str, requested_status: str):
        """Initialize with the rejected edge."""
        self.current_status = current_status
        self.requested_status = requested_status
        super().__init__(
            f"Cannot transition appointment from '{current_status}' to '{requested_status}'",
            details={"current_status": current_status, "requested_status": requested_status},
        )


class OutsideBusinessHoursError(ValidationException):
    """Requested window falls outside the clinic's opening hours."""

    def __init__(self, message: str = "Requested time is outside business hours"):
        """Initialize with 422 status code."""
        super().__init__(message)


class DeliveryError(Exception):
    """Base class for reminder delivery failures.

    These never leave the dispatcher; they drive delivery bookkeeping only.
    """


class RetryableDeliveryError(DeliveryError):
    """Transient channel or network failure."""


class TerminalDeliveryError(DeliveryError):
    """Permanently undeliverable, e.g. malformed or missing recipient."""


class StaleAppointmentError(DeliveryError):
    """The appointment is no longer eligible for a reminder."""
