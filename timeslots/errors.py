"""
Scheduling Errors

Domain exceptions raised by the scheduling core. Every error carries a
stable code, a human-readable message and optional details, and belongs to
one of three categories (invalid request, not found, conflict) that the HTTP
layer maps to a status code.
"""

from typing import Any, Dict, Optional


class SchedulingError(Exception):
    """Base exception for all recoverable scheduling errors."""

    status_code: int = 400
    retryable: bool = False

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.message = message
        self.code = code or self.__class__.__name__
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "message": self.message,
            "details": self.details,
            "retryable": self.retryable,
        }


class ValidationError(SchedulingError):
    """The request was invalid; the caller should adjust its input."""

    status_code = 400


class NotFoundError(SchedulingError):
    """A referenced entity does not exist."""

    status_code = 404


class ConflictError(SchedulingError):
    """The request conflicts with the current state of the schedule."""

    status_code = 409


# Invalid requests
class InvalidFormat(ValidationError):
    pass


class InvalidTimezone(ValidationError):
    pass


class InvalidIdentifier(ValidationError):
    pass


class InvalidRecurrencePattern(ValidationError):
    pass


class InvalidRecurrenceRange(ValidationError):
    pass


class ConstraintViolation(ValidationError):
    """Duration out of bounds, end before start, or start in the past."""


# Missing entities
class SlotNotFound(NotFoundError):
    pass


class ConsultantNotFound(NotFoundError):
    pass


class CustomerNotFound(NotFoundError):
    pass


# Conflicts
class SlotOverlap(ConflictError):
    """A candidate interval intersects an existing slot. Not retryable."""


class SlotUnavailable(ConflictError):
    """The slot is already booked, usually after losing a reservation race."""

    retryable = True


class SlotBooked(ConflictError):
    """Booked slots cannot be deleted."""


class LockTimeout(ConflictError):
    """The store could not acquire a lock within its configured timeout."""

    retryable = True
