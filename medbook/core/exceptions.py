"""Domain errors raised by the scheduling core.

Each error carries a machine-readable code and optional details, and knows
how to turn itself into the ``HTTPException`` the routes raise.
"""

from typing import Any

from fastapi import HTTPException, status

HTTP_422_UNPROCESSABLE: int = getattr(status, "HTTP_422_UNPROCESSABLE_CONTENT", 422)


class SchedulingError(Exception):
    """Base class for every error the scheduling core reports to callers."""

    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, message: str, code: str | None = None, details: dict[str, Any] | None = None) -> None:
        self.message = message
        self.code = code or self.__class__.__name__
        self.details = details or {}
        super().__init__(self.message)

    def to_http_exception(self) -> HTTPException:
        return HTTPException(
            status_code=self.status_code,
            detail={
                'message': self.message,
                'code': self.code,
                'details': self.details,
            },
        )


class ValidationError(SchedulingError):
    """Malformed input. Always the caller's fault, never retried."""

    status_code = status.HTTP_400_BAD_REQUEST


class NotFoundError(SchedulingError):
    status_code = status.HTTP_404_NOT_FOUND


class ForbiddenError(SchedulingError):
    """The actor is not allowed to perform this operation."""

    status_code = status.HTTP_403_FORBIDDEN


class ConflictError(SchedulingError):
    """Concurrent-state conflict. Safe to retry after re-reading state."""

    status_code = status.HTTP_409_CONFLICT


class SlotUnavailableError(ConflictError):
    pass


class DoctorConflictError(ConflictError):
    pass


class ClientConflictError(ConflictError):
    pass


class OnboardingIncompleteError(SchedulingError):
    """A prerequisite onboarding step has not been completed yet."""

    status_code = status.HTTP_412_PRECONDITION_FAILED


class InvalidTransitionError(SchedulingError):
    status_code = status.HTTP_409_CONFLICT


class BusinessRuleError(SchedulingError):
    """A booking rule was violated. ``code`` names the rule."""

    status_code = HTTP_422_UNPROCESSABLE
