"""
Domain exceptions for the messaging core.

Every error carries a machine-checkable ``kind`` and the HTTP status it maps to.
The API layer renders them as ``{"kind": ..., "detail": ...}``.
"""

from fastapi import status


class MessengerError(Exception):
    """Base exception for all domain errors."""

    kind = "error"
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, detail: str) -> None:
        self.detail = detail
        super().__init__(detail)

    def to_dict(self) -> dict:
        return {"kind": self.kind, "detail": self.detail}


class NotFoundError(MessengerError):
    """Referenced conversation or user does not exist."""

    kind = "not_found"
    status_code = status.HTTP_404_NOT_FOUND


class ForbiddenError(MessengerError):
    """Acting user is not a participant of the conversation."""

    kind = "forbidden"
    status_code = status.HTTP_403_FORBIDDEN


class CapacityExceededError(MessengerError):
    """Group membership cap reached."""

    kind = "capacity_exceeded"
    status_code = status.HTTP_409_CONFLICT


class ValidationError(MessengerError):
    kind = "validation"
    status_code = status.HTTP_400_BAD_REQUEST


class UnauthorizedError(MessengerError):
    """No authenticated principal reached the core."""

    kind = "unauthorized"
    status_code = status.HTTP_401_UNAUTHORIZED


class ConflictError(MessengerError):
    """Unique data already exists (e.g. a taken username)."""

    kind = "conflict"
    status_code = status.HTTP_409_CONFLICT


class UnavailableError(MessengerError):
    kind = "unavailable"
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
