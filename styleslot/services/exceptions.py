class ServiceError(Exception):
    """Base exception for service layer failures."""

    def __init__(self, message: str, *, cause: Exception | None = None):
        super().__init__(message)
        self.cause = cause


class DownstreamServiceError(ServiceError):
    """Raised when the booking backend returns an error response.

    ``reason`` is the human-readable text reported by the backend and is what
    callers should show to the user.
    """

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        *,
        reason: str | None = None,
        cause: Exception | None = None,
    ):
        super().__init__(reason or message, cause=cause)
        self.status_code = status_code
        self.reason = reason or message


class NetworkError(DownstreamServiceError):
    """Raised when the backend could not be reached at all."""


class PermissionDeniedError(DownstreamServiceError):
    """Raised when the viewer lacks the role or ownership an action requires."""


class IneligibleBookingError(DownstreamServiceError):
    """Raised when a slot is no longer available or not in a bookable state."""


class InvalidStateTransitionError(DownstreamServiceError):
    """Raised when an action is attempted against a terminal or mismatched status."""
