from fastapi import HTTPException

from styleslot.services.exceptions import (
    IneligibleBookingError,
    InvalidStateTransitionError,
    PermissionDeniedError,
    ServiceError,
)


def http_error(exc: ServiceError) -> HTTPException:
    """Map a service failure onto the status code the caller should see."""

    if isinstance(exc, (IneligibleBookingError, InvalidStateTransitionError)):
        return HTTPException(status_code=409, detail=str(exc))
    if isinstance(exc, PermissionDeniedError):
        return HTTPException(status_code=403, detail=str(exc))
    status_code = getattr(exc, "status_code", None)
    if status_code == 404:
        return HTTPException(status_code=404, detail=str(exc))
    return HTTPException(status_code=502, detail=str(exc))
