import logging

from fastapi import HTTPException, status

from ...db.store_errors import StoreError
from ...services.errors import (
    DuplicateAttendanceError,
    InvalidInputError,
    PermissionDeniedError,
    RateLimitExceededError,
    RecordNotFoundError,
    SequenceExhaustedError,
    ServiceError,
    StoreUnavailableError,
    SuspiciousActivityError,
)

logger = logging.getLogger(__name__)

# Most specific first; the first matching class wins
_STATUS_BY_ERROR = [
    (DuplicateAttendanceError, status.HTTP_409_CONFLICT),
    (SequenceExhaustedError, status.HTTP_409_CONFLICT),
    (InvalidInputError, status.HTTP_400_BAD_REQUEST),
    (RecordNotFoundError, status.HTTP_404_NOT_FOUND),
    (PermissionDeniedError, status.HTTP_403_FORBIDDEN),
    (SuspiciousActivityError, status.HTTP_403_FORBIDDEN),
    (RateLimitExceededError, status.HTTP_429_TOO_MANY_REQUESTS),
    (StoreUnavailableError, status.HTTP_503_SERVICE_UNAVAILABLE),
    (StoreError, status.HTTP_503_SERVICE_UNAVAILABLE),
]


def to_http_exception(error: Exception) -> HTTPException:
    """Maps a service or store error to the HTTPException the client sees."""
    for error_class, status_code in _STATUS_BY_ERROR:
        if isinstance(error, error_class):
            return HTTPException(status_code=status_code, detail=str(error))

    if isinstance(error, ServiceError):
        logger.error(f"Unhandled service error: {error}", exc_info=error)
        return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(error))

    logger.error(f"Unexpected error: {error}", exc_info=error)
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="An unexpected server error occurred.")
