"""
Error Translation - Booking engine exceptions to HTTP responses.
"""

from fastapi import HTTPException, status
from structlog import get_logger

from app.exceptions import BookingEngineError
from app.models.api import ErrorDetail, ErrorKind
from app.observability.metrics import metrics

logger = get_logger(__name__)

STATUS_BY_KIND: dict[ErrorKind, int] = {
    ErrorKind.NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorKind.ALREADY_BOOKED: status.HTTP_409_CONFLICT,
    ErrorKind.SESSION_FULL: status.HTTP_409_CONFLICT,
    ErrorKind.NOT_CANCELLABLE: status.HTTP_409_CONFLICT,
    ErrorKind.CONFLICT: status.HTTP_409_CONFLICT,
    ErrorKind.BOOKING_CLOSED: 422,
    ErrorKind.SESSION_NOT_AVAILABLE: 422,
    ErrorKind.CANCELLATION_CLOSED: 422,
    ErrorKind.NO_CREDITS_AVAILABLE: status.HTTP_402_PAYMENT_REQUIRED,
    ErrorKind.INTEGRITY_FAULT: status.HTTP_500_INTERNAL_SERVER_ERROR,
}


def http_error(exc: BookingEngineError, operation: str) -> HTTPException:
    """Build the HTTPException for an engine error. Raise it `from exc`."""
    status_code = STATUS_BY_KIND[exc.kind]
    metrics.record_error(exc.kind.value, operation)

    if exc.kind == ErrorKind.INTEGRITY_FAULT:
        logger.error("integrity_fault", operation=operation, error=str(exc))
        message = "Database integrity error"
    else:
        message = str(exc)

    headers = {"Retry-After": "1"} if exc.retryable else None
    detail = ErrorDetail(kind=exc.kind, message=message, retryable=exc.retryable)
    return HTTPException(
        status_code=status_code,
        detail=detail.model_dump(mode="json"),
        headers=headers,
    )
