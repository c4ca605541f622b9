"""
Exception Classes - Strongly typed exception hierarchy.

NO DICTIONARIES - All exceptions have typed attributes.

Guard failures are deterministic business rejections. ConflictError is the
only retryable kind.
"""

from datetime import datetime
from uuid import UUID

from app.models.api import ErrorKind


class BookingEngineError(Exception):
    """Base exception for all booking engine errors."""

    kind: ErrorKind = ErrorKind.INTEGRITY_FAULT
    retryable: bool = False


class SessionNotAvailableError(BookingEngineError):
    """Raised when a session is not open for booking (completed or cancelled)."""

    kind = ErrorKind.SESSION_NOT_AVAILABLE

    def __init__(self, session_id: UUID, status: str) -> None:
        self.session_id = session_id
        self.status = status
        super().__init__(f"Session {session_id} is not available for booking (status: {status})")


class AlreadyBookedError(BookingEngineError):
    """Raised when the member already holds an active booking for the session."""

    kind = ErrorKind.ALREADY_BOOKED

    def __init__(self, member_id: UUID, session_id: UUID) -> None:
        self.member_id = member_id
        self.session_id = session_id
        super().__init__(f"Member {member_id} already has an active booking for {session_id}")


class BookingClosedError(BookingEngineError):
    """Raised when the booking cutoff for a session has passed."""

    kind = ErrorKind.BOOKING_CLOSED

    def __init__(self, session_id: UUID, cutoff: datetime, cutoff_minutes: int) -> None:
        self.session_id = session_id
        self.cutoff = cutoff
        self.cutoff_minutes = cutoff_minutes
        super().__init__(
            f"Bookings for session {session_id} closed at {cutoff.isoformat()} "
            f"({cutoff_minutes} minutes before start)"
        )


class SessionFullError(BookingEngineError):
    """Raised when a session has no spots left."""

    kind = ErrorKind.SESSION_FULL

    def __init__(self, session_id: UUID, capacity: int) -> None:
        self.session_id = session_id
        self.capacity = capacity
        super().__init__(f"Session {session_id} is full (capacity {capacity})")


class NoCreditsAvailableError(BookingEngineError):
    """Raised when the member has no eligible plan grant."""

    kind = ErrorKind.NO_CREDITS_AVAILABLE

    def __init__(self, member_id: UUID) -> None:
        self.member_id = member_id
        super().__init__(f"Member {member_id} has no eligible plan with credits")


class ResourceNotFoundError(BookingEngineError):
    """Raised when a member, session, booking or grant doesn't exist (or isn't the caller's)."""

    kind = ErrorKind.NOT_FOUND

    def __init__(self, resource_type: str, resource_id: UUID | str) -> None:
        self.resource_type = resource_type
        self.resource_id = resource_id
        super().__init__(f"{resource_type} not found: {resource_id}")


class NotCancellableError(BookingEngineError):
    """Raised when a booking is not active."""

    kind = ErrorKind.NOT_CANCELLABLE

    def __init__(self, booking_id: UUID, status: str) -> None:
        self.booking_id = booking_id
        self.status = status
        super().__init__(f"Booking {booking_id} cannot be cancelled (status: {status})")


class ConflictError(BookingEngineError):
    """Raised when concurrent modification retries are exhausted."""

    kind = ErrorKind.CONFLICT
    retryable = True

    def __init__(self, operation: str, attempts: int) -> None:
        self.operation = operation
        self.attempts = attempts
        super().__init__(f"Concurrent modification during {operation} after {attempts} attempts")


class IntegrityFaultError(BookingEngineError):
    """Raised when ledger, balance or capacity invariants are violated."""

    kind = ErrorKind.INTEGRITY_FAULT

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Data integrity fault: {message}")


class WriteVerificationError(IntegrityFaultError):
    """Raised when a write cannot be read back after flush."""

    def __init__(self, message: str) -> None:
        super().__init__(f"write verification failed: {message}")

