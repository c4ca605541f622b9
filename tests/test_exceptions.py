"""
Tests for exception classes.

Covers all exception types, their error kinds and string representations.
"""

from datetime import UTC, datetime
from uuid import uuid4

import pytest

from app.exceptions import (
    AlreadyBookedError,
    BookingClosedError,
    BookingEngineError,
    ConflictError,
    IntegrityFaultError,
    NoCreditsAvailableError,
    NotCancellableError,
    ResourceNotFoundError,
    SessionFullError,
    SessionNotAvailableError,
    WriteVerificationError,
)
from app.models.api import ErrorKind


class TestBookingEngineError:
    """Tests for base BookingEngineError."""

    def test_is_exception(self):
        assert issubclass(BookingEngineError, Exception)

    def test_can_be_raised(self):
        with pytest.raises(BookingEngineError):
            raise BookingEngineError("test error")


class TestGuardErrors:
    """Deterministic business rejections."""

    def test_session_not_available(self):
        session_id = uuid4()
        exc = SessionNotAvailableError(session_id, "cancelled")

        assert exc.session_id == session_id
        assert exc.kind == ErrorKind.SESSION_NOT_AVAILABLE
        assert "cancelled" in str(exc)

    def test_already_booked(self):
        member_id, session_id = uuid4(), uuid4()
        exc = AlreadyBookedError(member_id, session_id)

        assert exc.member_id == member_id
        assert exc.session_id == session_id
        assert exc.kind == ErrorKind.ALREADY_BOOKED

    def test_booking_closed(self):
        cutoff = datetime(2026, 3, 4, 8, 55, tzinfo=UTC)
        exc = BookingClosedError(uuid4(), cutoff, 5)

        assert exc.cutoff == cutoff
        assert exc.cutoff_minutes == 5
        assert "5 minutes" in str(exc)
        assert exc.kind == ErrorKind.BOOKING_CLOSED

    def test_session_full(self):
        exc = SessionFullError(uuid4(), 12)

        assert exc.capacity == 12
        assert "capacity 12" in str(exc)
        assert exc.kind == ErrorKind.SESSION_FULL

    def test_no_credits(self):
        member_id = uuid4()
        exc = NoCreditsAvailableError(member_id)

        assert exc.member_id == member_id
        assert exc.kind == ErrorKind.NO_CREDITS_AVAILABLE

    def test_not_found(self):
        exc = ResourceNotFoundError("booking", "abc")

        assert exc.resource_type == "booking"
        assert exc.resource_id == "abc"
        assert str(exc) == "booking not found: abc"
        assert exc.kind == ErrorKind.NOT_FOUND

    def test_not_cancellable(self):
        exc = NotCancellableError(uuid4(), "cancelled")

        assert exc.status == "cancelled"
        assert exc.kind == ErrorKind.NOT_CANCELLABLE

    @pytest.mark.parametrize(
        "exc",
        [
            SessionNotAvailableError(uuid4(), "completed"),
            AlreadyBookedError(uuid4(), uuid4()),
            BookingClosedError(uuid4(), datetime(2026, 1, 1, tzinfo=UTC), 5),
            SessionFullError(uuid4(), 1),
            NoCreditsAvailableError(uuid4()),
            ResourceNotFoundError("session", uuid4()),
            NotCancellableError(uuid4(), "cancelled"),
        ],
    )
    def test_guard_errors_are_not_retryable(self, exc):
        assert isinstance(exc, BookingEngineError)
        assert exc.retryable is False


class TestConflictError:
    """Tests for ConflictError."""

    def test_is_the_retryable_kind(self):
        exc = ConflictError("reserve", 4)

        assert exc.retryable is True
        assert exc.kind == ErrorKind.CONFLICT
        assert exc.operation == "reserve"
        assert exc.attempts == 4
        assert "4 attempts" in str(exc)


class TestIntegrityFaultError:
    """Tests for IntegrityFaultError and WriteVerificationError."""

    def test_message(self):
        exc = IntegrityFaultError("balance mismatch")

        assert exc.message == "balance mismatch"
        assert "Data integrity fault" in str(exc)
        assert exc.kind == ErrorKind.INTEGRITY_FAULT
        assert exc.retryable is False

    def test_write_verification_is_integrity_fault(self):
        exc = WriteVerificationError("Booking 1 not found after insert")

        assert isinstance(exc, IntegrityFaultError)
        assert "write verification failed" in str(exc)
        assert exc.kind == ErrorKind.INTEGRITY_FAULT
