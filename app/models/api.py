"""
API Models - Pydantic models for request/response validation.

NO DICTIONARIES - All data structures are strongly typed.
"""

from datetime import date, time
from enum import Enum
from uuid import UUID

from pydantic import BaseModel, Field, field_validator


class SessionStatus(str, Enum):
    """Session status enumeration."""

    SCHEDULED = "scheduled"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class GrantStatus(str, Enum):
    """Plan grant status enumeration."""

    ACTIVE = "active"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


class BookingStatus(str, Enum):
    """Booking status enumeration."""

    ACTIVE = "active"
    CANCELLED = "cancelled"


class BookingStatusFilter(str, Enum):
    """Status filter for listing a member's bookings."""

    ACTIVE = "active"
    CANCELLED = "cancelled"
    ALL = "all"


class LedgerEntryType(str, Enum):
    """Ledger entry type enumeration."""

    DEBIT = "debit"
    CREDIT = "credit"


class LedgerReferenceType(str, Enum):
    """What a ledger entry refers to."""

    BOOKING = "booking"
    CANCELLATION = "cancellation"
    GRANT_REVERSAL = "grant_reversal"


class ErrorKind(str, Enum):
    """Logical error kinds surfaced to callers."""

    SESSION_NOT_AVAILABLE = "SessionNotAvailable"
    ALREADY_BOOKED = "AlreadyBooked"
    BOOKING_CLOSED = "BookingClosed"
    SESSION_FULL = "SessionFull"
    NO_CREDITS_AVAILABLE = "NoCreditsAvailable"
    NOT_FOUND = "NotFound"
    NOT_CANCELLABLE = "NotCancellable"
    CANCELLATION_CLOSED = "CancellationClosed"
    CONFLICT = "Conflict"
    INTEGRITY_FAULT = "IntegrityFault"


# ============================================================================
# Booking Models
# ============================================================================


class ReserveSessionRequest(BaseModel):
    """POST /v1/bookings request body."""

    session_id: UUID


class ReserveSessionResponse(BaseModel):
    """POST /v1/bookings response."""

    booking_id: UUID
    status: BookingStatus
    session_id: UUID
    plan_grant_id: UUID
    booking_time: str = Field(..., description="ISO 8601 timestamp")


class CancelBookingRequest(BaseModel):
    """POST /v1/bookings/{booking_id}/cancel request body."""

    reason: str | None = Field(None, min_length=1, max_length=255)


class CancelBookingResponse(BaseModel):
    """POST /v1/bookings/{booking_id}/cancel response."""

    booking_id: UUID
    status: BookingStatus
    credit_refunded: bool
    refund_denied: ErrorKind | None = Field(
        None, description="CancellationClosed when the refund window had passed"
    )
    cancelled_at: str = Field(..., description="ISO 8601 timestamp")


class BookingItem(BaseModel):
    """Single booking in a member's booking list."""

    booking_id: UUID
    session_id: UUID
    plan_grant_id: UUID
    status: BookingStatus
    booking_time: str
    cancelled_at: str | None = None
    cancellation_reason: str | None = None
    credit_refunded: bool = False
    session_name: str
    session_date: date
    session_time: time
    duration_minutes: int


class BookingListResponse(BaseModel):
    """GET /v1/members/{external_id}/bookings response."""

    bookings: list[BookingItem]
    limit: int
    offset: int
    total: int


# ============================================================================
# Session Models
# ============================================================================


class SessionItem(BaseModel):
    """Capacity-annotated session."""

    session_id: UUID
    name: str
    session_date: date
    session_time: time
    duration_minutes: int
    capacity: int
    spots_taken: int
    spots_left: int
    booking_cutoff_minutes: int
    cancellation_cutoff_hours: int
    status: SessionStatus
    can_book: bool


class SessionListResponse(BaseModel):
    """GET /v1/sessions response."""

    sessions: list[SessionItem]
    limit: int
    offset: int
    total: int


class SessionAvailabilityResponse(BaseModel):
    """GET /v1/sessions/{session_id}/availability response."""

    session_id: UUID
    available_spots: int
    can_book: bool
    booking_cutoff: str = Field(..., description="ISO 8601 timestamp")
    session_datetime: str = Field(..., description="ISO 8601 timestamp")


class CreateSessionRequest(BaseModel):
    """POST /v1/internal/sessions request body (scheduler plumbing)."""

    name: str = Field(..., min_length=1, max_length=255)
    session_date: date
    session_time: time
    duration_minutes: int = Field(60, gt=0)
    capacity: int = Field(..., gt=0)
    booking_cutoff_minutes: int | None = Field(None, ge=0)
    cancellation_cutoff_hours: int | None = Field(None, ge=0)
    notes: str | None = None


# ============================================================================
# Member Balance / Grant Models
# ============================================================================


class GrantBalanceItem(BaseModel):
    """Single grant in a member's balance."""

    grant_id: UUID
    plan_name: str
    remaining: int
    is_unlimited: bool
    status: GrantStatus
    expires_at: date


class MemberBalanceResponse(BaseModel):
    """GET /v1/members/{external_id}/balance response."""

    member_external_id: str
    grants: list[GrantBalanceItem]


class CreateGrantRequest(BaseModel):
    """POST /v1/internal/grants request body (confirmed purchase fact)."""

    member_external_id: str = Field(..., min_length=1, max_length=255)
    credits: int = Field(..., ge=0)
    duration_days: int = Field(..., gt=0)
    is_unlimited: bool = False
    plan_name: str = Field("class-pack", min_length=1, max_length=100)
    external_reference: str | None = Field(
        None, max_length=255, description="Upstream purchase ID, makes the call idempotent"
    )
    member_email: str | None = Field(None, max_length=255)
    member_display_name: str | None = Field(None, max_length=255)

    @field_validator("member_external_id")
    @classmethod
    def validate_external_id(cls, v: str) -> str:
        """Reject whitespace-only identities."""
        if not v.strip():
            raise ValueError("member_external_id cannot be blank")
        return v


class GrantResponse(BaseModel):
    """POST /v1/internal/grants response."""

    grant_id: UUID
    member_id: UUID
    initial_credits: int
    remaining_credits: int
    is_unlimited: bool
    start_date: date
    end_date: date
    status: GrantStatus


class GrantReversalRequest(BaseModel):
    """POST /v1/internal/grants/{grant_id}/reversal request body."""

    reason: str = Field("Purchase reversed", min_length=1, max_length=255)


class GrantReversalResponse(BaseModel):
    """POST /v1/internal/grants/{grant_id}/reversal response."""

    grant_id: UUID
    status: GrantStatus
    credits_voided: int
    cancelled_booking_ids: list[UUID]
    already_reversed: bool


# ============================================================================
# Ledger Models
# ============================================================================


class TransactionItem(BaseModel):
    """Single ledger entry."""

    entry_id: UUID
    plan_grant_id: UUID
    entry_type: LedgerEntryType
    amount: int
    balance_before: int
    balance_after: int
    reference_id: UUID
    reference_type: LedgerReferenceType
    description: str
    created_at: str


class TransactionListResponse(BaseModel):
    """GET /v1/members/{external_id}/transactions response."""

    transactions: list[TransactionItem]


class ReconciliationItem(BaseModel):
    """A detected divergence."""

    subject_id: UUID
    subject_type: str
    expected: int
    actual: int
    detail: str


class ReconciliationResponse(BaseModel):
    """GET /v1/internal/reconciliation response."""

    grants_checked: int
    sessions_checked: int
    divergences: list[ReconciliationItem]


# ============================================================================
# Health / Error Models
# ============================================================================


class HealthResponse(BaseModel):
    """GET /health response."""

    status: str
    database: str
    timestamp: str
    version: str


class ErrorDetail(BaseModel):
    """Error payload carried in HTTPException detail."""

    kind: ErrorKind
    message: str
    retryable: bool = False
