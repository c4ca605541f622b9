"""
Domain Models - Internal business logic models using dataclasses.

NO DICTIONARIES - All data structures are strongly typed immutable dataclasses.
"""

from dataclasses import dataclass, field
from datetime import date, datetime, time
from enum import Enum
from uuid import UUID

from app.models.api import (
    BookingStatus,
    ErrorKind,
    GrantStatus,
    LedgerEntryType,
    LedgerReferenceType,
    SessionStatus,
)

# Every booking costs exactly one credit
CREDITS_PER_BOOKING = 1


@dataclass(frozen=True)
class MemberIdentity:
    """Immutable member identity as resolved by the caller."""

    external_id: str
    email: str | None = None
    display_name: str | None = None

    def __post_init__(self) -> None:
        """Validate member identity fields."""
        if not self.external_id or not self.external_id.strip():
            raise ValueError("external_id cannot be empty")


@dataclass(frozen=True)
class MemberData:
    """Immutable member snapshot."""

    member_id: UUID
    external_id: str
    email: str | None
    display_name: str | None
    created_at: datetime


@dataclass(frozen=True)
class GrantIntent:
    """Domain model for a confirmed purchase before persistence."""

    identity: MemberIdentity
    credits: int
    duration_days: int
    is_unlimited: bool
    plan_name: str = "class-pack"
    external_reference: str | None = None

    def __post_init__(self) -> None:
        """Validate grant constraints."""
        if self.credits < 0:
            raise ValueError(f"Credits cannot be negative: {self.credits}")
        if self.duration_days <= 0:
            raise ValueError(f"Duration must be positive: {self.duration_days}")
        if not self.is_unlimited and self.credits == 0:
            raise ValueError("A limited grant needs at least one credit")


@dataclass(frozen=True)
class SessionIntent:
    """Domain model for a scheduled session before persistence."""

    name: str
    session_date: date
    session_time: time
    capacity: int
    duration_minutes: int = 60
    booking_cutoff_minutes: int = 5
    cancellation_cutoff_hours: int = 12
    notes: str | None = None

    def __post_init__(self) -> None:
        """Validate session constraints."""
        if self.capacity <= 0:
            raise ValueError(f"Capacity must be positive: {self.capacity}")
        if self.duration_minutes <= 0:
            raise ValueError(f"Duration must be positive: {self.duration_minutes}")
        if self.booking_cutoff_minutes < 0 or self.cancellation_cutoff_hours < 0:
            raise ValueError("Cutoff windows cannot be negative")


@dataclass(frozen=True)
class GrantData:
    """Immutable plan grant snapshot."""

    grant_id: UUID
    member_id: UUID
    plan_name: str
    initial_credits: int
    remaining_credits: int
    is_unlimited: bool
    start_date: date
    end_date: date
    status: GrantStatus
    created_at: datetime


@dataclass(frozen=True)
class SessionData:
    """Immutable capacity-annotated session snapshot."""

    session_id: UUID
    name: str
    session_date: date
    session_time: time
    duration_minutes: int
    capacity: int
    spots_taken: int
    booking_cutoff_minutes: int
    cancellation_cutoff_hours: int
    status: SessionStatus
    session_datetime: datetime
    booking_cutoff: datetime
    can_book: bool

    @property
    def spots_left(self) -> int:
        """Free spots, never negative."""
        return max(self.capacity - self.spots_taken, 0)


@dataclass(frozen=True)
class BookingData:
    """Immutable booking snapshot."""

    booking_id: UUID
    member_id: UUID
    session_id: UUID
    plan_grant_id: UUID
    status: BookingStatus
    booking_time: datetime
    cancelled_at: datetime | None
    cancellation_reason: str | None
    credit_refunded: bool


@dataclass(frozen=True)
class BookingWithSession:
    """Booking joined with the session it reserves."""

    booking: BookingData
    session_name: str
    session_date: date
    session_time: time
    duration_minutes: int


@dataclass(frozen=True)
class CancellationResult:
    """Outcome of a cancellation: the booking plus the refund decision."""

    booking: BookingData
    refund_denied: ErrorKind | None = None

    @property
    def credit_refunded(self) -> bool:
        return self.booking.credit_refunded


@dataclass(frozen=True)
class ReversalResult:
    """Outcome of a grant reversal cascade."""

    grant_id: UUID
    status: GrantStatus
    credits_voided: int
    cancelled_booking_ids: tuple[UUID, ...] = ()
    already_reversed: bool = False


@dataclass(frozen=True)
class LedgerEntryData:
    """Immutable ledger entry snapshot."""

    entry_id: UUID
    plan_grant_id: UUID
    entry_type: LedgerEntryType
    amount: int
    balance_before: int
    balance_after: int
    reference_id: UUID
    reference_type: LedgerReferenceType
    description: str
    sequence: int
    created_at: datetime


class CapacityDecision(str, Enum):
    """Result of evaluating a session for a new reservation."""

    OK = "ok"
    FULL = "full"
    CUTOFF_PASSED = "cutoff_passed"
    NOT_SCHEDULED = "not_scheduled"


@dataclass(frozen=True)
class Divergence:
    """A counter that does not match what its source of truth implies."""

    subject_id: UUID
    subject_type: str  # "plan_grant" or "session"
    expected: int
    actual: int
    detail: str


@dataclass(frozen=True)
class ReconciliationReport:
    """Result of replaying a grant's ledger."""

    plan_grant_id: UUID
    initial_credits: int
    cached_remaining: int
    projected_remaining: int
    entries_checked: int
    divergences: tuple[Divergence, ...] = field(default_factory=tuple)

    @property
    def is_consistent(self) -> bool:
        return not self.divergences
