"""
Database Models - SQLAlchemy ORM models with strict typing.

NO DICTIONARIES - All columns use Mapped[] type annotations.
"""

from datetime import UTC, date, datetime, time
from uuid import UUID, uuid4

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    Time,
    UniqueConstraint,
    Uuid,
    text,
)
from sqlalchemy import Enum as SQLEnum
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from app.models.api import (
    BookingStatus,
    GrantStatus,
    LedgerEntryType,
    LedgerReferenceType,
    SessionStatus,
)


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


def utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


def _enum_column(enum_cls: type, name: str) -> SQLEnum:
    """String-backed enum column storing the enum values."""
    return SQLEnum(
        enum_cls,
        name=name,
        native_enum=False,
        length=20,
        values_callable=lambda x: [e.value for e in x],
    )


class Member(Base):
    """
    ORM model for members table.

    Local record for an external identity, created on first observed activity.
    """

    __tablename__ = "members"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)

    # Identity mapping (immutable once created)
    external_id: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)

    # Contact information
    email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    display_name: Mapped[str | None] = mapped_column(String(255), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return f"<Member(id={self.id}, external_id={self.external_id})>"


class PlanGrant(Base):
    """
    ORM model for plan_grants table.

    A time-bounded credit grant. remaining_credits is a cached projection of
    the ledger and is only written alongside a ledger append.
    """

    __tablename__ = "plan_grants"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    member_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("members.id", ondelete="RESTRICT"), nullable=False, index=True
    )

    plan_name: Mapped[str] = mapped_column(String(100), nullable=False, default="class-pack")

    # Credits
    initial_credits: Mapped[int] = mapped_column(Integer, nullable=False)
    remaining_credits: Mapped[int] = mapped_column(Integer, nullable=False)
    is_unlimited: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    # Validity window
    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    end_date: Mapped[date] = mapped_column(Date, nullable=False)

    status: Mapped[GrantStatus] = mapped_column(
        _enum_column(GrantStatus, "grant_status"), nullable=False, default=GrantStatus.ACTIVE
    )

    # Upstream purchase reference (makes grant creation idempotent)
    external_reference: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # Position of the newest ledger entry for this grant
    ledger_sequence: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        CheckConstraint("initial_credits >= 0", name="ck_grant_initial_non_negative"),
        CheckConstraint(
            "is_unlimited OR remaining_credits >= 0", name="ck_grant_remaining_non_negative"
        ),
        CheckConstraint("end_date >= start_date", name="ck_grant_window_ordered"),
        Index(
            "uq_plan_grants_external_reference",
            "external_reference",
            unique=True,
            postgresql_where=text("external_reference IS NOT NULL"),
            sqlite_where=text("external_reference IS NOT NULL"),
        ),
        Index("idx_plan_grants_member_status", "member_id", "status"),
        Index("idx_plan_grants_end_date", "end_date"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<PlanGrant(id={self.id}, member_id={self.member_id}, "
            f"remaining={self.remaining_credits}, status={self.status})>"
        )


class ClassSession(Base):
    """
    ORM model for sessions table.

    A scheduled class occurrence. spots_taken is only written by the
    booking engine's reserve/release transaction.
    """

    __tablename__ = "sessions"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)

    name: Mapped[str] = mapped_column(String(255), nullable=False)

    # Schedule (wall-clock in the studio timezone)
    session_date: Mapped[date] = mapped_column(Date, nullable=False)
    session_time: Mapped[time] = mapped_column(Time, nullable=False)
    duration_minutes: Mapped[int] = mapped_column(Integer, nullable=False, default=60)

    # Capacity
    capacity: Mapped[int] = mapped_column(Integer, nullable=False)
    spots_taken: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Policy windows
    booking_cutoff_minutes: Mapped[int] = mapped_column(Integer, nullable=False, default=5)
    cancellation_cutoff_hours: Mapped[int] = mapped_column(Integer, nullable=False, default=12)

    status: Mapped[SessionStatus] = mapped_column(
        _enum_column(SessionStatus, "session_status"),
        nullable=False,
        default=SessionStatus.SCHEDULED,
    )

    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        CheckConstraint("capacity > 0", name="ck_session_capacity_positive"),
        CheckConstraint("spots_taken >= 0", name="ck_session_spots_non_negative"),
        CheckConstraint("spots_taken <= capacity", name="ck_session_spots_within_capacity"),
        CheckConstraint("duration_minutes > 0", name="ck_session_duration_positive"),
        CheckConstraint("booking_cutoff_minutes >= 0", name="ck_session_booking_cutoff"),
        CheckConstraint("cancellation_cutoff_hours >= 0", name="ck_session_cancellation_cutoff"),
        Index("idx_sessions_date_time", "session_date", "session_time"),
        Index("idx_sessions_status", "status"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<ClassSession(id={self.id}, date={self.session_date}, time={self.session_time}, "
            f"spots={self.spots_taken}/{self.capacity})>"
        )


class Booking(Base):
    """
    ORM model for bookings table.

    Links a member to a session and the grant charged. Never deleted.
    """

    __tablename__ = "bookings"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)

    member_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("members.id", ondelete="RESTRICT"), nullable=False, index=True
    )
    session_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("sessions.id", ondelete="RESTRICT"), nullable=False, index=True
    )
    plan_grant_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("plan_grants.id", ondelete="RESTRICT"), nullable=False, index=True
    )

    status: Mapped[BookingStatus] = mapped_column(
        _enum_column(BookingStatus, "booking_status"),
        nullable=False,
        default=BookingStatus.ACTIVE,
    )

    booking_time: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    # Cancellation audit
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    cancellation_reason: Mapped[str | None] = mapped_column(String(255), nullable=True)
    credit_refunded: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        CheckConstraint(
            "status = 'active' OR cancelled_at IS NOT NULL",
            name="ck_booking_cancelled_has_timestamp",
        ),
        # At most one active booking per (member, session)
        Index(
            "uq_bookings_member_session_active",
            "member_id",
            "session_id",
            unique=True,
            postgresql_where=text("status = 'active'"),
            sqlite_where=text("status = 'active'"),
        ),
        Index("idx_bookings_session_status", "session_id", "status"),
        Index("idx_bookings_grant_status", "plan_grant_id", "status"),
        Index("idx_bookings_booking_time", "booking_time"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<Booking(id={self.id}, member_id={self.member_id}, "
            f"session_id={self.session_id}, status={self.status})>"
        )


class LedgerEntry(Base):
    """
    ORM model for ledger_entries table.

    Immutable, append-only record of every credit movement on a grant.
    """

    __tablename__ = "ledger_entries"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)

    plan_grant_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("plan_grants.id", ondelete="RESTRICT"), nullable=False, index=True
    )

    entry_type: Mapped[LedgerEntryType] = mapped_column(
        _enum_column(LedgerEntryType, "ledger_entry_type"), nullable=False
    )

    # 0 is the symbolic amount recorded for unlimited grants
    amount: Mapped[int] = mapped_column(Integer, nullable=False)

    # Balance snapshots (denormalized for auditing)
    balance_before: Mapped[int] = mapped_column(Integer, nullable=False)
    balance_after: Mapped[int] = mapped_column(Integer, nullable=False)

    # What caused the movement
    reference_id: Mapped[UUID] = mapped_column(Uuid, nullable=False)
    reference_type: Mapped[LedgerReferenceType] = mapped_column(
        _enum_column(LedgerReferenceType, "ledger_reference_type"), nullable=False
    )

    description: Mapped[str] = mapped_column(String, nullable=False)

    # Per-grant position, gapless from 1
    sequence: Mapped[int] = mapped_column(Integer, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (
        CheckConstraint("amount >= 0", name="ck_ledger_amount_non_negative"),
        CheckConstraint("sequence > 0", name="ck_ledger_sequence_positive"),
        UniqueConstraint("plan_grant_id", "sequence", name="uq_ledger_grant_sequence"),
        Index("idx_ledger_entries_grant_created", "plan_grant_id", "created_at"),
        Index("idx_ledger_entries_reference", "reference_id"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<LedgerEntry(id={self.id}, grant={self.plan_grant_id}, "
            f"type={self.entry_type}, amount={self.amount}, balance_after={self.balance_after})>"
        )
