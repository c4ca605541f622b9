"""
Capacity Tracker - Spots per session and the policy instants around them.

Session dates and times are wall-clock values in the studio timezone. All
comparisons happen on timezone-aware instants.
"""

from datetime import datetime, timedelta, tzinfo
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from app.config import settings
from app.db.models import Booking, ClassSession
from app.models.api import BookingStatus, SessionStatus
from app.models.domain import CapacityDecision, Divergence, SessionData
from app.observability.metrics import metrics

logger = get_logger(__name__)


def session_datetime(cls_session: ClassSession, tz: tzinfo | None = None) -> datetime:
    """Start instant of the session."""
    return datetime.combine(
        cls_session.session_date, cls_session.session_time, tzinfo=tz or settings.studio_tz
    )


def booking_cutoff(cls_session: ClassSession, tz: tzinfo | None = None) -> datetime:
    """Instant from which new bookings are refused."""
    return session_datetime(cls_session, tz) - timedelta(
        minutes=cls_session.booking_cutoff_minutes
    )


def cancellation_deadline(cls_session: ClassSession, tz: tzinfo | None = None) -> datetime:
    """Instant from which cancellations no longer refund the credit."""
    return session_datetime(cls_session, tz) - timedelta(
        hours=cls_session.cancellation_cutoff_hours
    )


def evaluate_reservation(
    cls_session: ClassSession, now: datetime, tz: tzinfo | None = None
) -> CapacityDecision:
    """Check, in order, that the session is scheduled, still open and not full."""
    if cls_session.status != SessionStatus.SCHEDULED:
        return CapacityDecision.NOT_SCHEDULED
    if now >= booking_cutoff(cls_session, tz):
        return CapacityDecision.CUTOFF_PASSED
    if cls_session.spots_taken >= cls_session.capacity:
        return CapacityDecision.FULL
    return CapacityDecision.OK


def session_to_domain(
    cls_session: ClassSession, now: datetime, tz: tzinfo | None = None
) -> SessionData:
    """Convert ORM session to a capacity-annotated snapshot."""
    return SessionData(
        session_id=cls_session.id,
        name=cls_session.name,
        session_date=cls_session.session_date,
        session_time=cls_session.session_time,
        duration_minutes=cls_session.duration_minutes,
        capacity=cls_session.capacity,
        spots_taken=cls_session.spots_taken,
        booking_cutoff_minutes=cls_session.booking_cutoff_minutes,
        cancellation_cutoff_hours=cls_session.cancellation_cutoff_hours,
        status=SessionStatus(cls_session.status),
        session_datetime=session_datetime(cls_session, tz),
        booking_cutoff=booking_cutoff(cls_session, tz),
        can_book=evaluate_reservation(cls_session, now, tz) == CapacityDecision.OK,
    )


class CapacityTracker:
    """
    Owns spots_taken.

    reserve() and release() only mutate the row; the booking engine's
    transaction decides whether the change commits.
    """

    def __init__(self, session: AsyncSession, tz: tzinfo | None = None) -> None:
        """Initialize with database session and studio timezone."""
        self.session = session
        self.tz = tz or settings.studio_tz

    async def lock_session(self, session_id: UUID) -> ClassSession | None:
        """Read a session row FOR UPDATE, refreshing any cached copy."""
        stmt = (
            select(ClassSession)
            .where(ClassSession.id == session_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    def try_reserve(self, cls_session: ClassSession, now: datetime) -> CapacityDecision:
        """Evaluate whether a spot can be taken at now, without taking it."""
        return evaluate_reservation(cls_session, now, self.tz)

    def reserve(self, cls_session: ClassSession) -> None:
        """Take one spot."""
        cls_session.spots_taken = cls_session.spots_taken + 1

    def release(self, cls_session: ClassSession) -> None:
        """Give back one spot, never going below zero."""
        if cls_session.spots_taken <= 0:
            logger.warning(
                "capacity_release_clamped",
                session_id=str(cls_session.id),
                spots_taken=cls_session.spots_taken,
            )
            cls_session.spots_taken = 0
            return
        cls_session.spots_taken = cls_session.spots_taken - 1

    async def count_active_bookings(self, session_id: UUID) -> int:
        """Number of active bookings for a session."""
        stmt = select(func.count(Booking.id)).where(
            Booking.session_id == session_id,
            Booking.status == BookingStatus.ACTIVE,
        )
        result = await self.session.execute(stmt)
        return int(result.scalar_one())

    async def reconcile_capacity(self, session_id: UUID) -> Divergence | None:
        """Compare spots_taken with the active booking count. Reports, never corrects."""
        cls_session = await self.session.get(ClassSession, session_id, populate_existing=True)
        if cls_session is None:
            return None

        active = await self.count_active_bookings(session_id)
        if active == cls_session.spots_taken:
            return None

        metrics.record_divergence("session")
        logger.error(
            "capacity_divergence_detected",
            session_id=str(session_id),
            spots_taken=cls_session.spots_taken,
            active_bookings=active,
        )
        return Divergence(
            subject_id=session_id,
            subject_type="session",
            expected=active,
            actual=cls_session.spots_taken,
            detail="spots_taken differs from active booking count",
        )

    async def reconcile_all(self) -> tuple[int, list[Divergence]]:
        """Reconcile every session. Returns (sessions checked, divergences)."""
        result = await self.session.execute(
            select(ClassSession.id).order_by(ClassSession.session_date)
        )
        session_ids = list(result.scalars().all())
        divergences = []
        for session_id in session_ids:
            divergence = await self.reconcile_capacity(session_id)
            if divergence is not None:
                divergences.append(divergence)
        return len(session_ids), divergences
