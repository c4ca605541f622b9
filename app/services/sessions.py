"""
Session Service - Schedule lookups with live capacity annotations.
"""

from collections.abc import Callable
from dataclasses import dataclass
from datetime import date, datetime, tzinfo
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from app.config import settings
from app.db.models import ClassSession, utc_now
from app.exceptions import ResourceNotFoundError, WriteVerificationError
from app.models.api import SessionStatus
from app.models.domain import SessionData, SessionIntent
from app.services.capacity import session_to_domain

logger = get_logger(__name__)


@dataclass(frozen=True)
class SessionFilters:
    """Filters for the session listing."""

    on_date: date | None = None
    date_from: date | None = None
    date_to: date | None = None
    include_full: bool = True
    limit: int = 50
    offset: int = 0


class SessionService:
    """Read side of the schedule, plus session creation for the scheduler."""

    def __init__(
        self,
        session: AsyncSession,
        clock: Callable[[], datetime] | None = None,
        tz: tzinfo | None = None,
    ) -> None:
        """Initialize service with database session."""
        self.session = session
        self.clock = clock or utc_now
        self.tz = tz or settings.studio_tz

    async def create_session(self, intent: SessionIntent) -> SessionData:
        """Schedule a new session with no spots taken."""
        cls_session = ClassSession(
            name=intent.name,
            session_date=intent.session_date,
            session_time=intent.session_time,
            duration_minutes=intent.duration_minutes,
            capacity=intent.capacity,
            spots_taken=0,
            booking_cutoff_minutes=intent.booking_cutoff_minutes,
            cancellation_cutoff_hours=intent.cancellation_cutoff_hours,
            status=SessionStatus.SCHEDULED,
            notes=intent.notes,
        )
        self.session.add(cls_session)
        await self.session.flush()

        verified = await self.session.get(ClassSession, cls_session.id)
        if verified is None:
            raise WriteVerificationError(f"Session {cls_session.id} not found after insert")

        data = session_to_domain(verified, self.clock(), self.tz)
        await self.session.commit()

        logger.info(
            "session_created",
            session_id=str(data.session_id),
            session_date=data.session_date.isoformat(),
            capacity=data.capacity,
        )
        return data

    async def list_available_sessions(
        self, filters: SessionFilters
    ) -> tuple[list[SessionData], int]:
        """
        Scheduled sessions that can still be booked, in start order.

        Sessions past their booking cutoff are left out. Full sessions are
        listed (with can_book false) unless include_full is off.
        Returns (page, total matching).
        """
        now = self.clock()
        today = now.astimezone(self.tz).date()

        conditions = [
            ClassSession.status == SessionStatus.SCHEDULED,
            ClassSession.session_date >= today,
        ]
        if filters.on_date is not None:
            conditions.append(ClassSession.session_date == filters.on_date)
        if filters.date_from is not None:
            conditions.append(ClassSession.session_date >= filters.date_from)
        if filters.date_to is not None:
            conditions.append(ClassSession.session_date <= filters.date_to)

        stmt = (
            select(ClassSession)
            .where(*conditions)
            .order_by(ClassSession.session_date, ClassSession.session_time)
        )
        result = await self.session.execute(stmt)

        sessions = []
        for cls_session in result.scalars().all():
            data = session_to_domain(cls_session, now, self.tz)
            if now >= data.booking_cutoff:
                continue
            if not filters.include_full and data.spots_left == 0:
                continue
            sessions.append(data)

        page = sessions[filters.offset : filters.offset + filters.limit]
        return page, len(sessions)

    async def get_session(self, session_id: UUID) -> SessionData:
        """
        Get a session with its current availability.

        Raises:
            ResourceNotFoundError: Session doesn't exist
        """
        cls_session = await self.session.get(ClassSession, session_id)
        if cls_session is None:
            raise ResourceNotFoundError("session", session_id)
        return session_to_domain(cls_session, self.clock(), self.tz)
