"""
Plan Eligibility - Which grant pays for a booking.

Selection policy: among grants that are active, inside their validity window
and not out of credits, charge the one expiring soonest. Ties go to the
oldest grant, then to the lowest id so the choice is deterministic.
"""

from collections.abc import Iterable
from datetime import UTC, date, datetime, tzinfo
from typing import TypeVar
from uuid import UUID

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from app.config import settings
from app.db.models import PlanGrant
from app.models.api import GrantStatus
from app.models.domain import CREDITS_PER_BOOKING, GrantData

logger = get_logger(__name__)

GrantT = TypeVar("GrantT", PlanGrant, GrantData)


def effective_status(grant: PlanGrant | GrantData, today: date) -> GrantStatus:
    """
    Status as seen by callers on the given studio date.

    A grant past its end date reads as expired even if no job has flipped
    the stored status yet.
    """
    if grant.status == GrantStatus.ACTIVE and grant.end_date < today:
        return GrantStatus.EXPIRED
    return GrantStatus(grant.status)


def is_eligible(grant: PlanGrant | GrantData, today: date) -> bool:
    """Whether the grant can pay for one booking on the given date."""
    if effective_status(grant, today) != GrantStatus.ACTIVE:
        return False
    if grant.start_date > today:
        return False
    return grant.is_unlimited or grant.remaining_credits >= CREDITS_PER_BOOKING


def selection_key(grant: PlanGrant | GrantData) -> tuple[date, datetime, str]:
    """Sort key implementing the soonest-expiring-first policy."""
    grant_id = grant.id if isinstance(grant, PlanGrant) else grant.grant_id
    created_at = grant.created_at
    # SQLite hands back naive timestamps
    if created_at.tzinfo is None:
        created_at = created_at.replace(tzinfo=UTC)
    return (grant.end_date, created_at, str(grant_id))


def select_grant(grants: Iterable[GrantT], today: date) -> GrantT | None:
    """Pick the grant to charge, or None when nothing is eligible."""
    eligible = [g for g in grants if is_eligible(g, today)]
    if not eligible:
        return None
    return min(eligible, key=selection_key)


def studio_date(at_time: datetime, tz: tzinfo | None = None) -> date:
    """Calendar date of an instant in the studio timezone."""
    return at_time.astimezone(tz or settings.studio_tz).date()


class EligibilityService:
    """Finds the plan grant that will be charged for a reservation."""

    def __init__(self, session: AsyncSession, tz: tzinfo | None = None) -> None:
        """Initialize with database session and studio timezone."""
        self.session = session
        self.tz = tz or settings.studio_tz

    async def find_eligible_plan(
        self, member_id: UUID, at_time: datetime, lock: bool = False
    ) -> PlanGrant | None:
        """
        Find the grant to charge for a booking made at at_time.

        With lock=True the candidate rows are locked FOR UPDATE and refreshed,
        so the returned grant reflects committed state for the rest of the
        transaction.
        """
        today = studio_date(at_time, self.tz)

        stmt = select(PlanGrant).where(
            PlanGrant.member_id == member_id,
            PlanGrant.status == GrantStatus.ACTIVE,
            PlanGrant.start_date <= today,
            PlanGrant.end_date >= today,
            or_(
                PlanGrant.is_unlimited.is_(True),
                PlanGrant.remaining_credits >= CREDITS_PER_BOOKING,
            ),
        )
        if lock:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)

        result = await self.session.execute(stmt)
        candidates = result.scalars().all()

        chosen = select_grant(candidates, today)
        if chosen is None:
            logger.info(
                "no_eligible_plan",
                member_id=str(member_id),
                candidates=len(candidates),
                studio_date=today.isoformat(),
            )
            return None

        return chosen
