"""
Member Service - Members, plan grants and what they can see of them.

NO DICTIONARIES - All operations use strongly typed domain models.
"""

from collections.abc import Callable
from datetime import datetime, timedelta

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from app.db.models import Booking, ClassSession, Member, PlanGrant, utc_now
from app.exceptions import ResourceNotFoundError, WriteVerificationError
from app.models.api import BookingStatus, BookingStatusFilter, GrantStatus
from app.models.domain import (
    BookingWithSession,
    GrantData,
    GrantIntent,
    LedgerEntryData,
    MemberData,
    MemberIdentity,
)
from app.observability.metrics import metrics
from app.services.booking import booking_to_domain
from app.services.eligibility import effective_status, studio_date
from app.services.ledger import LedgerService

logger = get_logger(__name__)


def member_to_domain(member: Member) -> MemberData:
    """Convert ORM member to domain model."""
    return MemberData(
        member_id=member.id,
        external_id=member.external_id,
        email=member.email,
        display_name=member.display_name,
        created_at=member.created_at,
    )


def grant_to_domain(grant: PlanGrant) -> GrantData:
    """Convert ORM plan grant to domain model."""
    return GrantData(
        grant_id=grant.id,
        member_id=grant.member_id,
        plan_name=grant.plan_name,
        initial_credits=grant.initial_credits,
        remaining_credits=grant.remaining_credits,
        is_unlimited=grant.is_unlimited,
        start_date=grant.start_date,
        end_date=grant.end_date,
        status=GrantStatus(grant.status),
        created_at=grant.created_at,
    )


class MemberService:
    """Member-scoped reads and grant creation."""

    def __init__(
        self, session: AsyncSession, clock: Callable[[], datetime] | None = None
    ) -> None:
        """Initialize service with database session."""
        self.session = session
        self.clock = clock or utc_now

    # ========================================================================
    # Members
    # ========================================================================

    async def get_or_create_member(self, identity: MemberIdentity) -> MemberData:
        """
        Get existing member or create on first observed activity.

        Contact details are only taken from the first observation.
        """
        member = await self._find_member(identity.external_id)
        if member is not None:
            return member_to_domain(member)

        new_member = Member(
            external_id=identity.external_id,
            email=identity.email,
            display_name=identity.display_name,
        )
        self.session.add(new_member)

        try:
            await self.session.flush()
        except IntegrityError:
            # Race condition - member created by another request
            await self.session.rollback()
            member = await self._find_member(identity.external_id)
            if member is None:
                raise WriteVerificationError("Member creation failed due to race condition")
            return member_to_domain(member)

        verified = await self.session.get(Member, new_member.id)
        if verified is None:
            raise WriteVerificationError(f"Member {new_member.id} not found after insert")

        await self.session.commit()
        logger.info("member_created", member_id=str(verified.id))
        return member_to_domain(verified)

    async def find_member(self, external_id: str) -> MemberData | None:
        """Look up a member by external identity."""
        member = await self._find_member(external_id)
        return member_to_domain(member) if member is not None else None

    async def require_member(self, external_id: str) -> MemberData:
        """
        Look up a member by external identity.

        Raises:
            ResourceNotFoundError: Member was never observed
        """
        member = await self._find_member(external_id)
        if member is None:
            raise ResourceNotFoundError("member", external_id)
        return member_to_domain(member)

    # ========================================================================
    # Grants
    # ========================================================================

    async def create_grant(self, intent: GrantIntent) -> GrantData:
        """
        Create a plan grant from a confirmed purchase.

        Starts today in the studio timezone and runs for duration_days.
        Replaying a purchase with the same external_reference returns the
        grant created the first time.
        """
        if intent.external_reference:
            existing = await self._find_grant_by_reference(intent.external_reference)
            if existing is not None:
                logger.info(
                    "grant_already_created",
                    plan_grant_id=str(existing.id),
                    external_reference=intent.external_reference,
                )
                return grant_to_domain(existing)

        member = await self.get_or_create_member(intent.identity)
        start_date = studio_date(self.clock())

        grant = PlanGrant(
            member_id=member.member_id,
            plan_name=intent.plan_name,
            initial_credits=intent.credits,
            remaining_credits=intent.credits,
            is_unlimited=intent.is_unlimited,
            start_date=start_date,
            end_date=start_date + timedelta(days=intent.duration_days),
            status=GrantStatus.ACTIVE,
            external_reference=intent.external_reference,
            ledger_sequence=0,
        )
        self.session.add(grant)

        try:
            await self.session.flush()
        except IntegrityError:
            # Same purchase delivered twice concurrently
            await self.session.rollback()
            if intent.external_reference:
                existing = await self._find_grant_by_reference(intent.external_reference)
                if existing is not None:
                    return grant_to_domain(existing)
            raise

        verified = await self.session.get(PlanGrant, grant.id)
        if verified is None:
            raise WriteVerificationError(f"Plan grant {grant.id} not found after insert")

        await self.session.commit()

        metrics.record_grant_created(intent.is_unlimited)
        logger.info(
            "grant_created",
            plan_grant_id=str(verified.id),
            member_id=str(member.member_id),
            credits=intent.credits,
            is_unlimited=intent.is_unlimited,
            end_date=verified.end_date.isoformat(),
        )
        return grant_to_domain(verified)

    async def get_member_balance(self, external_id: str) -> list[GrantData]:
        """Usable grants of a member, soonest expiring first. Unknown members have none."""
        member = await self._find_member(external_id)
        if member is None:
            return []

        today = studio_date(self.clock())
        stmt = (
            select(PlanGrant)
            .where(
                PlanGrant.member_id == member.id,
                PlanGrant.status == GrantStatus.ACTIVE,
                PlanGrant.end_date >= today,
            )
            .order_by(PlanGrant.end_date, PlanGrant.created_at)
        )
        result = await self.session.execute(stmt)
        return [
            grant_to_domain(grant)
            for grant in result.scalars().all()
            if effective_status(grant, today) == GrantStatus.ACTIVE
        ]

    async def list_member_transactions(
        self, external_id: str, limit: int = 50
    ) -> list[LedgerEntryData]:
        """Ledger history across all of a member's grants, newest first."""
        member = await self._find_member(external_id)
        if member is None:
            return []

        result = await self.session.execute(
            select(PlanGrant.id).where(PlanGrant.member_id == member.id)
        )
        grant_ids = list(result.scalars().all())
        return await LedgerService(self.session).list_entries(grant_ids, limit=limit)

    # ========================================================================
    # Bookings
    # ========================================================================

    async def list_member_bookings(
        self,
        external_id: str,
        status_filter: BookingStatusFilter = BookingStatusFilter.ACTIVE,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[BookingWithSession], int]:
        """
        A member's bookings joined with their sessions, by session start.

        Returns (page, total matching).
        """
        member = await self._find_member(external_id)
        if member is None:
            return [], 0

        conditions = [Booking.member_id == member.id]
        if status_filter != BookingStatusFilter.ALL:
            conditions.append(Booking.status == BookingStatus(status_filter.value))

        count_result = await self.session.execute(
            select(func.count(Booking.id)).where(*conditions)
        )
        total = int(count_result.scalar_one())

        stmt = (
            select(Booking, ClassSession)
            .join(ClassSession, ClassSession.id == Booking.session_id)
            .where(*conditions)
            .order_by(ClassSession.session_date, ClassSession.session_time, Booking.booking_time)
            .limit(limit)
            .offset(offset)
        )
        result = await self.session.execute(stmt)

        items = [
            BookingWithSession(
                booking=booking_to_domain(booking),
                session_name=cls_session.name,
                session_date=cls_session.session_date,
                session_time=cls_session.session_time,
                duration_minutes=cls_session.duration_minutes,
            )
            for booking, cls_session in result.all()
        ]
        return items, total

    # ========================================================================
    # Helpers
    # ========================================================================

    async def _find_member(self, external_id: str) -> Member | None:
        stmt = select(Member).where(Member.external_id == external_id)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def _find_grant_by_reference(self, external_reference: str) -> PlanGrant | None:
        stmt = select(PlanGrant).where(PlanGrant.external_reference == external_reference)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()
