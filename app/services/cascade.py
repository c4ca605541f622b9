"""
Cascade Handler - Unwind a reversed purchase.

When an upstream purchase is refunded or charged back, the grant it paid for
is voided, its unused credits are drained through the ledger, and every
booking it still funds is cancelled without a refund.
"""

from uuid import UUID

from sqlalchemy import select
from structlog import get_logger

from app.db.models import Booking, PlanGrant
from app.exceptions import ResourceNotFoundError
from app.models.api import BookingStatus, GrantStatus, LedgerEntryType, LedgerReferenceType
from app.models.domain import ReversalResult
from app.observability.metrics import metrics
from app.services.booking import BookingEngine

logger = get_logger(__name__)

CASCADE_CANCELLATION_REASON = "grant reversed"


class CascadeHandler:
    """Applies grant reversals through the booking engine's primitives."""

    def __init__(self, engine: BookingEngine) -> None:
        """Initialize with the engine whose transaction and session to use."""
        self.engine = engine
        self.session = engine.session

    async def reverse_grant(self, plan_grant_id: UUID, reason: str) -> ReversalResult:
        """
        Void a grant and cancel everything it funds, in one transaction.

        Idempotent: reversing an already-cancelled grant changes nothing and
        reports already_reversed.

        Raises:
            ResourceNotFoundError: Grant doesn't exist
            ConflictError: Concurrent modification retries exhausted
        """
        result = await self.engine.run_atomically(
            "reverse_grant", lambda: self._reverse_once(plan_grant_id, reason)
        )

        metrics.record_reversal(result.already_reversed, len(result.cancelled_booking_ids))
        for _ in result.cancelled_booking_ids:
            metrics.record_cancellation(refunded=False, cascade=True)
        logger.info(
            "grant_reversed",
            plan_grant_id=str(plan_grant_id),
            reason=reason,
            credits_voided=result.credits_voided,
            cancelled_bookings=len(result.cancelled_booking_ids),
            already_reversed=result.already_reversed,
        )
        return result

    async def _reverse_once(self, plan_grant_id: UUID, reason: str) -> ReversalResult:
        """One attempt at the reversal. Leaves the transaction open."""
        stmt = (
            select(PlanGrant)
            .where(PlanGrant.id == plan_grant_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(stmt)
        grant = result.scalar_one_or_none()
        if grant is None:
            raise ResourceNotFoundError("plan_grant", plan_grant_id)

        if grant.status == GrantStatus.CANCELLED:
            return ReversalResult(
                grant_id=grant.id,
                status=GrantStatus.CANCELLED,
                credits_voided=0,
                already_reversed=True,
            )

        # 1. Void the grant so nothing new can be charged or refunded to it
        grant.status = GrantStatus.CANCELLED

        # 2. Drain the remaining balance through the ledger
        credits_voided = 0 if grant.is_unlimited else grant.remaining_credits
        if grant.is_unlimited or credits_voided > 0:
            await self.engine.ledger.append(
                grant,
                LedgerEntryType.CREDIT,
                credits_voided,
                grant.id,
                LedgerReferenceType.GRANT_REVERSAL,
                f"Grant reversed: {reason}",
            )
        else:
            await self.session.flush()

        # 3. Cancel every booking still funded by the grant, refunds suppressed
        bookings_stmt = (
            select(Booking)
            .where(
                Booking.plan_grant_id == grant.id,
                Booking.status == BookingStatus.ACTIVE,
            )
            .order_by(Booking.booking_time)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        bookings_result = await self.session.execute(bookings_stmt)
        cancelled_ids = []
        for booking in bookings_result.scalars().all():
            await self.engine.release_booking(
                booking, CASCADE_CANCELLATION_REASON, refund_allowed=False
            )
            cancelled_ids.append(booking.id)

        return ReversalResult(
            grant_id=grant.id,
            status=GrantStatus.CANCELLED,
            credits_voided=credits_voided,
            cancelled_booking_ids=tuple(cancelled_ids),
        )
