"""
Booking Engine - Reserve and cancel sessions against plan credits.

Every operation is one transaction: lock the rows it depends on, re-check the
guards against what was just read, then commit capacity, booking and ledger
together. Transactions that lose a race are rolled back and retried with
bounded exponential backoff.
"""

import asyncio
import random
import time
from collections.abc import Awaitable, Callable
from datetime import datetime, tzinfo
from typing import TypeVar
from uuid import UUID, uuid4

from sqlalchemy import select
from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError
from structlog import get_logger

from app.config import settings
from app.db.models import Booking, Member, PlanGrant, utc_now
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
from app.models.api import (
    BookingStatus,
    ErrorKind,
    GrantStatus,
    LedgerEntryType,
    LedgerReferenceType,
    SessionStatus,
)
from app.models.domain import (
    CREDITS_PER_BOOKING,
    BookingData,
    CancellationResult,
    CapacityDecision,
)
from app.observability.metrics import metrics
from app.observability.tracing import trace_operation
from app.services.capacity import CapacityTracker, booking_cutoff, cancellation_deadline
from app.services.eligibility import EligibilityService
from app.services.ledger import LedgerService

logger = get_logger(__name__)

T = TypeVar("T")

Clock = Callable[[], datetime]

DEFAULT_CANCELLATION_REASON = "Cancelled by member"

# PostgreSQL serialization_failure and deadlock_detected
TRANSIENT_SQLSTATES = frozenset({"40001", "40P01"})


def is_transient(exc: BaseException) -> bool:
    """Whether a database error means "lost a race, try again"."""
    if isinstance(exc, StaleDataError):
        return True
    if isinstance(exc, DBAPIError):
        orig = exc.orig
        for candidate in (orig, getattr(orig, "__cause__", None)):
            code = getattr(candidate, "sqlstate", None) or getattr(candidate, "pgcode", None)
            if code in TRANSIENT_SQLSTATES:
                return True
        if isinstance(exc, OperationalError) and "database is locked" in str(exc):
            return True
    return False


def backoff_delay(
    attempt: int,
    base_delay: float,
    max_delay: float,
    rand: Callable[[], float] = random.random,
) -> float:
    """Exponential backoff with equal jitter, capped at max_delay."""
    ceiling = min(max_delay, base_delay * (2 ** (attempt - 1)))
    return ceiling / 2 + rand() * ceiling / 2


def booking_to_domain(booking: Booking) -> BookingData:
    """Convert ORM booking to domain model."""
    return BookingData(
        booking_id=booking.id,
        member_id=booking.member_id,
        session_id=booking.session_id,
        plan_grant_id=booking.plan_grant_id,
        status=BookingStatus(booking.status),
        booking_time=booking.booking_time,
        cancelled_at=booking.cancelled_at,
        cancellation_reason=booking.cancellation_reason,
        credit_refunded=booking.credit_refunded,
    )


class BookingEngine:
    """
    Orchestrates reservations and cancellations.

    Owns the transaction: callers hand in a fresh session and must not have
    pending work on it.
    """

    def __init__(
        self,
        session: AsyncSession,
        clock: Clock | None = None,
        tz: tzinfo | None = None,
        max_attempts: int | None = None,
        base_delay: float | None = None,
        max_delay: float | None = None,
    ) -> None:
        """Initialize engine with database session and policy knobs."""
        self.session = session
        self.clock = clock or utc_now
        self.tz = tz or settings.studio_tz
        self.max_attempts = (
            max_attempts if max_attempts is not None else settings.booking_max_attempts
        )
        self.base_delay = (
            base_delay if base_delay is not None else settings.booking_retry_base_delay_seconds
        )
        self.max_delay = (
            max_delay if max_delay is not None else settings.booking_retry_max_delay_seconds
        )
        self.ledger = LedgerService(session)
        self.capacity = CapacityTracker(session, self.tz)
        self.eligibility = EligibilityService(session, self.tz)

    # ========================================================================
    # Transaction Runner
    # ========================================================================

    async def run_atomically(self, operation: str, work: Callable[[], Awaitable[T]]) -> T:
        """
        Run work() and commit, retrying transient conflicts.

        Guard failures roll back and propagate unchanged.

        Raises:
            ConflictError: Retries exhausted
            IntegrityFaultError: A constraint kept failing on every attempt
        """
        attempt = 0
        with trace_operation(f"booking.{operation}") as span:
            while True:
                attempt += 1
                try:
                    result = await work()
                    await self.session.commit()
                except BookingEngineError:
                    await self.session.rollback()
                    raise
                except IntegrityError as exc:
                    # A concurrent duplicate booking or a capacity check
                    # constraint. The next attempt re-reads and reports the
                    # real guard failure.
                    await self.session.rollback()
                    if attempt >= self.max_attempts:
                        metrics.record_error("IntegrityError", operation)
                        raise IntegrityFaultError(
                            f"{operation} violated a constraint on every attempt: {exc.orig}"
                        ) from exc
                    await self._backoff(operation, attempt, exc)
                    continue
                except (StaleDataError, DBAPIError) as exc:
                    await self.session.rollback()
                    if not is_transient(exc):
                        raise
                    if attempt >= self.max_attempts:
                        metrics.record_conflict_exhausted(operation)
                        logger.error(
                            "booking_conflict_exhausted",
                            operation=operation,
                            attempts=attempt,
                            error_type=type(exc).__name__,
                        )
                        raise ConflictError(operation, attempt) from exc
                    await self._backoff(operation, attempt, exc)
                    continue

                span.set_attribute("attempts", attempt)
                return result

    async def _backoff(self, operation: str, attempt: int, exc: Exception) -> None:
        """Sleep before the next attempt."""
        delay = backoff_delay(attempt, self.base_delay, self.max_delay)
        metrics.record_retry(operation)
        logger.warning(
            "booking_conflict_retry",
            operation=operation,
            attempt=attempt,
            delay_seconds=round(delay, 4),
            error_type=type(exc).__name__,
        )
        await asyncio.sleep(delay)

    # ========================================================================
    # Reserve
    # ========================================================================

    async def reserve(self, member_id: UUID, session_id: UUID) -> BookingData:
        """
        Reserve a spot in a session, charging one credit.

        Guards are checked in this order: session exists and is scheduled,
        no active booking for the member, cutoff not passed, spots left,
        eligible grant.

        Raises:
            ResourceNotFoundError: Member or session doesn't exist
            SessionNotAvailableError: Session is completed or cancelled
            AlreadyBookedError: Member already holds an active booking
            BookingClosedError: Booking cutoff passed
            SessionFullError: No spots left
            NoCreditsAvailableError: No eligible plan grant
            ConflictError: Concurrent modification retries exhausted
        """
        start = time.perf_counter()
        try:
            booking = await self.run_atomically(
                "reserve", lambda: self._reserve_once(member_id, session_id)
            )
        except BookingEngineError as exc:
            metrics.record_reservation(exc.kind.value, time.perf_counter() - start)
            logger.info(
                "booking_rejected",
                member_id=str(member_id),
                session_id=str(session_id),
                kind=exc.kind.value,
            )
            raise

        metrics.record_reservation("success", time.perf_counter() - start)
        logger.info(
            "booking_reserved",
            booking_id=str(booking.booking_id),
            member_id=str(member_id),
            session_id=str(session_id),
            plan_grant_id=str(booking.plan_grant_id),
        )
        return booking

    async def _reserve_once(self, member_id: UUID, session_id: UUID) -> BookingData:
        """One attempt at a reservation. Leaves the transaction open."""
        now = self.clock()

        member = await self.session.get(Member, member_id)
        if member is None:
            raise ResourceNotFoundError("member", member_id)

        cls_session = await self.capacity.lock_session(session_id)
        if cls_session is None:
            raise ResourceNotFoundError("session", session_id)
        if cls_session.status != SessionStatus.SCHEDULED:
            raise SessionNotAvailableError(session_id, SessionStatus(cls_session.status).value)

        if await self._has_active_booking(member_id, session_id):
            raise AlreadyBookedError(member_id, session_id)

        decision = self.capacity.try_reserve(cls_session, now)
        if decision == CapacityDecision.CUTOFF_PASSED:
            raise BookingClosedError(
                session_id,
                booking_cutoff(cls_session, self.tz),
                cls_session.booking_cutoff_minutes,
            )
        if decision == CapacityDecision.FULL:
            raise SessionFullError(session_id, cls_session.capacity)

        grant = await self.eligibility.find_eligible_plan(member_id, now, lock=True)
        if grant is None:
            raise NoCreditsAvailableError(member_id)

        self.capacity.reserve(cls_session)
        booking = Booking(
            id=uuid4(),
            member_id=member_id,
            session_id=session_id,
            plan_grant_id=grant.id,
            status=BookingStatus.ACTIVE,
            booking_time=now,
            credit_refunded=False,
        )
        self.session.add(booking)
        await self.session.flush()

        await self.ledger.append(
            grant,
            LedgerEntryType.DEBIT,
            CREDITS_PER_BOOKING,
            booking.id,
            LedgerReferenceType.BOOKING,
            f"Booked {cls_session.name} on {cls_session.session_date.isoformat()} "
            f"at {cls_session.session_time.strftime('%H:%M')}",
        )

        # Verify booking was written
        verified = await self.session.get(Booking, booking.id)
        if verified is None:
            raise WriteVerificationError(f"Booking {booking.id} not found after insert")

        return booking_to_domain(booking)

    async def _has_active_booking(self, member_id: UUID, session_id: UUID) -> bool:
        stmt = (
            select(Booking.id)
            .where(
                Booking.member_id == member_id,
                Booking.session_id == session_id,
                Booking.status == BookingStatus.ACTIVE,
            )
            .limit(1)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none() is not None

    # ========================================================================
    # Cancel
    # ========================================================================

    async def cancel(
        self,
        member_id: UUID,
        booking_id: UUID,
        reason: str | None = None,
        refund_allowed: bool = True,
    ) -> CancellationResult:
        """
        Cancel a member's booking, refunding the credit inside the window.

        A cancellation after the refund window still goes through; the result
        carries refund_denied = CancellationClosed.

        Raises:
            ResourceNotFoundError: Booking doesn't exist or isn't the member's
            NotCancellableError: Booking is not active
            ConflictError: Concurrent modification retries exhausted
        """
        result = await self.run_atomically(
            "cancel",
            lambda: self._cancel_once(member_id, booking_id, reason, refund_allowed),
        )
        metrics.record_cancellation(result.credit_refunded)
        logger.info(
            "booking_cancelled",
            booking_id=str(booking_id),
            member_id=str(member_id),
            credit_refunded=result.credit_refunded,
            refund_denied=result.refund_denied.value if result.refund_denied else None,
        )
        return result

    async def _cancel_once(
        self,
        member_id: UUID,
        booking_id: UUID,
        reason: str | None,
        refund_allowed: bool,
    ) -> CancellationResult:
        """One attempt at a cancellation. Leaves the transaction open."""
        stmt = (
            select(Booking)
            .where(Booking.id == booking_id, Booking.member_id == member_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(stmt)
        booking = result.scalar_one_or_none()
        if booking is None:
            raise ResourceNotFoundError("booking", booking_id)
        if booking.status != BookingStatus.ACTIVE:
            raise NotCancellableError(booking_id, BookingStatus(booking.status).value)

        return await self.release_booking(
            booking, reason or DEFAULT_CANCELLATION_REASON, refund_allowed
        )

    async def release_booking(
        self, booking: Booking, reason: str, refund_allowed: bool
    ) -> CancellationResult:
        """
        Cancel a locked, active booking inside the current transaction.

        Releases the spot unconditionally. The credit goes back to the
        original grant only when refunds are allowed, the cancellation window
        is still open and the grant is still active.
        """
        now = self.clock()

        cls_session = await self.capacity.lock_session(booking.session_id)
        if cls_session is None:
            raise IntegrityFaultError(
                f"Booking {booking.id} references missing session {booking.session_id}"
            )

        refund_denied: ErrorKind | None = None
        grant: PlanGrant | None = None
        if refund_allowed:
            if now < cancellation_deadline(cls_session, self.tz):
                grant = await self._lock_grant(booking.plan_grant_id)
                if grant.status != GrantStatus.ACTIVE:
                    logger.info(
                        "refund_suppressed_grant_inactive",
                        booking_id=str(booking.id),
                        plan_grant_id=str(grant.id),
                        grant_status=GrantStatus(grant.status).value,
                    )
                    grant = None
            else:
                refund_denied = ErrorKind.CANCELLATION_CLOSED

        booking.status = BookingStatus.CANCELLED
        booking.cancelled_at = now
        booking.cancellation_reason = reason
        booking.credit_refunded = grant is not None
        self.capacity.release(cls_session)
        await self.session.flush()

        if grant is not None:
            await self.ledger.append(
                grant,
                LedgerEntryType.CREDIT,
                CREDITS_PER_BOOKING,
                booking.id,
                LedgerReferenceType.CANCELLATION,
                f"Refund for cancelled booking of {cls_session.name} on "
                f"{cls_session.session_date.isoformat()}",
            )

        return CancellationResult(booking=booking_to_domain(booking), refund_denied=refund_denied)

    async def _lock_grant(self, plan_grant_id: UUID) -> PlanGrant:
        stmt = (
            select(PlanGrant)
            .where(PlanGrant.id == plan_grant_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(stmt)
        grant = result.scalar_one_or_none()
        if grant is None:
            raise IntegrityFaultError(f"Plan grant {plan_grant_id} missing")
        return grant

    # ========================================================================
    # Read
    # ========================================================================

    async def get_booking(self, member_id: UUID, booking_id: UUID) -> BookingData:
        """
        Get one of the member's bookings.

        Raises:
            ResourceNotFoundError: Booking doesn't exist or isn't the member's
        """
        stmt = select(Booking).where(Booking.id == booking_id, Booking.member_id == member_id)
        result = await self.session.execute(stmt)
        booking = result.scalar_one_or_none()
        if booking is None:
            raise ResourceNotFoundError("booking", booking_id)
        return booking_to_domain(booking)
