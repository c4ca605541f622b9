"""
API Routes - Member-facing booking endpoints.

NO DICTIONARIES - All requests/responses use Pydantic models.
"""

from collections.abc import Callable
from datetime import UTC, date, datetime
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.dependencies import get_clock, get_member_identity, require_api_key
from app.api.errors import http_error
from app.config import settings
from app.db.session import get_read_db, get_write_db
from app.exceptions import BookingEngineError
from app.models.api import (
    BookingItem,
    BookingListResponse,
    BookingStatusFilter,
    CancelBookingRequest,
    CancelBookingResponse,
    GrantBalanceItem,
    HealthResponse,
    MemberBalanceResponse,
    ReserveSessionRequest,
    ReserveSessionResponse,
    SessionAvailabilityResponse,
    SessionItem,
    SessionListResponse,
    TransactionItem,
    TransactionListResponse,
)
from app.models.domain import BookingData, BookingWithSession, MemberIdentity, SessionData
from app.services.booking import BookingEngine
from app.services.members import MemberService
from app.services.sessions import SessionFilters, SessionService

router = APIRouter()


def session_item(data: SessionData) -> SessionItem:
    """Render a session snapshot."""
    return SessionItem(
        session_id=data.session_id,
        name=data.name,
        session_date=data.session_date,
        session_time=data.session_time,
        duration_minutes=data.duration_minutes,
        capacity=data.capacity,
        spots_taken=data.spots_taken,
        spots_left=data.spots_left,
        booking_cutoff_minutes=data.booking_cutoff_minutes,
        cancellation_cutoff_hours=data.cancellation_cutoff_hours,
        status=data.status,
        can_book=data.can_book,
    )


def booking_item(item: BookingWithSession) -> BookingItem:
    """Render a booking together with its session."""
    booking = item.booking
    return BookingItem(
        booking_id=booking.booking_id,
        session_id=booking.session_id,
        plan_grant_id=booking.plan_grant_id,
        status=booking.status,
        booking_time=booking.booking_time.isoformat(),
        cancelled_at=booking.cancelled_at.isoformat() if booking.cancelled_at else None,
        cancellation_reason=booking.cancellation_reason,
        credit_refunded=booking.credit_refunded,
        session_name=item.session_name,
        session_date=item.session_date,
        session_time=item.session_time,
        duration_minutes=item.duration_minutes,
    )


def _reserve_response(booking: BookingData) -> ReserveSessionResponse:
    return ReserveSessionResponse(
        booking_id=booking.booking_id,
        status=booking.status,
        session_id=booking.session_id,
        plan_grant_id=booking.plan_grant_id,
        booking_time=booking.booking_time.isoformat(),
    )


# ============================================================================
# Bookings
# ============================================================================


@router.post(
    "/v1/bookings",
    response_model=ReserveSessionResponse,
    status_code=status.HTTP_201_CREATED,
)
async def reserve_session(
    request: ReserveSessionRequest,
    db: AsyncSession = Depends(get_write_db),
    member: MemberIdentity = Depends(get_member_identity),
    clock: Callable[[], datetime] = Depends(get_clock),
    api_key: str = Depends(require_api_key),
) -> ReserveSessionResponse:
    """
    Reserve a spot in a session, charging one credit.

    The member record is created on first booking attempt.
    Write operation - requires primary database.
    """
    try:
        member_data = await MemberService(db, clock=clock).get_or_create_member(member)
        booking = await BookingEngine(db, clock=clock).reserve(
            member_data.member_id, request.session_id
        )
    except BookingEngineError as exc:
        raise http_error(exc, "reserve") from exc

    return _reserve_response(booking)


@router.post("/v1/bookings/{booking_id}/cancel", response_model=CancelBookingResponse)
async def cancel_booking(
    booking_id: UUID,
    request: CancelBookingRequest | None = None,
    db: AsyncSession = Depends(get_write_db),
    member: MemberIdentity = Depends(get_member_identity),
    clock: Callable[[], datetime] = Depends(get_clock),
    api_key: str = Depends(require_api_key),
) -> CancelBookingResponse:
    """
    Cancel a booking.

    Inside the cancellation window the credit goes back to the original
    grant. Later cancellations still release the spot but report
    refund_denied.
    """
    reason = request.reason if request else None
    try:
        member_data = await MemberService(db, clock=clock).require_member(member.external_id)
        result = await BookingEngine(db, clock=clock).cancel(
            member_data.member_id, booking_id, reason=reason
        )
    except BookingEngineError as exc:
        raise http_error(exc, "cancel") from exc

    booking = result.booking
    return CancelBookingResponse(
        booking_id=booking.booking_id,
        status=booking.status,
        credit_refunded=booking.credit_refunded,
        refund_denied=result.refund_denied,
        cancelled_at=booking.cancelled_at.isoformat() if booking.cancelled_at else "",
    )


@router.get("/v1/bookings/{booking_id}", response_model=BookingItem)
async def get_booking(
    booking_id: UUID,
    db: AsyncSession = Depends(get_read_db),
    member: MemberIdentity = Depends(get_member_identity),
    clock: Callable[[], datetime] = Depends(get_clock),
    api_key: str = Depends(require_api_key),
) -> BookingItem:
    """Get one of the acting member's bookings."""
    try:
        member_data = await MemberService(db, clock=clock).require_member(member.external_id)
        booking = await BookingEngine(db, clock=clock).get_booking(
            member_data.member_id, booking_id
        )
        session = await SessionService(db, clock=clock).get_session(booking.session_id)
    except BookingEngineError as exc:
        raise http_error(exc, "get_booking") from exc

    return booking_item(
        BookingWithSession(
            booking=booking,
            session_name=session.name,
            session_date=session.session_date,
            session_time=session.session_time,
            duration_minutes=session.duration_minutes,
        )
    )


# ============================================================================
# Sessions
# ============================================================================


@router.get("/v1/sessions", response_model=SessionListResponse)
async def list_sessions(
    on_date: date | None = Query(None, alias="date"),
    date_from: date | None = Query(None),
    date_to: date | None = Query(None),
    include_full: bool = Query(True),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    db: AsyncSession = Depends(get_read_db),
    clock: Callable[[], datetime] = Depends(get_clock),
    api_key: str = Depends(require_api_key),
) -> SessionListResponse:
    """List upcoming scheduled sessions that are still open for booking."""
    filters = SessionFilters(
        on_date=on_date,
        date_from=date_from,
        date_to=date_to,
        include_full=include_full,
        limit=limit,
        offset=offset,
    )
    sessions, total = await SessionService(db, clock=clock).list_available_sessions(filters)
    return SessionListResponse(
        sessions=[session_item(s) for s in sessions],
        limit=limit,
        offset=offset,
        total=total,
    )


@router.get(
    "/v1/sessions/{session_id}/availability", response_model=SessionAvailabilityResponse
)
async def get_session_availability(
    session_id: UUID,
    db: AsyncSession = Depends(get_read_db),
    clock: Callable[[], datetime] = Depends(get_clock),
    api_key: str = Depends(require_api_key),
) -> SessionAvailabilityResponse:
    """Live spots left and whether a booking would currently be accepted."""
    try:
        data = await SessionService(db, clock=clock).get_session(session_id)
    except BookingEngineError as exc:
        raise http_error(exc, "get_availability") from exc

    return SessionAvailabilityResponse(
        session_id=data.session_id,
        available_spots=data.spots_left,
        can_book=data.can_book,
        booking_cutoff=data.booking_cutoff.isoformat(),
        session_datetime=data.session_datetime.isoformat(),
    )


# ============================================================================
# Members
# ============================================================================


@router.get("/v1/members/{external_id}/bookings", response_model=BookingListResponse)
async def list_member_bookings(
    external_id: str,
    status_filter: BookingStatusFilter = Query(BookingStatusFilter.ACTIVE, alias="status"),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    db: AsyncSession = Depends(get_read_db),
    api_key: str = Depends(require_api_key),
) -> BookingListResponse:
    """List a member's bookings with their sessions."""
    items, total = await MemberService(db).list_member_bookings(
        external_id, status_filter=status_filter, limit=limit, offset=offset
    )
    return BookingListResponse(
        bookings=[booking_item(item) for item in items],
        limit=limit,
        offset=offset,
        total=total,
    )


@router.get("/v1/members/{external_id}/balance", response_model=MemberBalanceResponse)
async def get_member_balance(
    external_id: str,
    db: AsyncSession = Depends(get_read_db),
    clock: Callable[[], datetime] = Depends(get_clock),
    api_key: str = Depends(require_api_key),
) -> MemberBalanceResponse:
    """Usable grants with remaining credits and expiry."""
    grants = await MemberService(db, clock=clock).get_member_balance(external_id)
    return MemberBalanceResponse(
        member_external_id=external_id,
        grants=[
            GrantBalanceItem(
                grant_id=grant.grant_id,
                plan_name=grant.plan_name,
                remaining=grant.remaining_credits,
                is_unlimited=grant.is_unlimited,
                status=grant.status,
                expires_at=grant.end_date,
            )
            for grant in grants
        ],
    )


@router.get("/v1/members/{external_id}/transactions", response_model=TransactionListResponse)
async def list_member_transactions(
    external_id: str,
    limit: int = Query(50, ge=1, le=500),
    db: AsyncSession = Depends(get_read_db),
    api_key: str = Depends(require_api_key),
) -> TransactionListResponse:
    """Ledger history across a member's grants, newest first."""
    entries = await MemberService(db).list_member_transactions(external_id, limit=limit)
    return TransactionListResponse(
        transactions=[
            TransactionItem(
                entry_id=entry.entry_id,
                plan_grant_id=entry.plan_grant_id,
                entry_type=entry.entry_type,
                amount=entry.amount,
                balance_before=entry.balance_before,
                balance_after=entry.balance_after,
                reference_id=entry.reference_id,
                reference_type=entry.reference_type,
                description=entry.description,
                created_at=entry.created_at.isoformat(),
            )
            for entry in entries
        ]
    )


# ============================================================================
# Health
# ============================================================================


@router.get("/health", response_model=HealthResponse)
async def health_check(db: AsyncSession = Depends(get_read_db)) -> HealthResponse:
    """
    Health check for load balancer.

    Verifies database connectivity.
    """
    try:
        await db.execute(text("SELECT 1"))

        return HealthResponse(
            status="healthy",
            database="connected",
            timestamp=datetime.now(UTC).isoformat(),
            version=settings.api_version,
        )

    except Exception as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={
                "status": "unhealthy",
                "database": "disconnected",
                "error": str(exc),
                "timestamp": datetime.now(UTC).isoformat(),
            },
        ) from exc
