"""
Internal Routes - Purchase facts, scheduling and integrity checks.

Called by the purchase pipeline and the scheduler, never by members.
"""

from collections.abc import Callable
from datetime import datetime
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.dependencies import get_clock, require_api_key
from app.api.errors import http_error
from app.api.routes import session_item
from app.config import settings
from app.db.session import get_read_db, get_write_db
from app.exceptions import BookingEngineError
from app.models.api import (
    CreateGrantRequest,
    CreateSessionRequest,
    GrantResponse,
    GrantReversalRequest,
    GrantReversalResponse,
    ReconciliationItem,
    ReconciliationResponse,
    SessionItem,
)
from app.models.domain import GrantIntent, MemberIdentity, SessionIntent
from app.services.booking import BookingEngine
from app.services.capacity import CapacityTracker
from app.services.cascade import CascadeHandler
from app.services.ledger import LedgerService
from app.services.members import MemberService
from app.services.sessions import SessionService

router = APIRouter(prefix="/v1/internal")


@router.post("/grants", response_model=GrantResponse, status_code=status.HTTP_201_CREATED)
async def create_grant(
    request: CreateGrantRequest,
    db: AsyncSession = Depends(get_write_db),
    clock: Callable[[], datetime] = Depends(get_clock),
    api_key: str = Depends(require_api_key),
) -> GrantResponse:
    """
    Record a confirmed purchase as a plan grant.

    Idempotent on external_reference: a replayed purchase returns the
    existing grant.
    """
    try:
        intent = GrantIntent(
            identity=MemberIdentity(
                external_id=request.member_external_id,
                email=request.member_email,
                display_name=request.member_display_name,
            ),
            credits=request.credits,
            duration_days=request.duration_days,
            is_unlimited=request.is_unlimited,
            plan_name=request.plan_name,
            external_reference=request.external_reference,
        )
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc

    try:
        grant = await MemberService(db, clock=clock).create_grant(intent)
    except BookingEngineError as exc:
        raise http_error(exc, "create_grant") from exc

    return GrantResponse(
        grant_id=grant.grant_id,
        member_id=grant.member_id,
        initial_credits=grant.initial_credits,
        remaining_credits=grant.remaining_credits,
        is_unlimited=grant.is_unlimited,
        start_date=grant.start_date,
        end_date=grant.end_date,
        status=grant.status,
    )


@router.post("/grants/{grant_id}/reversal", response_model=GrantReversalResponse)
async def reverse_grant(
    grant_id: UUID,
    request: GrantReversalRequest | None = None,
    db: AsyncSession = Depends(get_write_db),
    clock: Callable[[], datetime] = Depends(get_clock),
    api_key: str = Depends(require_api_key),
) -> GrantReversalResponse:
    """
    Apply an upstream refund or chargeback to a grant.

    Voids the grant, drains its credits and cancels the bookings it funds.
    Safe to replay.
    """
    reason = request.reason if request else GrantReversalRequest().reason
    try:
        handler = CascadeHandler(BookingEngine(db, clock=clock))
        result = await handler.reverse_grant(grant_id, reason)
    except BookingEngineError as exc:
        raise http_error(exc, "reverse_grant") from exc

    return GrantReversalResponse(
        grant_id=result.grant_id,
        status=result.status,
        credits_voided=result.credits_voided,
        cancelled_booking_ids=list(result.cancelled_booking_ids),
        already_reversed=result.already_reversed,
    )


@router.post("/sessions", response_model=SessionItem, status_code=status.HTTP_201_CREATED)
async def create_session(
    request: CreateSessionRequest,
    db: AsyncSession = Depends(get_write_db),
    clock: Callable[[], datetime] = Depends(get_clock),
    api_key: str = Depends(require_api_key),
) -> SessionItem:
    """Schedule a session. Cutoffs default to the studio policy."""
    intent = SessionIntent(
        name=request.name,
        session_date=request.session_date,
        session_time=request.session_time,
        capacity=request.capacity,
        duration_minutes=request.duration_minutes,
        booking_cutoff_minutes=(
            request.booking_cutoff_minutes
            if request.booking_cutoff_minutes is not None
            else settings.default_booking_cutoff_minutes
        ),
        cancellation_cutoff_hours=(
            request.cancellation_cutoff_hours
            if request.cancellation_cutoff_hours is not None
            else settings.default_cancellation_cutoff_hours
        ),
        notes=request.notes,
    )
    try:
        data = await SessionService(db, clock=clock).create_session(intent)
    except BookingEngineError as exc:
        raise http_error(exc, "create_session") from exc

    return session_item(data)


@router.get("/reconciliation", response_model=ReconciliationResponse)
async def reconcile(
    db: AsyncSession = Depends(get_read_db),
    api_key: str = Depends(require_api_key),
) -> ReconciliationResponse:
    """
    Replay every limited grant's ledger and recount every session.

    Reports divergences; never corrects them.
    """
    reports = await LedgerService(db).reconcile_all()
    sessions_checked, capacity_divergences = await CapacityTracker(db).reconcile_all()

    divergences = [d for report in reports for d in report.divergences]
    divergences.extend(capacity_divergences)

    return ReconciliationResponse(
        grants_checked=len(reports),
        sessions_checked=sessions_checked,
        divergences=[
            ReconciliationItem(
                subject_id=d.subject_id,
                subject_type=d.subject_type,
                expected=d.expected,
                actual=d.actual,
                detail=d.detail,
            )
            for d in divergences
        ],
    )
