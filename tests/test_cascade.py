"""
Tests for CascadeHandler grant reversals.
"""

from datetime import timedelta
from uuid import uuid4

import pytest
from sqlalchemy import select

from app.db.models import Booking, LedgerEntry
from app.exceptions import NoCreditsAvailableError, ResourceNotFoundError
from app.models.api import BookingStatus, GrantStatus, LedgerEntryType, LedgerReferenceType
from app.services.cascade import CASCADE_CANCELLATION_REASON, CascadeHandler


@pytest.fixture
def cascade(booking_engine) -> CascadeHandler:
    return CascadeHandler(booking_engine)


async def entries_for(db, plan_grant_id) -> list[LedgerEntry]:
    result = await db.execute(
        select(LedgerEntry)
        .where(LedgerEntry.plan_grant_id == plan_grant_id)
        .order_by(LedgerEntry.sequence)
    )
    return list(result.scalars().all())


class TestReverseGrant:
    """Tests for CascadeHandler.reverse_grant."""

    async def test_voids_credits_and_cancels_booking_without_refund(
        self, db, factory, booking_engine, cascade
    ):
        """Three credits left and one active booking."""
        member = await factory.member()
        grant = await factory.grant(member, credits=4)
        cls_session = await factory.class_session(capacity=5)
        booking = await booking_engine.reserve(member.id, cls_session.id)
        await db.refresh(cls_session)
        assert cls_session.spots_taken == 1

        result = await cascade.reverse_grant(grant.id, "chargeback")

        assert result.status == GrantStatus.CANCELLED
        assert result.credits_voided == 3
        assert result.cancelled_booking_ids == (booking.booking_id,)
        assert result.already_reversed is False

        await db.refresh(grant)
        await db.refresh(cls_session)
        assert grant.status == GrantStatus.CANCELLED
        assert grant.remaining_credits == 0
        assert cls_session.spots_taken == 0

        stored = await db.get(Booking, booking.booking_id, populate_existing=True)
        assert stored.status == BookingStatus.CANCELLED
        assert stored.credit_refunded is False
        assert stored.cancellation_reason == CASCADE_CANCELLATION_REASON

        entries = await entries_for(db, grant.id)
        assert [(e.entry_type, e.reference_type, e.amount) for e in entries] == [
            (LedgerEntryType.DEBIT, LedgerReferenceType.BOOKING, 1),
            (LedgerEntryType.CREDIT, LedgerReferenceType.GRANT_REVERSAL, 3),
        ]
        assert entries[-1].balance_before == 3
        assert entries[-1].balance_after == 0
        assert entries[-1].reference_id == grant.id
        assert "chargeback" in entries[-1].description

        report = await booking_engine.ledger.assert_consistent(grant.id)
        assert report.projected_remaining == 0

    async def test_replay_is_idempotent(self, db, factory, cascade):
        member = await factory.member()
        grant = await factory.grant(member, credits=2)
        await cascade.reverse_grant(grant.id, "refund")

        result = await cascade.reverse_grant(grant.id, "refund")

        assert result.already_reversed is True
        assert result.credits_voided == 0
        assert result.cancelled_booking_ids == ()
        assert len(await entries_for(db, grant.id)) == 1

    async def test_exhausted_grant_adds_no_entry(self, db, factory, booking_engine, cascade):
        member = await factory.member()
        grant = await factory.grant(member, credits=1)
        cls_session = await factory.class_session()
        await booking_engine.reserve(member.id, cls_session.id)

        result = await cascade.reverse_grant(grant.id, "refund")

        assert result.credits_voided == 0
        assert len(result.cancelled_booking_ids) == 1
        entries = await entries_for(db, grant.id)
        assert [e.entry_type for e in entries] == [LedgerEntryType.DEBIT]

    async def test_unlimited_grant(self, db, factory, booking_engine, cascade):
        member = await factory.member()
        grant = await factory.grant(member, credits=0, is_unlimited=True)
        cls_session = await factory.class_session()
        await booking_engine.reserve(member.id, cls_session.id)

        result = await cascade.reverse_grant(grant.id, "refund")

        assert result.credits_voided == 0
        assert len(result.cancelled_booking_ids) == 1
        entries = await entries_for(db, grant.id)
        assert entries[-1].reference_type == LedgerReferenceType.GRANT_REVERSAL
        assert entries[-1].amount == 0

    async def test_leaves_other_grants_alone(self, db, factory, booking_engine, cascade, clock):
        member = await factory.member()
        reversed_grant = await factory.grant(
            member, credits=3, end_date=clock.now.date() + timedelta(days=5)
        )
        other_grant = await factory.grant(member, credits=3)
        first = await factory.class_session(name="First")
        second = await factory.class_session(
            name="Second", starts_at=clock.now + timedelta(days=3)
        )
        charged_to_reversed = await booking_engine.reserve(member.id, first.id)
        await cascade.reverse_grant(reversed_grant.id, "refund")
        charged_to_other = await booking_engine.reserve(member.id, second.id)

        assert charged_to_reversed.plan_grant_id == reversed_grant.id
        assert charged_to_other.plan_grant_id == other_grant.id
        await db.refresh(other_grant)
        assert other_grant.status == GrantStatus.ACTIVE
        assert other_grant.remaining_credits == 2

    async def test_cancelled_grant_cannot_be_charged(self, factory, booking_engine, cascade):
        member = await factory.member()
        grant = await factory.grant(member, credits=5)
        cls_session = await factory.class_session()
        await cascade.reverse_grant(grant.id, "refund")

        with pytest.raises(NoCreditsAvailableError):
            await booking_engine.reserve(member.id, cls_session.id)

    async def test_unknown_grant(self, cascade):
        with pytest.raises(ResourceNotFoundError):
            await cascade.reverse_grant(uuid4(), "refund")
