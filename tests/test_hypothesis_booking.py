"""
Hypothesis Property-Based Tests for booking policy.

Tests grant selection, ledger arithmetic and policy instants without a
database.
"""

from datetime import UTC, date, datetime, time, timedelta
from uuid import uuid4

from hypothesis import assume, given, settings
from hypothesis import strategies as st

from app.db.models import ClassSession
from app.models.api import GrantStatus, LedgerEntryType, LedgerReferenceType, SessionStatus
from app.models.domain import CapacityDecision, GrantData
from app.services.booking import backoff_delay
from app.services.capacity import booking_cutoff, cancellation_deadline, evaluate_reservation
from app.services.eligibility import is_eligible, select_grant, selection_key
from app.services.ledger import signed_effect

# ============================================================================
# Hypothesis Strategies
# ============================================================================

TODAY = date(2026, 3, 2)

day_offsets = st.integers(min_value=-30, max_value=90)
credit_counts = st.integers(min_value=0, max_value=50)
grant_statuses = st.sampled_from(list(GrantStatus))
entry_types = st.sampled_from(list(LedgerEntryType))
reference_types = st.sampled_from(list(LedgerReferenceType))
amounts = st.integers(min_value=0, max_value=1_000)


@st.composite
def grants(draw):
    """Generate GrantData with windows around TODAY."""
    start = TODAY + timedelta(days=draw(st.integers(min_value=-60, max_value=5)))
    end = start + timedelta(days=draw(st.integers(min_value=0, max_value=120)))
    credits = draw(credit_counts)
    return GrantData(
        grant_id=uuid4(),
        member_id=uuid4(),
        plan_name="class-pack",
        initial_credits=credits,
        remaining_credits=credits,
        is_unlimited=draw(st.booleans()),
        start_date=start,
        end_date=end,
        status=draw(grant_statuses),
        created_at=datetime(2026, 1, 1, tzinfo=UTC)
        + timedelta(minutes=draw(st.integers(min_value=0, max_value=100_000))),
    )


@st.composite
def class_sessions(draw):
    """Generate ClassSession rows with arbitrary policy windows."""
    capacity = draw(st.integers(min_value=1, max_value=40))
    return ClassSession(
        name="Flow",
        session_date=TODAY + timedelta(days=draw(st.integers(min_value=0, max_value=14))),
        session_time=time(draw(st.integers(min_value=6, max_value=21)), 0),
        duration_minutes=60,
        capacity=capacity,
        spots_taken=draw(st.integers(min_value=0, max_value=capacity)),
        booking_cutoff_minutes=draw(st.integers(min_value=0, max_value=120)),
        cancellation_cutoff_hours=draw(st.integers(min_value=0, max_value=48)),
        status=draw(st.sampled_from(list(SessionStatus))),
    )


# ============================================================================
# Grant Selection Properties
# ============================================================================


class TestSelectGrantProperties:
    """Properties of the soonest-expiring-first policy."""

    @given(candidates=st.lists(grants(), max_size=8))
    @settings(max_examples=200)
    def test_choice_is_eligible(self, candidates):
        """Whatever is chosen can actually pay."""
        chosen = select_grant(candidates, TODAY)
        if chosen is not None:
            assert is_eligible(chosen, TODAY)

    @given(candidates=st.lists(grants(), max_size=8))
    def test_none_only_when_nothing_eligible(self, candidates):
        chosen = select_grant(candidates, TODAY)
        assert (chosen is None) == (not any(is_eligible(g, TODAY) for g in candidates))

    @given(candidates=st.lists(grants(), min_size=1, max_size=8))
    def test_no_eligible_grant_expires_sooner(self, candidates):
        chosen = select_grant(candidates, TODAY)
        assume(chosen is not None)
        for grant in candidates:
            if is_eligible(grant, TODAY):
                assert selection_key(chosen) <= selection_key(grant)

    @given(candidates=st.lists(grants(), max_size=8), seed=st.randoms())
    def test_input_order_does_not_matter(self, candidates, seed):
        shuffled = list(candidates)
        seed.shuffle(shuffled)
        assert select_grant(candidates, TODAY) is select_grant(shuffled, TODAY)


# ============================================================================
# Ledger Arithmetic Properties
# ============================================================================


class TestSignedEffectProperties:
    """Properties of the ledger's signed effect."""

    @given(entry_type=entry_types, reference_type=reference_types, amount=amounts)
    def test_magnitude_is_amount(self, entry_type, reference_type, amount):
        assert abs(signed_effect(entry_type, reference_type, amount)) == amount

    @given(amount=amounts)
    def test_debit_and_refund_cancel_out(self, amount):
        debit = signed_effect(LedgerEntryType.DEBIT, LedgerReferenceType.BOOKING, amount)
        refund = signed_effect(LedgerEntryType.CREDIT, LedgerReferenceType.CANCELLATION, amount)
        assert debit + refund == 0

    @given(remaining=credit_counts)
    def test_reversal_of_remaining_zeroes_balance(self, remaining):
        effect = signed_effect(
            LedgerEntryType.CREDIT, LedgerReferenceType.GRANT_REVERSAL, remaining
        )
        assert remaining + effect == 0


# ============================================================================
# Policy Instant Properties
# ============================================================================


class TestPolicyProperties:
    """Properties of cutoffs and capacity decisions."""

    @given(cls_session=class_sessions(), minutes=st.integers(min_value=-3000, max_value=3000))
    def test_closed_exactly_from_cutoff(self, cls_session, minutes):
        assume(cls_session.status == SessionStatus.SCHEDULED)
        cutoff = booking_cutoff(cls_session, UTC)
        now = cutoff + timedelta(minutes=minutes)

        decision = evaluate_reservation(cls_session, now, UTC)

        assert (decision == CapacityDecision.CUTOFF_PASSED) == (now >= cutoff)

    @given(cls_session=class_sessions(), minutes=st.integers(min_value=-3000, max_value=0))
    def test_open_session_with_spots_is_bookable(self, cls_session, minutes):
        assume(cls_session.status == SessionStatus.SCHEDULED)
        assume(cls_session.spots_taken < cls_session.capacity)
        now = booking_cutoff(cls_session, UTC) + timedelta(minutes=minutes, seconds=-1)

        assert evaluate_reservation(cls_session, now, UTC) == CapacityDecision.OK

    @given(cls_session=class_sessions())
    def test_unscheduled_never_bookable(self, cls_session):
        assume(cls_session.status != SessionStatus.SCHEDULED)
        now = booking_cutoff(cls_session, UTC) - timedelta(days=1)

        assert evaluate_reservation(cls_session, now, UTC) == CapacityDecision.NOT_SCHEDULED

    @given(cls_session=class_sessions())
    def test_deadlines_precede_start(self, cls_session):
        start = booking_cutoff(cls_session, UTC) + timedelta(
            minutes=cls_session.booking_cutoff_minutes
        )
        assert booking_cutoff(cls_session, UTC) <= start
        assert cancellation_deadline(cls_session, UTC) <= start


# ============================================================================
# Retry Backoff Properties
# ============================================================================


class TestBackoffProperties:
    """Properties of backoff_delay."""

    @given(
        attempt=st.integers(min_value=1, max_value=30),
        base=st.floats(min_value=0.001, max_value=1.0),
        cap=st.floats(min_value=0.001, max_value=5.0),
        jitter=st.floats(min_value=0.0, max_value=1.0),
    )
    def test_bounded_by_cap(self, attempt, base, cap, jitter):
        delay = backoff_delay(attempt, base, cap, rand=lambda: jitter)
        assert 0 <= delay <= cap
