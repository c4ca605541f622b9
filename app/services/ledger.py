"""
Ledger Service - Append-only credit log per plan grant.

The ledger is the source of truth for a grant's balance. The cached
PlanGrant.remaining_credits is only ever written here, in the same
transaction as the entry that explains the change.
"""

from collections.abc import Sequence
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from app.db.models import LedgerEntry, PlanGrant
from app.exceptions import IntegrityFaultError, ResourceNotFoundError, WriteVerificationError
from app.models.api import LedgerEntryType, LedgerReferenceType
from app.models.domain import Divergence, LedgerEntryData, ReconciliationReport
from app.observability.metrics import metrics

logger = get_logger(__name__)


def signed_effect(
    entry_type: LedgerEntryType, reference_type: LedgerReferenceType, amount: int
) -> int:
    """
    Effect of an entry on the grant balance.

    A grant-reversal credit goes back to the purchaser, so it drains the grant.
    """
    if entry_type == LedgerEntryType.DEBIT:
        return -amount
    if reference_type == LedgerReferenceType.GRANT_REVERSAL:
        return -amount
    return amount


def entry_to_domain(entry: LedgerEntry) -> LedgerEntryData:
    """Convert ORM ledger entry to domain model."""
    return LedgerEntryData(
        entry_id=entry.id,
        plan_grant_id=entry.plan_grant_id,
        entry_type=LedgerEntryType(entry.entry_type),
        amount=entry.amount,
        balance_before=entry.balance_before,
        balance_after=entry.balance_after,
        reference_id=entry.reference_id,
        reference_type=LedgerReferenceType(entry.reference_type),
        description=entry.description,
        sequence=entry.sequence,
        created_at=entry.created_at,
    )


class LedgerService:
    """
    Ledger with write verification.

    append() must run inside the caller's transaction, against a grant row
    the caller has locked. It never commits.
    """

    def __init__(self, session: AsyncSession) -> None:
        """Initialize ledger with database session."""
        self.session = session

    async def append(
        self,
        grant: PlanGrant,
        entry_type: LedgerEntryType,
        amount: int,
        reference_id: UUID,
        reference_type: LedgerReferenceType,
        description: str,
    ) -> LedgerEntry:
        """
        Append an entry and move the cached balance with it.

        Unlimited grants record a symbolic amount of 0 and keep their balance.

        Raises:
            IntegrityFaultError: Entry would drive a limited balance negative
        """
        if amount < 0:
            raise IntegrityFaultError(f"Ledger amount must not be negative: {amount}")

        balance_before = grant.remaining_credits
        if grant.is_unlimited:
            recorded_amount = 0
            balance_after = balance_before
        else:
            recorded_amount = amount
            balance_after = balance_before + signed_effect(entry_type, reference_type, amount)
            if balance_after < 0:
                raise IntegrityFaultError(
                    f"Grant {grant.id} balance would go negative: "
                    f"{balance_before} -> {balance_after}"
                )

        # Bumping the sequence always dirties the grant row, so every append
        # goes through the grant's version check.
        sequence = grant.ledger_sequence + 1
        grant.ledger_sequence = sequence
        grant.remaining_credits = balance_after

        entry = LedgerEntry(
            plan_grant_id=grant.id,
            entry_type=entry_type,
            amount=recorded_amount,
            balance_before=balance_before,
            balance_after=balance_after,
            reference_id=reference_id,
            reference_type=reference_type,
            description=description,
            sequence=sequence,
        )
        self.session.add(entry)
        await self.session.flush()

        # Verify entry was written
        verified = await self.session.get(LedgerEntry, entry.id)
        if verified is None:
            raise WriteVerificationError(f"Ledger entry {entry.id} not found after insert")

        logger.info(
            "ledger_entry_appended",
            plan_grant_id=str(grant.id),
            entry_type=entry_type.value,
            amount=recorded_amount,
            balance_before=balance_before,
            balance_after=balance_after,
            reference_type=reference_type.value,
            reference_id=str(reference_id),
        )
        return entry

    async def list_entries(
        self, plan_grant_ids: Sequence[UUID], limit: int = 50
    ) -> list[LedgerEntryData]:
        """List entries for the given grants, newest first."""
        if not plan_grant_ids:
            return []
        stmt = (
            select(LedgerEntry)
            .where(LedgerEntry.plan_grant_id.in_(list(plan_grant_ids)))
            .order_by(LedgerEntry.created_at.desc(), LedgerEntry.sequence.desc())
            .limit(limit)
        )
        result = await self.session.execute(stmt)
        return [entry_to_domain(entry) for entry in result.scalars().all()]

    async def reconcile(self, plan_grant_id: UUID) -> ReconciliationReport:
        """
        Replay a grant's ledger from creation and compare with the cached balance.

        Checks that sequences are gapless, that each entry starts where the
        previous one ended, and that the projection equals remaining_credits.
        Divergences are reported, never corrected.

        Raises:
            ResourceNotFoundError: Grant doesn't exist
        """
        grant = await self.session.get(PlanGrant, plan_grant_id, populate_existing=True)
        if grant is None:
            raise ResourceNotFoundError("plan_grant", plan_grant_id)

        stmt = (
            select(LedgerEntry)
            .where(LedgerEntry.plan_grant_id == plan_grant_id)
            .order_by(LedgerEntry.sequence)
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(stmt)
        entries = result.scalars().all()

        divergences: list[Divergence] = []
        projected = grant.initial_credits

        for position, entry in enumerate(entries, start=1):
            if entry.sequence != position:
                divergences.append(
                    Divergence(
                        subject_id=grant.id,
                        subject_type="plan_grant",
                        expected=position,
                        actual=entry.sequence,
                        detail=f"ledger sequence gap at entry {entry.id}",
                    )
                )
            if entry.balance_before != projected:
                divergences.append(
                    Divergence(
                        subject_id=grant.id,
                        subject_type="plan_grant",
                        expected=projected,
                        actual=entry.balance_before,
                        detail=f"balance_before breaks the chain at entry {entry.id}",
                    )
                )
            projected += signed_effect(
                LedgerEntryType(entry.entry_type),
                LedgerReferenceType(entry.reference_type),
                entry.amount,
            )
            if entry.balance_after != projected:
                divergences.append(
                    Divergence(
                        subject_id=grant.id,
                        subject_type="plan_grant",
                        expected=projected,
                        actual=entry.balance_after,
                        detail=f"balance_after disagrees with amount at entry {entry.id}",
                    )
                )

        if projected != grant.remaining_credits:
            divergences.append(
                Divergence(
                    subject_id=grant.id,
                    subject_type="plan_grant",
                    expected=projected,
                    actual=grant.remaining_credits,
                    detail="cached remaining_credits differs from ledger projection",
                )
            )

        if grant.ledger_sequence != len(entries):
            divergences.append(
                Divergence(
                    subject_id=grant.id,
                    subject_type="plan_grant",
                    expected=len(entries),
                    actual=grant.ledger_sequence,
                    detail="ledger_sequence differs from entry count",
                )
            )

        for divergence in divergences:
            metrics.record_divergence(divergence.subject_type)
            logger.error(
                "ledger_divergence_detected",
                plan_grant_id=str(grant.id),
                expected=divergence.expected,
                actual=divergence.actual,
                detail=divergence.detail,
            )

        return ReconciliationReport(
            plan_grant_id=grant.id,
            initial_credits=grant.initial_credits,
            cached_remaining=grant.remaining_credits,
            projected_remaining=projected,
            entries_checked=len(entries),
            divergences=tuple(divergences),
        )

    async def assert_consistent(self, plan_grant_id: UUID) -> ReconciliationReport:
        """
        Reconcile and fail loudly on divergence.

        Raises:
            IntegrityFaultError: Ledger and cached balance disagree
        """
        report = await self.reconcile(plan_grant_id)
        if not report.is_consistent:
            raise IntegrityFaultError(
                f"Grant {plan_grant_id} ledger diverges: "
                + "; ".join(d.detail for d in report.divergences)
            )
        return report

    async def reconcile_all(self) -> list[ReconciliationReport]:
        """Reconcile every limited grant. Intended for the background job, not the hot path."""
        stmt = (
            select(PlanGrant.id)
            .where(PlanGrant.is_unlimited.is_(False))
            .order_by(PlanGrant.created_at)
        )
        result = await self.session.execute(stmt)
        grant_ids = list(result.scalars().all())
        reports = []
        for grant_id in grant_ids:
            reports.append(await self.reconcile(grant_id))
        logger.info(
            "ledger_reconciliation_completed",
            grants_checked=len(reports),
            inconsistent=sum(1 for r in reports if not r.is_consistent),
        )
        return reports
