#!/usr/bin/env python3
"""
Ledger and Capacity Reconciliation

Replays every limited grant's ledger and recounts every session's active
bookings. Divergences are logged and reported through the exit code; nothing
is corrected.

Usage:
    # One pass (for cron)
    python3 scripts/reconcile_ledger.py

    # Single grant
    python3 scripts/reconcile_ledger.py --grant-id 5b1e...

    # Keep running, one pass every 10 minutes
    python3 scripts/reconcile_ledger.py --interval 600
"""

import argparse
import asyncio
import os
import sys
from uuid import UUID

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import structlog

from app.db.session import close_engines, get_read_session_factory
from app.models.domain import Divergence
from app.observability.logging import setup_logging
from app.services.capacity import CapacityTracker
from app.services.ledger import LedgerService

logger = structlog.get_logger()


async def reconcile_once(grant_id: UUID | None = None) -> list[Divergence]:
    """Run one reconciliation pass and return every divergence found."""
    factory = get_read_session_factory()
    async with factory() as session:
        ledger = LedgerService(session)
        if grant_id is not None:
            report = await ledger.reconcile(grant_id)
            logger.info(
                "grant_reconciled",
                plan_grant_id=str(grant_id),
                entries_checked=report.entries_checked,
                projected_remaining=report.projected_remaining,
                cached_remaining=report.cached_remaining,
            )
            return list(report.divergences)

        reports = await ledger.reconcile_all()
        sessions_checked, capacity_divergences = await CapacityTracker(session).reconcile_all()

    divergences = [d for report in reports for d in report.divergences]
    divergences.extend(capacity_divergences)
    logger.info(
        "reconciliation_pass_complete",
        grants_checked=len(reports),
        sessions_checked=sessions_checked,
        divergences=len(divergences),
    )
    return divergences


async def run(grant_id: UUID | None, interval: int | None) -> int:
    """Run one pass, or loop forever when an interval is given."""
    try:
        if interval is None:
            divergences = await reconcile_once(grant_id)
            return 1 if divergences else 0

        logger.info("reconciliation_loop_started", interval_seconds=interval)
        while True:
            try:
                await reconcile_once(grant_id)
            except Exception as e:
                logger.error("reconciliation_error", error=str(e), exc_info=True)
            await asyncio.sleep(interval)
    finally:
        await close_engines()


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Reconcile plan grant ledgers and session capacity",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--grant-id", type=UUID, help="Reconcile a single grant")
    parser.add_argument(
        "--interval", type=int, help="Seconds between passes (default: run once and exit)"
    )
    args = parser.parse_args()

    setup_logging()

    try:
        exit_code = asyncio.run(run(args.grant_id, args.interval))
    except KeyboardInterrupt:
        logger.info("reconciliation_stopped")
        exit_code = 0
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
