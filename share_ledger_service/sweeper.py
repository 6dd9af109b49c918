"""
Background reconciliation.

Run with ``python -m share_ledger_service.sweeper``; ``--once`` performs a
single pass and exits.
"""
import asyncio
import logging
import sys
import time
from dataclasses import dataclass, field
from typing import Dict, List

import schedule
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from common.error_handling import BusinessLogicError, ServiceError
from common.settings import settings
from share_ledger_service.domain import Rail, SettlementSource, ShareClass, TxStatus
from share_ledger_service.engine import ReconciliationEngine
from share_ledger_service.journal_store import JournalStore
from share_ledger_service.ledger_store import LedgerStore
from share_ledger_service.models import LedgerEntry
from share_ledger_service.pricing import PricingCatalog

logger = logging.getLogger(__name__)


@dataclass
class SweepReport:
    polled: int = 0
    settled: Dict[str, str] = field(default_factory=dict)
    poll_errors: Dict[str, str] = field(default_factory=dict)
    repaired_users: Dict[str, int] = field(default_factory=dict)
    catalog_mismatches: List[dict] = field(default_factory=list)


class ReconciliationSweeper:
    def __init__(self, engine: ReconciliationEngine):
        self.engine = engine
        self.session_factory = engine.session_factory

    def _pollable_rails(self) -> List[Rail]:
        return [rail for rail, adapter in self.engine.rails.items() if adapter.supports_remote_status]

    async def poll_pending(self, report: SweepReport) -> None:
        for rail in self._pollable_rails():
            with self.session_factory() as session:
                references = [t.reference for t in JournalStore(session).list_pending_by_rail(rail, include_held=False)]
            for reference in references:
                report.polled += 1
                try:
                    result = await self.engine.settle_by_reference(reference, SettlementSource.SCHEDULED_POLL)
                except (BusinessLogicError, ServiceError, SQLAlchemyError) as e:
                    logger.error(f"Scheduled poll of {reference} failed: {e}")
                    report.poll_errors[reference] = str(e)
                    continue
                if result.status != TxStatus.PENDING and not result.already_terminal:
                    report.settled[reference] = result.status.value

    async def repair_drift(self, report: SweepReport) -> None:
        with self.session_factory() as session:
            users = set(JournalStore(session).user_ids())
            users.update(session.execute(select(LedgerEntry.user_id).distinct()).scalars())
        for user_id in sorted(users):
            async with self.engine.lanes.hold(user_id):
                with self.session_factory() as session, session.begin():
                    touched = LedgerStore(session).rebuild_from_journal(user_id)
            if touched:
                report.repaired_users[user_id] = touched

    def check_catalog(self, report: SweepReport) -> None:
        with self.session_factory() as session:
            catalog = PricingCatalog(session).get_current()
            journal = JournalStore(session)
            tier_sums = journal.completed_tier_sums()
            co_founder = journal.completed_shares(ShareClass.CO_FOUNDER)

        for tier in catalog.tiers:
            if tier.sold != tier_sums.get(tier.tier, 0):
                report.catalog_mismatches.append(
                    {"counter": f"tier{tier.tier}", "catalog": tier.sold, "journal": tier_sums.get(tier.tier, 0)})
        if catalog.co_founder_sold != co_founder:
            report.catalog_mismatches.append(
                {"counter": "co_founder", "catalog": catalog.co_founder_sold, "journal": co_founder})
        for mismatch in report.catalog_mismatches:
            logger.error(f"Catalog counter disagrees with journal: {mismatch}")

    async def run_once(self) -> SweepReport:
        report = SweepReport()
        await self.poll_pending(report)
        await self.repair_drift(report)
        self.check_catalog(report)
        logger.info(f"Sweep finished: polled={report.polled} settled={len(report.settled)} "
                    f"repaired={len(report.repaired_users)} mismatches={len(report.catalog_mismatches)}")
        return report


def schedule_sweeps(sweeper: ReconciliationSweeper, interval_minutes: int = None):
    interval = interval_minutes or settings.sweeper_interval_minutes
    schedule.every(interval).minutes.do(lambda: asyncio.run(sweeper.run_once()))
    logger.info(f"Reconciliation sweep scheduled every {interval} minutes")


if __name__ == "__main__":
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    from share_ledger_service.runtime import build_runtime

    sweeper = ReconciliationSweeper(build_runtime().engine)
    if len(sys.argv) > 1 and sys.argv[1] == "--once":
        asyncio.run(sweeper.run_once())
    else:
        schedule_sweeps(sweeper)
        logger.info("Sweeper started. Press Ctrl+C to stop.")
        try:
            while True:
                schedule.run_pending()
                time.sleep(10)
        except KeyboardInterrupt:
            logger.info("Sweeper stopped.")
