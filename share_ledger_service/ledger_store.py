"""
Per-user share ledger.

Owned totals are recomputed from the completed entries on every mutation;
nothing increments them in place.
"""
import logging
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

from sqlalchemy import delete, func, select, update
from sqlalchemy.orm import Session

from share_ledger_service.domain import ShareClass, TxStatus, utcnow
from share_ledger_service.models import JournalTransaction, LedgerEntry, UserShareLedger

logger = logging.getLogger(__name__)


@dataclass
class UserLedger:
    user_id: str
    owned_regular: int = 0
    owned_co_founder: int = 0
    entries: List[LedgerEntry] = field(default_factory=list)


class LedgerStore:
    def __init__(self, session: Session):
        self.session = session

    def append_entry(self, user_id: str, entry: LedgerEntry) -> LedgerEntry:
        entry.user_id = user_id
        self.session.add(entry)
        self.session.flush()
        self.recompute_totals(user_id)
        return entry

    def update_entry_status(self, user_id: str, reference: str, new_status: TxStatus,
                            note: Optional[str] = None) -> bool:
        values = {"status": new_status.value}
        if note is not None:
            values["note"] = note
        result = self.session.execute(
            update(LedgerEntry)
            .where(LedgerEntry.user_id == user_id, LedgerEntry.reference == reference)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            logger.warning(f"No ledger entry {reference} for user {user_id}")
            return False
        self.recompute_totals(user_id)
        return True

    def update_entry_breakdown(self, reference: str, tier1: int, tier2: int, tier3: int) -> None:
        self.session.execute(
            update(LedgerEntry).where(LedgerEntry.reference == reference)
            .values(tier1=tier1, tier2=tier2, tier3=tier3)
            .execution_options(synchronize_session=False)
        )

    def get_user(self, user_id: str) -> UserLedger:
        row = self.session.get(UserShareLedger, user_id, populate_existing=True)
        entries = self.session.execute(
            select(LedgerEntry).where(LedgerEntry.user_id == user_id)
            .order_by(LedgerEntry.created_at, LedgerEntry.id)
            .execution_options(populate_existing=True)
        ).scalars().all()
        return UserLedger(
            user_id=user_id,
            owned_regular=row.owned_regular if row else 0,
            owned_co_founder=row.owned_co_founder if row else 0,
            entries=list(entries),
        )

    def find_by_reference(self, reference: str) -> Optional[LedgerEntry]:
        return self.session.execute(
            select(LedgerEntry).where(LedgerEntry.reference == reference)
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()

    def remove_entry(self, user_id: str, reference: str) -> bool:
        result = self.session.execute(
            delete(LedgerEntry).where(LedgerEntry.user_id == user_id, LedgerEntry.reference == reference)
            .execution_options(synchronize_session=False)
        )
        self.recompute_totals(user_id)
        return result.rowcount > 0

    def recompute_totals(self, user_id: str) -> Tuple[int, int]:
        sums = dict(self.session.execute(
            select(LedgerEntry.share_class, func.coalesce(func.sum(LedgerEntry.shares), 0))
            .where(LedgerEntry.user_id == user_id, LedgerEntry.status == TxStatus.COMPLETED.value)
            .group_by(LedgerEntry.share_class)
        ).all())
        regular = int(sums.get(ShareClass.REGULAR.value, 0))
        co_founder = int(sums.get(ShareClass.CO_FOUNDER.value, 0))

        row = self.session.get(UserShareLedger, user_id)
        if row is None:
            self.session.add(UserShareLedger(user_id=user_id, owned_regular=regular, owned_co_founder=co_founder))
        else:
            row.owned_regular = regular
            row.owned_co_founder = co_founder
            row.updated_at = utcnow()
        self.session.flush()
        return regular, co_founder

    def rebuild_from_journal(self, user_id: str) -> int:
        """Make the user's ledger mirror the journal exactly. Returns the number of rows touched."""
        journal = {
            t.reference: t for t in self.session.execute(
                select(JournalTransaction).where(JournalTransaction.user_id == user_id)
            ).scalars()
        }
        entries = {e.reference: e for e in self.get_user(user_id).entries}
        touched = 0

        for reference, entry in entries.items():
            if reference not in journal:
                self.session.delete(entry)
                touched += 1

        for reference, txn in journal.items():
            entry = entries.get(reference)
            if entry is None:
                self.session.add(entry_from_transaction(txn))
                touched += 1
            elif entry.status != txn.status or (entry.tier1, entry.tier2, entry.tier3) != (txn.tier1, txn.tier2, txn.tier3):
                entry.status = txn.status
                entry.tier1, entry.tier2, entry.tier3 = txn.tier1, txn.tier2, txn.tier3
                touched += 1

        self.session.flush()
        self.recompute_totals(user_id)
        if touched:
            logger.warning(f"Rebuilt ledger for user {user_id} from journal ({touched} rows)")
        return touched


def entry_from_transaction(txn: JournalTransaction) -> LedgerEntry:
    return LedgerEntry(
        user_id=txn.user_id,
        reference=txn.reference,
        share_class=txn.share_class,
        shares=txn.shares,
        status=txn.status,
        price_per_share=txn.price_per_share,
        currency=txn.currency,
        total_amount=txn.total_amount,
        rail=txn.rail,
        tier1=txn.tier1,
        tier2=txn.tier2,
        tier3=txn.tier3,
        note=txn.note,
        created_at=txn.created_at or utcnow(),
    )
