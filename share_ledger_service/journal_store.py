"""
Global transaction journal, the source of truth for payment status.

Terminal transitions are conditional updates on the prior status, so when two
settlers race only one sees rowcount == 1.
"""
import logging
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from sqlalchemy import and_, delete, func, select, true, update
from sqlalchemy.orm import Session

from share_ledger_service.domain import Rail, ShareClass, TierBreakdown, TxStatus, utcnow
from share_ledger_service.models import JournalEvent, JournalTransaction

logger = logging.getLogger(__name__)


class JournalStore:
    def __init__(self, session: Session):
        self.session = session

    def create_transaction(self, txn: JournalTransaction, actor_id: Optional[str] = None) -> JournalTransaction:
        self.session.add(txn)
        self.session.flush()
        self.record_event(txn.reference, "created", None, txn.status, actor_id=actor_id or txn.user_id, note=txn.note)
        return txn

    def exists(self, reference: str) -> bool:
        """True for live references and for deleted ones still in the audit trail"""
        live = select(JournalTransaction.reference).where(JournalTransaction.reference == reference)
        audited = select(JournalEvent.reference).where(JournalEvent.reference == reference)
        return self.session.execute(live.union_all(audited).limit(1)).first() is not None

    def get_by_reference(self, reference: str) -> Optional[JournalTransaction]:
        return self.session.execute(
            select(JournalTransaction).where(JournalTransaction.reference == reference)
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()

    def get_by_external_id(self, rail: Rail, external_id: str) -> Optional[JournalTransaction]:
        return self.session.execute(
            select(JournalTransaction)
            .where(JournalTransaction.rail == rail.value, JournalTransaction.external_id == external_id)
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()

    def settle(self, reference: str, outcome: TxStatus, verifier_id: Optional[str] = None,
               note: Optional[str] = None, source: Optional[str] = None) -> bool:
        """pending -> completed|failed|cancelled. False when another settler got there first."""
        values = {"status": outcome.value, "settled_at": utcnow(), "diagnostic": None}
        if outcome == TxStatus.COMPLETED:
            values["settlement_count"] = JournalTransaction.settlement_count + 1
            values["admin_hold"] = False
        if verifier_id is not None:
            values["verifier_id"] = verifier_id
        if note is not None:
            values["note"] = note
        result = self.session.execute(
            update(JournalTransaction)
            .where(JournalTransaction.reference == reference,
                   JournalTransaction.status == TxStatus.PENDING.value)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            return False
        self.record_event(reference, outcome.value, TxStatus.PENDING.value, outcome.value,
                          actor_id=verifier_id, note=note or source)
        logger.info(f"Journal {reference}: pending -> {outcome.value} (source={source}, verifier={verifier_id})")
        return True

    def reopen(self, reference: str, target: TxStatus, actor_id: str, reason: str) -> bool:
        """completed -> target, the only backward edge; used by admin reversal."""
        values = {"status": target.value, "verifier_id": actor_id, "note": reason, "settled_at": None}
        if target == TxStatus.PENDING:
            values["admin_hold"] = True
        else:
            values["settled_at"] = utcnow()
        result = self.session.execute(
            update(JournalTransaction)
            .where(JournalTransaction.reference == reference,
                   JournalTransaction.status == TxStatus.COMPLETED.value)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            return False
        self.record_event(reference, "reversed", TxStatus.COMPLETED.value, target.value, actor_id=actor_id, note=reason)
        logger.info(f"Journal {reference}: completed -> {target.value} (reversal by {actor_id})")
        return True

    def update_pending(self, reference: str, rail_payload: Optional[dict] = None,
                       external_id: Optional[str] = None, diagnostic: Optional[str] = None,
                       breakdown: Optional[TierBreakdown] = None) -> bool:
        """Amend rail details of a still-pending row."""
        values = {}
        if rail_payload is not None:
            values["rail_payload"] = rail_payload
        if external_id is not None:
            values["external_id"] = external_id
        if diagnostic is not None:
            values["diagnostic"] = diagnostic[:1000]
        if breakdown is not None:
            values.update(tier1=breakdown.tier1, tier2=breakdown.tier2, tier3=breakdown.tier3)
        if not values:
            return False
        result = self.session.execute(
            update(JournalTransaction)
            .where(JournalTransaction.reference == reference,
                   JournalTransaction.status == TxStatus.PENDING.value)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def delete(self, reference: str, actor_id: str, reason: str) -> bool:
        txn = self.get_by_reference(reference)
        if txn is None:
            return False
        self.record_event(reference, "deleted", txn.status, None, actor_id=actor_id, note=reason)
        self.session.execute(
            delete(JournalTransaction).where(JournalTransaction.reference == reference)
            .execution_options(synchronize_session=False)
        )
        self.session.expunge(txn)
        return True

    def record_event(self, reference: str, kind: str, from_status: Optional[str], to_status: Optional[str],
                     actor_id: Optional[str] = None, note: Optional[str] = None) -> None:
        self.session.add(JournalEvent(
            reference=reference, kind=kind, from_status=from_status, to_status=to_status,
            actor_id=actor_id, note=note[:1000] if note else None,
        ))
        self.session.flush()

    def events_for(self, reference: str) -> List[JournalEvent]:
        return list(self.session.execute(
            select(JournalEvent).where(JournalEvent.reference == reference).order_by(JournalEvent.id)
        ).scalars())

    # Queries

    def list_pending_by_rail(self, rail: Rail, include_held: bool = True) -> List[JournalTransaction]:
        stmt = select(JournalTransaction).where(
            JournalTransaction.rail == rail.value,
            JournalTransaction.status == TxStatus.PENDING.value,
        )
        if not include_held:
            stmt = stmt.where(JournalTransaction.admin_hold.is_(False))
        return list(self.session.execute(stmt.order_by(JournalTransaction.created_at)).scalars())

    def list_by_user(self, user_id: str, share_class: Optional[ShareClass] = None) -> List[JournalTransaction]:
        stmt = select(JournalTransaction).where(JournalTransaction.user_id == user_id)
        if share_class is not None:
            stmt = stmt.where(JournalTransaction.share_class == share_class.value)
        return list(self.session.execute(
            stmt.order_by(JournalTransaction.created_at.desc()).execution_options(populate_existing=True)
        ).scalars())

    def list_paginated(self, status: Optional[TxStatus] = None, rails: Optional[Sequence[Rail]] = None,
                       share_class: Optional[ShareClass] = None, page: int = 1,
                       limit: int = 20) -> Tuple[List[JournalTransaction], int]:
        conditions = []
        if status is not None:
            conditions.append(JournalTransaction.status == status.value)
        if rails:
            conditions.append(JournalTransaction.rail.in_([r.value for r in rails]))
        if share_class is not None:
            conditions.append(JournalTransaction.share_class == share_class.value)
        where = and_(*conditions) if conditions else true()

        total = self.session.execute(select(func.count()).select_from(JournalTransaction).where(where)).scalar_one()
        rows = self.session.execute(
            select(JournalTransaction).where(where)
            .order_by(JournalTransaction.created_at.desc())
            .offset((page - 1) * limit).limit(limit)
        ).scalars().all()
        return list(rows), int(total)

    def user_ids(self) -> List[str]:
        return [r[0] for r in self.session.execute(select(JournalTransaction.user_id).distinct())]

    def completed_tier_sums(self) -> Dict[int, int]:
        row = self.session.execute(
            select(func.coalesce(func.sum(JournalTransaction.tier1), 0),
                   func.coalesce(func.sum(JournalTransaction.tier2), 0),
                   func.coalesce(func.sum(JournalTransaction.tier3), 0))
            .where(JournalTransaction.share_class == ShareClass.REGULAR.value,
                   JournalTransaction.status == TxStatus.COMPLETED.value)
        ).one()
        return {1: int(row[0]), 2: int(row[1]), 3: int(row[2])}

    def completed_shares(self, share_class: ShareClass) -> int:
        return int(self.session.execute(
            select(func.coalesce(func.sum(JournalTransaction.shares), 0))
            .where(JournalTransaction.share_class == share_class.value,
                   JournalTransaction.status == TxStatus.COMPLETED.value)
        ).scalar_one())

    def pending_reservations(self) -> Tuple[TierBreakdown, int]:
        """Shares held by pending transactions: regular per tier, and co-founder."""
        row = self.session.execute(
            select(func.coalesce(func.sum(JournalTransaction.tier1), 0),
                   func.coalesce(func.sum(JournalTransaction.tier2), 0),
                   func.coalesce(func.sum(JournalTransaction.tier3), 0))
            .where(JournalTransaction.share_class == ShareClass.REGULAR.value,
                   JournalTransaction.status == TxStatus.PENDING.value)
        ).one()
        co_founder = int(self.session.execute(
            select(func.coalesce(func.sum(JournalTransaction.shares), 0))
            .where(JournalTransaction.share_class == ShareClass.CO_FOUNDER.value,
                   JournalTransaction.status == TxStatus.PENDING.value)
        ).scalar_one())
        return TierBreakdown(tier1=int(row[0]), tier2=int(row[1]), tier3=int(row[2])), co_founder

    def iter_all(self, share_class: Optional[ShareClass] = None) -> Iterable[JournalTransaction]:
        stmt = select(JournalTransaction)
        if share_class is not None:
            stmt = stmt.where(JournalTransaction.share_class == share_class.value)
        return self.session.execute(stmt).scalars()
