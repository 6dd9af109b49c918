"""
Read-only share views computed from the journal.

The ledger is only cross-checked: a completed journal row without a
completed ledger entry (or the reverse) is reported as drift and the journal
value is used. Repair belongs to the sweeper.
"""
import logging
from dataclasses import asdict, dataclass, field
from decimal import Decimal
from typing import Dict, List, Optional, Sequence

from sqlalchemy import func, select
from sqlalchemy.orm import sessionmaker

from share_ledger_service.domain import (
    CatalogSnapshot, MANUAL_RAILS, Rail, ShareClass, TxStatus,
)
from share_ledger_service.journal_store import JournalStore
from share_ledger_service.ledger_store import LedgerStore
from share_ledger_service.models import JournalTransaction
from share_ledger_service.pricing import PricingCatalog

logger = logging.getLogger(__name__)

REVIEW_RAILS = set(MANUAL_RAILS) | {Rail.ONCHAIN}


@dataclass
class LedgerDrift:
    reference: str
    journal_status: Optional[str]
    ledger_status: Optional[str]


@dataclass
class Equivalence:
    ratio: int
    effective_shares: int
    equivalent_co_founder_shares: int
    remainder_regular_shares: int


def equivalence(regular: int, co_founder: int, ratio: int) -> Equivalence:
    effective = regular + co_founder * ratio
    return Equivalence(
        ratio=ratio,
        effective_shares=effective,
        equivalent_co_founder_shares=effective // ratio,
        remainder_regular_shares=effective % ratio,
    )


@dataclass
class EffectiveShareView:
    user_id: str
    owned_regular: int
    owned_co_founder: int
    pending_regular: int
    pending_co_founder: int
    ratio: int
    effective_shares: int
    pending_effective_shares: int
    equivalent_co_founder_shares: int
    remainder_regular_shares: int
    tier_availability: Dict[int, int]
    transactions: List[dict] = field(default_factory=list)
    diagnostics: List[LedgerDrift] = field(default_factory=list)

    def to_dict(self) -> dict:
        return asdict(self)


def transaction_summary(row: JournalTransaction) -> dict:
    summary = {
        "reference": row.reference,
        "share_class": row.share_class,
        "rail": row.rail,
        "shares": row.shares,
        "price_per_share": row.price_per_share,
        "currency": row.currency,
        "total_amount": row.total_amount,
        "tier_breakdown": {"tier1": row.tier1, "tier2": row.tier2, "tier3": row.tier3},
        "status": row.status,
        "created_at": row.created_at,
        "settled_at": row.settled_at,
    }
    if row.status == TxStatus.PENDING.value and Rail(row.rail) in REVIEW_RAILS:
        summary["status_label"] = "pending verification"
        summary["explanation"] = row.diagnostic or "Awaiting verification by an administrator"
    elif row.admin_hold:
        summary["status_label"] = "held"
        summary["explanation"] = row.note
    return summary


class ViewProjector:
    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    def user_view(self, user_id: str, share_class: Optional[ShareClass] = None) -> EffectiveShareView:
        with self.session_factory() as session:
            catalog = PricingCatalog(session).get_current()
            journal_rows = JournalStore(session).list_by_user(user_id)
            ledger = LedgerStore(session).get_user(user_id)

        totals = {(c.value, s.value): 0 for c in ShareClass for s in (TxStatus.COMPLETED, TxStatus.PENDING)}
        for row in journal_rows:
            key = (row.share_class, row.status)
            if key in totals:
                totals[key] += row.shares

        diagnostics = self._drift(journal_rows, ledger.entries)
        for drift in diagnostics:
            logger.warning(f"Ledger drift for {user_id}: {drift}")

        ratio = catalog.co_founder_ratio
        owned_regular = totals[(ShareClass.REGULAR.value, TxStatus.COMPLETED.value)]
        owned_co_founder = totals[(ShareClass.CO_FOUNDER.value, TxStatus.COMPLETED.value)]
        pending_regular = totals[(ShareClass.REGULAR.value, TxStatus.PENDING.value)]
        pending_co_founder = totals[(ShareClass.CO_FOUNDER.value, TxStatus.PENDING.value)]
        owned = equivalence(owned_regular, owned_co_founder, ratio)

        rows = journal_rows if share_class is None else [r for r in journal_rows if r.share_class == share_class.value]
        return EffectiveShareView(
            user_id=user_id,
            owned_regular=owned_regular,
            owned_co_founder=owned_co_founder,
            pending_regular=pending_regular,
            pending_co_founder=pending_co_founder,
            ratio=ratio,
            effective_shares=owned.effective_shares,
            pending_effective_shares=pending_regular + pending_co_founder * ratio,
            equivalent_co_founder_shares=owned.equivalent_co_founder_shares,
            remainder_regular_shares=owned.remainder_regular_shares,
            tier_availability=catalog.tier_availability(),
            transactions=[transaction_summary(r) for r in rows],
            diagnostics=diagnostics,
        )

    @staticmethod
    def _drift(journal_rows, ledger_entries) -> List[LedgerDrift]:
        ledger_status = {e.reference: e.status for e in ledger_entries}
        journal_status = {r.reference: r.status for r in journal_rows}
        drift = []
        for reference, status in journal_status.items():
            if status == TxStatus.COMPLETED.value and ledger_status.get(reference) != status:
                drift.append(LedgerDrift(reference, status, ledger_status.get(reference)))
        for reference, status in ledger_status.items():
            if status == TxStatus.COMPLETED.value and journal_status.get(reference) != status:
                drift.append(LedgerDrift(reference, journal_status.get(reference), status))
        return drift

    def list_transactions(self, status: Optional[TxStatus] = None, rails: Optional[Sequence[Rail]] = None,
                          share_class: Optional[ShareClass] = None, page: int = 1, limit: int = 20) -> dict:
        page, limit = max(page, 1), min(max(limit, 1), 100)
        with self.session_factory() as session:
            rows, total = JournalStore(session).list_paginated(status, rails, share_class, page, limit)
        return {
            "transactions": [{**transaction_summary(r), "user_id": r.user_id, "user_email": r.user_email,
                              "rail_payload": r.rail_payload, "verifier_id": r.verifier_id, "note": r.note}
                             for r in rows],
            "pagination": {"page": page, "limit": limit, "total": total, "pages": -(-total // limit)},
        }

    def pending_for_rail(self, rail: Rail) -> List[dict]:
        with self.session_factory() as session:
            rows = JournalStore(session).list_pending_by_rail(rail)
        return [{**transaction_summary(r), "user_id": r.user_id, "user_email": r.user_email,
                 "rail_payload": r.rail_payload, "admin_hold": r.admin_hold} for r in rows]

    def public_info(self, share_class: ShareClass) -> dict:
        with self.session_factory() as session:
            catalog = PricingCatalog(session).get_current()
        return public_info(catalog, share_class)

    def admin_statistics(self) -> dict:
        with self.session_factory() as session:
            catalog = PricingCatalog(session).get_current()
            rows = session.execute(
                select(JournalTransaction.share_class, JournalTransaction.status, JournalTransaction.currency,
                       func.count(), func.coalesce(func.sum(JournalTransaction.shares), 0),
                       func.coalesce(func.sum(JournalTransaction.total_amount), 0))
                .group_by(JournalTransaction.share_class, JournalTransaction.status, JournalTransaction.currency)
            ).all()
            by_rail = session.execute(
                select(JournalTransaction.rail, JournalTransaction.status, func.count())
                .group_by(JournalTransaction.rail, JournalTransaction.status)
            ).all()
            investors = session.execute(
                select(func.count(func.distinct(JournalTransaction.user_id)))
                .where(JournalTransaction.status == TxStatus.COMPLETED.value)
            ).scalar_one()

        stats = {
            c.value: {"transactions": {}, "shares": {}, "value": {"naira": Decimal("0"), "usdt": Decimal("0")}}
            for c in ShareClass
        }
        for share_class, status, currency, count, shares, amount in rows:
            bucket = stats[share_class]
            bucket["transactions"][status] = bucket["transactions"].get(status, 0) + count
            bucket["shares"][status] = bucket["shares"].get(status, 0) + int(shares)
            if status == TxStatus.COMPLETED.value:
                bucket["value"][currency] += Decimal(amount)

        regular_sold = stats[ShareClass.REGULAR.value]["shares"].get(TxStatus.COMPLETED.value, 0)
        co_founder_sold = stats[ShareClass.CO_FOUNDER.value]["shares"].get(TxStatus.COMPLETED.value, 0)
        rails: Dict[str, Dict[str, int]] = {}
        for rail, status, count in by_rail:
            rails.setdefault(rail, {})[status] = count

        return {
            "regular": stats[ShareClass.REGULAR.value],
            "cofounder": stats[ShareClass.CO_FOUNDER.value],
            "rails": rails,
            "investors": int(investors),
            "equivalence": asdict(equivalence(regular_sold, co_founder_sold, catalog.co_founder_ratio)),
            "catalog": public_info(catalog, ShareClass.REGULAR)["pricing"],
            "co_founder_catalog": public_info(catalog, ShareClass.CO_FOUNDER)["pricing"],
        }


def public_info(catalog: CatalogSnapshot, share_class: ShareClass) -> dict:
    ratio = catalog.co_founder_ratio
    if share_class == ShareClass.CO_FOUNDER:
        return {
            "share_class": share_class.value,
            "pricing": {
                "price_naira": catalog.co_founder_price_naira,
                "price_usdt": catalog.co_founder_price_usdt,
                "total": catalog.co_founder_total,
                "sold": catalog.co_founder_sold,
                "available": catalog.co_founder_available,
            },
            "ratio": ratio,
            "ratio_locked": catalog.ratio_locked,
            "regular_equivalent_per_share": ratio,
        }
    return {
        "share_class": share_class.value,
        "pricing": {
            "tiers": [
                {"tier": t.tier, "capacity": t.capacity, "sold": t.sold, "available": t.available,
                 "price_naira": t.price_naira, "price_usdt": t.price_usdt}
                for t in catalog.tiers
            ],
            "total": catalog.total_shares,
            "sold": catalog.regular_sold,
            "available": catalog.total_shares - catalog.regular_sold,
        },
        "ratio": ratio,
        "co_founder_equivalent": {
            "regular_shares_per_co_founder_share": ratio,
            "available_as_co_founder_equivalent": (catalog.total_shares - catalog.regular_sold) // ratio,
        },
    }
