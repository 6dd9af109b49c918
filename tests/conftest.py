import asyncio
from decimal import Decimal
from typing import List, Optional, Tuple

import pytest
from sqlalchemy import select, update

from share_ledger_service.domain import (
    InitiationResult, MANUAL_RAILS, Rail, Settled, ShareClass, StillPending, TxStatus, UserContext,
)
from share_ledger_service.journal_store import JournalStore
from share_ledger_service.models import LedgerEntry, Outbox, PricingTier
from share_ledger_service.pricing import PricingCatalog
from share_ledger_service.rails.admin_grant import AdminGrantRail
from share_ledger_service.rails.base import RailAdapter
from share_ledger_service.rails.manual import ManualRail
from share_ledger_service.runtime import build_runtime
from share_ledger_service.side_effects import (
    KIND_NOTIFY_ADMIN, KIND_NOTIFY_USER, KIND_REFERRAL_COMMISSION, KIND_REFERRAL_ROLLBACK,
)

WALLET = "0x" + "c" * 40


class ScriptedRail(RailAdapter):
    """Rail whose verify returns whatever outcome the test scripted."""
    supports_remote_status = True

    def __init__(self, rail: Rail, outcome=None):
        self.rail = rail
        self.outcome = outcome or StillPending(reason="not paid yet")
        self.verify_calls = 0
        self.cancelled: List[str] = []

    async def initiate(self, txn, user, inputs):
        return InitiationResult(
            payload={"email": inputs.get("email") or user.email},
            client_data={"authorization_url": f"https://checkout.test/{txn.reference}"},
        )

    async def verify(self, txn, proof=None):
        self.verify_calls += 1
        # yield so concurrent verifies interleave before settling
        await asyncio.sleep(0)
        return self.outcome

    async def cancel(self, txn, reason=None):
        self.cancelled.append(txn.reference)


class RecordingHandler:
    def __init__(self):
        self.calls: List[Tuple[str, dict]] = []
        self.failing = False

    async def __call__(self, payload: dict, dedup_key: str) -> None:
        if self.failing:
            raise RuntimeError("downstream unavailable")
        self.calls.append((dedup_key, payload))

    def keys(self, prefix: str = "") -> List[str]:
        return [k for k, _ in self.calls if k.startswith(prefix)]


class Recorders:
    def __init__(self):
        self.referral = RecordingHandler()
        self.notify = RecordingHandler()

    def handlers(self):
        return {
            KIND_REFERRAL_COMMISSION: self.referral,
            KIND_REFERRAL_ROLLBACK: self.referral,
            KIND_NOTIFY_USER: self.notify,
            KIND_NOTIFY_ADMIN: self.notify,
        }

    def commissions(self, reference: Optional[str] = None) -> List[str]:
        return self.referral.keys(f"{KIND_REFERRAL_COMMISSION}:{reference or ''}")

    def rollbacks(self, reference: Optional[str] = None) -> List[str]:
        return self.referral.keys(f"{KIND_REFERRAL_ROLLBACK}:{reference or ''}")


@pytest.fixture
def recorders():
    return Recorders()


@pytest.fixture
def card_rail():
    return ScriptedRail(Rail.CARD)


@pytest.fixture
def invoice_rail():
    return ScriptedRail(Rail.INVOICE)


@pytest.fixture
def rails(card_rail, invoice_rail):
    rails = {Rail.CARD: card_rail, Rail.INVOICE: invoice_rail, Rail.ADMIN_GRANT: AdminGrantRail()}
    for rail in MANUAL_RAILS:
        rails[rail] = ManualRail(rail)
    return rails


@pytest.fixture
def runtime(tmp_path, rails, recorders):
    return build_runtime("sqlite://", rails=rails, handlers=recorders.handlers(), use_redis=False,
                         proof_root=str(tmp_path / "proofs"))


@pytest.fixture
def engine(runtime):
    return runtime.engine


@pytest.fixture
def alice():
    return UserContext(user_id="u-alice", email="alice@example.com", name="Alice")


@pytest.fixture
def bob():
    return UserContext(user_id="u-bob", email="bob@example.com", name="Bob")


@pytest.fixture
def admin():
    return UserContext(user_id="u-admin", email="admin@example.com", name="Admin", is_admin=True)


def set_tiers(runtime, tiers):
    """tiers: (tier, capacity, sold, price_naira, price_usdt)"""
    with runtime.session_factory() as session, session.begin():
        for number, capacity, sold, naira, usdt in tiers:
            session.execute(
                update(PricingTier).where(PricingTier.tier == number)
                .values(capacity=capacity, sold=sold, price_naira=Decimal(naira), price_usdt=Decimal(usdt))
            )


@pytest.fixture
def small_catalog(runtime):
    set_tiers(runtime, [(1, 1000, 0, 1000, 5), (2, 500, 0, 1500, 7), (3, 500, 0, 2000, 9)])
    return runtime


def settled():
    return Settled(amount=None)


def catalog(runtime):
    with runtime.session_factory() as session:
        return PricingCatalog(session).get_current()


def journal_row(runtime, reference):
    with runtime.session_factory() as session:
        return JournalStore(session).get_by_reference(reference)


def outbox_rows(runtime):
    with runtime.session_factory() as session:
        return list(session.execute(select(Outbox).order_by(Outbox.id)).scalars())


def assert_consistent(runtime):
    """Ledger agrees with journal on completion; catalog counters agree with journal sums."""
    with runtime.session_factory() as session:
        journal = JournalStore(session)
        rows = list(journal.iter_all())
        entries = {e.reference: e for e in session.execute(select(LedgerEntry)).scalars()}
        tier_sums = journal.completed_tier_sums()
        co_founder = journal.completed_shares(ShareClass.CO_FOUNDER)
        snapshot = PricingCatalog(session).get_current()

    for row in rows:
        entry = entries.get(row.reference)
        assert entry is not None, row.reference
        assert (row.status == TxStatus.COMPLETED.value) == (entry.status == TxStatus.COMPLETED.value)
    for tier in snapshot.tiers:
        assert tier.sold == tier_sums[tier.tier]
        assert tier.sold <= tier.capacity
    assert snapshot.co_founder_sold == co_founder
    assert snapshot.co_founder_sold <= snapshot.co_founder_total
