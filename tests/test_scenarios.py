"""
End-to-end purchase scenarios against an in-memory database.
"""
import asyncio
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from common.circuit_breaker import CircuitBreaker, CircuitBreakerConfig
from share_ledger_service.domain import (
    AdminDecision, Currency, Rail, Rejected, SettlementSource, Settled, ShareClass, TierBreakdown, TxStatus,
)
from share_ledger_service.errors import InsufficientSupply
from share_ledger_service.journal_store import JournalStore
from share_ledger_service.ledger_store import LedgerStore
from share_ledger_service.rails.onchain import BscUsdtRail, TRANSFER_TOPIC, USDT_CONTRACT

from conftest import WALLET, assert_consistent, catalog, journal_row, set_tiers

NOW = datetime(2026, 3, 1, 12, 0, 0)
SENDER = "0x" + "d" * 40
HASH_OK = "0x" + "a" * 64
HASH_SHORT = "0x" + "b" * 64


def owned(runtime, user_id):
    with runtime.session_factory() as session:
        return LedgerStore(session).get_user(user_id)


class FakeBscRpc:
    def __init__(self):
        self.transfers = {}

    def add(self, tx_hash, amount_usdt, sender=SENDER, recipient=WALLET, mined_at=NOW - timedelta(hours=1)):
        data = hex(int(Decimal(amount_usdt) * 10 ** 18))
        self.transfers[tx_hash] = (
            {
                "status": "0x1",
                "to": USDT_CONTRACT,
                "blockNumber": "0x10",
                "logs": [{
                    "address": USDT_CONTRACT,
                    "topics": [TRANSFER_TOPIC, "0x" + "0" * 24 + sender[2:], "0x" + "0" * 24 + recipient[2:]],
                    "data": data,
                }],
            },
            {"timestamp": hex(int(mined_at.replace(tzinfo=timezone.utc).timestamp()))},
        )

    def fetch_claim_evidence(self, tx_hash):
        return self.transfers.get(tx_hash, (None, None))


def onchain_rail(rpc):
    breaker = CircuitBreaker("bsc_test", CircuitBreakerConfig(timeout=5.0))
    return BscUsdtRail(rpc=rpc, breaker=breaker, wallet_resolver=lambda: WALLET, tolerance=0.02,
                       max_age_hours=24, clock=lambda: NOW)


class TestCardHappyPath:
    def test_card_purchase_spans_tiers_and_completes(self, small_catalog, engine, card_rail, alice, recorders):
        runtime = small_catalog
        quote = engine.quote(ShareClass.REGULAR, 1200, Currency.NAIRA)
        assert quote.tier_breakdown == TierBreakdown(tier1=1000, tier2=200, tier3=0)
        assert quote.total_price == Decimal("1300000")

        initiation = asyncio.run(engine.initiate_purchase(alice, ShareClass.REGULAR, 1200, Currency.NAIRA, Rail.CARD))
        assert initiation.reference.startswith("TXN-")
        assert journal_row(runtime, initiation.reference).status == "pending"

        card_rail.outcome = Settled(amount=Decimal("1300000"))
        result = asyncio.run(engine.settle_by_reference(initiation.reference, SettlementSource.USER_VERIFY))

        assert result.status == TxStatus.COMPLETED
        snapshot = catalog(runtime)
        assert snapshot.tier(1).sold == 1000
        assert snapshot.tier(2).sold == 200
        assert owned(runtime, alice.user_id).owned_regular == 1200
        assert recorders.commissions(initiation.reference) == [f"referral.commission:{initiation.reference}:1"]
        assert_consistent(runtime)


class TestOnchainTolerance:
    @pytest.fixture
    def rpc(self, rails):
        rpc = FakeBscRpc()
        rails[Rail.ONCHAIN] = onchain_rail(rpc)
        return rpc

    def test_transfer_within_two_percent_settles(self, rpc, small_catalog, engine, bob):
        rpc.add(HASH_OK, "49")
        result = asyncio.run(engine.submit_onchain_claim(bob, HASH_OK, SENDER, ShareClass.REGULAR, 10))

        assert result.status == TxStatus.COMPLETED
        assert result.transaction.total_amount == Decimal("50")
        assert owned(small_catalog, bob.user_id).owned_regular == 10

    def test_transfer_outside_tolerance_escalates_and_stays_pending(self, rpc, small_catalog, engine, bob, recorders):
        rpc.add(HASH_SHORT, "48")
        result = asyncio.run(engine.submit_onchain_claim(bob, HASH_SHORT, SENDER, ShareClass.REGULAR, 10))

        assert result.status == TxStatus.PENDING
        assert isinstance(result.outcome, Rejected)
        assert "Amount mismatch" in result.diagnostic
        row = journal_row(small_catalog, result.reference)
        assert row.status == "pending"
        assert "Amount mismatch" in row.diagnostic
        assert owned(small_catalog, bob.user_id).owned_regular == 0
        assert any(":review:escalated" in k for k in recorders.notify.keys("notify.admin"))
        assert recorders.commissions() == []


class TestConcurrentVerify:
    def test_two_verifies_produce_one_settlement(self, small_catalog, engine, card_rail, alice, recorders):
        initiation = asyncio.run(engine.initiate_purchase(alice, ShareClass.REGULAR, 30, Currency.NAIRA, Rail.CARD))
        card_rail.outcome = Settled()

        async def race():
            return await asyncio.gather(
                engine.settle_by_reference(initiation.reference, SettlementSource.USER_VERIFY),
                engine.settle_by_reference(initiation.reference, SettlementSource.WEBHOOK),
            )

        first, second = asyncio.run(race())

        assert card_rail.verify_calls == 2
        assert first.status == second.status == TxStatus.COMPLETED
        assert [first.already_terminal, second.already_terminal].count(True) == 1
        assert catalog(small_catalog).regular_sold == 30
        assert len(recorders.commissions(initiation.reference)) == 1
        assert_consistent(small_catalog)


class TestGrantAndReversal:
    def test_grant_then_reverse_restores_counters(self, runtime, engine, admin, recorders):
        before = catalog(runtime)
        result = asyncio.run(engine.grant_shares(admin, "u3", ShareClass.CO_FOUNDER, 5, "advisor"))

        assert result.status == TxStatus.COMPLETED
        assert result.reference.startswith("CFD-")
        assert catalog(runtime).co_founder_sold == before.co_founder_sold + 5
        assert owned(runtime, "u3").owned_co_founder == 5
        view = runtime.projector.user_view("u3")
        assert view.effective_shares == 5 * 29

        asyncio.run(engine.reverse_settlement(result.reference, admin, "granted in error"))

        assert catalog(runtime).co_founder_sold == before.co_founder_sold
        assert owned(runtime, "u3").owned_co_founder == 0
        view = runtime.projector.user_view("u3")
        assert view.owned_co_founder == 0
        assert view.effective_shares == 0
        assert len(recorders.rollbacks(result.reference)) == 1
        assert_consistent(runtime)

    def test_grant_records_reference_price(self, runtime, engine, admin):
        result = asyncio.run(engine.grant_shares(admin, "u3", ShareClass.REGULAR, 10, "bonus"))
        row = journal_row(runtime, result.reference)
        assert row.rail == "admin_grant"
        assert row.currency == "naira"
        assert Decimal(row.total_amount) == Decimal("500000")
        assert row.verifier_id == admin.user_id


class TestInsufficientSupply:
    def test_request_beyond_remaining_supply_writes_nothing(self, runtime, engine, alice):
        set_tiers(runtime, [(1, 1000, 400, 1000, 5), (2, 500, 100, 1500, 7), (3, 500, 500, 2000, 9)])
        remaining = 600 + 400

        with pytest.raises(InsufficientSupply):
            asyncio.run(engine.initiate_purchase(alice, ShareClass.REGULAR, remaining + 1, Currency.NAIRA, Rail.CARD))

        with runtime.session_factory() as session:
            assert list(JournalStore(session).iter_all()) == []
            assert LedgerStore(session).get_user(alice.user_id).entries == []


class TestManualReject:
    def test_rejected_manual_payment_fails_without_credit(self, runtime, engine, bob, admin, recorders):
        initiation = asyncio.run(engine.initiate_purchase(
            bob, ShareClass.REGULAR, 3, Currency.NAIRA, Rail.MANUAL_BANK, {"proof_handle": "proof.png"}))
        assert journal_row(runtime, initiation.reference).status == "pending"
        assert recorders.notify.keys(f"notify.admin:{initiation.reference}:review:submitted")

        decision = AdminDecision(approved=False, actor_id=admin.user_id, note="proof unreadable")
        result = asyncio.run(engine.settle_by_reference(
            initiation.reference, SettlementSource.ADMIN_DECISION, proof=decision, actor=admin))

        assert result.status == TxStatus.FAILED
        assert owned(runtime, bob.user_id).owned_regular == 0
        assert recorders.commissions() == []
        failed = [p for k, p in recorders.notify.calls if k == f"notify.user:{initiation.reference}:failed"]
        assert failed and failed[0]["type"] == "PurchaseFailed"
        assert failed[0]["reason"] == "proof unreadable"
        assert_consistent(runtime)
