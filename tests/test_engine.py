import asyncio
from decimal import Decimal

import pytest
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from share_ledger_service.calculator import calculate_purchase
from share_ledger_service.domain import (
    AdminDecision, Currency, Rail, Rejected, SettlementSource, Settled, ShareClass, StillPending,
    TierBreakdown, TxStatus,
)
from share_ledger_service.errors import (
    ConcurrentUpdate, DuplicateClaim, InfraError, InsufficientSupply, InvalidStateTransition,
    PermissionDenied, RailDisabled, RatioLocked,
)
from share_ledger_service.journal_store import JournalStore
from share_ledger_service.ledger_store import LedgerStore
from share_ledger_service.models import JournalEvent

from conftest import assert_consistent, catalog, journal_row, outbox_rows, set_tiers


def buy(engine, user, shares, rail=Rail.CARD, share_class=ShareClass.REGULAR, currency=Currency.NAIRA, inputs=None):
    return asyncio.run(engine.initiate_purchase(user, share_class, shares, currency, rail, inputs)).reference


def settle(engine, reference, source=SettlementSource.USER_VERIFY, proof=None, actor=None):
    return asyncio.run(engine.settle_by_reference(reference, source, proof=proof, actor=actor))


class TestIdempotentSettle:
    def test_repeated_settles_keep_one_outcome(self, runtime, engine, card_rail, alice, recorders):
        reference = buy(engine, alice, 12)
        card_rail.outcome = Settled()

        results = [settle(engine, reference) for _ in range(4)]

        assert {r.status for r in results} == {TxStatus.COMPLETED}
        assert [r.already_terminal for r in results] == [False, True, True, True]
        assert len(recorders.commissions(reference)) == 1
        assert catalog(runtime).regular_sold == 12
        assert card_rail.verify_calls == 1

    def test_still_pending_changes_nothing(self, runtime, engine, card_rail, alice, recorders):
        reference = buy(engine, alice, 5)
        result = settle(engine, reference)

        assert result.status == TxStatus.PENDING
        assert isinstance(result.outcome, StillPending)
        assert catalog(runtime).regular_sold == 0
        assert recorders.referral.calls == []

    def test_rejected_card_payment_fails(self, runtime, engine, card_rail, alice, recorders):
        reference = buy(engine, alice, 5)
        card_rail.outcome = Rejected(reason="Declined")

        result = settle(engine, reference)

        assert result.status == TxStatus.FAILED
        assert journal_row(runtime, reference).note == "Declined"
        assert recorders.notify.keys(f"notify.user:{reference}:failed")
        assert_consistent(runtime)


class TestReversalSymmetry:
    def test_reverse_then_resettle_restores_state(self, runtime, engine, card_rail, alice, admin, recorders):
        reference = buy(engine, alice, 40)
        card_rail.outcome = Settled()
        settle(engine, reference)
        before_catalog = catalog(runtime)
        with runtime.session_factory() as session:
            before_owned = LedgerStore(session).get_user(alice.user_id).owned_regular

        asyncio.run(engine.reverse_settlement(reference, admin, "chargeback"))
        assert catalog(runtime).regular_sold == before_catalog.regular_sold - 40

        decision = AdminDecision(approved=True, actor_id=admin.user_id)
        result = settle(engine, reference, SettlementSource.ADMIN_DECISION, decision, admin)

        assert result.status == TxStatus.COMPLETED
        after = catalog(runtime)
        assert after.tiers == before_catalog.tiers
        assert after.co_founder_sold == before_catalog.co_founder_sold
        with runtime.session_factory() as session:
            assert LedgerStore(session).get_user(alice.user_id).owned_regular == before_owned
        assert len(recorders.commissions(reference)) - len(recorders.rollbacks(reference)) == 1
        assert recorders.commissions(reference) == [f"referral.commission:{reference}:1",
                                                    f"referral.commission:{reference}:2"]
        assert_consistent(runtime)

    def test_reversed_transaction_is_held_from_automatic_settlement(self, runtime, engine, card_rail, alice, admin):
        reference = buy(engine, alice, 3)
        card_rail.outcome = Settled()
        settle(engine, reference)
        asyncio.run(engine.reverse_settlement(reference, admin, "investigating"))

        result = settle(engine, reference, SettlementSource.SCHEDULED_POLL)

        assert result.status == TxStatus.PENDING
        assert journal_row(runtime, reference).admin_hold is True
        assert catalog(runtime).regular_sold == 0

    def test_reversal_requires_completed_transaction(self, engine, alice, admin):
        reference = buy(engine, alice, 3)
        with pytest.raises(InvalidStateTransition):
            asyncio.run(engine.reverse_settlement(reference, admin, "nothing to reverse"))

    def test_reversal_to_failed_is_terminal(self, runtime, engine, card_rail, alice, admin):
        reference = buy(engine, alice, 3)
        card_rail.outcome = Settled()
        settle(engine, reference)

        result = asyncio.run(engine.reverse_settlement(reference, admin, "fraud", TxStatus.FAILED))

        assert result.status == TxStatus.FAILED
        assert settle(engine, reference).already_terminal
        assert_consistent(runtime)


class TestPermissions:
    def test_non_admin_cannot_grant(self, engine, alice):
        with pytest.raises(PermissionDenied):
            asyncio.run(engine.grant_shares(alice, alice.user_id, ShareClass.REGULAR, 5, "self"))

    def test_non_admin_cannot_decide(self, engine, alice, bob):
        reference = buy(engine, alice, 3, rail=Rail.MANUAL_CASH, inputs={"proof_handle": "p.png"})
        with pytest.raises(PermissionDenied):
            settle(engine, reference, SettlementSource.ADMIN_DECISION,
                   AdminDecision(approved=True, actor_id=bob.user_id), bob)

    def test_only_owner_or_admin_cancels(self, engine, alice, bob):
        reference = buy(engine, alice, 3)
        with pytest.raises(PermissionDenied):
            asyncio.run(engine.cancel_purchase(reference, bob))


class TestCancellation:
    def test_cancel_moves_journal_and_ledger_together(self, runtime, engine, card_rail, alice):
        reference = buy(engine, alice, 3)

        result = asyncio.run(engine.cancel_purchase(reference, alice, "changed my mind"))

        assert result.status == TxStatus.CANCELLED
        assert card_rail.cancelled == [reference]
        with runtime.session_factory() as session:
            assert LedgerStore(session).find_by_reference(reference).status == "cancelled"
        assert asyncio.run(engine.cancel_purchase(reference, alice)).already_terminal

    def test_completed_purchase_cannot_be_cancelled(self, engine, card_rail, alice):
        reference = buy(engine, alice, 3)
        card_rail.outcome = Settled()
        settle(engine, reference)
        with pytest.raises(InvalidStateTransition):
            asyncio.run(engine.cancel_purchase(reference, alice))


class TestDeletion:
    def test_deleting_completed_transaction_undoes_effects(self, runtime, engine, card_rail, alice, admin, recorders):
        handle = runtime.proof_store.save(b"%PDF-1.4 proof", "application/pdf")
        reference = buy(engine, alice, 7, rail=Rail.MANUAL_BANK, inputs={"proof_handle": handle})
        settle(engine, reference, SettlementSource.ADMIN_DECISION,
               AdminDecision(approved=True, actor_id=admin.user_id), admin)
        assert catalog(runtime).regular_sold == 7

        asyncio.run(engine.delete_transaction(reference, admin, "duplicate entry"))

        assert catalog(runtime).regular_sold == 0
        assert journal_row(runtime, reference) is None
        with runtime.session_factory() as session:
            assert LedgerStore(session).find_by_reference(reference) is None
            kinds = [e.kind for e in session.execute(
                select(JournalEvent).where(JournalEvent.reference == reference).order_by(JournalEvent.id)).scalars()]
        assert kinds[-1] == "deleted"
        assert len(recorders.rollbacks(reference)) == 1
        with pytest.raises(FileNotFoundError):
            runtime.proof_store.open(handle)
        assert_consistent(runtime)


class TestSettlementRepricing:
    def test_tier_sold_out_since_quote_is_reallocated(self, runtime, engine, card_rail, alice, bob):
        set_tiers(runtime, [(1, 1000, 0, 1000, 5), (2, 500, 0, 1500, 7), (3, 500, 0, 2000, 9)])
        first = buy(engine, alice, 800)
        second = buy(engine, bob, 800)
        card_rail.outcome = Settled()

        settle(engine, first)
        result = settle(engine, second)

        assert result.status == TxStatus.COMPLETED
        row = journal_row(runtime, second)
        assert (row.tier1, row.tier2, row.tier3) == (200, 500, 100)
        assert Decimal(row.total_amount) == Decimal("800000")
        assert_consistent(runtime)

    def test_exhausted_supply_escalates_and_stays_pending(self, runtime, engine, card_rail, alice, bob, recorders):
        set_tiers(runtime, [(1, 10, 0, 1000, 5), (2, 0, 0, 1500, 7), (3, 0, 0, 2000, 9)])
        first = buy(engine, alice, 8)
        second = buy(engine, bob, 8)
        card_rail.outcome = Settled()
        settle(engine, first)

        with pytest.raises(InsufficientSupply):
            settle(engine, second)

        row = journal_row(runtime, second)
        assert row.status == "pending"
        assert "Insufficient supply" in row.diagnostic
        assert recorders.notify.keys(f"notify.admin:{second}:review:escalated")
        assert_consistent(runtime)


class TestStrictReservation:
    def test_pending_purchases_hold_supply(self, runtime, engine, alice, bob):
        set_tiers(runtime, [(1, 10, 0, 1000, 5), (2, 0, 0, 1500, 7), (3, 0, 0, 2000, 9)])
        engine.strict_reservation = True
        buy(engine, alice, 8)
        with pytest.raises(InsufficientSupply):
            buy(engine, bob, 3)


class TestCatalogAdministration:
    def test_ratio_locks_at_first_co_founder_sale(self, runtime, engine, card_rail, alice, admin):
        engine.administer_catalog(admin, lambda c: c.update_ratio(30))
        assert catalog(runtime).co_founder_ratio == 30

        reference = buy(engine, alice, 1, share_class=ShareClass.CO_FOUNDER)
        card_rail.outcome = Settled()
        settle(engine, reference)

        assert catalog(runtime).ratio_locked
        with pytest.raises(RatioLocked):
            engine.administer_catalog(admin, lambda c: c.update_ratio(25))

    def test_price_update_bumps_version(self, runtime, engine, admin):
        version = catalog(runtime).version
        snapshot = engine.administer_catalog(admin, lambda c: c.update_tier_price(2, Decimal("75000")))
        assert snapshot.tier(2).price_naira == Decimal("75000")
        assert snapshot.version > version

    def test_conflict_is_retried_once(self, engine, admin):
        attempts = []

        def flaky(c):
            attempts.append(1)
            if len(attempts) == 1:
                raise ConcurrentUpdate()
            return c.set_invoice_enabled(False)

        snapshot = engine.administer_catalog(admin, flaky)
        assert len(attempts) == 2
        assert snapshot.invoice_enabled is False

    def test_second_conflict_surfaces_as_infra_error(self, engine, admin):
        def always_conflicts(c):
            raise ConcurrentUpdate()

        with pytest.raises(InfraError):
            engine.administer_catalog(admin, always_conflicts)

    def test_disabled_invoice_rail_refuses_initiation(self, engine, alice, admin):
        engine.administer_catalog(admin, lambda c: c.set_invoice_enabled(False))
        with pytest.raises(RailDisabled):
            buy(engine, alice, 2, rail=Rail.INVOICE)


class TestDuplicateClaims:
    def test_external_id_backs_one_transaction(self, runtime, engine, alice, bob):
        first = buy(engine, alice, 1)
        reference = buy(engine, bob, 1)
        with runtime.session_factory() as session, session.begin():
            JournalStore(session).update_pending(first, external_id="ORD-1")

        with pytest.raises(IntegrityError):
            with runtime.session_factory() as session, session.begin():
                JournalStore(session).update_pending(reference, external_id="ORD-1")

    def test_onchain_hash_reuse_is_refused(self, runtime, engine, rails, alice):
        rails[Rail.ONCHAIN] = _StubOnchain()
        tx_hash = "0x" + "e" * 64
        wallet = "0x" + "f" * 40
        asyncio.run(engine.submit_onchain_claim(alice, tx_hash, wallet, ShareClass.REGULAR, 1))
        with pytest.raises(DuplicateClaim):
            asyncio.run(engine.submit_onchain_claim(alice, tx_hash.upper().replace("0X", "0x"), wallet,
                                                    ShareClass.REGULAR, 1))


class _StubOnchain:
    rail = Rail.ONCHAIN
    supports_remote_status = False

    async def initiate(self, txn, user, inputs):
        from share_ledger_service.domain import InitiationResult
        from share_ledger_service.rails.onchain import normalize_claim
        claim = normalize_claim(inputs["tx_hash"], inputs["wallet_address"])
        return InitiationResult(payload=claim, external_id=claim["tx_hash"])

    async def verify(self, txn, proof=None):
        return StillPending(reason="awaiting confirmations")

    async def cancel(self, txn, reason=None):
        return None


class TestCalculatorDeterminism:
    def test_same_snapshot_same_quote(self, runtime):
        snapshot = catalog(runtime)
        a = calculate_purchase(snapshot, ShareClass.REGULAR, 2500, Currency.USDT)
        b = calculate_purchase(snapshot, ShareClass.REGULAR, 2500, Currency.USDT)
        assert a.model_dump_json() == b.model_dump_json()
        assert a.tier_breakdown == TierBreakdown(tier1=2000, tier2=500)


class TestOutboxIsolation:
    def test_failed_side_effect_does_not_roll_back_settlement(self, runtime, engine, card_rail, alice, recorders):
        recorders.referral.failing = True
        reference = buy(engine, alice, 4)
        card_rail.outcome = Settled()

        result = settle(engine, reference)

        assert result.status == TxStatus.COMPLETED
        rows = {r.kind: r for r in outbox_rows(runtime)}
        assert rows["referral.commission"].status == "failed"
        assert rows["referral.commission"].attempts == 1

        recorders.referral.failing = False
        delivered = asyncio.run(runtime.dispatcher.dispatch_due())

        assert delivered == 1
        assert recorders.commissions(reference) == [f"referral.commission:{reference}:1"]
        assert {r.status for r in outbox_rows(runtime)} == {"sent"}
