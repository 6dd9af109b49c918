"""
Reconciliation engine.

Drives every purchase through pending -> completed | failed | cancelled and
keeps the journal, the per-user ledger and the catalog counters in step:

* journal, ledger, catalog and outbox rows for one transition are written in
  a single database transaction;
* terminal transitions are conditional updates, so concurrent settlers of the
  same reference produce exactly one winner;
* operations that change a user's owned totals run in that user's lane
  (in-process lock, plus a Redis lock when several replicas run);
* rail I/O happens outside any database transaction and outside the lane
  for verification, so a slow provider never holds a lock.
"""
import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Callable, Dict, List, Optional

import redis
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from common.error_handling import ErrorCodes
from common.redis_client import RedisClient
from common.settings import settings
from common.tracing import share_ledger_tracer
from share_ledger_service.calculator import (
    REASON_INSUFFICIENT_SUPPLY, allocate_tiers, calculate_purchase,
)
from share_ledger_service.domain import (
    AdminDecision, CatalogSnapshot, Currency, MANUAL_RAILS, Outcome, PurchaseInitiation, Quote, Rail,
    Rejected, SettlementResult, SettlementSource, Settled, ShareClass, StillPending, TERMINAL_STATUSES,
    TierBreakdown, TransactionRecord, TxStatus, UserContext, utcnow,
)
from share_ledger_service.errors import (
    ConcurrentUpdate, DuplicateClaim, InfraError, InsufficientSupply, InvalidInput, InvalidStateTransition,
    PermissionDenied, RailDisabled, TransactionNotFound,
)
from share_ledger_service.journal_store import JournalStore
from share_ledger_service.ledger_store import LedgerStore, entry_from_transaction
from share_ledger_service.models import JournalTransaction
from share_ledger_service.pricing import PricingCatalog
from share_ledger_service.rails.base import RailAdapter
from share_ledger_service.rails.onchain import normalize_claim
from share_ledger_service.references import allocate_reference
from share_ledger_service.side_effects import OutboxDispatcher, SideEffectEmitter

logger = logging.getLogger(__name__)


class UserLanes:
    """Serialises work per user id."""

    def __init__(self, redis_client: Optional[RedisClient] = None, ttl_seconds: int = 60):
        self.redis = redis_client
        self.ttl_seconds = ttl_seconds
        self._locks: Dict[str, asyncio.Lock] = {}
        self._waiting: Dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, user_id: str):
        lock = self._locks.setdefault(user_id, asyncio.Lock())
        self._waiting[user_id] = self._waiting.get(user_id, 0) + 1
        try:
            async with lock:
                if self.redis is None:
                    yield
                else:
                    async with self._distributed(user_id):
                        yield
        finally:
            self._waiting[user_id] -= 1
            if not self._waiting[user_id]:
                del self._waiting[user_id]
                self._locks.pop(user_id, None)

    @asynccontextmanager
    async def _distributed(self, user_id: str):
        lock = self.redis.user_lock(user_id, self.ttl_seconds)
        try:
            acquired = await asyncio.to_thread(lock.acquire)
        except redis.RedisError as e:
            raise InfraError("Could not reach lock service", e, code=ErrorCodes.SERVICE_UNAVAILABLE)
        if not acquired:
            raise InfraError(f"Timed out waiting for user lane {user_id}", code=ErrorCodes.TIMEOUT_ERROR)
        try:
            yield
        finally:
            try:
                await asyncio.to_thread(lock.release)
            except redis.exceptions.LockError as e:
                logger.warning(f"User lane lock for {user_id} expired before release: {e}")


class ReconciliationEngine:
    def __init__(self, session_factory: sessionmaker, rails: Dict[Rail, RailAdapter],
                 emitter: SideEffectEmitter, dispatcher: Optional[OutboxDispatcher] = None,
                 lanes: Optional[UserLanes] = None, strict_reservation: Optional[bool] = None,
                 proof_store=None, on_catalog_change: Optional[Callable[[], None]] = None):
        self.session_factory = session_factory
        self.rails = rails
        self.emitter = emitter
        self.dispatcher = dispatcher
        self.lanes = lanes or UserLanes()
        self.strict_reservation = (settings.strict_supply_reservation
                                   if strict_reservation is None else strict_reservation)
        self.proof_store = proof_store
        self.on_catalog_change = on_catalog_change

    # Helpers

    def rail(self, rail: Rail) -> RailAdapter:
        adapter = self.rails.get(rail)
        if adapter is None:
            raise RailDisabled(rail.value)
        return adapter

    def get_transaction(self, reference: str) -> TransactionRecord:
        with self.session_factory() as session:
            row = JournalStore(session).get_by_reference(reference)
            if row is None:
                raise TransactionNotFound(reference)
            return TransactionRecord.from_row(row)

    def reference_for_external_id(self, rail: Rail, external_id: str) -> str:
        with self.session_factory() as session:
            row = JournalStore(session).get_by_external_id(rail, external_id)
            if row is None:
                raise TransactionNotFound(external_id)
            return row.reference

    def catalog(self) -> CatalogSnapshot:
        with self.session_factory() as session:
            return PricingCatalog(session).get_current()

    def administer_catalog(self, actor: UserContext,
                           change: Callable[[PricingCatalog], CatalogSnapshot]) -> CatalogSnapshot:
        """Apply an admin catalog change; a version conflict is retried once."""
        self._require_admin(actor)
        for attempt in (1, 2):
            try:
                with self.session_factory() as session, session.begin():
                    snapshot = change(PricingCatalog(session))
                break
            except ConcurrentUpdate as e:
                if attempt == 2:
                    raise InfraError("Catalog changed concurrently twice, retry later", e,
                                     code=ErrorCodes.CONCURRENT_UPDATE)
                logger.warning(f"Catalog version conflict for {actor.user_id}, retrying")
        logger.info(f"Catalog updated by {actor.user_id}, now version {snapshot.version}")
        self._catalog_changed()
        return snapshot

    def _quote(self, share_class: ShareClass, quantity: int, currency: Currency):
        with self.session_factory() as session:
            snapshot = PricingCatalog(session).get_current()
            reserved, reserved_co_founder = (None, 0)
            if self.strict_reservation:
                reserved, reserved_co_founder = JournalStore(session).pending_reservations()
        return calculate_purchase(snapshot, share_class, quantity, currency,
                                  reserved=reserved, reserved_co_founder=reserved_co_founder), snapshot

    def quote(self, share_class: ShareClass, quantity: int, currency: Currency) -> Quote:
        return self._quote(share_class, quantity, currency)[0]

    def _require_quote(self, share_class: ShareClass, quantity: int, currency: Currency):
        quote, snapshot = self._quote(share_class, quantity, currency)
        if not quote.success:
            if quote.reason == REASON_INSUFFICIENT_SUPPLY:
                raise InsufficientSupply(context={"requested": quantity, "available": quote.available})
            raise InvalidInput(quote.reason, field="quantity")
        return quote, snapshot

    def _allocate_reference(self, share_class: ShareClass) -> str:
        with self.session_factory() as session:
            journal = JournalStore(session)
            return allocate_reference(share_class, journal.exists)

    async def _dispatch(self, ids: List[int]) -> None:
        if not ids or self.dispatcher is None:
            return
        try:
            await self.dispatcher.dispatch(ids)
        except SQLAlchemyError as e:
            logger.error(f"Outbox dispatch of {ids} deferred to worker: {e}")

    def _catalog_changed(self) -> None:
        if self.on_catalog_change is not None:
            self.on_catalog_change()

    @staticmethod
    def _require_admin(actor: Optional[UserContext]) -> None:
        if actor is None or not actor.is_admin:
            raise PermissionDenied()

    # Initiation

    async def initiate_purchase(self, user: UserContext, share_class: ShareClass, quantity: int,
                                currency: Currency, rail: Rail, rail_inputs: Optional[dict] = None) -> PurchaseInitiation:
        if rail == Rail.ADMIN_GRANT:
            raise InvalidInput("Administrative grants are created with grant_shares", field="rail")
        adapter = self.rail(rail)
        inputs = rail_inputs or {}

        async with self.lanes.hold(user.user_id):
            quote, snapshot = self._require_quote(share_class, quantity, currency)
            if rail == Rail.INVOICE and not snapshot.invoice_enabled:
                raise RailDisabled(rail.value)

            draft = TransactionRecord(
                reference=self._allocate_reference(share_class),
                user_id=user.user_id,
                share_class=share_class,
                rail=rail,
                shares=quantity,
                currency=currency,
                price_per_share=quote.price_per_share,
                total_amount=quote.total_price,
                tier_breakdown=quote.tier_breakdown or TierBreakdown(),
                user_email=inputs.get("email") or user.email,
                user_name=inputs.get("customer_name") or user.name,
                created_at=utcnow(),
            )
            initiation = await adapter.initiate(draft, user, inputs)

            try:
                with self.session_factory() as session, session.begin():
                    journal = JournalStore(session)
                    if initiation.external_id and journal.get_by_external_id(rail, initiation.external_id):
                        raise DuplicateClaim(initiation.external_id)
                    row = _journal_row(draft, initiation.payload, initiation.external_id)
                    journal.create_transaction(row)
                    LedgerStore(session).append_entry(user.user_id, entry_from_transaction(row))
                    ids = []
                    if rail in MANUAL_RAILS:
                        ids = self.emitter.on_review_required(session, row, "Manual payment submitted for review",
                                                              "submitted")
            except IntegrityError as e:
                if initiation.external_id:
                    raise DuplicateClaim(initiation.external_id)
                raise InfraError("Could not record transaction", e, code=ErrorCodes.DATABASE_ERROR)

        logger.info(f"Initiated {draft.reference}: user={user.user_id} class={share_class.value} "
                    f"rail={rail.value} shares={quantity} amount={quote.total_price} {currency.value}")
        await self._dispatch(ids)
        return PurchaseInitiation(reference=draft.reference, quote=quote, rail=rail,
                                  client_data=initiation.client_data)

    async def submit_onchain_claim(self, user: UserContext, tx_hash: str, wallet_address: str,
                                   share_class: ShareClass = ShareClass.REGULAR, quantity: Optional[int] = None,
                                   reference: Optional[str] = None) -> SettlementResult:
        """Attach a transfer hash to a new or existing on-chain purchase and verify it."""
        claim = normalize_claim(tx_hash, wallet_address)
        with self.session_factory() as session:
            if JournalStore(session).get_by_external_id(Rail.ONCHAIN, claim["tx_hash"]) is not None:
                raise DuplicateClaim(claim["tx_hash"])

        if reference is None:
            if quantity is None:
                raise InvalidInput("Quantity is required", field="quantity")
            initiation = await self.initiate_purchase(
                user, share_class, quantity, Currency.USDT, Rail.ONCHAIN,
                {"tx_hash": claim["tx_hash"], "wallet_address": claim["sender_wallet"]},
            )
            reference = initiation.reference
        else:
            txn = self.get_transaction(reference)
            if txn.user_id != user.user_id and not user.is_admin:
                raise PermissionDenied("Transaction belongs to another user")
            if txn.rail != Rail.ONCHAIN:
                raise InvalidInput("Transaction is not an on-chain purchase", field="reference")
            if txn.status in TERMINAL_STATUSES:
                return SettlementResult(reference, txn.status, already_terminal=True, transaction=txn)
            try:
                with self.session_factory() as session, session.begin():
                    JournalStore(session).update_pending(
                        reference, rail_payload={**txn.rail_payload, **claim}, external_id=claim["tx_hash"])
            except IntegrityError:
                raise DuplicateClaim(claim["tx_hash"])

        return await self.settle_by_reference(reference, SettlementSource.USER_VERIFY, actor=user)

    async def grant_shares(self, actor: UserContext, user_id: str, share_class: ShareClass, shares: int,
                           note: str, user_email: Optional[str] = None,
                           user_name: Optional[str] = None) -> SettlementResult:
        """Administrative allotment, recorded completed with a naira reference price."""
        self._require_admin(actor)
        adapter = self.rail(Rail.ADMIN_GRANT)

        async with self.lanes.hold(user_id):
            quote, _ = self._require_quote(share_class, shares, Currency.NAIRA)
            now = utcnow()
            draft = TransactionRecord(
                reference=self._allocate_reference(share_class),
                user_id=user_id,
                share_class=share_class,
                rail=Rail.ADMIN_GRANT,
                shares=shares,
                currency=Currency.NAIRA,
                price_per_share=quote.price_per_share,
                total_amount=quote.total_price,
                tier_breakdown=quote.tier_breakdown or TierBreakdown(),
                status=TxStatus.COMPLETED,
                user_email=user_email,
                user_name=user_name,
                created_at=now,
                settled_at=now,
            )
            initiation = await adapter.initiate(draft, actor, {"note": note})

            with self.session_factory() as session, session.begin():
                row = _journal_row(draft, initiation.payload, None)
                row.verifier_id = actor.user_id
                row.note = initiation.payload["note"]
                row.settlement_count = 1
                JournalStore(session).create_transaction(row, actor_id=actor.user_id)
                LedgerStore(session).append_entry(user_id, entry_from_transaction(row))
                PricingCatalog(session).increment_sold(share_class, shares, quote.tier_breakdown)
                ids = self.emitter.on_completed(session, row, 1)

        logger.info(f"Granted {shares} {share_class.value} shares to {user_id} as {draft.reference} by {actor.user_id}")
        self._catalog_changed()
        await self._dispatch(ids)
        return SettlementResult(draft.reference, TxStatus.COMPLETED, Settled(timestamp=now),
                                transaction=self.get_transaction(draft.reference))

    # Settlement

    async def settle_by_reference(self, reference: str, source: SettlementSource, proof=None,
                                  actor: Optional[UserContext] = None) -> SettlementResult:
        txn = self.get_transaction(reference)
        if txn.status in TERMINAL_STATUSES:
            return SettlementResult(reference, txn.status, already_terminal=True, transaction=txn)

        with share_ledger_tracer.span("settlement", reference=reference, rail=txn.rail.value,
                                      source=source.value) as span:
            result = await self._settle(txn, source, proof, actor)
            span.tag(status=result.status.value, already_terminal=result.already_terminal or None)
        return result

    async def _settle(self, txn: TransactionRecord, source: SettlementSource, proof,
                      actor: Optional[UserContext]) -> SettlementResult:
        admin_reviewed = False
        verifier_id = None
        if source == SettlementSource.ADMIN_DECISION:
            self._require_admin(actor)
            if not isinstance(proof, AdminDecision):
                raise InvalidInput("An approve or reject decision is required", field="approved")
            outcome = proof.to_outcome()
            admin_reviewed = True
            verifier_id = actor.user_id
        elif txn.admin_hold:
            outcome = StillPending(reason="Held for administrator review after reversal")
        else:
            outcome = await self.rail(txn.rail).verify(txn, proof)

        return await self._apply(txn, outcome, source, verifier_id, admin_reviewed)

    async def _apply(self, txn: TransactionRecord, outcome: Outcome, source: SettlementSource,
                     verifier_id: Optional[str], admin_reviewed: bool) -> SettlementResult:
        if isinstance(outcome, StillPending):
            return SettlementResult(txn.reference, TxStatus.PENDING, outcome,
                                    diagnostic=outcome.reason or txn.diagnostic, transaction=txn)

        if isinstance(outcome, Rejected) and outcome.escalate:
            return await self._escalate(txn, outcome.reason)

        async with self.lanes.hold(txn.user_id):
            if isinstance(outcome, Settled):
                return await self._complete(txn, outcome, source, verifier_id, admin_reviewed)
            return await self._fail(txn, outcome, source, verifier_id)

    async def _escalate(self, txn: TransactionRecord, reason: str) -> SettlementResult:
        with self.session_factory() as session, session.begin():
            journal = JournalStore(session)
            ids = []
            if journal.update_pending(txn.reference, diagnostic=reason):
                journal.record_event(txn.reference, "escalated", TxStatus.PENDING.value, TxStatus.PENDING.value,
                                     note=reason)
                row = journal.get_by_reference(txn.reference)
                ids = self.emitter.on_review_required(session, row, reason, f"escalated:{row.settlement_count}")
        if not ids and self.get_transaction(txn.reference).status in TERMINAL_STATUSES:
            return self._current(txn.reference)
        logger.warning(f"{txn.reference} escalated for review: {reason}")
        await self._dispatch(ids)
        return SettlementResult(txn.reference, TxStatus.PENDING, Rejected(reason, escalate=True),
                                diagnostic=reason, transaction=self.get_transaction(txn.reference))

    def _current(self, reference: str) -> SettlementResult:
        txn = self.get_transaction(reference)
        return SettlementResult(reference, txn.status, already_terminal=txn.status in TERMINAL_STATUSES,
                                transaction=txn)

    async def _complete(self, txn: TransactionRecord, outcome: Settled, source: SettlementSource,
                        verifier_id: Optional[str], admin_reviewed: bool) -> SettlementResult:
        breakdown = txn.tier_breakdown if txn.share_class == ShareClass.REGULAR else None
        ids: List[int] = []
        won = False

        for attempt in (1, 2):
            try:
                with self.session_factory() as session, session.begin():
                    journal = JournalStore(session)
                    if breakdown is not None and breakdown != txn.tier_breakdown:
                        journal.update_pending(txn.reference, breakdown=breakdown)
                        LedgerStore(session).update_entry_breakdown(
                            txn.reference, breakdown.tier1, breakdown.tier2, breakdown.tier3)
                    won = journal.settle(txn.reference, TxStatus.COMPLETED, verifier_id, source=source.value)
                    if won:
                        LedgerStore(session).update_entry_status(txn.user_id, txn.reference, TxStatus.COMPLETED)
                        PricingCatalog(session).increment_sold(txn.share_class, txn.shares, breakdown)
                        row = journal.get_by_reference(txn.reference)
                        ids = self.emitter.on_completed(session, row, row.settlement_count, admin_reviewed)
                break
            except InsufficientSupply:
                repriced = None
                if attempt == 1 and breakdown is not None:
                    repriced = allocate_tiers(self.catalog(), txn.shares)
                if repriced is None:
                    await self._escalate(txn, "Insufficient supply at settlement; shares could not be allotted")
                    raise
                logger.warning(f"{txn.reference} tier allotment changed at settlement: "
                               f"{breakdown.model_dump()} -> {repriced.model_dump()}")
                breakdown = repriced

        if not won:
            logger.info(f"{txn.reference} already settled by a concurrent caller")
            return self._current_after_race(txn.reference)
        self._catalog_changed()
        await self._dispatch(ids)
        return SettlementResult(txn.reference, TxStatus.COMPLETED, outcome,
                                transaction=self.get_transaction(txn.reference))

    def _current_after_race(self, reference: str) -> SettlementResult:
        result = self._current(reference)
        result.already_terminal = True
        return result

    async def _fail(self, txn: TransactionRecord, outcome: Rejected, source: SettlementSource,
                    verifier_id: Optional[str]) -> SettlementResult:
        ids = []
        with self.session_factory() as session, session.begin():
            journal = JournalStore(session)
            won = journal.settle(txn.reference, TxStatus.FAILED, verifier_id, note=outcome.reason,
                                 source=source.value)
            if won:
                LedgerStore(session).update_entry_status(txn.user_id, txn.reference, TxStatus.FAILED,
                                                         note=outcome.reason)
                ids = self.emitter.on_failed(session, journal.get_by_reference(txn.reference), outcome.reason)
        if not won:
            return self._current_after_race(txn.reference)
        await self._dispatch(ids)
        return SettlementResult(txn.reference, TxStatus.FAILED, outcome, diagnostic=outcome.reason,
                                transaction=self.get_transaction(txn.reference))

    # Administrative corrections

    async def reverse_settlement(self, reference: str, actor: UserContext, reason: str,
                                 target: TxStatus = TxStatus.PENDING) -> SettlementResult:
        self._require_admin(actor)
        if target == TxStatus.COMPLETED:
            raise InvalidInput("A reversal cannot target completed", field="targetStatus")
        if not reason:
            raise InvalidInput("A reason is required", field="reason")
        txn = self.get_transaction(reference)
        if txn.status != TxStatus.COMPLETED:
            raise InvalidStateTransition(f"Transaction is {txn.status.value}, only completed can be reversed",
                                         context={"reference": reference})

        async with self.lanes.hold(txn.user_id):
            with self.session_factory() as session, session.begin():
                journal = JournalStore(session)
                if not journal.reopen(reference, target, actor.user_id, reason):
                    raise InvalidStateTransition("Transaction is no longer completed",
                                                 context={"reference": reference})
                LedgerStore(session).update_entry_status(txn.user_id, reference, target, note=reason)
                PricingCatalog(session).decrement_sold(
                    txn.share_class, txn.shares,
                    txn.tier_breakdown if txn.share_class == ShareClass.REGULAR else None)
                row = journal.get_by_reference(reference)
                ids = self.emitter.on_reversed(session, row, row.settlement_count, reason)

        logger.info(f"Reversed {reference} to {target.value} by {actor.user_id}: {reason}")
        self._catalog_changed()
        await self._dispatch(ids)
        return SettlementResult(reference, target, transaction=self.get_transaction(reference))

    async def cancel_purchase(self, reference: str, actor: UserContext, reason: Optional[str] = None) -> SettlementResult:
        txn = self.get_transaction(reference)
        if txn.user_id != actor.user_id and not actor.is_admin:
            raise PermissionDenied("Transaction belongs to another user")
        if txn.status == TxStatus.CANCELLED:
            return SettlementResult(reference, txn.status, already_terminal=True, transaction=txn)
        if txn.status in TERMINAL_STATUSES:
            raise InvalidStateTransition(f"Transaction already {txn.status.value}", context={"reference": reference})

        reason = reason or "Cancelled by user"
        async with self.lanes.hold(txn.user_id):
            ids = []
            with self.session_factory() as session, session.begin():
                journal = JournalStore(session)
                won = journal.settle(reference, TxStatus.CANCELLED, actor.user_id, note=reason, source="cancel")
                if won:
                    LedgerStore(session).update_entry_status(txn.user_id, reference, TxStatus.CANCELLED, note=reason)
                    ids = self.emitter.on_cancelled(session, journal.get_by_reference(reference), reason)
        if not won:
            return self._current_after_race(reference)

        adapter = self.rails.get(txn.rail)
        if adapter is not None:
            await adapter.cancel(txn, reason)
        await self._dispatch(ids)
        return SettlementResult(reference, TxStatus.CANCELLED, transaction=self.get_transaction(reference))

    async def delete_transaction(self, reference: str, actor: UserContext, reason: str) -> None:
        """Remove a transaction, undoing its economic effect first when it was completed."""
        self._require_admin(actor)
        txn = self.get_transaction(reference)

        async with self.lanes.hold(txn.user_id):
            with self.session_factory() as session, session.begin():
                journal = JournalStore(session)
                row = journal.get_by_reference(reference)
                if row is None:
                    raise TransactionNotFound(reference)
                ids = []
                was_completed = row.status == TxStatus.COMPLETED.value
                if was_completed:
                    PricingCatalog(session).decrement_sold(
                        txn.share_class, txn.shares,
                        txn.tier_breakdown if txn.share_class == ShareClass.REGULAR else None)
                    ids = self.emitter.on_reversed(session, row, row.settlement_count, reason)
                LedgerStore(session).remove_entry(txn.user_id, reference)
                journal.delete(reference, actor.user_id, reason)

        logger.info(f"Deleted {reference} ({txn.status.value}) by {actor.user_id}: {reason}")
        handle = txn.rail_payload.get("proof_handle")
        if handle and self.proof_store is not None:
            self.proof_store.delete(handle)
        if was_completed:
            self._catalog_changed()
        await self._dispatch(ids)


def _journal_row(draft: TransactionRecord, payload: dict, external_id: Optional[str]) -> JournalTransaction:
    breakdown = draft.tier_breakdown
    return JournalTransaction(
        reference=draft.reference,
        user_id=draft.user_id,
        user_email=draft.user_email,
        user_name=draft.user_name,
        share_class=draft.share_class.value,
        rail=draft.rail.value,
        shares=draft.shares,
        price_per_share=draft.price_per_share,
        currency=draft.currency.value,
        total_amount=draft.total_amount,
        tier1=breakdown.tier1,
        tier2=breakdown.tier2,
        tier3=breakdown.tier3,
        status=draft.status.value,
        external_id=external_id,
        rail_payload=_jsonable(payload),
        admin_hold=False,
        settlement_count=0,
        created_at=draft.created_at or utcnow(),
        settled_at=draft.settled_at,
    )


def _jsonable(payload: dict) -> dict:
    return {k: (str(v) if not isinstance(v, (str, int, float, bool, type(None), dict, list)) else v)
            for k, v in (payload or {}).items()}
