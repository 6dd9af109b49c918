"""
Side effects of settlement: referral commission/rollback and notifications.

Effects are written as outbox rows in the same database transaction as the
state change they belong to, then delivered after commit. A delivery failure
leaves the row for the outbox worker and never touches the settlement.
"""
import asyncio
import json
import logging
from datetime import timedelta
from typing import Awaitable, Callable, Dict, List, Optional, Sequence

import requests
from pydantic import BaseModel
from sqlalchemy import or_, select, update
from sqlalchemy.orm import Session, sessionmaker

from common.circuit_breaker import CircuitBreaker, referral_circuit_breaker
from common.kafka import TOPIC_SHARE_NOTIFICATIONS, get_producer
from common.retry import SIDE_EFFECT_RETRY_CONFIG, retry_async
from common.schemas import ReferralCommand, ShareNotification
from common.security import mint_internal_jwt
from common.settings import settings
from common.tracing import current_trace_id, trace_headers
from share_ledger_service.domain import ShareClass, utcnow
from share_ledger_service.models import JournalTransaction, Outbox

logger = logging.getLogger(__name__)

KIND_REFERRAL_COMMISSION = "referral.commission"
KIND_REFERRAL_ROLLBACK = "referral.rollback"
KIND_NOTIFY_USER = "notify.user"
KIND_NOTIFY_ADMIN = "notify.admin"

Handler = Callable[[dict, str], Awaitable[None]]


class SideEffectEmitter:
    """Writes outbox rows on the caller's session."""

    def __init__(self, admin_email: Optional[str] = None):
        self.admin_email = admin_email or settings.admin_email

    def enqueue(self, session: Session, kind: str, dedup_key: str, payload: BaseModel) -> Optional[int]:
        existing = session.execute(select(Outbox.id).where(Outbox.dedup_key == dedup_key)).first()
        if existing is not None:
            logger.info(f"Side effect {dedup_key} already queued")
            return None
        row = Outbox(kind=kind, dedup_key=dedup_key, payload=payload.model_dump_json(), status="new", attempts=0)
        session.add(row)
        session.flush()
        return row.id

    def _notification(self, txn: JournalTransaction, event_id: str, type_: str,
                      audience: str = "user", reason: Optional[str] = None) -> ShareNotification:
        return ShareNotification(
            event_id=event_id,
            type=type_,
            reference=txn.reference,
            user_id=txn.user_id,
            share_class=txn.share_class,
            rail=txn.rail,
            shares=txn.shares,
            currency=txn.currency,
            total_amount=txn.total_amount,
            audience=audience,
            email=txn.user_email if audience == "user" else self.admin_email,
            name=txn.user_name,
            reason=reason,
            trace_id=current_trace_id(),
        )

    def _referral(self, txn: JournalTransaction, action: str) -> ReferralCommand:
        return ReferralCommand(
            action=action,
            user_id=txn.user_id,
            reference=txn.reference,
            total_amount=txn.total_amount,
            currency=txn.currency,
            purchase_type="cofounder" if txn.share_class == ShareClass.CO_FOUNDER.value else "share",
        )

    def _emit(self, session: Session, effects: Sequence) -> List[int]:
        ids = []
        for kind, key, payload in effects:
            row_id = self.enqueue(session, kind, key, payload)
            if row_id is not None:
                ids.append(row_id)
        return ids

    def on_completed(self, session: Session, txn: JournalTransaction, generation: int,
                     admin_reviewed: bool = False) -> List[int]:
        ref = txn.reference
        effects = [
            (KIND_REFERRAL_COMMISSION, f"{KIND_REFERRAL_COMMISSION}:{ref}:{generation}",
             self._referral(txn, "commission")),
        ]
        key = f"{KIND_NOTIFY_USER}:{ref}:completed:{generation}"
        effects.append((KIND_NOTIFY_USER, key, self._notification(txn, key, "PurchaseCompleted")))
        if admin_reviewed:
            key = f"{KIND_NOTIFY_ADMIN}:{ref}:completed:{generation}"
            effects.append((KIND_NOTIFY_ADMIN, key, self._notification(txn, key, "PurchaseCompleted", "admin")))
        return self._emit(session, effects)

    def on_failed(self, session: Session, txn: JournalTransaction, reason: Optional[str]) -> List[int]:
        key = f"{KIND_NOTIFY_USER}:{txn.reference}:failed"
        return self._emit(session, [(KIND_NOTIFY_USER, key, self._notification(txn, key, "PurchaseFailed", reason=reason))])

    def on_cancelled(self, session: Session, txn: JournalTransaction, reason: Optional[str]) -> List[int]:
        key = f"{KIND_NOTIFY_USER}:{txn.reference}:cancelled"
        return self._emit(session, [(KIND_NOTIFY_USER, key, self._notification(txn, key, "PurchaseCancelled", reason=reason))])

    def on_reversed(self, session: Session, txn: JournalTransaction, generation: int, reason: str) -> List[int]:
        ref = txn.reference
        user_key = f"{KIND_NOTIFY_USER}:{ref}:reversed:{generation}"
        return self._emit(session, [
            (KIND_REFERRAL_ROLLBACK, f"{KIND_REFERRAL_ROLLBACK}:{ref}:{generation}", self._referral(txn, "rollback")),
            (KIND_NOTIFY_USER, user_key, self._notification(txn, user_key, "PurchaseReversed", reason=reason)),
        ])

    def on_review_required(self, session: Session, txn: JournalTransaction, reason: str, tag: str) -> List[int]:
        key = f"{KIND_NOTIFY_ADMIN}:{txn.reference}:review:{tag}"
        return self._emit(session, [
            (KIND_NOTIFY_ADMIN, key, self._notification(txn, key, "AdminReviewRequired", "admin", reason)),
        ])


class OutboxDispatcher:
    """Claims outbox rows and hands them to the handler for their kind."""

    def __init__(self, session_factory: sessionmaker, handlers: Dict[str, Handler],
                 max_attempts: int = None, claim_timeout: timedelta = timedelta(minutes=5)):
        self.session_factory = session_factory
        self.handlers = handlers
        self.max_attempts = max_attempts or settings.outbox_max_attempts
        self.claim_timeout = claim_timeout

    def _claim(self, row_id: int) -> Optional[Outbox]:
        now = utcnow()
        with self.session_factory() as session, session.begin():
            result = session.execute(
                update(Outbox)
                .where(Outbox.id == row_id, Outbox.attempts < self.max_attempts,
                       or_(Outbox.status.in_(("new", "failed")),
                           (Outbox.status == "sending") & (Outbox.claimed_at < now - self.claim_timeout)))
                .values(status="sending", attempts=Outbox.attempts + 1, claimed_at=now)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                return None
            return session.get(Outbox, row_id)

    def _finish(self, row_id: int, error: Optional[str] = None, attempts: int = 0) -> None:
        if error is None:
            values = {"status": "sent", "sent_at": utcnow(), "last_error": None}
        else:
            values = {"status": "dead" if attempts >= self.max_attempts else "failed", "last_error": error[:1000]}
        with self.session_factory() as session, session.begin():
            session.execute(update(Outbox).where(Outbox.id == row_id).values(**values))

    async def deliver(self, row_id: int) -> bool:
        row = self._claim(row_id)
        if row is None:
            return False

        handler = self.handlers.get(row.kind)
        if handler is None:
            logger.error(f"No handler for outbox row {row.id} of kind {row.kind}")
            self._finish(row.id, f"no handler for {row.kind}", row.attempts)
            return False

        try:
            await handler(json.loads(row.payload), row.dedup_key)
        except Exception as e:
            logger.error(f"Side effect {row.dedup_key} (outbox {row.id}) failed on attempt {row.attempts}: {e}")
            self._finish(row.id, str(e) or type(e).__name__, row.attempts)
            return False

        self._finish(row.id)
        logger.info(f"Side effect {row.dedup_key} delivered")
        return True

    async def dispatch(self, ids: Sequence[int]) -> int:
        delivered = 0
        for row_id in ids:
            if await self.deliver(row_id):
                delivered += 1
        return delivered

    def due_ids(self, limit: int = 50) -> List[int]:
        stale = utcnow() - self.claim_timeout
        with self.session_factory() as session:
            return list(session.execute(
                select(Outbox.id)
                .where(Outbox.attempts < self.max_attempts,
                       or_(Outbox.status.in_(("new", "failed")),
                           (Outbox.status == "sending") & (Outbox.claimed_at < stale)))
                .order_by(Outbox.id).limit(limit)
            ).scalars())

    async def dispatch_due(self, limit: int = 50) -> int:
        return await self.dispatch(self.due_ids(limit))


class ReferralGateway:
    """Calls the referral service; the dedup key is sent as Idempotency-Key."""

    def __init__(self, base_url: str = None, breaker: CircuitBreaker = referral_circuit_breaker,
                 timeout: float = 10.0):
        self.base_url = (base_url or settings.referral_service_url).rstrip("/")
        self.breaker = breaker
        self.timeout = timeout

    def _post(self, path: str, body: dict, idempotency_key: str) -> None:
        headers = {
            "Authorization": f"Bearer {mint_internal_jwt('referral')}",
            "Idempotency-Key": idempotency_key,
            **trace_headers(),
        }
        resp = requests.post(f"{self.base_url}{path}", json=body, headers=headers, timeout=self.timeout)
        resp.raise_for_status()

    async def __call__(self, payload: dict, dedup_key: str) -> None:
        command = ReferralCommand(**payload)
        path = f"/internal/referrals/{command.action}"
        await retry_async(self.breaker.call, SIDE_EFFECT_RETRY_CONFIG, self._post, path,
                          json.loads(command.model_dump_json()), dedup_key)


class KafkaNotifier:
    """Publishes notifications for the notification service."""

    def __init__(self, topic: str = TOPIC_SHARE_NOTIFICATIONS, producer_factory=get_producer,
                 flush_timeout: float = 10.0):
        self.topic = topic
        self.producer_factory = producer_factory
        self.flush_timeout = flush_timeout

    def _publish(self, payload: dict) -> None:
        producer = self.producer_factory()
        producer.produce(self.topic, key=payload["reference"].encode("utf-8"),
                         value=json.dumps(payload).encode("utf-8"))
        remaining = producer.flush(self.flush_timeout)
        if remaining:
            raise RuntimeError(f"{remaining} notification(s) not acknowledged by Kafka")

    async def __call__(self, payload: dict, dedup_key: str) -> None:
        await asyncio.to_thread(self._publish, payload)


def default_handlers() -> Dict[str, Handler]:
    referral = ReferralGateway()
    notifier = KafkaNotifier()
    return {
        KIND_REFERRAL_COMMISSION: referral,
        KIND_REFERRAL_ROLLBACK: referral,
        KIND_NOTIFY_USER: notifier,
        KIND_NOTIFY_ADMIN: notifier,
    }
