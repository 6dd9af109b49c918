import json, logging, threading
from decimal import Decimal
from typing import Optional, Tuple
from fastapi import FastAPI
from pydantic import ValidationError
from common.kafka import get_consumer, TOPIC_SHARE_NOTIFICATIONS
from common.redis_client import RedisClient
from common.schemas import ShareNotification
from common.tracing import notification_tracer

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

app = FastAPI(title="Notification Service")

CLASS_LABELS = {"regular": "shares", "cofounder": "co-founder shares"}


def _amount(n: ShareNotification) -> str:
    if n.currency == "naira":
        return f"₦{n.total_amount:,.2f}"
    return f"{n.total_amount.quantize(Decimal('0.01'))} USDT"


def render_message(n: ShareNotification) -> Tuple[str, str]:
    """Subject and body for one lifecycle event"""
    what = f"{n.shares} {CLASS_LABELS.get(n.share_class, 'shares')}"
    greeting = f"Hello {n.name}," if n.name else "Hello,"
    if n.audience == "admin":
        if n.type == "AdminReviewRequired":
            return (f"Review required: {n.reference}",
                    f"Purchase {n.reference} by user {n.user_id} ({what}, {_amount(n)}, {n.rail}) "
                    f"needs review: {n.reason}")
        return (f"Purchase {n.type.replace('Purchase', '').lower()}: {n.reference}",
                f"Purchase {n.reference} by user {n.user_id} ({what}, {_amount(n)}) is now "
                f"{n.type.replace('Purchase', '').lower()}.")
    if n.type == "PurchaseCompleted":
        return ("Your share purchase is confirmed",
                f"{greeting}\n\nYour purchase of {what} for {_amount(n)} (reference {n.reference}) is complete.")
    if n.type == "PurchaseFailed":
        return ("Your share purchase could not be completed",
                f"{greeting}\n\nYour purchase {n.reference} of {what} failed: {n.reason or 'payment not confirmed'}. "
                f"No shares were credited.")
    if n.type == "PurchaseCancelled":
        return ("Your share purchase was cancelled",
                f"{greeting}\n\nPurchase {n.reference} of {what} was cancelled.")
    if n.type == "PurchaseReversed":
        return ("Your share purchase was reversed",
                f"{greeting}\n\nPurchase {n.reference} of {what} was reversed by an administrator: {n.reason}.")
    return (f"Update on {n.reference}", f"{greeting}\n\nYour purchase {n.reference} requires review.")


class NotificationHandler:
    def __init__(self, redis_client: Optional[RedisClient] = None, sender=None):
        self.redis = redis_client or RedisClient()
        self.sender = sender or self.log_sender

    @staticmethod
    def log_sender(to: Optional[str], subject: str, body: str) -> None:
        logger.info(f"[NOTIFY] to={to} subject={subject!r}")

    def handle(self, raw: bytes) -> bool:
        """Returns True when a message was sent, False for duplicates and malformed events"""
        try:
            notification = ShareNotification.model_validate(json.loads(raw))
        except (ValueError, ValidationError) as e:
            logger.error(f"Dropping malformed notification: {e}")
            return False
        if not self.redis.mark_event_once(notification.event_id):
            logger.info(f"Duplicate notification {notification.event_id} skipped")
            return False
        with notification_tracer.span("notification.send", trace_id=notification.trace_id,
                                      event_type=notification.type, reference=notification.reference):
            subject, body = render_message(notification)
            try:
                self.sender(notification.email, subject, body)
            except Exception:
                self.redis.release_event(notification.event_id)
                raise
        return True


def consume(handler: NotificationHandler):
    c = get_consumer("notification-service", [TOPIC_SHARE_NOTIFICATIONS])
    while True:
        msg = c.poll(1.0)
        if not msg or msg.error():
            continue
        try:
            handler.handle(msg.value())
        except Exception as e:
            # not committed, so the event is redelivered
            logger.error(f"Notification handling failed: {e}")
            continue
        c.commit(message=msg)


@app.on_event("startup")
def start_consumer():
    threading.Thread(target=consume, args=(NotificationHandler(),), daemon=True).start()


@app.get("/health")
async def health():
    return {"ok": True}
