import json
from decimal import Decimal

import pytest

from common.schemas import ShareNotification
from notification_service.main import NotificationHandler, render_message


class FakeRedis:
    def __init__(self):
        self.seen = set()

    def mark_event_once(self, event_id):
        if event_id in self.seen:
            return False
        self.seen.add(event_id)
        return True

    def release_event(self, event_id):
        self.seen.discard(event_id)


def notification(**overrides):
    data = {
        "event_id": "notify.user:TXN-1:completed:1",
        "type": "PurchaseCompleted",
        "reference": "TXN-1",
        "user_id": "u1",
        "share_class": "regular",
        "rail": "card",
        "shares": 1200,
        "currency": "naira",
        "total_amount": "1300000",
        "email": "ada@example.com",
        "name": "Ada",
    }
    data.update(overrides)
    return data


class TestRenderMessage:
    def test_completed_for_user(self):
        subject, body = render_message(ShareNotification(**notification()))
        assert subject == "Your share purchase is confirmed"
        assert "Hello Ada," in body
        assert "1200 shares" in body
        assert "₦1,300,000.00" in body

    def test_failed_includes_reason(self):
        subject, body = render_message(ShareNotification(**notification(type="PurchaseFailed", reason="card declined")))
        assert "could not be completed" in subject
        assert "card declined" in body
        assert "No shares were credited" in body

    def test_usdt_amounts(self):
        _, body = render_message(ShareNotification(**notification(currency="usdt", total_amount=Decimal("49.5"),
                                                                   share_class="cofounder", shares=1)))
        assert "49.50 USDT" in body
        assert "1 co-founder shares" in body

    def test_admin_review(self):
        subject, body = render_message(ShareNotification(**notification(
            type="AdminReviewRequired", audience="admin", reason="Amount mismatch", rail="onchain")))
        assert subject == "Review required: TXN-1"
        assert "Amount mismatch" in body
        assert "onchain" in body


class TestNotificationHandler:
    def test_sends_once_per_event(self):
        sent = []
        handler = NotificationHandler(redis_client=FakeRedis(), sender=lambda to, s, b: sent.append((to, s)))
        raw = json.dumps(notification()).encode()

        assert handler.handle(raw)
        assert not handler.handle(raw)
        assert sent == [("ada@example.com", "Your share purchase is confirmed")]

    def test_malformed_events_are_dropped(self):
        sent = []
        handler = NotificationHandler(redis_client=FakeRedis(), sender=lambda *args: sent.append(args))
        assert not handler.handle(b"not json")
        assert not handler.handle(json.dumps(notification(type="Unknown")).encode())
        assert sent == []

    def test_failed_send_is_retried_on_redelivery(self):
        sent = []

        def sender(to, subject, body):
            if not sent:
                sent.append(None)
                raise ConnectionError("smtp unavailable")
            sent.append((to, subject))

        handler = NotificationHandler(redis_client=FakeRedis(), sender=sender)
        raw = json.dumps(notification()).encode()

        with pytest.raises(ConnectionError):
            handler.handle(raw)
        assert handler.handle(raw)
        assert sent[1:] == [("ada@example.com", "Your share purchase is confirmed")]
        assert not handler.handle(raw)
