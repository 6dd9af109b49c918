import hashlib
import hmac
import json

import pytest
from fastapi.testclient import TestClient

from common.redis_client import RedisClient
from common.security import mint_user_jwt
from common.settings import settings
from share_ledger_service.api import create_app
from share_ledger_service.domain import InitiationResult, Rail, Rejected, Settled

from conftest import ScriptedRail, journal_row


def bearer(sub, admin=False, email=None):
    claims = {"email": email or f"{sub}@example.com", "name": sub.title()}
    if admin:
        claims["scope"] = "admin"
    return {"Authorization": f"Bearer {mint_user_jwt(sub, claims)}"}


ALICE = bearer("alice")
BOB = bearer("bob")
ADMIN = bearer("root", admin=True)


@pytest.fixture
def client(small_catalog):
    return TestClient(create_app(small_catalog))


def initiate_card(client, quantity=10, headers=ALICE, prefix="/shares"):
    resp = client.post(f"{prefix}/paystack/initiate", json={"quantity": quantity}, headers=headers)
    assert resp.status_code == 200, resp.text
    return resp.json()["data"]["reference"]


def submit_manual(client, quantity=3, headers=BOB, filename="proof.png", content_type="image/png"):
    return client.post(
        "/shares/manual/submit",
        data={"quantity": str(quantity), "paymentMethod": "bank_transfer", "bankName": "GTB"},
        files={"paymentProof": (filename, b"\x89PNG-proof", content_type)},
        headers=headers,
    )


class TestPublicEndpoints:
    def test_info(self, client):
        regular = client.get("/shares/info").json()
        assert regular["success"]
        assert [t["capacity"] for t in regular["pricing"]["tiers"]] == [1000, 500, 500]
        co_founder = client.get("/cofounder/info").json()
        assert co_founder["pricing"]["available"] == 500
        assert co_founder["ratio"] == 29

    def test_calculate(self, client):
        resp = client.post("/shares/calculate", json={"quantity": 3, "currency": "usdt"})
        assert resp.status_code == 200
        details = resp.json()["purchase_details"]
        assert float(details["total_price"]) == 15
        assert details["tier_breakdown"] == {"tier1": 3, "tier2": 0, "tier3": 0}

    def test_calculate_rejects_bad_requests(self, client):
        resp = client.post("/shares/calculate", json={"quantity": 2001})
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "INSUFFICIENT_SUPPLY"
        resp = client.post("/shares/calculate", json={"quantity": 0})
        assert resp.json()["error"]["code"] == "INVALID_INPUT"

    def test_payment_config_hides_disabled_invoice(self, client):
        assert "invoice" in client.get("/shares/payment-config").json()["rails"]
        client.put("/shares/admin/invoice", json={"enabled": False}, headers=ADMIN)
        config = client.get("/shares/payment-config").json()
        assert "invoice" not in config["rails"]
        assert "admin_grant" not in config["rails"]

    def test_health_endpoints(self, client):
        assert client.get("/health").json()["ok"]
        assert client.get("/redis/health").json()["cache_enabled"] is False
        assert "paystack" in client.get("/circuit-breakers").json()["circuit_breakers"]


class TestAuthentication:
    def test_missing_and_bad_tokens(self, client):
        assert client.post("/shares/paystack/initiate", json={"quantity": 1}).status_code == 401
        resp = client.get("/shares/user", headers={"Authorization": "Bearer nonsense"})
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "UNAUTHORIZED"

    def test_admin_routes_require_admin_scope(self, client):
        resp = client.get("/shares/admin/statistics", headers=ALICE)
        assert resp.status_code == 403
        assert resp.json()["error"]["code"] == "FORBIDDEN"
        assert client.put("/shares/admin/pricing/ratio", json={"ratio": 30}, headers=ALICE).status_code == 403


class TestCardFlow:
    def test_initiate_and_verify(self, client, card_rail):
        reference = initiate_card(client)
        assert reference.startswith("TXN-")

        pending = client.get(f"/shares/paystack/verify/{reference}", headers=ALICE).json()
        assert (pending["success"], pending["status"]) == (False, "pending")

        card_rail.outcome = Settled()
        done = client.get(f"/shares/paystack/verify/{reference}", headers=ALICE).json()
        assert (done["success"], done["status"], done["shares"]) == (True, "completed", 10)

        again = client.get(f"/shares/paystack/verify/{reference}", headers=ALICE).json()
        assert again["already_terminal"]

        view = client.get("/shares/user", headers=ALICE).json()
        assert view["owned_regular"] == 10
        assert view["effective_shares"] == 10

    def test_reversed_card_purchase_is_restored_by_admin(self, client, card_rail):
        reference = initiate_card(client)
        card_rail.outcome = Settled()
        client.get(f"/shares/paystack/verify/{reference}", headers=ALICE)

        reversed_ = client.post("/shares/admin/reverse", headers=ADMIN,
                                json={"transactionId": reference, "reason": "chargeback"}).json()
        assert reversed_["status"] == "pending"
        assert client.get("/shares/user", headers=ALICE).json()["owned_regular"] == 0

        held = client.get(f"/shares/paystack/verify/{reference}", headers=ALICE).json()
        assert held["status"] == "pending"

        restored = client.post("/shares/admin/resettle", headers=ADMIN,
                               json={"transactionId": reference, "approved": True, "adminNote": "dispute won"})
        assert restored.status_code == 200, restored.text
        assert (restored.json()["success"], restored.json()["status"]) == (True, "completed")
        assert client.get("/shares/user", headers=ALICE).json()["owned_regular"] == 10

    def test_resettle_requires_a_held_transaction(self, client):
        reference = initiate_card(client)
        resp = client.post("/shares/admin/resettle", headers=ADMIN,
                           json={"transactionId": reference, "approved": True})
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "INVALID_INPUT"

    def test_other_users_cannot_verify(self, client):
        reference = initiate_card(client)
        assert client.get(f"/shares/paystack/verify/{reference}", headers=BOB).status_code == 403

    def test_unknown_reference(self, client):
        resp = client.get("/shares/paystack/verify/TXN-00000000-000000", headers=ALICE)
        assert resp.status_code == 404

    def test_cancel(self, client, card_rail):
        reference = initiate_card(client)
        resp = client.post(f"/shares/cancel/{reference}", json={"reason": "changed my mind"}, headers=ALICE)
        assert resp.json()["status"] == "cancelled"
        assert card_rail.cancelled == [reference]
        assert client.post(f"/shares/cancel/{reference}", headers=ALICE).json()["already_terminal"]


class TestWebhooks:
    def sign(self, body, secret, algorithm):
        return hmac.new(secret.encode(), body, algorithm).hexdigest()

    def test_paystack_webhook_settles(self, client, card_rail, monkeypatch):
        monkeypatch.setattr(settings, "paystack_secret_key", "sk_test")
        reference = initiate_card(client)
        card_rail.outcome = Settled()
        body = json.dumps({"event": "charge.success", "data": {"reference": reference}}).encode()

        bad = client.post("/shares/paystack/webhook", content=body, headers={"x-paystack-signature": "0" * 128})
        assert bad.status_code == 401
        assert journal_row(client.app.state.runtime, reference).status == "pending"

        ok = client.post("/shares/paystack/webhook", content=body,
                         headers={"x-paystack-signature": self.sign(body, "sk_test", hashlib.sha512)})
        assert ok.json() == {"received": True, "status": "completed"}

    def test_paystack_webhook_ignores_unknown_references(self, client, monkeypatch):
        monkeypatch.setattr(settings, "paystack_secret_key", "sk_test")
        body = json.dumps({"event": "charge.success", "data": {"reference": "TXN-FFFFFFFF-000000"}}).encode()
        resp = client.post("/shares/paystack/webhook", content=body,
                           headers={"x-paystack-signature": self.sign(body, "sk_test", hashlib.sha512)})
        assert resp.status_code == 200
        assert resp.json() == {"received": True}

    def test_centiiv_webhook_uses_reference_query(self, client, invoice_rail, monkeypatch):
        monkeypatch.setattr(settings, "centiiv_webhook_secret", "whsec")
        resp = client.post("/shares/centiiv/initiate", json={"quantity": 2, "customerName": "Alice"}, headers=ALICE)
        reference = resp.json()["data"]["reference"]
        invoice_rail.outcome = Settled()
        body = json.dumps({"status": "paid"}).encode()

        resp = client.post(f"/shares/centiiv/webhook?reference={reference}", content=body,
                           headers={"x-centiiv-signature": self.sign(body, "whsec", hashlib.sha256)})

        assert resp.json()["status"] == "completed"


class TestManualFlow:
    def test_submit_review_and_approve(self, client):
        resp = submit_manual(client)
        assert resp.status_code == 200, resp.text
        reference = resp.json()["data"]["reference"]

        proof = client.get(f"/shares/payment-proof/{reference}", headers=BOB)
        assert proof.content == b"\x89PNG-proof"
        assert proof.headers["content-type"].startswith("image/png")
        assert client.get(f"/shares/payment-proof/{reference}", headers=ALICE).status_code == 403

        pending = client.get("/shares/admin/transactions?paymentMethod=manual&status=pending", headers=ADMIN).json()
        assert [t["reference"] for t in pending["transactions"]] == [reference]
        assert client.get("/shares/admin/pending/manual_bank", headers=ADMIN).json()["transactions"]

        view = client.get("/shares/user", headers=BOB).json()
        assert view["transactions"][0]["status_label"] == "pending verification"

        decided = client.post("/shares/admin/manual/verify",
                              json={"transactionId": reference, "approved": True}, headers=ADMIN).json()
        assert decided["status"] == "completed"
        assert client.get("/shares/user", headers=BOB).json()["owned_regular"] == 3

    def test_rejects_non_image_proof(self, client):
        resp = submit_manual(client, filename="run.exe", content_type="application/x-msdownload")
        assert resp.status_code == 400
        assert client.get("/shares/user", headers=BOB).json()["transactions"] == []

    def test_admin_decision_checks_rail(self, client):
        reference = initiate_card(client)
        resp = client.post("/shares/admin/manual/verify",
                           json={"transactionId": reference, "approved": True}, headers=ADMIN)
        assert resp.status_code == 400


class ScriptedChain(ScriptedRail):
    async def initiate(self, txn, user, inputs):
        return InitiationResult(payload=dict(inputs or {}), external_id=(inputs or {}).get("tx_hash"))


class TestOnchainFlow:
    def test_failed_verification_is_reported(self, client, rails):
        rails[Rail.ONCHAIN] = ScriptedChain(Rail.ONCHAIN, Rejected(reason="Amount mismatch", escalate=True))
        resp = client.post("/shares/web3/verify", headers=ALICE, json={
            "txHash": "0x" + "a" * 64, "walletAddress": "0x" + "d" * 40, "quantity": 2})

        assert resp.status_code == 400
        error = resp.json()["error"]
        assert error["code"] == "VERIFICATION_FAILED"
        assert journal_row(client.app.state.runtime, error["context"]["reference"]).status == "pending"

    def test_duplicate_hash_is_conflict(self, client, rails):
        rails[Rail.ONCHAIN] = ScriptedChain(Rail.ONCHAIN, Settled())
        claim = {"txHash": "0x" + "b" * 64, "walletAddress": "0x" + "d" * 40, "quantity": 2}
        assert client.post("/shares/web3/verify", headers=ALICE, json=claim).json()["status"] == "completed"
        resp = client.post("/shares/web3/verify", headers=BOB, json=claim)
        assert resp.status_code == 409


class TestAdministration:
    def test_grant_reverse_and_statistics(self, client):
        granted = client.post("/cofounder/admin/grant", headers=ADMIN,
                              json={"userId": "carol", "shares": 2, "note": "advisor"}).json()
        assert granted["status"] == "completed"
        reference = granted["reference"]

        locked = client.put("/shares/admin/pricing/ratio", json={"ratio": 30}, headers=ADMIN)
        assert locked.status_code == 409
        assert locked.json()["error"]["code"] == "RATIO_LOCKED"

        stats = client.get("/cofounder/admin/statistics", headers=ADMIN).json()["statistics"]
        assert stats["cofounder"]["shares"]["completed"] == 2

        reversed_ = client.post("/cofounder/admin/reverse", headers=ADMIN,
                                json={"transactionId": reference, "reason": "granted in error",
                                      "targetStatus": "cancelled"}).json()
        assert reversed_["status"] == "cancelled"
        assert client.get("/cofounder/info").json()["pricing"]["sold"] == 0

    def test_catalog_updates(self, client):
        resp = client.put("/shares/admin/pricing/tier/2", json={"priceNaira": 1600}, headers=ADMIN)
        assert resp.status_code == 200
        body = resp.json()
        assert float(body["regular"]["pricing"]["tiers"][1]["price_naira"]) == 1600
        assert client.put("/shares/admin/wallet", json={"address": "bad"}, headers=ADMIN).status_code == 400
        assert client.put("/shares/admin/pricing/tier/9", json={"priceNaira": 1}, headers=ADMIN).status_code == 400

    def test_delete_transaction(self, client):
        reference = initiate_card(client)
        resp = client.delete(f"/shares/admin/transactions/{reference}?reason=duplicate", headers=ADMIN)
        assert resp.json()["deleted"]
        assert client.get(f"/shares/paystack/verify/{reference}", headers=ALICE).status_code == 404


class MemoryRedis:
    def __init__(self):
        self.values = {}

    def setex(self, key, ttl, value):
        self.values[key] = value
        return True

    def get(self, key):
        return self.values.get(key)

    def delete(self, *keys):
        for key in keys:
            self.values.pop(key, None)


class TestShareInfoCache:
    def test_cached_info_matches_fresh_info(self, small_catalog):
        cache = RedisClient("redis://localhost:6379/0")
        cache.client = MemoryRedis()
        small_catalog.cache = cache
        client = TestClient(create_app(small_catalog))

        fresh = client.get("/shares/info").json()
        assert "share_info:regular" in cache.client.values
        cached = client.get("/shares/info").json()
        assert cached == fresh
        assert not isinstance(cached["pricing"]["tiers"][0]["price_naira"], str)
