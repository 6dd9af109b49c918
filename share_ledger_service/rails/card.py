"""
Card rail backed by Paystack hosted checkout.
"""
import hashlib
import hmac
import logging
from decimal import Decimal
from typing import Any, Optional

import requests

from common.circuit_breaker import CircuitBreaker, paystack_circuit_breaker
from common.settings import settings
from share_ledger_service.domain import (
    InitiationResult, Outcome, Rail, Rejected, Settled, StillPending, TransactionRecord, UserContext,
)
from share_ledger_service.errors import InfraError, InvalidInput
from share_ledger_service.rails.base import HttpRailAdapter

logger = logging.getLogger(__name__)

FAILED_STATUSES = {"failed", "reversed", "abandoned"}


def to_minor_units(amount: Decimal) -> int:
    return int((Decimal(amount) * 100).to_integral_value())


def verify_paystack_signature(raw_body: bytes, signature: Optional[str], secret: Optional[str] = None) -> bool:
    """x-paystack-signature is the hex HMAC-SHA512 of the raw body under the secret key."""
    secret = secret if secret is not None else settings.paystack_secret_key
    if not signature or not secret:
        return False
    expected = hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha512).hexdigest()
    return hmac.compare_digest(expected, signature)


class PaystackRail(HttpRailAdapter):
    rail = Rail.CARD
    supports_remote_status = True

    def __init__(self, secret_key: str = None, base_url: str = None,
                 breaker: CircuitBreaker = paystack_circuit_breaker, timeout: float = None):
        super().__init__(breaker, timeout or settings.external_http_timeout_seconds)
        self.secret_key = secret_key if secret_key is not None else settings.paystack_secret_key
        self.base_url = (base_url or settings.paystack_base_url).rstrip("/")

    def _headers(self) -> dict:
        return {"Authorization": f"Bearer {self.secret_key}", "Content-Type": "application/json"}

    def _initialize(self, body: dict) -> dict:
        resp = requests.post(f"{self.base_url}/transaction/initialize", json=body,
                             headers=self._headers(), timeout=self.timeout)
        resp.raise_for_status()
        return resp.json()

    def _fetch(self, reference: str) -> dict:
        resp = requests.get(f"{self.base_url}/transaction/verify/{reference}",
                            headers=self._headers(), timeout=self.timeout)
        resp.raise_for_status()
        return resp.json()

    async def initiate(self, txn: TransactionRecord, user: UserContext, inputs: dict) -> InitiationResult:
        email = inputs.get("email") or user.email
        if not email:
            raise InvalidInput("Customer email is required", field="email")

        body = {
            "email": email,
            "amount": to_minor_units(txn.total_amount),
            "reference": txn.reference,
            "callback_url": f"{settings.frontend_url}/payment/verify?txref={txn.reference}",
            "metadata": {
                "userId": txn.user_id,
                "shares": txn.shares,
                "shareClass": txn.share_class.value,
                "tierBreakdown": txn.tier_breakdown.model_dump(),
            },
        }
        data = await self._call(self._initialize, body)
        if not data.get("status") or not data.get("data", {}).get("authorization_url"):
            raise InfraError(f"Paystack initialization failed: {data.get('message', 'no authorization url')}")

        authorization_url = data["data"]["authorization_url"]
        logger.info(f"Paystack checkout opened for {txn.reference}")
        return InitiationResult(
            payload={"email": email, "authorization_url": authorization_url,
                     "access_code": data["data"].get("access_code")},
            client_data={"authorization_url": authorization_url},
        )

    async def verify(self, txn: TransactionRecord, proof: Optional[Any] = None) -> Outcome:
        data, pending = await self._query_or_pending(self._fetch, txn.reference)
        if pending:
            return pending

        charge = (data or {}).get("data") or {}
        status = charge.get("status")
        if not data.get("status") or status is None:
            return StillPending(reason=data.get("message") or "No status from processor")

        if status == "success":
            paid = charge.get("amount")
            if paid is not None and int(paid) < to_minor_units(txn.total_amount):
                return Rejected(reason=f"Paid amount {paid} is below expected {to_minor_units(txn.total_amount)}")
            return Settled(amount=Decimal(paid) / 100 if paid is not None else None,
                           details={"gateway_response": charge.get("gateway_response")})
        if status in FAILED_STATUSES:
            return Rejected(reason=charge.get("gateway_response") or f"Payment {status}")
        return StillPending(reason=f"Payment {status}")
