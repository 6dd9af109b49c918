"""
Invoice rail backed by Centiiv orders.

An order is created per purchase and carries the payment reference in its
success, cancel and notify URLs. Settlement is driven by the signed webhook
or by polling the order status.
"""
import hashlib
import hmac
import logging
from datetime import timedelta
from typing import Any, Optional

import requests

from common.circuit_breaker import CircuitBreaker, centiiv_circuit_breaker
from common.settings import settings
from share_ledger_service.domain import (
    Currency, InitiationResult, Outcome, Rail, Rejected, Settled, ShareClass, StillPending,
    TransactionRecord, UserContext, utcnow,
)
from share_ledger_service.errors import InfraError, InvalidInput
from share_ledger_service.rails.base import HttpRailAdapter

logger = logging.getLogger(__name__)

PAID_STATUSES = {"paid", "completed", "success", "successful"}
FAILED_STATUSES = {"cancelled", "canceled", "failed", "expired", "declined"}
REMINDER_INTERVAL_DAYS = 7


def verify_centiiv_signature(raw_body: bytes, signature: Optional[str], secret: Optional[str] = None) -> bool:
    """x-centiiv-signature is the hex HMAC-SHA256 of the raw body under the webhook secret."""
    secret = secret if secret is not None else settings.centiiv_webhook_secret
    if not signature or not secret:
        return False
    expected = hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, signature)


def outcome_for_status(status: Optional[str]) -> Outcome:
    normalized = (status or "").lower()
    if normalized in PAID_STATUSES:
        return Settled(timestamp=utcnow(), details={"order_status": normalized})
    if normalized in FAILED_STATUSES:
        return Rejected(reason=f"Invoice {normalized}")
    return StillPending(reason=f"Invoice {normalized or 'unpaid'}")


class CentiivRail(HttpRailAdapter):
    rail = Rail.INVOICE
    supports_remote_status = True

    def __init__(self, api_key: str = None, base_url: str = None,
                 breaker: CircuitBreaker = centiiv_circuit_breaker, timeout: float = None,
                 due_days: int = None):
        super().__init__(breaker, timeout or settings.external_http_timeout_seconds)
        self.api_key = api_key if api_key is not None else settings.centiiv_api_key
        self.base_url = (base_url or settings.centiiv_base_url).rstrip("/")
        self.due_days = due_days or settings.invoice_due_days

    def _headers(self) -> dict:
        return {"Authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"}

    def _create_order(self, body: dict) -> dict:
        resp = requests.post(f"{self.base_url}/order", json=body, headers=self._headers(), timeout=self.timeout)
        resp.raise_for_status()
        return resp.json()

    def _fetch_order(self, order_id: str) -> dict:
        resp = requests.get(f"{self.base_url}/order/{order_id}", headers=self._headers(), timeout=self.timeout)
        resp.raise_for_status()
        return resp.json()

    def _cancel_order(self, order_id: str) -> dict:
        resp = requests.post(f"{self.base_url}/order/{order_id}/cancel", headers=self._headers(), timeout=self.timeout)
        resp.raise_for_status()
        return resp.json()

    def build_order(self, txn: TransactionRecord, email: str, customer_name: str) -> dict:
        label = "Co-Founder Shares" if txn.share_class == ShareClass.CO_FOUNDER else "Shares"
        reference = txn.reference
        return {
            "customerName": customer_name,
            "customerEmail": email,
            "subject": f"AfriMobile {label} Purchase - {reference}",
            "products": [{
                "name": f"AfriMobile {label} ({txn.shares} shares)",
                "qty": 1,
                "price": str(txn.total_amount),
            }],
            "currency": "USDT" if txn.currency == Currency.USDT else "NGN",
            "dueDate": (utcnow() + timedelta(days=self.due_days)).strftime("%Y-%m-%d"),
            "reminderInterval": REMINDER_INTERVAL_DAYS,
            "successUrl": f"{settings.frontend_url}/shares/payment/success?reference={reference}",
            "cancelUrl": f"{settings.frontend_url}/shares/payment/cancel?reference={reference}",
            "notifyUrl": f"{settings.backend_url}/shares/centiiv/webhook?reference={reference}",
        }

    async def initiate(self, txn: TransactionRecord, user: UserContext, inputs: dict) -> InitiationResult:
        email = inputs.get("email") or user.email
        customer_name = inputs.get("customer_name") or user.name
        if not email or not customer_name:
            raise InvalidInput("Customer email and name are required", field="customerName")

        data = await self._call(self._create_order, self.build_order(txn, email, customer_name))
        order = data.get("data") or {}
        order_id = order.get("order_id") or order.get("id")
        invoice_url = order.get("invoice_url") or order.get("payment_url")
        if not order_id:
            raise InfraError(f"Centiiv order creation failed: {data.get('message', 'no order id')}")

        logger.info(f"Centiiv order {order_id} created for {txn.reference}")
        return InitiationResult(
            payload={"order_id": order_id, "invoice_url": invoice_url, "email": email,
                     "customer_name": customer_name, "due_days": self.due_days},
            external_id=str(order_id),
            client_data={"order_id": order_id, "invoice_url": invoice_url},
        )

    async def verify(self, txn: TransactionRecord, proof: Optional[Any] = None) -> Outcome:
        # Webhook bodies arrive already authenticated
        if isinstance(proof, dict) and proof.get("status"):
            return outcome_for_status(proof.get("status"))

        order_id = txn.external_id or txn.rail_payload.get("order_id")
        if not order_id:
            return StillPending(reason="No invoice order recorded")

        data, pending = await self._query_or_pending(self._fetch_order, order_id)
        if pending:
            return pending
        order = (data or {}).get("data") or {}
        return outcome_for_status(order.get("status"))

    async def cancel(self, txn: TransactionRecord, reason: Optional[str] = None) -> None:
        order_id = txn.external_id or txn.rail_payload.get("order_id")
        if not order_id:
            return
        try:
            await self._call(self._cancel_order, order_id)
        except InfraError as e:
            logger.warning(f"Could not cancel Centiiv order {order_id} for {txn.reference}: {e.message}")
