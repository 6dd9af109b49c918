"""
Operator-mediated rails: bank transfer, cash and other offline payments.

The buyer uploads a proof artifact; only an administrator decision settles
the transaction, so verify always reports pending.
"""
from typing import Any, Optional

from share_ledger_service.domain import (
    InitiationResult, MANUAL_RAILS, Outcome, Rail, StillPending, TransactionRecord, UserContext,
)
from share_ledger_service.errors import InvalidInput
from share_ledger_service.rails.base import RailAdapter

PAYMENT_METHODS = {
    "bank_transfer": Rail.MANUAL_BANK,
    "cash": Rail.MANUAL_CASH,
    "other": Rail.MANUAL_OTHER,
}


def rail_for_method(method: str) -> Rail:
    try:
        return PAYMENT_METHODS[method]
    except KeyError:
        raise InvalidInput("Payment method must be bank_transfer, cash or other", field="paymentMethod")


class ManualRail(RailAdapter):
    def __init__(self, rail: Rail):
        if rail not in MANUAL_RAILS:
            raise ValueError(f"{rail} is not a manual rail")
        self.rail = rail

    async def initiate(self, txn: TransactionRecord, user: UserContext, inputs: dict) -> InitiationResult:
        proof_handle = inputs.get("proof_handle")
        if not proof_handle:
            raise InvalidInput("Payment proof is required", field="paymentProof")
        payload = {
            "proof_handle": proof_handle,
            "proof_content_type": inputs.get("proof_content_type"),
            "bank_name": inputs.get("bank_name"),
            "account_name": inputs.get("account_name"),
            "payer_reference": inputs.get("payer_reference"),
        }
        return InitiationResult(payload={k: v for k, v in payload.items() if v is not None},
                                client_data={"status": "pending_review"})

    async def verify(self, txn: TransactionRecord, proof: Optional[Any] = None) -> Outcome:
        return StillPending(reason="Awaiting administrator review of payment proof")
