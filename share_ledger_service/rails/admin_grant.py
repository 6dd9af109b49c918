from typing import Any, Optional

from share_ledger_service.domain import (
    InitiationResult, Outcome, Rail, StillPending, TransactionRecord, UserContext,
)
from share_ledger_service.errors import InvalidInput, PermissionDenied
from share_ledger_service.rails.base import RailAdapter


class AdminGrantRail(RailAdapter):
    """Shares allotted by an administrator; the engine records them already completed."""
    rail = Rail.ADMIN_GRANT

    async def initiate(self, txn: TransactionRecord, user: UserContext, inputs: dict) -> InitiationResult:
        if not user.is_admin:
            raise PermissionDenied()
        note = (inputs.get("note") or "").strip()
        if not note:
            raise InvalidInput("A note is required for administrative grants", field="note")
        return InitiationResult(payload={"admin_id": user.user_id, "note": note, "charged": "0"})

    async def verify(self, txn: TransactionRecord, proof: Optional[Any] = None) -> Outcome:
        return StillPending(reason="Administrative grants settle at creation")
