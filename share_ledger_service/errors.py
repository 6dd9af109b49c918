"""
Domain errors raised by the share ledger.

Each maps onto the service-wide BusinessLogicError/ServiceError pair so the
shared FastAPI handlers render them without per-route translation.
"""
from typing import Any, Dict, Optional

from common.error_handling import BusinessLogicError, ErrorCodes, ServiceError


class InsufficientSupply(BusinessLogicError):
    def __init__(self, message: str = "Not enough shares available", context: Optional[Dict[str, Any]] = None):
        super().__init__(ErrorCodes.INSUFFICIENT_SUPPLY, message, context=context)


class TransactionNotFound(BusinessLogicError):
    def __init__(self, reference: str):
        super().__init__(ErrorCodes.TRANSACTION_NOT_FOUND, f"Transaction {reference} not found",
                         context={"reference": reference})


class InvalidStateTransition(BusinessLogicError):
    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(ErrorCodes.INVALID_STATE_TRANSITION, message, context=context)


class PermissionDenied(BusinessLogicError):
    def __init__(self, message: str = "Administrator access required"):
        super().__init__(ErrorCodes.FORBIDDEN, message)


class DuplicateClaim(BusinessLogicError):
    def __init__(self, external_id: str):
        super().__init__(ErrorCodes.DUPLICATE_CLAIM, "Transaction already processed",
                         context={"external_id": external_id})


class InvalidSignature(BusinessLogicError):
    def __init__(self, message: str = "Invalid webhook signature"):
        super().__init__(ErrorCodes.INVALID_SIGNATURE, message)


class RatioLocked(BusinessLogicError):
    def __init__(self):
        super().__init__(ErrorCodes.RATIO_LOCKED,
                         "Co-founder ratio cannot change once co-founder shares have been sold")


class RailDisabled(BusinessLogicError):
    def __init__(self, rail: str):
        super().__init__(ErrorCodes.RAIL_DISABLED, f"Payment rail {rail} is currently disabled",
                         context={"rail": rail})


class InvalidInput(BusinessLogicError):
    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(ErrorCodes.INVALID_INPUT, message, field=field)


class ConcurrentUpdate(ServiceError):
    def __init__(self, message: str = "Catalog was modified concurrently, retry the request"):
        super().__init__(ErrorCodes.CONCURRENT_UPDATE, message)


class InfraError(ServiceError):
    """External rail or infrastructure failure; nothing was persisted."""
    def __init__(self, message: str, original_error: Optional[Exception] = None, code: str = ErrorCodes.EXTERNAL_SERVICE_ERROR):
        super().__init__(code, message, original_error)
