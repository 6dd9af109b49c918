from decimal import Decimal
from pydantic import BaseModel, ConfigDict, Field
from typing import Literal, Optional

class ShareNotification(BaseModel):
    # outbox dedup key; consumers drop repeats of the same id
    event_id: str
    type: Literal[
        "PurchaseCompleted",
        "PurchaseFailed",
        "PurchaseCancelled",
        "PurchaseReversed",
        "AdminReviewRequired",
    ]
    reference: str
    user_id: str
    share_class: str
    rail: str
    shares: int
    currency: str
    total_amount: Decimal
    audience: Literal["user", "admin"] = "user"
    email: Optional[str] = None
    name: Optional[str] = None
    reason: Optional[str] = None
    # trace of the request that caused the event
    trace_id: Optional[str] = None

class ReferralCommand(BaseModel):
    action: Literal["commission", "rollback"]
    user_id: str
    reference: str
    total_amount: Decimal
    currency: str
    purchase_type: Literal["share", "cofounder"]

# HTTP request bodies; clients send camelCase

class _Body(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

class CalculateRequest(_Body):
    quantity: int
    currency: Literal["naira", "usdt"] = "naira"

class CardInitiateRequest(_Body):
    quantity: int
    email: Optional[str] = None

class InvoiceInitiateRequest(_Body):
    quantity: int
    email: Optional[str] = None
    customer_name: Optional[str] = Field(None, alias="customerName")

class OnchainInitiateRequest(_Body):
    quantity: int

class OnchainVerifyRequest(_Body):
    quantity: Optional[int] = None
    tx_hash: str = Field(alias="txHash")
    wallet_address: str = Field(alias="walletAddress")
    reference: Optional[str] = None

class AdminDecisionRequest(_Body):
    transaction_id: str = Field(alias="transactionId")
    approved: bool
    admin_note: Optional[str] = Field(None, alias="adminNote")

class GrantRequest(_Body):
    user_id: str = Field(alias="userId")
    shares: int
    note: str
    email: Optional[str] = None
    name: Optional[str] = None

class ReverseRequest(_Body):
    transaction_id: str = Field(alias="transactionId")
    reason: str
    target_status: Literal["pending", "failed", "cancelled"] = Field("pending", alias="targetStatus")

class CancelRequest(_Body):
    reason: Optional[str] = None


class TierPriceUpdate(_Body):
    price_naira: Optional[Decimal] = Field(None, alias="priceNaira")
    price_usdt: Optional[Decimal] = Field(None, alias="priceUsdt")

class RatioUpdate(_Body):
    ratio: int

class WalletUpdate(_Body):
    address: str

class InvoiceToggle(_Body):
    enabled: bool
