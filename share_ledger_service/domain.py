"""
Value types shared by the share ledger components.

Rail outcomes are an explicit sum type (Settled | Rejected | StillPending):
adapters return them instead of raising, so the engine never has to infer a
settlement decision from an exception.
"""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict


def utcnow() -> datetime:
    """Naive UTC timestamp, the form every table stores."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class ShareClass(str, Enum):
    REGULAR = "regular"
    CO_FOUNDER = "cofounder"


class Currency(str, Enum):
    NAIRA = "naira"
    USDT = "usdt"


class Rail(str, Enum):
    CARD = "card"
    INVOICE = "invoice"
    ONCHAIN = "onchain"
    MANUAL_BANK = "manual_bank"
    MANUAL_CASH = "manual_cash"
    MANUAL_OTHER = "manual_other"
    ADMIN_GRANT = "admin_grant"


MANUAL_RAILS = (Rail.MANUAL_BANK, Rail.MANUAL_CASH, Rail.MANUAL_OTHER)

# Names used by clients and by older journal exports
RAIL_ALIASES = {
    "paystack": Rail.CARD,
    "centiiv": Rail.INVOICE,
    "web3": Rail.ONCHAIN,
    "crypto": Rail.ONCHAIN,
    "bank_transfer": Rail.MANUAL_BANK,
    "manual_bank_transfer": Rail.MANUAL_BANK,
    "cash": Rail.MANUAL_CASH,
    "other": Rail.MANUAL_OTHER,
}


def parse_rail(value: str) -> Rail:
    try:
        return Rail(value)
    except ValueError:
        if value in RAIL_ALIASES:
            return RAIL_ALIASES[value]
        raise


class TxStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = (TxStatus.COMPLETED, TxStatus.FAILED, TxStatus.CANCELLED)


class SettlementSource(str, Enum):
    USER_VERIFY = "userVerify"
    WEBHOOK = "webhook"
    ADMIN_DECISION = "adminDecision"
    SCHEDULED_POLL = "scheduledPoll"


class TierBreakdown(BaseModel):
    model_config = ConfigDict(frozen=True)

    tier1: int = 0
    tier2: int = 0
    tier3: int = 0

    @property
    def total(self) -> int:
        return self.tier1 + self.tier2 + self.tier3

    def for_tier(self, tier: int) -> int:
        return getattr(self, f"tier{tier}")

    def as_dict(self) -> Dict[int, int]:
        return {1: self.tier1, 2: self.tier2, 3: self.tier3}


class TierSnapshot(BaseModel):
    model_config = ConfigDict(frozen=True)

    tier: int
    capacity: int
    sold: int
    price_naira: Decimal
    price_usdt: Decimal

    @property
    def available(self) -> int:
        return self.capacity - self.sold

    def price(self, currency: Currency) -> Decimal:
        return self.price_naira if currency == Currency.NAIRA else self.price_usdt


class CatalogSnapshot(BaseModel):
    model_config = ConfigDict(frozen=True)

    tiers: List[TierSnapshot]
    co_founder_total: int
    co_founder_sold: int
    co_founder_price_naira: Decimal
    co_founder_price_usdt: Decimal
    co_founder_ratio: int
    ratio_locked: bool = False
    company_wallet_address: Optional[str] = None
    invoice_enabled: bool = True
    version: int = 1

    @property
    def total_shares(self) -> int:
        return sum(t.capacity for t in self.tiers)

    @property
    def regular_sold(self) -> int:
        return sum(t.sold for t in self.tiers)

    @property
    def co_founder_available(self) -> int:
        return self.co_founder_total - self.co_founder_sold

    def tier(self, number: int) -> TierSnapshot:
        for t in self.tiers:
            if t.tier == number:
                return t
        raise KeyError(number)

    def co_founder_price(self, currency: Currency) -> Decimal:
        return self.co_founder_price_naira if currency == Currency.NAIRA else self.co_founder_price_usdt

    def tier_availability(self) -> Dict[int, int]:
        return {t.tier: t.available for t in self.tiers}


class Quote(BaseModel):
    model_config = ConfigDict(frozen=True)

    success: bool
    share_class: ShareClass
    quantity: int
    currency: Currency
    tier_breakdown: Optional[TierBreakdown] = None
    total_price: Decimal = Decimal("0")
    price_per_share: Decimal = Decimal("0")
    reason: Optional[str] = None
    available: Optional[int] = None


# Rail outcomes

@dataclass(frozen=True)
class Settled:
    amount: Optional[Decimal] = None
    timestamp: Optional[datetime] = None
    details: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Rejected:
    reason: str
    # Escalated rejections stay pending for an administrator instead of failing
    escalate: bool = False
    details: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class StillPending:
    reason: Optional[str] = None


Outcome = Union[Settled, Rejected, StillPending]


@dataclass(frozen=True)
class AdminDecision:
    approved: bool
    actor_id: str
    note: Optional[str] = None

    def to_outcome(self) -> Outcome:
        if self.approved:
            return Settled(timestamp=utcnow(), details={"approved_by": self.actor_id})
        return Rejected(reason=self.note or "Rejected by administrator")


@dataclass(frozen=True)
class UserContext:
    user_id: str
    email: Optional[str] = None
    name: Optional[str] = None
    is_admin: bool = False


@dataclass
class TransactionRecord:
    """Read-only view of a journal row handed to rail adapters."""
    reference: str
    user_id: str
    share_class: ShareClass
    rail: Rail
    shares: int
    currency: Currency
    price_per_share: Decimal
    total_amount: Decimal
    tier_breakdown: TierBreakdown
    status: TxStatus = TxStatus.PENDING
    rail_payload: Dict[str, Any] = field(default_factory=dict)
    external_id: Optional[str] = None
    user_email: Optional[str] = None
    user_name: Optional[str] = None
    created_at: Optional[datetime] = None
    settled_at: Optional[datetime] = None
    admin_hold: bool = False
    diagnostic: Optional[str] = None

    @classmethod
    def from_row(cls, row) -> "TransactionRecord":
        return cls(
            reference=row.reference,
            user_id=row.user_id,
            share_class=ShareClass(row.share_class),
            rail=Rail(row.rail),
            shares=row.shares,
            currency=Currency(row.currency),
            price_per_share=Decimal(row.price_per_share),
            total_amount=Decimal(row.total_amount),
            tier_breakdown=TierBreakdown(tier1=row.tier1 or 0, tier2=row.tier2 or 0, tier3=row.tier3 or 0),
            status=TxStatus(row.status),
            rail_payload=dict(row.rail_payload or {}),
            external_id=row.external_id,
            user_email=row.user_email,
            user_name=row.user_name,
            created_at=row.created_at,
            settled_at=row.settled_at,
            admin_hold=bool(row.admin_hold),
            diagnostic=row.diagnostic,
        )


@dataclass
class InitiationResult:
    # Persisted into rail_payload
    payload: Dict[str, Any] = field(default_factory=dict)
    # Rail-side identifier (invoice order id, on-chain tx hash)
    external_id: Optional[str] = None
    # Returned to the caller only
    client_data: Dict[str, Any] = field(default_factory=dict)


@dataclass
class SettlementResult:
    reference: str
    status: TxStatus
    outcome: Optional[Outcome] = None
    already_terminal: bool = False
    diagnostic: Optional[str] = None
    transaction: Optional[TransactionRecord] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "reference": self.reference,
            "status": self.status.value,
            "already_terminal": self.already_terminal,
            "diagnostic": self.diagnostic,
        }
        if self.transaction is not None:
            data["shares"] = self.transaction.shares
            data["amount"] = self.transaction.total_amount
            data["currency"] = self.transaction.currency.value
            data["share_class"] = self.transaction.share_class.value
        return data


@dataclass
class PurchaseInitiation:
    reference: str
    quote: Quote
    rail: Rail
    client_data: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "reference": self.reference,
            "rail": self.rail.value,
            "shares": self.quote.quantity,
            "amount": self.quote.total_price,
            "currency": self.quote.currency.value,
            "tier_breakdown": self.quote.tier_breakdown.model_dump() if self.quote.tier_breakdown else None,
            **self.client_data,
        }
