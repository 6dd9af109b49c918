"""
Purchase calculator.

Pure functions over a CatalogSnapshot: no I/O, no clock, no randomness. The
same snapshot and inputs always produce an identical Quote.
"""
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional

from share_ledger_service.domain import (
    CatalogSnapshot, Currency, Quote, ShareClass, TierBreakdown,
)

PRICE_QUANT = Decimal("0.000001")

REASON_INVALID_QUANTITY = "Quantity must be a positive whole number"
REASON_INSUFFICIENT_SUPPLY = "Not enough shares available"


def allocate_tiers(snapshot: CatalogSnapshot, quantity: int,
                   reserved: Optional[TierBreakdown] = None) -> Optional[TierBreakdown]:
    """Greedy fill, tier 1 first. Returns None when supply runs out."""
    remaining = quantity
    fills = {}
    for tier in sorted(snapshot.tiers, key=lambda t: t.tier):
        free = tier.available - (reserved.for_tier(tier.tier) if reserved else 0)
        take = max(0, min(free, remaining))
        fills[tier.tier] = take
        remaining -= take
    if remaining > 0:
        return None
    return TierBreakdown(tier1=fills.get(1, 0), tier2=fills.get(2, 0), tier3=fills.get(3, 0))


def price_breakdown(snapshot: CatalogSnapshot, breakdown: TierBreakdown, currency: Currency) -> Decimal:
    total = Decimal("0")
    for number, count in breakdown.as_dict().items():
        if count:
            total += snapshot.tier(number).price(currency) * count
    return total


def weighted_price(total: Decimal, quantity: int) -> Decimal:
    return (total / quantity).quantize(PRICE_QUANT, rounding=ROUND_HALF_UP)


def regular_available(snapshot: CatalogSnapshot, reserved: Optional[TierBreakdown] = None) -> int:
    available = sum(t.available for t in snapshot.tiers)
    return available - (reserved.total if reserved else 0)


def calculate_purchase(snapshot: CatalogSnapshot, share_class: ShareClass, quantity: int,
                       currency: Currency, reserved: Optional[TierBreakdown] = None,
                       reserved_co_founder: int = 0) -> Quote:
    """Quote a purchase against the snapshot.

    ``reserved`` / ``reserved_co_founder`` carry shares held by pending
    transactions when strict reservation is enabled; they are subtracted from
    availability before filling.
    """
    if not isinstance(quantity, int) or isinstance(quantity, bool) or quantity < 1:
        return Quote(success=False, share_class=share_class, quantity=quantity if isinstance(quantity, int) else 0,
                     currency=currency, reason=REASON_INVALID_QUANTITY)

    if share_class == ShareClass.CO_FOUNDER:
        available = snapshot.co_founder_available - reserved_co_founder
        if quantity > available:
            return Quote(success=False, share_class=share_class, quantity=quantity, currency=currency,
                         reason=REASON_INSUFFICIENT_SUPPLY, available=max(available, 0))
        price = snapshot.co_founder_price(currency)
        return Quote(success=True, share_class=share_class, quantity=quantity, currency=currency,
                     total_price=price * quantity, price_per_share=price.quantize(PRICE_QUANT),
                     available=available)

    available = regular_available(snapshot, reserved)
    breakdown = allocate_tiers(snapshot, quantity, reserved)
    if breakdown is None:
        return Quote(success=False, share_class=share_class, quantity=quantity, currency=currency,
                     reason=REASON_INSUFFICIENT_SUPPLY, available=max(available, 0))

    total = price_breakdown(snapshot, breakdown, currency)
    return Quote(success=True, share_class=share_class, quantity=quantity, currency=currency,
                 tier_breakdown=breakdown, total_price=total,
                 price_per_share=weighted_price(total, quantity), available=available)
