"""
Pricing catalog: the singleton pricing row plus one row per regular tier.

All reads and writes of sold counters and prices go through PricingCatalog.
Counter updates are compare-and-update statements, price updates bump the
catalog version under optimistic concurrency. The catalog works on the
caller's session so its writes commit with the caller's transaction.
"""
import logging
import re
from decimal import Decimal
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from common.settings import settings
from share_ledger_service.domain import CatalogSnapshot, ShareClass, TierBreakdown, TierSnapshot
from share_ledger_service.errors import (
    ConcurrentUpdate, InsufficientSupply, InvalidInput, InvalidStateTransition, RatioLocked,
)
from share_ledger_service.models import PricingCatalogRow, PricingTier

logger = logging.getLogger(__name__)

CATALOG_ID = 1

DEFAULT_TIERS = (
    # tier, capacity, naira, usdt
    (1, 2000, Decimal("50000"), Decimal("50")),
    (2, 3000, Decimal("70000"), Decimal("70")),
    (3, 5000, Decimal("80000"), Decimal("80")),
)
DEFAULT_CO_FOUNDER_TOTAL = 500
DEFAULT_CO_FOUNDER_PRICE_NAIRA = Decimal("1000000")
DEFAULT_CO_FOUNDER_PRICE_USDT = Decimal("1000")
DEFAULT_RATIO = 29

WALLET_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")


def is_wallet_address(value: Optional[str]) -> bool:
    return bool(value) and bool(WALLET_RE.match(value))


def seed_catalog(session: Session, tiers=DEFAULT_TIERS, co_founder_total: int = DEFAULT_CO_FOUNDER_TOTAL,
                 co_founder_price_naira: Decimal = DEFAULT_CO_FOUNDER_PRICE_NAIRA,
                 co_founder_price_usdt: Decimal = DEFAULT_CO_FOUNDER_PRICE_USDT,
                 ratio: int = DEFAULT_RATIO) -> None:
    """Insert the singleton row and tiers when missing. Existing rows are left alone."""
    if session.get(PricingCatalogRow, CATALOG_ID) is None:
        session.add(PricingCatalogRow(
            id=CATALOG_ID,
            co_founder_total=co_founder_total,
            co_founder_sold=0,
            co_founder_price_naira=co_founder_price_naira,
            co_founder_price_usdt=co_founder_price_usdt,
            co_founder_ratio=ratio,
            ratio_locked=False,
            invoice_enabled=True,
            version=1,
        ))
    for number, capacity, naira, usdt in tiers:
        if session.get(PricingTier, number) is None:
            session.add(PricingTier(tier=number, capacity=capacity, sold=0, price_naira=naira, price_usdt=usdt))
    session.flush()


class PricingCatalog:
    def __init__(self, session: Session):
        self.session = session

    def _row(self) -> PricingCatalogRow:
        row = self.session.execute(
            select(PricingCatalogRow).where(PricingCatalogRow.id == CATALOG_ID)
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if row is None:
            raise InvalidStateTransition("Pricing catalog has not been initialised")
        return row

    def get_current(self) -> CatalogSnapshot:
        row = self._row()
        tiers = self.session.execute(
            select(PricingTier).order_by(PricingTier.tier).execution_options(populate_existing=True)
        ).scalars().all()
        return CatalogSnapshot(
            tiers=[
                TierSnapshot(tier=t.tier, capacity=t.capacity, sold=t.sold,
                             price_naira=Decimal(t.price_naira), price_usdt=Decimal(t.price_usdt))
                for t in tiers
            ],
            co_founder_total=row.co_founder_total,
            co_founder_sold=row.co_founder_sold,
            co_founder_price_naira=Decimal(row.co_founder_price_naira),
            co_founder_price_usdt=Decimal(row.co_founder_price_usdt),
            co_founder_ratio=row.co_founder_ratio,
            ratio_locked=bool(row.ratio_locked),
            company_wallet_address=settings.company_wallet_address or row.company_wallet_address,
            invoice_enabled=bool(row.invoice_enabled),
            version=row.version,
        )

    def _bump_version(self, **values) -> None:
        """Apply catalog-row values guarded by the version read at the start."""
        row = self._row()
        current = row.version
        result = self.session.execute(
            update(PricingCatalogRow)
            .where(PricingCatalogRow.id == CATALOG_ID, PricingCatalogRow.version == current)
            .values(version=current + 1, **values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise ConcurrentUpdate()
        self.session.expire(row)

    # Price administration

    def update_tier_price(self, tier: int, price_naira: Optional[Decimal] = None,
                          price_usdt: Optional[Decimal] = None) -> CatalogSnapshot:
        values = _positive_prices(price_naira, price_usdt)
        row = self.session.get(PricingTier, tier)
        if row is None:
            raise InvalidInput(f"Unknown tier {tier}", field="tier")
        self.session.execute(
            update(PricingTier).where(PricingTier.tier == tier).values(**values)
            .execution_options(synchronize_session=False)
        )
        self.session.expire(row)
        self._bump_version()
        logger.info(f"Tier {tier} price updated: {values}")
        return self.get_current()

    def update_co_founder_price(self, price_naira: Optional[Decimal] = None,
                                price_usdt: Optional[Decimal] = None) -> CatalogSnapshot:
        values = _positive_prices(price_naira, price_usdt)
        self._bump_version(**{f"co_founder_{k}": v for k, v in values.items()})
        logger.info(f"Co-founder price updated: {values}")
        return self.get_current()

    def update_ratio(self, ratio: int) -> CatalogSnapshot:
        if not isinstance(ratio, int) or ratio < 1:
            raise InvalidInput("Ratio must be a positive integer", field="ratio")
        if self._row().ratio_locked:
            raise RatioLocked()
        self._bump_version(co_founder_ratio=ratio)
        logger.info(f"Co-founder ratio set to {ratio}")
        return self.get_current()

    def update_company_wallet(self, address: str) -> CatalogSnapshot:
        if not is_wallet_address(address):
            raise InvalidInput("Invalid wallet address format", field="address")
        self._bump_version(company_wallet_address=address)
        return self.get_current()

    def set_invoice_enabled(self, enabled: bool) -> CatalogSnapshot:
        self._bump_version(invoice_enabled=bool(enabled))
        return self.get_current()

    # Sold counters

    def increment_sold(self, share_class: ShareClass, shares: int,
                       breakdown: Optional[TierBreakdown] = None) -> None:
        if share_class == ShareClass.CO_FOUNDER:
            result = self.session.execute(
                update(PricingCatalogRow)
                .where(PricingCatalogRow.id == CATALOG_ID,
                       PricingCatalogRow.co_founder_sold + shares <= PricingCatalogRow.co_founder_total)
                .values(co_founder_sold=PricingCatalogRow.co_founder_sold + shares,
                        ratio_locked=True,
                        version=PricingCatalogRow.version + 1)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                raise InsufficientSupply("Co-founder supply exhausted", context={"shares": shares})
            return

        breakdown = breakdown or TierBreakdown(tier1=shares)
        if breakdown.total != shares:
            raise InvalidStateTransition("Tier breakdown does not sum to share count",
                                         context={"shares": shares, "breakdown": breakdown.model_dump()})
        for number, count in breakdown.as_dict().items():
            if not count:
                continue
            result = self.session.execute(
                update(PricingTier)
                .where(PricingTier.tier == number, PricingTier.sold + count <= PricingTier.capacity)
                .values(sold=PricingTier.sold + count)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                raise InsufficientSupply(f"Tier {number} would overflow", context={"tier": number, "shares": count})
        self.session.execute(
            update(PricingCatalogRow).where(PricingCatalogRow.id == CATALOG_ID)
            .values(version=PricingCatalogRow.version + 1)
            .execution_options(synchronize_session=False)
        )

    def decrement_sold(self, share_class: ShareClass, shares: int,
                       breakdown: Optional[TierBreakdown] = None) -> None:
        if share_class == ShareClass.CO_FOUNDER:
            result = self.session.execute(
                update(PricingCatalogRow)
                .where(PricingCatalogRow.id == CATALOG_ID, PricingCatalogRow.co_founder_sold >= shares)
                .values(co_founder_sold=PricingCatalogRow.co_founder_sold - shares,
                        version=PricingCatalogRow.version + 1)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                raise InvalidStateTransition("Co-founder sold counter would go negative")
            return

        breakdown = breakdown or TierBreakdown(tier1=shares)
        for number, count in breakdown.as_dict().items():
            if not count:
                continue
            result = self.session.execute(
                update(PricingTier)
                .where(PricingTier.tier == number, PricingTier.sold >= count)
                .values(sold=PricingTier.sold - count)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                raise InvalidStateTransition(f"Tier {number} sold counter would go negative")
        self.session.execute(
            update(PricingCatalogRow).where(PricingCatalogRow.id == CATALOG_ID)
            .values(version=PricingCatalogRow.version + 1)
            .execution_options(synchronize_session=False)
        )


def _positive_prices(price_naira: Optional[Decimal], price_usdt: Optional[Decimal]) -> dict:
    values = {}
    if price_naira is not None:
        values["price_naira"] = Decimal(price_naira)
    if price_usdt is not None:
        values["price_usdt"] = Decimal(price_usdt)
    if not values:
        raise InvalidInput("At least one price must be provided")
    for name, value in values.items():
        if value <= 0:
            raise InvalidInput("Prices must be positive", field=name)
    return values
