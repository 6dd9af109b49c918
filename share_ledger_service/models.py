from sqlalchemy import (
    Column, Integer, String, BigInteger, DateTime, Boolean, Numeric, Text, JSON,
    UniqueConstraint, Index,
)
from sqlalchemy.orm import declarative_base

from share_ledger_service.domain import utcnow

Base = declarative_base()

# SQLite only auto-increments INTEGER primary keys
BigId = BigInteger().with_variant(Integer, "sqlite")

class PricingCatalogRow(Base):
    """Singleton row (id=1) holding co-founder pricing, the ratio and wallet."""
    __tablename__ = "pricing_catalog"
    id = Column(Integer, primary_key=True)
    co_founder_total = Column(Integer, nullable=False, default=500)
    co_founder_sold = Column(Integer, nullable=False, default=0)
    co_founder_price_naira = Column(Numeric(20, 2), nullable=False)
    co_founder_price_usdt = Column(Numeric(20, 6), nullable=False)
    co_founder_ratio = Column(Integer, nullable=False, default=29)
    ratio_locked = Column(Boolean, nullable=False, default=False)
    company_wallet_address = Column(String(64), nullable=True)
    invoice_enabled = Column(Boolean, nullable=False, default=True)
    version = Column(Integer, nullable=False, default=1)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

class PricingTier(Base):
    __tablename__ = "pricing_tiers"
    tier = Column(Integer, primary_key=True)
    capacity = Column(Integer, nullable=False)
    sold = Column(Integer, nullable=False, default=0)
    price_naira = Column(Numeric(20, 2), nullable=False)
    price_usdt = Column(Numeric(20, 6), nullable=False)

class JournalTransaction(Base):
    """Authoritative record of one purchase attempt."""
    __tablename__ = "journal_transactions"
    reference = Column(String(64), primary_key=True)
    user_id = Column(String(64), nullable=False, index=True)
    user_email = Column(String(255))
    user_name = Column(String(255))
    share_class = Column(String(16), nullable=False)
    rail = Column(String(16), nullable=False, index=True)
    shares = Column(Integer, nullable=False)
    price_per_share = Column(Numeric(20, 6), nullable=False)
    currency = Column(String(8), nullable=False)
    total_amount = Column(Numeric(20, 6), nullable=False)
    tier1 = Column(Integer, nullable=False, default=0)
    tier2 = Column(Integer, nullable=False, default=0)
    tier3 = Column(Integer, nullable=False, default=0)
    status = Column(String(16), nullable=False, default="pending", index=True)
    external_id = Column(String(128))
    rail_payload = Column(JSON, default=dict)
    verifier_id = Column(String(64))
    note = Column(String(1000))
    diagnostic = Column(String(1000))
    admin_hold = Column(Boolean, nullable=False, default=False)
    settlement_count = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    settled_at = Column(DateTime)
    __table_args__ = (
        UniqueConstraint("rail", "external_id", name="uq_journal_rail_external"),
        Index("ix_journal_status_rail", "status", "rail"),
    )

class JournalEvent(Base):
    """Append-only trail of status changes, including compensating reversals."""
    __tablename__ = "journal_events"
    id = Column(BigId, primary_key=True, autoincrement=True)
    reference = Column(String(64), nullable=False, index=True)
    kind = Column(String(32), nullable=False)  # created|completed|failed|cancelled|reversed|escalated|deleted
    from_status = Column(String(16))
    to_status = Column(String(16))
    actor_id = Column(String(64))
    note = Column(String(1000))
    created_at = Column(DateTime, nullable=False, default=utcnow)

class LedgerEntry(Base):
    """Per-user projection of a journal row."""
    __tablename__ = "ledger_entries"
    id = Column(BigId, primary_key=True, autoincrement=True)
    user_id = Column(String(64), nullable=False, index=True)
    reference = Column(String(64), nullable=False, unique=True)
    share_class = Column(String(16), nullable=False)
    shares = Column(Integer, nullable=False)
    status = Column(String(16), nullable=False, default="pending")
    price_per_share = Column(Numeric(20, 6), nullable=False)
    currency = Column(String(8), nullable=False)
    total_amount = Column(Numeric(20, 6), nullable=False)
    rail = Column(String(16), nullable=False)
    tier1 = Column(Integer, nullable=False, default=0)
    tier2 = Column(Integer, nullable=False, default=0)
    tier3 = Column(Integer, nullable=False, default=0)
    note = Column(String(1000))
    created_at = Column(DateTime, nullable=False, default=utcnow)

class UserShareLedger(Base):
    __tablename__ = "user_share_ledgers"
    user_id = Column(String(64), primary_key=True)
    owned_regular = Column(Integer, nullable=False, default=0)
    owned_co_founder = Column(Integer, nullable=False, default=0)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

class Outbox(Base):
    __tablename__ = "outbox"
    id = Column(BigId, primary_key=True, autoincrement=True)
    kind = Column(String(32), nullable=False)  # referral.commission|referral.rollback|notify.user|notify.admin
    dedup_key = Column(String(191), nullable=False, unique=True)
    payload = Column(Text, nullable=False)
    status = Column(String(16), nullable=False, default="new")  # new|sending|sent|failed|dead
    attempts = Column(Integer, nullable=False, default=0)
    last_error = Column(String(1000))
    created_at = Column(DateTime, nullable=False, default=utcnow)
    claimed_at = Column(DateTime)
    sent_at = Column(DateTime)
