# 📂 backend/trustledger/models.py - SQLAlchemy ORM models
# -----------------------------------------------------------------------------
# Tables of the billing ledger:
#   • trust_wallets            - off-chain balance per EVM address (lazily created);
#   • trust_treasury_deposits  - on-chain deposits, PK (tx_hash, log_index);
#   • sync_state               - resumable block cursor per event stream;
#   • trust_billing_ledger     - paid actions, PK action_id (caller-supplied);
#   • trust_platform_revenue   - skimmed fees, single row id='platform';
#   • trust_verify_tickets     - bounded-use verification tickets;
#   • trust_audit_logs         - append-only audit trail of every mutation.
#
# Rules:
#   • money is NUMERIC(18,4) everywhere; values are Decimal quantised to 4 places;
#   • timestamps are timezone-aware UTC;
#   • balances never go below zero (enforced in wallets.py under a row lock);
#   • tickets and deposits are never deleted.
# -----------------------------------------------------------------------------

from __future__ import annotations

from sqlalchemy import (
    JSON,
    BigInteger,
    Column,
    DateTime,
    Index,
    Integer,
    Numeric,
    String,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import declarative_base

from .utils import utcnow

Base = declarative_base()

MONEY = Numeric(18, 4)
ADDRESS = String(42)

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")

ROLE_USER = "USER"
ROLE_INSTITUTION = "INSTITUTION"
ROLES = (ROLE_USER, ROLE_INSTITUTION)

STATUS_DEBITED = "DEBITED"
STATUS_REFUNDED = "REFUNDED"

REVENUE_POOL_ID = "platform"
TREASURY_STREAM_ID = "treasury_deposit"


# -----------------------------------------------------------------------------
# Wallets
# -----------------------------------------------------------------------------
class Wallet(Base):
    __tablename__ = "trust_wallets"

    address = Column(ADDRESS, primary_key=True)                   # EIP-55 checksummed
    role = Column(String(16), nullable=False, default=ROLE_USER)  # USER | INSTITUTION
    balance = Column(MONEY, nullable=False, default=0)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    def __repr__(self) -> str:
        return f"<Wallet {self.address} {self.role} balance={self.balance}>"


# -----------------------------------------------------------------------------
# On-chain deposits (idempotency boundary for on-chain credits)
# -----------------------------------------------------------------------------
class Deposit(Base):
    __tablename__ = "trust_treasury_deposits"
    __table_args__ = (
        Index("ix_trust_treasury_deposits_wallet", "wallet_address"),
    )

    tx_hash = Column(String(66), primary_key=True)
    log_index = Column(Integer, primary_key=True)
    block_number = Column(BigInteger, nullable=False)
    wallet_address = Column(ADDRESS, nullable=False)
    amount_raw = Column(String(80), nullable=False)   # decimal string of the on-chain integer
    amount = Column(MONEY, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)


# -----------------------------------------------------------------------------
# Block cursor per stream
# -----------------------------------------------------------------------------
class SyncCursor(Base):
    __tablename__ = "sync_state"

    id = Column(String(64), primary_key=True)
    last_block = Column(BigInteger, nullable=False, default=0)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)


# -----------------------------------------------------------------------------
# Paid actions
# -----------------------------------------------------------------------------
class BillingLedgerEntry(Base):
    __tablename__ = "trust_billing_ledger"
    __table_args__ = (
        Index("ix_trust_billing_ledger_wallet", "wallet_address"),
    )

    action_id = Column(String(80), primary_key=True)
    wallet_address = Column(ADDRESS, nullable=False)
    role = Column(String(16), nullable=False)
    action_type = Column(String(64), nullable=False)
    amount = Column(MONEY, nullable=False)
    status = Column(String(16), nullable=False, default=STATUS_DEBITED)  # DEBITED -> REFUNDED only
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)


class RevenuePool(Base):
    __tablename__ = "trust_platform_revenue"

    id = Column(String(32), primary_key=True, default=REVENUE_POOL_ID)
    balance = Column(MONEY, nullable=False, default=0)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)


# -----------------------------------------------------------------------------
# Verification tickets
# -----------------------------------------------------------------------------
class VerificationTicket(Base):
    __tablename__ = "trust_verify_tickets"
    __table_args__ = (
        Index("ix_trust_verify_tickets_user", "user_address"),
    )

    ticket = Column(String(48), primary_key=True)
    user_address = Column(ADDRESS, nullable=False)
    subject_token_id = Column(String(80), nullable=False)
    expire_at = Column(DateTime(timezone=True), nullable=False)
    max_uses = Column(Integer, nullable=False, default=1)
    used_times = Column(Integer, nullable=False, default=0)
    scope = Column(JSONType, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)


# -----------------------------------------------------------------------------
# Audit trail
# -----------------------------------------------------------------------------
class AuditLog(Base):
    __tablename__ = "trust_audit_logs"
    __table_args__ = (
        Index("ix_trust_audit_logs_action", "action_type"),
        Index("ix_trust_audit_logs_actor", "actor_id"),
    )

    id = Column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    actor_type = Column(String(16), nullable=False)    # USER | INSTITUTION | API | ADMIN
    actor_id = Column(String(64), nullable=False)
    action_type = Column(String(64), nullable=False)
    target_id = Column(String(160), nullable=False, default="")
    result = Column(String(16), nullable=False, default="SUCCESS")
    amount = Column(MONEY, nullable=True)              # signed amount for balance mutations
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
