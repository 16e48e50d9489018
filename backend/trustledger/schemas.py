# 📂 backend/trustledger/schemas.py - Pydantic schemas (records, results, API)
# -----------------------------------------------------------------------------
# - Typed records: ORM rows are mapped to these at the store boundary
#   (from_attributes), nothing dynamically shaped leaves the service layer
# - Results of core operations (deposit credit, scan, charge, refund, ...)
# - Request payloads and responses of the HTTP adapter

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class _Record(BaseModel):
    model_config = ConfigDict(from_attributes=True)


# ======================
# 📒 Records
# ======================
class WalletRecord(_Record):
    address: str
    role: str
    balance: Decimal
    updated_at: Optional[datetime] = None


class SyncCursorRecord(_Record):
    id: str
    last_block: int
    updated_at: Optional[datetime] = None


class BillingEntryRecord(_Record):
    action_id: str
    wallet_address: str
    role: str
    action_type: str
    amount: Decimal
    status: str
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class RevenuePoolRecord(_Record):
    id: str
    balance: Decimal
    updated_at: Optional[datetime] = None


class TicketRecord(_Record):
    ticket: str
    user_address: str
    subject_token_id: str
    expire_at: datetime
    max_uses: int
    used_times: int
    scope: Optional[Dict[str, Any]] = None
    created_at: Optional[datetime] = None


class AuditRecord(_Record):
    id: int
    actor_type: str
    actor_id: str
    action_type: str
    target_id: str
    result: str
    amount: Optional[Decimal] = None
    created_at: Optional[datetime] = None


# ======================
# ⛓ Deposits / listener
# ======================
class DepositCredit(BaseModel):
    duplicated: bool
    balance: Optional[Decimal] = None


class ScanResult(BaseModel):
    from_block: int
    latest: int
    processed: int
    to_block: Optional[int] = None


class RechargeResult(BaseModel):
    credited: bool
    balance: Decimal


# ======================
# 💳 Billing
# ======================
class ChargeResult(BaseModel):
    balance: Decimal
    duplicated: bool
    entry: Optional[BillingEntryRecord] = None


class RefundResult(BaseModel):
    refunded: bool
    duplicated: bool
    balance: Optional[Decimal] = None


# ======================
# 🎫 Tickets / reputation
# ======================
class TicketVerification(BaseModel):
    verified: bool
    ticket: str
    user_address: str
    used_times: int
    max_uses: int
    state: str


class ScoreChange(BaseModel):
    changed: bool = False
    level: Optional[str] = None
    total_score: Optional[Decimal] = None


# ======================
# 🌐 API payloads
# ======================
class ChargeIn(BaseModel):
    action_id: str = Field(..., description="Caller-supplied unique id of the paid action (max 80 chars)")
    action_type: str = Field(..., description="UPLOAD | APPLY_SUBMIT | REVIEW_OPEN | REQUIREMENT_CREATE")


class RefundIn(BaseModel):
    action_id: str


class RechargeConfirmIn(BaseModel):
    tx_hash: str = Field(..., description="0x + 64 hex")


class RevenueWithdrawIn(BaseModel):
    amount: Decimal


class TicketIssueIn(BaseModel):
    token_id: str
    ttl_seconds: int = Field(86400, ge=60)
    max_uses: int = Field(1, ge=1)
    scope: Optional[Dict[str, Any]] = None


class TicketVerifyIn(BaseModel):
    ticket: str


class BalanceOut(BaseModel):
    ok: bool = True
    address: str
    role: str
    balance: Decimal


class TicketOut(BaseModel):
    ok: bool = True
    ticket: TicketRecord
    state: str


class HealthOut(BaseModel):
    ok: bool
    database: bool
    listener: Dict[str, Any]
    post_commit: Dict[str, Any]


class LedgerAuditReport(BaseModel):
    wallets_total: Decimal
    revenue: Decimal
    deposits_total: Decimal
    credits_total: Decimal
    refunds_total: Decimal
    withdrawals_total: Decimal
    discrepancy: Decimal
    ok: bool
    negative_wallets: List[str] = []


class ChargeOut(BaseModel):
    ok: bool = True
    action_id: str
    balance: Decimal
    duplicated: bool


class RefundOut(BaseModel):
    ok: bool = True
    action_id: str
    refunded: bool
    duplicated: bool
    balance: Optional[Decimal] = None


class RechargeOut(BaseModel):
    ok: bool = True
    credited: bool
    balance: Decimal


class RevenueOut(BaseModel):
    ok: bool = True
    balance: Decimal
    updated_at: Optional[datetime] = None


class VerifyOut(BaseModel):
    ok: bool = True
    verified: bool
    used_times: int
    max_uses: int
    state: str
