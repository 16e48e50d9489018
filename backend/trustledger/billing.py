# 📂 backend/trustledger/billing.py - idempotent fee debit/refund of paid actions
# -----------------------------------------------------------------------------
# Paid off-chain actions (UPLOAD, APPLY_SUBMIT, REVIEW_OPEN, REQUIREMENT_CREATE)
# are charged through a BillingLedgerEntry keyed by a caller-supplied action_id:
#
#   charge_for_action:
#     • entry exists, other wallet   → ActionOwnershipError
#     • entry exists, REFUNDED       → ActionAlreadyRefunded (refund is one-way)
#     • entry exists, DEBITED        → duplicated=True, prior outcome, no debit
#     • no entry                     → lock the wallet row, look again, then
#                                      deduct_wallet(BILL_<TYPE>) + insert DEBITED
#     Two concurrent first charges race on the action_id PK: the loser's whole
#     transaction is rolled back and it reports duplicated=True.
#
#   refund_action:
#     • missing → ActionNotFound; other wallet → ActionOwnershipError
#     • REFUNDED → idempotent no-op
#     • else deduct_wallet(-amount, BILL_<TYPE>_REFUND) and flip to REFUNDED;
#       the wallet keeps its current role
# -----------------------------------------------------------------------------

from __future__ import annotations

import logging
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from .config import get_settings
from .database import Database
from .errors import (
    ActionAlreadyRefunded,
    ActionNotFound,
    ActionOwnershipError,
    InvalidActionId,
    InvalidAmount,
)
from .models import STATUS_DEBITED, STATUS_REFUNDED, BillingLedgerEntry
from .schemas import BillingEntryRecord, ChargeResult, RefundResult
from .utils import normalize_address, parse_amount, same_address, utcnow
from .wallets import deduct_wallet, ensure_wallet_row, get_wallet_for_update, normalize_role

log = logging.getLogger("trustledger.billing")

ACTION_ID_MAX = 80


def validate_action_id(action_id: Any) -> str:
    aid = str(action_id or "").strip()
    if not aid:
        raise InvalidActionId("action_id is required")
    if len(aid) > ACTION_ID_MAX:
        raise InvalidActionId(f"action_id longer than {ACTION_ID_MAX} chars")
    return aid


def fee_for(action_type: str) -> Decimal:
    """Configured fee of the action type; the request body never sets it."""
    try:
        return parse_amount(get_settings().fee_for(action_type))
    except KeyError:
        raise InvalidAmount(f"no fee configured for {action_type!r}")


async def _entry_for_update(db: AsyncSession, action_id: str) -> Optional[BillingLedgerEntry]:
    stmt = (
        select(BillingLedgerEntry)
        .where(BillingLedgerEntry.action_id == action_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    return (await db.execute(stmt)).scalar_one_or_none()


async def _existing_charge(db: AsyncSession, entry: BillingLedgerEntry, address: str) -> ChargeResult:
    if not same_address(entry.wallet_address, address):
        raise ActionOwnershipError(f"action {entry.action_id} belongs to another wallet")
    if entry.status == STATUS_REFUNDED:
        raise ActionAlreadyRefunded(f"action {entry.action_id} was refunded")
    wallet = await get_wallet_for_update(db, address)
    return ChargeResult(
        balance=wallet.balance,
        duplicated=True,
        entry=BillingEntryRecord.model_validate(entry),
    )


async def charge_for_action(
    database: Database,
    action_id: str,
    wallet: str,
    role: Optional[str],
    amount: Any,
    action_type: str,
) -> ChargeResult:
    aid = validate_action_id(action_id)
    address = normalize_address(wallet)
    r = normalize_role(role)
    atype = str(action_type or "").strip().upper()
    if not atype:
        raise InvalidActionId("action_type is required")
    amt = parse_amount(amount)
    if amt <= 0:
        raise InvalidAmount("charge amount must be positive")

    try:
        async with database.session_scope() as db:
            entry = await _entry_for_update(db, aid)
            if entry is None:
                # a concurrent charge of this wallet holds the row lock until it commits
                await ensure_wallet_row(db, address, r)
                await get_wallet_for_update(db, address)
                entry = await _entry_for_update(db, aid)
            if entry is not None:
                return await _existing_charge(db, entry, address)

            balance = await deduct_wallet(db, address, r, amt, f"BILL_{atype}", aid)
            entry = BillingLedgerEntry(
                action_id=aid,
                wallet_address=address,
                role=r,
                action_type=atype,
                amount=amt,
                status=STATUS_DEBITED,
                created_at=utcnow(),
                updated_at=utcnow(),
            )
            db.add(entry)
            await db.flush()
            log.info("charged action=%s type=%s wallet=%s amount=%s balance=%s", aid, atype, address, amt, balance)
            return ChargeResult(balance=balance, duplicated=False, entry=BillingEntryRecord.model_validate(entry))
    except IntegrityError:
        # lost the action_id race; the debit above was rolled back with it
        log.info("charge race on action=%s, reading winner", aid)

    async with database.session_scope() as db:
        entry = await _entry_for_update(db, aid)
        if entry is None:
            raise ActionNotFound(f"action {aid} vanished after a conflicting insert")
        return await _existing_charge(db, entry, address)


async def refund_action(database: Database, action_id: str, wallet: str) -> RefundResult:
    aid = validate_action_id(action_id)
    address = normalize_address(wallet)

    async with database.session_scope() as db:
        entry = await _entry_for_update(db, aid)
        if entry is None:
            raise ActionNotFound(f"no charge recorded for action {aid}")
        if not same_address(entry.wallet_address, address):
            raise ActionOwnershipError(f"action {aid} belongs to another wallet")
        if entry.status == STATUS_REFUNDED:
            return RefundResult(refunded=True, duplicated=True, balance=None)

        balance = await deduct_wallet(
            db,
            address,
            None,
            -entry.amount,
            f"BILL_{entry.action_type}_REFUND",
            aid,
        )
        entry.status = STATUS_REFUNDED
        entry.updated_at = utcnow()
        await db.flush()
        log.info("refunded action=%s wallet=%s amount=%s balance=%s", aid, address, entry.amount, balance)
        return RefundResult(refunded=True, duplicated=False, balance=balance)


async def get_action(db: AsyncSession, action_id: str) -> Optional[BillingEntryRecord]:
    aid = validate_action_id(action_id)
    row = (await db.execute(select(BillingLedgerEntry).where(BillingLedgerEntry.action_id == aid))).scalar_one_or_none()
    return BillingEntryRecord.model_validate(row) if row is not None else None
