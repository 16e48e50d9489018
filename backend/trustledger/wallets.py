# 📂 backend/trustledger/wallets.py - wallet ledger primitives
# -----------------------------------------------------------------------------
# Atomic credit/debit of off-chain balances and the platform revenue pool.
#
# Rules:
#   • every mutation runs in the caller's transaction and holds a row lock
#     (SELECT ... FOR UPDATE) on the wallet, serialising concurrent debits;
#   • a debit fails with InsufficientBalance when balance + 1e-9 < amount,
#     so a balance never goes below zero;
#   • a positive debit is skimmed into the revenue pool ('platform');
#     negative debits (refunds) never skim;
#   • every mutation appends an audit row with the signed amount;
#   • wallets are created lazily (ensure_wallet_row).
#
# Nothing here commits: the caller's Database.session_scope() does.
# -----------------------------------------------------------------------------

from __future__ import annotations

import logging
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from .audit import record_audit
from .database import insert_for
from .errors import InsufficientBalance, InsufficientRevenue, InvalidAddress, InvalidAmount, InvalidRole
from .models import REVENUE_POOL_ID, ROLE_USER, ROLES, RevenuePool, Wallet
from .schemas import RevenuePoolRecord, WalletRecord
from .utils import BALANCE_EPSILON, ZERO, normalize_address, parse_amount, q4, utcnow

log = logging.getLogger("trustledger.wallets")


def normalize_role(role: Optional[str]) -> str:
    r = (role or ROLE_USER).strip().upper()
    if r not in ROLES:
        raise InvalidRole(f"unknown wallet role: {role!r}")
    return r


# -----------------------------------------------------------------------------
# Rows
# -----------------------------------------------------------------------------
async def ensure_wallet_row(db: AsyncSession, wallet: str, role: Optional[str] = ROLE_USER, *, update_role: bool = True) -> str:
    """
    Creates the wallet row if absent (balance 0). With update_role=True an
    existing row whose role differs is switched to `role`. role=None creates
    the row as USER and leaves an existing role alone, as does
    update_role=False (the deposit path).
    Returns the checksummed address.
    """
    address = normalize_address(wallet)
    r = normalize_role(role)
    stmt = (
        insert_for(db, Wallet)
        .values(address=address, role=r, balance=ZERO, updated_at=utcnow())
        .on_conflict_do_nothing(index_elements=[Wallet.address])
    )
    await db.execute(stmt)
    if update_role and role is not None:
        row = await get_wallet_for_update(db, address)
        if row.role != r:
            log.info("wallet %s role %s -> %s", address, row.role, r)
            row.role = r
            await db.flush()
    return address


async def get_wallet_for_update(db: AsyncSession, wallet: str) -> Wallet:
    """Locks the wallet row for the rest of the transaction."""
    address = normalize_address(wallet)
    stmt = (
        select(Wallet)
        .where(Wallet.address == address)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    row = (await db.execute(stmt)).scalar_one_or_none()
    if row is None:
        raise InvalidAddress(f"wallet {address} does not exist")
    return row


async def get_wallet(db: AsyncSession, wallet: str, role: Optional[str] = None) -> WalletRecord:
    """Balance read that creates the row on first sight."""
    address = await ensure_wallet_row(db, wallet, role)
    row = await get_wallet_for_update(db, address)
    return WalletRecord.model_validate(row)


# -----------------------------------------------------------------------------
# Credit / debit
# -----------------------------------------------------------------------------
async def credit_wallet(
    db: AsyncSession,
    wallet: str,
    role: Optional[str],
    amount: Any,
    action_type: str = "BILL_CREDIT",
    target_id: str = "",
) -> Decimal:
    """Adds `amount` to the wallet (no upper bound). Returns the new balance."""
    amt = parse_amount(amount)
    address = await ensure_wallet_row(db, wallet, role)
    row = await get_wallet_for_update(db, address)
    row.balance = q4(row.balance + amt)
    row.updated_at = utcnow()
    await db.flush()
    await record_audit(db, row.role, address, action_type, target_id, amount=amt)
    return row.balance


async def deduct_wallet(
    db: AsyncSession,
    wallet: str,
    role: Optional[str],
    amount: Any,
    action_type: str = "BILL_DEDUCT",
    target_id: str = "",
) -> Decimal:
    """
    Subtracts `amount` under the wallet row lock. A negative amount is a
    refund-as-negative-debit: it raises the balance and is not skimmed.
    Returns the new balance.
    """
    amt = parse_amount(amount)
    address = await ensure_wallet_row(db, wallet, role)
    row = await get_wallet_for_update(db, address)
    if row.balance + BALANCE_EPSILON < amt:
        raise InsufficientBalance(
            f"balance {row.balance} < {amt}",
            wallet=address,
            balance=str(row.balance),
            amount=str(amt),
        )
    row.balance = q4(row.balance - amt)
    row.updated_at = utcnow()
    await db.flush()
    await record_audit(db, row.role, address, action_type, target_id, amount=-amt)
    if amt > 0:
        await _skim_revenue(db, amt)
    return row.balance


# -----------------------------------------------------------------------------
# Revenue pool
# -----------------------------------------------------------------------------
async def _skim_revenue(db: AsyncSession, amount: Decimal) -> None:
    stmt = insert_for(db, RevenuePool).values(id=REVENUE_POOL_ID, balance=amount, updated_at=utcnow())
    stmt = stmt.on_conflict_do_update(
        index_elements=[RevenuePool.id],
        set_={"balance": RevenuePool.balance + amount, "updated_at": utcnow()},
    )
    await db.execute(stmt)


async def _revenue_for_update(db: AsyncSession) -> RevenuePool:
    await db.execute(
        insert_for(db, RevenuePool)
        .values(id=REVENUE_POOL_ID, balance=ZERO, updated_at=utcnow())
        .on_conflict_do_nothing(index_elements=[RevenuePool.id])
    )
    stmt = (
        select(RevenuePool)
        .where(RevenuePool.id == REVENUE_POOL_ID)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    return (await db.execute(stmt)).scalar_one()


async def get_revenue(db: AsyncSession) -> RevenuePoolRecord:
    stmt = select(RevenuePool).where(RevenuePool.id == REVENUE_POOL_ID).execution_options(populate_existing=True)
    row = (await db.execute(stmt)).scalar_one_or_none()
    if row is None:
        return RevenuePoolRecord(id=REVENUE_POOL_ID, balance=ZERO)
    return RevenuePoolRecord.model_validate(row)


async def withdraw_revenue(db: AsyncSession, admin: str, amount: Any) -> Decimal:
    """
    Takes `amount` out of the revenue pool (admin payout).
    Returns the remaining pool balance.
    """
    amt = parse_amount(amount)
    if amt <= 0:
        raise InvalidAmount("withdraw amount must be positive")
    address = normalize_address(admin)
    pool = await _revenue_for_update(db)
    if pool.balance + BALANCE_EPSILON < amt:
        raise InsufficientRevenue(f"revenue {pool.balance} < {amt}", balance=str(pool.balance))
    pool.balance = q4(pool.balance - amt)
    pool.updated_at = utcnow()
    await db.flush()
    await record_audit(db, "ADMIN", address, "REVENUE_WITHDRAW", REVENUE_POOL_ID, amount=-amt)
    log.info("revenue withdraw admin=%s amount=%s left=%s", address, amt, pool.balance)
    return pool.balance
