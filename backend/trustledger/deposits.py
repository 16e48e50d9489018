# 📂 backend/trustledger/deposits.py - idempotent crediting of on-chain deposits
# -----------------------------------------------------------------------------
# Two paths credit treasury deposits:
#   1) the background listener (listener.py) - every DepositReceived log;
#   2) recharge confirmation (confirm_recharge) - the client submits a tx hash
#      right after paying and does not wait for the next poll.
#
# Both converge on credit_wallet_on_deposit(): the Deposit row keyed by
# (tx_hash, log_index) is inserted with ON CONFLICT DO NOTHING and only the
# transaction that actually inserted it credits the wallet. Whichever path
# commits first wins, the other is a no-op. Deposit row, balance change and
# audit row live in one transaction: a Deposit exists iff the wallet was
# credited for it.
# -----------------------------------------------------------------------------

from __future__ import annotations

import logging
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from .audit import record_audit
from .chain import JsonRpcProvider, TreasuryContract
from .config import get_settings
from .database import Database, insert_for
from .errors import InvalidTxHash, NoDepositEvent, TxFailed, TxNotFound
from .models import ROLE_USER, Deposit
from .schemas import DepositCredit, RechargeResult
from .utils import (
    TX_HASH_RE,
    dec,
    normalize_address,
    q4,
    same_address,
    to_decimal4_from_units,
    utcnow,
)
from .wallets import ensure_wallet_row, get_wallet_for_update

log = logging.getLogger("trustledger.deposits")


def validate_tx_hash(tx_hash: Any) -> str:
    s = str(tx_hash or "").strip()
    if not TX_HASH_RE.match(s):
        raise InvalidTxHash(f"invalid tx hash: {s!r}")
    return s.lower()


async def credit_wallet_on_deposit(
    db: AsyncSession,
    wallet: str,
    amount_raw: Any,
    amount_decimal: Any,
    tx_hash: str,
    log_index: int,
    block_number: int,
) -> DepositCredit:
    """
    Inserts the Deposit if absent and, only then, credits the wallet.
    A wallet seen for the first time is created with role USER; an existing
    wallet keeps its role. Runs in the caller's transaction.
    """
    address = normalize_address(wallet)
    amount = q4(dec(amount_decimal))
    tx = str(tx_hash).lower()
    idx = int(log_index)

    stmt = (
        insert_for(db, Deposit)
        .values(
            tx_hash=tx,
            log_index=idx,
            block_number=int(block_number),
            wallet_address=address,
            amount_raw=str(amount_raw),
            amount=amount,
            created_at=utcnow(),
        )
        .on_conflict_do_nothing(index_elements=[Deposit.tx_hash, Deposit.log_index])
        .returning(Deposit.tx_hash)
    )
    inserted = (await db.execute(stmt)).first() is not None
    if not inserted:
        log.debug("deposit %s:%s already credited", tx, idx)
        return DepositCredit(duplicated=True)

    await ensure_wallet_row(db, address, ROLE_USER, update_role=False)
    row = await get_wallet_for_update(db, address)
    row.balance = q4(row.balance + amount)
    row.updated_at = utcnow()
    await db.flush()
    await record_audit(db, "API", address, "TREASURY_DEPOSIT", f"{tx}:{idx}", amount=amount)
    log.info("deposit credited wallet=%s amount=%s tx=%s:%s block=%s", address, amount, tx, idx, block_number)
    return DepositCredit(duplicated=False, balance=row.balance)


async def confirm_recharge(
    database: Database,
    provider: JsonRpcProvider,
    contract: TreasuryContract,
    wallet: str,
    tx_hash: str,
    role: Optional[str] = ROLE_USER,
    decimals: Optional[int] = None,
) -> RechargeResult:
    """
    Client-pull reconciliation: credits the caller for every DepositReceived
    in the receipt whose beneficiary is the caller.
    Fails with TxNotFound (no receipt), TxFailed (status != 1) or
    NoDepositEvent (no treasury deposit log in the receipt).
    """
    tx = validate_tx_hash(tx_hash)
    address = normalize_address(wallet)
    if decimals is None:
        decimals = get_settings().TREASURY_TOKEN_DECIMALS

    receipt = await provider.get_transaction_receipt(tx)
    if receipt is None:
        raise TxNotFound(f"no receipt for {tx} (unknown tx or node not synced)")
    if receipt.status != 1:
        raise TxFailed(f"transaction {tx} reverted (status={receipt.status})")

    events = contract.parse_receipt(receipt)
    if not events:
        raise NoDepositEvent(f"transaction {tx} has no DepositReceived from the treasury")

    credited = False
    async with database.session_scope() as db:
        await ensure_wallet_row(db, address, role)
        for ev in events:
            if not same_address(ev.user, address):
                continue
            res = await credit_wallet_on_deposit(
                db,
                address,
                ev.amount_raw,
                to_decimal4_from_units(ev.amount_raw, decimals),
                tx,
                ev.log_index,
                receipt.block_number,
            )
            credited = credited or not res.duplicated
        row = await get_wallet_for_update(db, address)
        balance: Decimal = row.balance

    log.info("recharge confirm wallet=%s tx=%s credited=%s balance=%s", address, tx, credited, balance)
    return RechargeResult(credited=credited, balance=balance)
