# 📂 backend/trustledger/listener.py - treasury deposit listener (poll-based)
# -----------------------------------------------------------------------------
# Purpose:
#   • Poll the chain for DepositReceived logs of the treasury contract and
#     credit wallets through deposits.credit_wallet_on_deposit().
#   • Keep a resumable block cursor (sync_state, id='treasury_deposit').
#
# Cursor rules:
#   • the cursor is the last block fully processed; a scan covers (cursor, head];
#   • no cursor row yet → seed just below TREASURY_START_BLOCK when > 0,
#     otherwise just below the chain head, so the seed block itself is
#     scanned (never from genesis);
#   • the cursor never decreases (set_cursor keeps the max);
#   • after each event (own transaction) the cursor moves to block_number - 1,
#     so a crash mid-block rescans that block and the deposit PK skips the
#     events already credited;
#   • after the range the cursor is force-advanced to its upper bound, even
#     when nothing matched.
#
# Supervision (DepositPoller):
#   • one asyncio task, interval TREASURY_POLL_SECONDS;
#   • on error: attempts += 1, backoff min(60, 2 ** min(10, attempts)) seconds;
#     attempts >= TREASURY_MAX_RETRY → FAILED (fatal), the standalone process
#     exits with code 1;
#   • a successful iteration resets attempts.
#
# Standalone run:
#   python -m trustledger.listener
# -----------------------------------------------------------------------------

from __future__ import annotations

import asyncio
import logging
import sys
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from .chain import JsonRpcProvider, TreasuryContract
from .config import Settings, get_settings
from .database import Database, insert_for
from .deposits import credit_wallet_on_deposit
from .models import TREASURY_STREAM_ID, SyncCursor
from .schemas import ScanResult, SyncCursorRecord
from .utils import to_decimal4_from_units, utcnow

log = logging.getLogger("trustledger.listener")


# -----------------------------------------------------------------------------
# Cursor
# -----------------------------------------------------------------------------
async def get_cursor(db: AsyncSession, stream_id: str = TREASURY_STREAM_ID) -> Optional[SyncCursorRecord]:
    stmt = select(SyncCursor).where(SyncCursor.id == stream_id).execution_options(populate_existing=True)
    row = (await db.execute(stmt)).scalar_one_or_none()
    return SyncCursorRecord.model_validate(row) if row is not None else None


async def set_cursor(db: AsyncSession, last_block: int, stream_id: str = TREASURY_STREAM_ID) -> int:
    """Moves the cursor forward to last_block; never backwards. Returns the stored value."""
    block = max(0, int(last_block))
    await db.execute(
        insert_for(db, SyncCursor)
        .values(id=stream_id, last_block=block, updated_at=utcnow())
        .on_conflict_do_nothing(index_elements=[SyncCursor.id])
    )
    stmt = (
        select(SyncCursor)
        .where(SyncCursor.id == stream_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    row = (await db.execute(stmt)).scalar_one()
    if block > row.last_block:
        row.last_block = block
        row.updated_at = utcnow()
        await db.flush()
    return row.last_block


# -----------------------------------------------------------------------------
# One scan
# -----------------------------------------------------------------------------
async def scan_once(
    database: Database,
    provider: JsonRpcProvider,
    contract: TreasuryContract,
    start_block: int = 0,
    *,
    decimals: int = 18,
    max_block_range: int = 0,
    stream_id: str = TREASURY_STREAM_ID,
) -> ScanResult:
    head = await provider.get_block_number()

    async with database.session_scope() as db:
        cur = await get_cursor(db, stream_id)
        if cur is None:
            seed = start_block - 1 if start_block > 0 else max(0, head - 1)
            cursor = await set_cursor(db, seed, stream_id)
            log.info("cursor %s seeded at %s (head=%s)", stream_id, cursor, head)
        else:
            cursor = cur.last_block

    from_block = cursor + 1
    if from_block > head:
        async with database.session_scope() as db:
            await set_cursor(db, head, stream_id)
        return ScanResult(from_block=from_block, latest=head, processed=0, to_block=head)

    to_block = head
    if max_block_range > 0:
        to_block = min(head, from_block + max_block_range - 1)

    logs = await provider.query_filter(contract.deposit_filter(), from_block, to_block)
    processed = 0
    for raw in logs:
        ev = contract.parse_log(raw)
        if ev is None:
            continue
        async with database.session_scope() as db:
            await credit_wallet_on_deposit(
                db,
                ev.user,
                ev.amount_raw,
                to_decimal4_from_units(ev.amount_raw, decimals),
                ev.tx_hash,
                ev.log_index,
                ev.block_number,
            )
            await set_cursor(db, ev.block_number - 1, stream_id)
        processed += 1

    async with database.session_scope() as db:
        await set_cursor(db, to_block, stream_id)

    return ScanResult(from_block=from_block, latest=head, processed=processed, to_block=to_block)


# -----------------------------------------------------------------------------
# Supervisor
# -----------------------------------------------------------------------------
STATE_IDLE = "IDLE"
STATE_RUNNING = "RUNNING"
STATE_BACKOFF = "BACKOFF"
STATE_STOPPED = "STOPPED"
STATE_FAILED = "FAILED"


def backoff_seconds(attempt: int) -> float:
    return float(min(60, 2 ** min(10, attempt)))


class DepositPoller:
    """
    Supervised polling task for one stream. Owns its restart policy and
    exposes attempts / last_error / last_result for /healthz.
    """

    def __init__(
        self,
        database: Database,
        provider: JsonRpcProvider,
        contract: TreasuryContract,
        *,
        start_block: int = 0,
        interval: float = 15.0,
        max_retry: int = 10,
        decimals: int = 18,
        max_block_range: int = 0,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
    ):
        self.database = database
        self.provider = provider
        self.contract = contract
        self.start_block = start_block
        self.interval = interval
        self.max_retry = max(1, max_retry)
        self.decimals = decimals
        self.max_block_range = max_block_range
        self._sleep_fn = sleep

        self.state = STATE_IDLE
        self.attempts = 0
        self.last_error: Optional[str] = None
        self.fatal_error: Optional[str] = None
        self.last_result: Optional[ScanResult] = None
        self.last_success_at: Optional[datetime] = None

        self._stop = asyncio.Event()
        self._task: Optional[asyncio.Task] = None

    @classmethod
    def from_settings(cls, database: Database, provider: JsonRpcProvider, contract: TreasuryContract, settings: Optional[Settings] = None) -> "DepositPoller":
        s = settings or get_settings()
        return cls(
            database,
            provider,
            contract,
            start_block=s.TREASURY_START_BLOCK,
            interval=s.TREASURY_POLL_SECONDS,
            max_retry=s.TREASURY_MAX_RETRY,
            decimals=s.TREASURY_TOKEN_DECIMALS,
            max_block_range=s.TREASURY_MAX_BLOCK_RANGE,
        )

    async def _sleep(self, seconds: float) -> None:
        if self._sleep_fn is not None:
            await self._sleep_fn(seconds)
            return
        try:
            await asyncio.wait_for(self._stop.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    async def run(self) -> None:
        self.state = STATE_RUNNING
        log.info("treasury listener started contract=%s interval=%ss", self.contract.address, self.interval)
        while not self._stop.is_set():
            try:
                result = await scan_once(
                    self.database,
                    self.provider,
                    self.contract,
                    self.start_block,
                    decimals=self.decimals,
                    max_block_range=self.max_block_range,
                )
            except Exception as e:
                self.attempts += 1
                self.last_error = f"{type(e).__name__}: {e}"
                log.error("error attempt=%s %s", self.attempts, self.last_error, exc_info=True)
                if self.attempts >= self.max_retry:
                    self.state = STATE_FAILED
                    self.fatal_error = self.last_error
                    log.critical("reached max retries (%s), listener stopped", self.max_retry)
                    return
                self.state = STATE_BACKOFF
                await self._sleep(backoff_seconds(self.attempts))
                continue

            self.attempts = 0
            self.state = STATE_RUNNING
            self.last_result = result
            self.last_success_at = utcnow()
            log.info("ok from=%s to=%s processed=%s", result.from_block, result.to_block, result.processed)
            await self._sleep(self.interval)

        self.state = STATE_STOPPED

    def start(self) -> asyncio.Task:
        if self._task is None or self._task.done():
            self._stop.clear()
            self._task = asyncio.create_task(self.run(), name="treasury-listener")
        return self._task

    async def stop(self) -> None:
        self._stop.set()
        if self._task is not None:
            await self._task
            self._task = None

    @property
    def fatal(self) -> bool:
        return self.state == STATE_FAILED

    def status(self) -> Dict[str, Any]:
        return {
            "state": self.state,
            "attempts": self.attempts,
            "last_error": self.last_error,
            "fatal_error": self.fatal_error,
            "last_result": self.last_result.model_dump() if self.last_result else None,
            "last_success_at": self.last_success_at.isoformat() if self.last_success_at else None,
        }


# -----------------------------------------------------------------------------
# Standalone process
# -----------------------------------------------------------------------------
async def main() -> int:
    from .main import configure_logging

    s = get_settings()
    configure_logging(s.LOG_LEVEL)
    if not s.TREASURY_ADDRESS:
        log.critical("TREASURY_ADDRESS is not set")
        return 1

    database = Database.from_settings(s)
    provider = JsonRpcProvider.from_settings(s, treasury=True)
    poller = DepositPoller.from_settings(database, provider, TreasuryContract(s.TREASURY_ADDRESS), s)
    try:
        await database.create_all()
        await poller.run()
    finally:
        await provider.aclose()
        await database.dispose()
    return 1 if poller.fatal else 0


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
