# 📂 backend/trustledger/scheduler.py - daily ledger reconciliation
# -----------------------------------------------------------------------------
# Purpose:
#   • Once a day (LEDGER_AUDIT_CRON_HOUR, UTC) recompute the conservation
#     totals of the ledger and report any drift:
#
#       Σ wallets + revenue + Σ withdrawn
#         == Σ deposits + Σ other credits + Σ refunds
#
#     Debits move value wallet → revenue (net zero). Refunds give value back
#     to the wallet without taking it out of revenue, so they are an inflow.
#   • Flag any wallet with a negative balance.
#
# Sources: trust_wallets, trust_platform_revenue, trust_treasury_deposits and
# the signed amounts of trust_audit_logs.
#
# Integration: main.py calls setup_scheduler(db) and scheduler.start() in the
# lifespan.
# -----------------------------------------------------------------------------

from __future__ import annotations

import logging
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from sqlalchemy import func, select

from .config import Settings, get_settings
from .database import Database
from .models import AuditLog, Deposit, Wallet
from .schemas import LedgerAuditReport
from .utils import dec, q4
from .wallets import get_revenue

log = logging.getLogger("trustledger.scheduler")


def _sum(col):
    return func.coalesce(func.sum(col), 0)


async def run_ledger_audit(database: Database) -> LedgerAuditReport:
    log.info("[Scheduler] ledger audit started")
    async with database.session_scope() as db:
        wallets_total = q4(dec((await db.execute(select(_sum(Wallet.balance)))).scalar()))
        revenue = (await get_revenue(db)).balance
        deposits_total = q4(dec((await db.execute(select(_sum(Deposit.amount)))).scalar()))

        refunds_total = q4(dec((await db.execute(
            select(_sum(AuditLog.amount)).where(
                AuditLog.action_type.endswith("_REFUND", autoescape=True),
                AuditLog.amount > 0,
            )
        )).scalar()))
        credits_total = q4(dec((await db.execute(
            select(_sum(AuditLog.amount)).where(
                AuditLog.amount > 0,
                AuditLog.action_type != "TREASURY_DEPOSIT",
                ~AuditLog.action_type.endswith("_REFUND", autoescape=True),
            )
        )).scalar()))
        withdrawals_total = abs(q4(dec((await db.execute(
            select(_sum(AuditLog.amount)).where(AuditLog.action_type == "REVENUE_WITHDRAW")
        )).scalar())))

        negative = (await db.execute(select(Wallet.address).where(Wallet.balance < 0))).scalars().all()

    held = wallets_total + revenue + withdrawals_total
    injected = deposits_total + credits_total + refunds_total
    discrepancy = q4(held - injected)
    report = LedgerAuditReport(
        wallets_total=wallets_total,
        revenue=revenue,
        deposits_total=deposits_total,
        credits_total=credits_total,
        refunds_total=refunds_total,
        withdrawals_total=withdrawals_total,
        discrepancy=discrepancy,
        ok=discrepancy == 0 and not negative,
        negative_wallets=list(negative),
    )
    if report.ok:
        log.info("[Scheduler] ledger audit ok: wallets=%s revenue=%s deposits=%s", wallets_total, revenue, deposits_total)
    else:
        log.warning(
            "[Scheduler] ledger audit MISMATCH: discrepancy=%s negative_wallets=%s (held=%s injected=%s)",
            discrepancy, report.negative_wallets, held, injected,
        )
    return report


def setup_scheduler(database: Database, settings: Optional[Settings] = None) -> AsyncIOScheduler:
    """
    Creates the AsyncIOScheduler with the cron jobs. Returns it NOT started.
    """
    s = settings or get_settings()
    scheduler = AsyncIOScheduler(timezone="UTC")
    if s.LEDGER_AUDIT_ENABLED:
        scheduler.add_job(
            run_ledger_audit,
            "cron",
            hour=s.LEDGER_AUDIT_CRON_HOUR,
            minute=0,
            args=[database],
            id="ledger_audit",
            replace_existing=True,
        )
    return scheduler
