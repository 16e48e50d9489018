"""
Audit trail of ledger mutations (trust_audit_logs).

Every balance change, ticket verification and revenue withdrawal appends one
row in the SAME transaction as the change itself, so an audit row exists iff
the change was committed.

    actor_type  - USER | INSTITUTION | API | ADMIN
    actor_id    - wallet address, or an API-key prefix
    action_type - TREASURY_DEPOSIT, BILL_UPLOAD, BILL_UPLOAD_REFUND, TICKET_VERIFY, ...
    target_id   - "<tx_hash>:<log_index>", action id, ticket, ...
    amount      - signed balance delta where one applies
"""

from __future__ import annotations

from decimal import Decimal
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from .models import AuditLog
from .schemas import AuditRecord

RESULT_SUCCESS = "SUCCESS"


async def record_audit(
    db: AsyncSession,
    actor_type: str,
    actor_id: str,
    action_type: str,
    target_id: str = "",
    result: str = RESULT_SUCCESS,
    amount: Optional[Decimal] = None,
) -> None:
    db.add(
        AuditLog(
            actor_type=actor_type,
            actor_id=actor_id,
            action_type=action_type,
            target_id=target_id or "",
            result=result,
            amount=amount,
        )
    )
    await db.flush()


async def list_audit(db: AsyncSession, *, actor_id: Optional[str] = None, action_type: Optional[str] = None, limit: int = 100) -> List[AuditRecord]:
    stmt = select(AuditLog).order_by(AuditLog.id)
    if actor_id is not None:
        stmt = stmt.where(AuditLog.actor_id == actor_id)
    if action_type is not None:
        stmt = stmt.where(AuditLog.action_type == action_type)
    rows = (await db.execute(stmt.limit(limit))).scalars().all()
    return [AuditRecord.model_validate(r) for r in rows]
