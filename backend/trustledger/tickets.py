# 📂 backend/trustledger/tickets.py - bounded-use verification tickets
# -----------------------------------------------------------------------------
# A ticket lets a verifier (an API client or an institution) check, up to
# max_uses times and before expire_at, that a user still owns a credential
# token on chain.
#
# States (derived, never stored):
#   ACTIVE     used_times < max_uses and now < expire_at
#   EXPIRED    now >= expire_at              (checked first)
#   EXHAUSTED  used_times >= max_uses
# EXPIRED and EXHAUSTED are terminal for consumption. Rows are never deleted.
#
# consume_ticket():
#   • ticket row locked for the whole check;
#   • ownership oracle says "not owned" → OwnershipMismatch and NOTHING changes
#     (a failed check does not burn a use);
#   • success → used_times + 1 and a TICKET_VERIFY audit row tagged with the actor;
#   • after commit a reputation recompute for the owner is queued.
# -----------------------------------------------------------------------------

from __future__ import annotations

import hashlib
import logging
from datetime import datetime
from typing import Any, Dict, Optional

from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from .audit import record_audit
from .database import Database
from .errors import (
    InvalidTicketRequest,
    OwnershipMismatch,
    TicketExhausted,
    TicketExpired,
    TicketNotFound,
)
from .models import ROLE_INSTITUTION, ROLE_USER, VerificationTicket
from .ownership import OwnershipOracle, contract_kind_from_scope
from .reputation import PostCommitHooks
from .schemas import TicketRecord, TicketVerification
from .utils import as_utc, new_ticket, normalize_address, utcnow

log = logging.getLogger("trustledger.tickets")

STATE_ACTIVE = "ACTIVE"
STATE_EXPIRED = "EXPIRED"
STATE_EXHAUSTED = "EXHAUSTED"

API_KEY_ID_LEN = 12


class Actor(BaseModel):
    """Who consumes a ticket; only the audit tag differs between kinds."""
    actor_type: str
    actor_id: str

    @classmethod
    def api(cls, api_key: str) -> "Actor":
        """Tagged with a sha256 key id; no part of the secret reaches the audit log."""
        digest = hashlib.sha256(str(api_key or "").encode("utf-8")).hexdigest()
        return cls(actor_type="API", actor_id="key_" + digest[:API_KEY_ID_LEN])

    @classmethod
    def institution(cls, address: str) -> "Actor":
        return cls(actor_type=ROLE_INSTITUTION, actor_id=normalize_address(address))


def get_ticket_state(record: TicketRecord, now: Optional[datetime] = None) -> str:
    now = now or utcnow()
    if now >= as_utc(record.expire_at):
        return STATE_EXPIRED
    if record.used_times >= record.max_uses:
        return STATE_EXHAUSTED
    return STATE_ACTIVE


async def issue_ticket(
    db: AsyncSession,
    user: str,
    token_id: Any,
    expire_at: datetime,
    max_uses: int = 1,
    scope: Optional[Dict[str, Any]] = None,
) -> TicketRecord:
    address = normalize_address(user)
    token = str(token_id or "").strip()
    if not token or len(token) > 80:
        raise InvalidTicketRequest("token id is required (max 80 chars)")
    if isinstance(max_uses, bool) or not isinstance(max_uses, int) or max_uses < 1:
        raise InvalidTicketRequest("max_uses must be a positive integer")
    expire_at = as_utc(expire_at)
    if expire_at <= utcnow():
        raise InvalidTicketRequest("expire_at must be in the future")

    row = VerificationTicket(
        ticket=new_ticket(),
        user_address=address,
        subject_token_id=token,
        expire_at=expire_at,
        max_uses=max_uses,
        used_times=0,
        scope=scope or {},
        created_at=utcnow(),
    )
    db.add(row)
    await db.flush()
    await record_audit(db, ROLE_USER, address, "TICKET_ISSUE", row.ticket)
    log.info("ticket issued user=%s token=%s max_uses=%s expire_at=%s", address, token, max_uses, expire_at.isoformat())
    return TicketRecord.model_validate(row)


async def get_ticket(db: AsyncSession, ticket: str) -> TicketRecord:
    t = str(ticket or "").strip()
    row = (await db.execute(select(VerificationTicket).where(VerificationTicket.ticket == t))).scalar_one_or_none()
    if row is None:
        raise TicketNotFound("ticket not found")
    return TicketRecord.model_validate(row)


async def consume_ticket(
    database: Database,
    ticket: str,
    actor: Actor,
    oracle: OwnershipOracle,
    hooks: Optional[PostCommitHooks] = None,
    now: Optional[datetime] = None,
) -> TicketVerification:
    t = str(ticket or "").strip()
    if not t:
        raise TicketNotFound("ticket is required")

    async with database.session_scope() as db:
        stmt = (
            select(VerificationTicket)
            .where(VerificationTicket.ticket == t)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        row = (await db.execute(stmt)).scalar_one_or_none()
        if row is None:
            raise TicketNotFound("ticket not found")

        current = now or utcnow()
        if current >= as_utc(row.expire_at):
            raise TicketExpired("ticket expired", ticket=t)
        if row.used_times >= row.max_uses:
            raise TicketExhausted("ticket has no uses left", ticket=t, max_uses=row.max_uses)

        kind = contract_kind_from_scope(row.scope)
        owned = await oracle.verify_ownership(row.user_address, row.subject_token_id, kind)
        if not owned:
            raise OwnershipMismatch(
                "wallet does not own the token",
                wallet=row.user_address,
                token_id=row.subject_token_id,
                contract=kind,
            )

        row.used_times += 1
        await db.flush()
        await record_audit(db, actor.actor_type, actor.actor_id, "TICKET_VERIFY", t)
        result = TicketVerification(
            verified=True,
            ticket=t,
            user_address=row.user_address,
            used_times=row.used_times,
            max_uses=row.max_uses,
            state=get_ticket_state(TicketRecord.model_validate(row), current),
        )

    log.info("ticket verified by %s:%s user=%s uses=%s/%s", actor.actor_type, actor.actor_id, result.user_address, result.used_times, result.max_uses)
    if hooks is not None:
        hooks.schedule_recompute(result.user_address)
    return result
