# 📂 backend/trustledger/routes.py - HTTP adapter over the ledger core
# -----------------------------------------------------------------------------
# Endpoints (prefix API_V1_STR, default /api):
#   Billing:
#     - GET  /billing/balance            - balance of the calling wallet (row created on first sight);
#     - POST /billing/charge             - idempotent fee debit by action_id;
#     - POST /billing/refund             - one-way refund of a charged action;
#     - POST /billing/recharge/confirm   - credit a treasury deposit by tx hash right away;
#     - GET  /billing/revenue            - platform revenue (admin);
#     - POST /billing/revenue/withdraw   - take revenue out (admin).
#   Tickets:
#     - POST /tickets                    - a user issues a verification ticket;
#     - GET  /tickets/{ticket}           - ticket state;
#     - POST /verify/ticket              - API client consumes a ticket (x-api-key);
#     - POST /connect/verify/ticket      - institution consumes a ticket.
#
# Access:
#   • the caller is read from headers x-role (USER | INSTITUTION | ADMIN) and
#     x-actor-id (wallet address), set by the gateway in front of us;
#   • admin endpoints additionally require the address in ADMIN_ALLOWLIST;
#   • /verify/ticket requires x-api-key == TRUSTCONNECT_API_KEY.
#
# Errors: LedgerError is turned into {"ok": false, "error", "code"} by the
# handler registered in main.py.
# -----------------------------------------------------------------------------

from __future__ import annotations

import hmac
from datetime import timedelta
from typing import Optional, Tuple

from fastapi import APIRouter, Depends, Header, HTTPException, Request

from .billing import charge_for_action, fee_for, refund_action
from .config import get_settings
from .database import Database, get_db
from .deposits import confirm_recharge
from .errors import InvalidAddress
from .models import ROLE_INSTITUTION, ROLE_USER
from .schemas import (
    BalanceOut,
    ChargeIn,
    ChargeOut,
    RechargeConfirmIn,
    RechargeOut,
    RefundIn,
    RefundOut,
    RevenueOut,
    RevenueWithdrawIn,
    TicketIssueIn,
    TicketOut,
    TicketVerifyIn,
    VerifyOut,
)
from .tickets import Actor, consume_ticket, get_ticket, get_ticket_state, issue_ticket
from .utils import normalize_address, utcnow
from .wallets import get_revenue, get_wallet, withdraw_revenue

settings = get_settings()
router = APIRouter(prefix=settings.API_V1_STR)

ROLE_ADMIN = "ADMIN"


# -----------------------------------------------------------------------------
# Caller
# -----------------------------------------------------------------------------
async def current_actor(
    x_role: Optional[str] = Header(None, alias="x-role"),
    x_actor_id: Optional[str] = Header(None, alias="x-actor-id"),
) -> Tuple[str, str]:
    role = (x_role or "").strip().upper()
    if role not in (ROLE_USER, ROLE_INSTITUTION, ROLE_ADMIN) or not x_actor_id:
        raise HTTPException(status_code=401, detail="x-role and x-actor-id headers are required")
    try:
        return role, normalize_address(x_actor_id)
    except InvalidAddress:
        raise HTTPException(status_code=401, detail="x-actor-id is not a valid address")


def _wallet_role(role: str) -> str:
    return ROLE_INSTITUTION if role == ROLE_INSTITUTION else ROLE_USER


async def require_admin(actor: Tuple[str, str] = Depends(current_actor)) -> str:
    role, address = actor
    allow = {a.lower() for a in get_settings().ADMIN_ALLOWLIST}
    if role != ROLE_ADMIN or address.lower() not in allow:
        raise HTTPException(status_code=403, detail="admin only")
    return address


async def require_api_key(x_api_key: Optional[str] = Header(None, alias="x-api-key")) -> str:
    expected = get_settings().TRUSTCONNECT_API_KEY
    if not expected or not x_api_key or not hmac.compare_digest(x_api_key, expected):
        raise HTTPException(status_code=401, detail="invalid api key")
    return x_api_key


def _treasury(request: Request):
    contract = getattr(request.app.state, "treasury", None)
    if contract is None:
        raise HTTPException(status_code=503, detail="TREASURY_ADDRESS is not configured")
    return request.app.state.treasury_provider, contract


# -----------------------------------------------------------------------------
# Billing
# -----------------------------------------------------------------------------
@router.get("/billing/balance", response_model=BalanceOut)
async def balance(actor: Tuple[str, str] = Depends(current_actor), db: Database = Depends(get_db)):
    role, address = actor
    async with db.session_scope() as session:
        w = await get_wallet(session, address, _wallet_role(role))
    return BalanceOut(address=w.address, role=w.role, balance=w.balance)


@router.post("/billing/charge", response_model=ChargeOut)
async def charge(payload: ChargeIn, actor: Tuple[str, str] = Depends(current_actor), db: Database = Depends(get_db)):
    role, address = actor
    amount = fee_for(payload.action_type)
    res = await charge_for_action(db, payload.action_id, address, _wallet_role(role), amount, payload.action_type)
    return ChargeOut(action_id=payload.action_id.strip(), balance=res.balance, duplicated=res.duplicated)


@router.post("/billing/refund", response_model=RefundOut)
async def refund(payload: RefundIn, actor: Tuple[str, str] = Depends(current_actor), db: Database = Depends(get_db)):
    _, address = actor
    res = await refund_action(db, payload.action_id, address)
    return RefundOut(action_id=payload.action_id.strip(), refunded=res.refunded, duplicated=res.duplicated, balance=res.balance)


@router.post("/billing/recharge/confirm", response_model=RechargeOut)
async def recharge_confirm(
    payload: RechargeConfirmIn,
    request: Request,
    actor: Tuple[str, str] = Depends(current_actor),
    db: Database = Depends(get_db),
):
    role, address = actor
    provider, contract = _treasury(request)
    res = await confirm_recharge(
        db, provider, contract, address, payload.tx_hash, _wallet_role(role), get_settings().TREASURY_TOKEN_DECIMALS
    )
    return RechargeOut(credited=res.credited, balance=res.balance)


@router.get("/billing/revenue", response_model=RevenueOut)
async def revenue(_: str = Depends(require_admin), db: Database = Depends(get_db)):
    async with db.session_scope() as session:
        pool = await get_revenue(session)
    return RevenueOut(balance=pool.balance, updated_at=pool.updated_at)


@router.post("/billing/revenue/withdraw", response_model=RevenueOut)
async def revenue_withdraw(payload: RevenueWithdrawIn, admin: str = Depends(require_admin), db: Database = Depends(get_db)):
    async with db.session_scope() as session:
        left = await withdraw_revenue(session, admin, payload.amount)
    return RevenueOut(balance=left)


# -----------------------------------------------------------------------------
# Tickets
# -----------------------------------------------------------------------------
@router.post("/tickets", response_model=TicketOut)
async def create_ticket(payload: TicketIssueIn, actor: Tuple[str, str] = Depends(current_actor), db: Database = Depends(get_db)):
    role, address = actor
    if role != ROLE_USER:
        raise HTTPException(status_code=403, detail="only users issue tickets")
    async with db.session_scope() as session:
        t = await issue_ticket(
            session,
            address,
            payload.token_id,
            utcnow() + timedelta(seconds=payload.ttl_seconds),
            payload.max_uses,
            payload.scope,
        )
    return TicketOut(ticket=t, state=get_ticket_state(t))


@router.get("/tickets/{ticket}", response_model=TicketOut)
async def read_ticket(ticket: str, _: Tuple[str, str] = Depends(current_actor), db: Database = Depends(get_db)):
    async with db.session_scope() as session:
        t = await get_ticket(session, ticket)
    return TicketOut(ticket=t, state=get_ticket_state(t))


@router.post("/verify/ticket", response_model=VerifyOut)
async def verify_ticket_api(
    payload: TicketVerifyIn,
    request: Request,
    api_key: str = Depends(require_api_key),
    db: Database = Depends(get_db),
):
    res = await consume_ticket(db, payload.ticket, Actor.api(api_key), request.app.state.oracle, request.app.state.hooks)
    return VerifyOut(verified=res.verified, used_times=res.used_times, max_uses=res.max_uses, state=res.state)


@router.post("/connect/verify/ticket", response_model=VerifyOut)
async def verify_ticket_institution(
    payload: TicketVerifyIn,
    request: Request,
    actor: Tuple[str, str] = Depends(current_actor),
    db: Database = Depends(get_db),
):
    role, address = actor
    if role not in (ROLE_INSTITUTION, ROLE_ADMIN):
        raise HTTPException(status_code=403, detail="institution only")
    res = await consume_ticket(db, payload.ticket, Actor.institution(address), request.app.state.oracle, request.app.state.hooks)
    return VerifyOut(verified=res.verified, used_times=res.used_times, max_uses=res.max_uses, state=res.state)
