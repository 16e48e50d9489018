# 📂 backend/trustledger/chain.py - JSON-RPC provider and treasury event codec
# -----------------------------------------------------------------------------
# What is here:
#   • JsonRpcProvider - thin async EVM JSON-RPC client on httpx:
#       - get_block_number()          → eth_blockNumber
#       - query_filter(f, from, to)   → eth_getLogs
#       - get_transaction_receipt(h)  → eth_getTransactionReceipt (None if unknown)
#     Transport failures and JSON-RPC errors raise ChainRpcError (retryable).
#     Every call is bounded by CHAIN_RPC_TIMEOUT.
#   • TreasuryContract - the treasury's DepositReceived(address indexed user,
#     uint256 amount) event: log filter and decoding of raw logs.
#
# Nothing here touches the database.
# -----------------------------------------------------------------------------

from __future__ import annotations

import itertools
import logging
from typing import Any, Dict, List, Optional

import httpx
from pydantic import BaseModel

from .config import Settings, get_settings
from .errors import ChainRpcError
from .utils import keccak256, normalize_address, same_address, topic_to_address

log = logging.getLogger("trustledger.chain")

DEPOSIT_EVENT_SIGNATURE = "DepositReceived(address,uint256)"
DEPOSIT_TOPIC = "0x" + keccak256(DEPOSIT_EVENT_SIGNATURE.encode("ascii")).hex()


# ------------------------------------------------------------
# Types
# ------------------------------------------------------------
class ChainEvent(BaseModel):
    """A raw log as returned by eth_getLogs / inside a receipt."""
    address: str
    topics: List[str]
    data: str
    tx_hash: str
    log_index: int
    block_number: int


class Receipt(BaseModel):
    tx_hash: str
    status: int
    block_number: int
    logs: List[ChainEvent]


class EventFilter(BaseModel):
    address: str
    topics: List[Optional[str]]


class DepositEvent(BaseModel):
    """Decoded DepositReceived."""
    user: str
    amount_raw: int
    tx_hash: str
    log_index: int
    block_number: int


def _int(v: Any) -> int:
    if v is None:
        return 0
    if isinstance(v, int):
        return v
    s = str(v)
    return int(s, 16) if s.startswith(("0x", "0X")) else int(s)


def _parse_log(raw: Dict[str, Any]) -> ChainEvent:
    return ChainEvent(
        address=raw.get("address") or "",
        topics=list(raw.get("topics") or []),
        data=raw.get("data") or "0x",
        tx_hash=raw.get("transactionHash") or "",
        log_index=_int(raw.get("logIndex")),
        block_number=_int(raw.get("blockNumber")),
    )


# ------------------------------------------------------------
# Provider
# ------------------------------------------------------------
class JsonRpcProvider:
    """
    Minimal EVM JSON-RPC client.
        provider = JsonRpcProvider("http://127.0.0.1:8545")
        head = await provider.get_block_number()
    A client may be injected (tests use httpx.MockTransport).
    """

    def __init__(self, url: str, timeout: float = 20.0, client: Optional[httpx.AsyncClient] = None):
        self.url = url
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._ids = itertools.count(1)

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None, *, treasury: bool = False) -> "JsonRpcProvider":
        s = settings or get_settings()
        url = s.treasury_rpc_url if treasury else s.CHAIN_RPC_URL
        return cls(url, timeout=s.CHAIN_RPC_TIMEOUT)

    async def request(self, method: str, params: List[Any]) -> Any:
        payload = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params}
        try:
            r = await self._client.post(self.url, json=payload)
            r.raise_for_status()
            body = r.json()
        except httpx.HTTPError as e:
            raise ChainRpcError(f"{method} failed: {e}", method=method) from e
        except ValueError as e:
            raise ChainRpcError(f"{method} returned invalid JSON", method=method) from e
        if body.get("error"):
            err = body["error"]
            raise ChainRpcError(f"{method} error: {err.get('message') if isinstance(err, dict) else err}", method=method)
        return body.get("result")

    async def get_block_number(self) -> int:
        return _int(await self.request("eth_blockNumber", []))

    async def query_filter(self, event_filter: EventFilter, from_block: int, to_block: int) -> List[ChainEvent]:
        """Logs matching the filter in [from_block, to_block], ordered by (block, log index)."""
        params = {
            "address": event_filter.address,
            "topics": event_filter.topics,
            "fromBlock": hex(from_block),
            "toBlock": hex(to_block),
        }
        raw = await self.request("eth_getLogs", [params]) or []
        # removed=True marks logs dropped by a reorg
        events = [_parse_log(x) for x in raw if not x.get("removed")]
        events.sort(key=lambda e: (e.block_number, e.log_index))
        return events

    async def get_transaction_receipt(self, tx_hash: str) -> Optional[Receipt]:
        raw = await self.request("eth_getTransactionReceipt", [tx_hash])
        if not raw:
            return None
        return Receipt(
            tx_hash=raw.get("transactionHash") or tx_hash,
            status=_int(raw.get("status")),
            block_number=_int(raw.get("blockNumber")),
            logs=[_parse_log(x) for x in raw.get("logs") or []],
        )

    async def aclose(self) -> None:
        await self._client.aclose()


# ------------------------------------------------------------
# Treasury contract
# ------------------------------------------------------------
class TreasuryContract:
    def __init__(self, address: str):
        self.address = normalize_address(address)

    def deposit_filter(self) -> EventFilter:
        return EventFilter(address=self.address, topics=[DEPOSIT_TOPIC])

    def parse_log(self, ev: ChainEvent) -> Optional[DepositEvent]:
        """
        Decodes a DepositReceived log emitted by this contract.
        Returns None for logs of other emitters or other events.
        """
        if not same_address(ev.address, self.address):
            return None
        if not ev.topics or ev.topics[0].lower() != DEPOSIT_TOPIC:
            return None
        if len(ev.topics) < 2:
            log.warning("DepositReceived without indexed user tx=%s idx=%s", ev.tx_hash, ev.log_index)
            return None
        data = ev.data[2:] if ev.data.startswith("0x") else ev.data
        return DepositEvent(
            user=topic_to_address(ev.topics[1]),
            amount_raw=int(data[:64] or "0", 16),
            tx_hash=ev.tx_hash,
            log_index=ev.log_index,
            block_number=ev.block_number,
        )

    def parse_receipt(self, receipt: Receipt) -> List[DepositEvent]:
        out = []
        for ev in receipt.logs:
            parsed = self.parse_log(ev)
            if parsed is not None:
                out.append(parsed)
        return out
