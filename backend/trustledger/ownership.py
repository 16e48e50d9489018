# 📂 backend/trustledger/ownership.py
# -----------------------------------------------------------------------------
# Ownership oracle: does wallet X currently own token Y under contract family Z?
# -----------------------------------------------------------------------------
# Asks the chain directly with eth_call ownerOf(uint256) over aiohttp.
# Contract families:
#   • issuer_batch       - ISSUER_BATCH_ADDRESS (default);
#   • credential_center  - CREDENTIAL_CENTER_ADDRESS.
# A reverted call (nonexistent token) counts as "not owned"; transport
# failures raise ChainRpcError and the ticket stays untouched.
# -----------------------------------------------------------------------------

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Optional

import aiohttp

from .config import Settings, get_settings
from .errors import ChainRpcError, InvalidTicketRequest
from .utils import keccak256, normalize_address, same_address

log = logging.getLogger("trustledger.ownership")

KIND_ISSUER_BATCH = "issuer_batch"
KIND_CREDENTIAL_CENTER = "credential_center"

OWNER_OF_SELECTOR = "0x" + keccak256(b"ownerOf(uint256)")[:4].hex()  # 0x6352211e


def contract_kind_from_scope(scope: Optional[Dict[str, Any]]) -> str:
    scope = scope or {}
    kind = str(scope.get("contract") or scope.get("contractType") or "").strip().lower()
    return KIND_CREDENTIAL_CENTER if kind == KIND_CREDENTIAL_CENTER else KIND_ISSUER_BATCH


def encode_owner_of(token_id: Any) -> str:
    s = str(token_id).strip()
    try:
        n = int(s, 16) if s.lower().startswith("0x") else int(s)
    except ValueError:
        raise InvalidTicketRequest(f"invalid token id: {token_id!r}")
    if n < 0 or n >= 2 ** 256:
        raise InvalidTicketRequest(f"token id out of range: {token_id!r}")
    return OWNER_OF_SELECTOR + format(n, "064x")


class OwnershipOracle:
    def __init__(self, rpc_url: str, contracts: Dict[str, Optional[str]], timeout: float = 20.0):
        self.rpc_url = rpc_url
        self.contracts = contracts
        self.timeout = aiohttp.ClientTimeout(total=timeout)

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "OwnershipOracle":
        s = settings or get_settings()
        return cls(
            s.CHAIN_RPC_URL,
            {
                KIND_ISSUER_BATCH: s.ISSUER_BATCH_ADDRESS,
                KIND_CREDENTIAL_CENTER: s.CREDENTIAL_CENTER_ADDRESS,
            },
            timeout=s.CHAIN_RPC_TIMEOUT,
        )

    def _contract(self, kind: str) -> str:
        address = self.contracts.get(kind)
        if not address:
            raise ChainRpcError(f"no contract configured for {kind}")
        return normalize_address(address)

    async def owner_of(self, token_id: Any, contract_kind: str = KIND_ISSUER_BATCH) -> Optional[str]:
        """Current owner, or None when the call reverts (burned or never minted)."""
        payload = {
            "jsonrpc": "2.0",
            "id": 1,
            "method": "eth_call",
            "params": [{"to": self._contract(contract_kind), "data": encode_owner_of(token_id)}, "latest"],
        }
        try:
            async with aiohttp.ClientSession(timeout=self.timeout) as session:
                async with session.post(self.rpc_url, json=payload) as resp:
                    if resp.status != 200:
                        raise ChainRpcError(f"ownerOf http {resp.status}")
                    body = await resp.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise ChainRpcError(f"ownerOf failed: {e}") from e

        if body.get("error"):
            log.info("ownerOf(%s) on %s reverted: %s", token_id, contract_kind, body["error"])
            return None
        result = (body.get("result") or "0x")[2:]
        if len(result) < 64 or int(result, 16) == 0:
            return None
        return normalize_address("0x" + result[-40:])

    async def verify_ownership(self, user: str, token_id: Any, contract_kind: str = KIND_ISSUER_BATCH) -> bool:
        owner = await self.owner_of(token_id, contract_kind)
        ok = owner is not None and same_address(owner, user)
        log.info("ownership user=%s token=%s kind=%s owner=%s ok=%s", user, token_id, contract_kind, owner, ok)
        return ok
