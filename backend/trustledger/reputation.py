# 📂 backend/trustledger/reputation.py - reputation recompute side effect
# -----------------------------------------------------------------------------
# The trust-score formula lives elsewhere; this module only triggers it.
#   • ReputationEngine       - interface: recompute_score(wallet) -> ScoreChange
#   • NullReputationEngine   - default when REPUTATION_ENGINE_URL is unset
#   • HttpReputationEngine   - POST {url} {"wallet": ...} via httpx
#   • PostCommitHooks        - queue of recompute tasks scheduled AFTER the
#                              triggering transaction committed; a failing
#                              recompute never undoes the ledger change,
#                              it is counted and logged.
# -----------------------------------------------------------------------------

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Optional, Protocol, Set

import httpx

from .config import Settings, get_settings
from .schemas import ScoreChange

log = logging.getLogger("trustledger.reputation")


class ReputationEngine(Protocol):
    async def recompute_score(self, wallet: str) -> ScoreChange: ...


class NullReputationEngine:
    async def recompute_score(self, wallet: str) -> ScoreChange:
        return ScoreChange(changed=False)


class HttpReputationEngine:
    def __init__(self, url: str, timeout: float = 10.0, client: Optional[httpx.AsyncClient] = None):
        self.url = url
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def recompute_score(self, wallet: str) -> ScoreChange:
        r = await self._client.post(self.url, json={"wallet": wallet})
        r.raise_for_status()
        data = r.json() or {}
        return ScoreChange(
            changed=bool(data.get("changed")),
            level=data.get("level") or data.get("trustLevel"),
            total_score=data.get("total_score") if data.get("total_score") is not None else data.get("totalScore"),
        )

    async def aclose(self) -> None:
        await self._client.aclose()


def engine_from_settings(settings: Optional[Settings] = None):
    s = settings or get_settings()
    if s.REPUTATION_ENGINE_URL:
        return HttpReputationEngine(s.REPUTATION_ENGINE_URL, timeout=s.CHAIN_RPC_TIMEOUT)
    return NullReputationEngine()


class PostCommitHooks:
    """
    Fire-and-track queue for side effects that must not share the ledger
    transaction:
        hooks.schedule_recompute(wallet)   # after session_scope() exited
        await hooks.drain()                # shutdown / tests
    """

    def __init__(self, engine: ReputationEngine):
        self.engine = engine
        self.pending = 0
        self.completed = 0
        self.failed = 0
        self.last_error: Optional[str] = None
        self._tasks: Set[asyncio.Task] = set()

    def schedule_recompute(self, wallet: str) -> asyncio.Task:
        self.pending += 1
        task = asyncio.create_task(self._recompute(wallet))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _recompute(self, wallet: str) -> Optional[ScoreChange]:
        try:
            change = await self.engine.recompute_score(wallet)
        except Exception as e:
            self.failed += 1
            self.last_error = f"{type(e).__name__}: {e}"
            log.warning("reputation recompute failed wallet=%s: %s", wallet, self.last_error, exc_info=True)
            return None
        finally:
            self.pending -= 1
        self.completed += 1
        if change.changed:
            log.info("reputation changed wallet=%s level=%s score=%s", wallet, change.level, change.total_score)
        return change

    async def drain(self) -> None:
        if self._tasks:
            await asyncio.gather(*list(self._tasks))

    def status(self) -> Dict[str, Any]:
        return {
            "pending": self.pending,
            "completed": self.completed,
            "failed": self.failed,
            "last_error": self.last_error,
        }
