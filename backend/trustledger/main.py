# 📂 backend/trustledger/main.py - FastAPI application and process lifecycle
# -----------------------------------------------------------------------------
# What happens here:
#   • create_app() builds the FastAPI app, mounts routes.py and /healthz,
#     and maps LedgerError to {"ok": false, "error", "code"} with its status;
#   • the lifespan wires the collaborators once per process:
#       Database → JsonRpcProvider + TreasuryContract → OwnershipOracle →
#       PostCommitHooks(reputation engine) → DepositPoller → APScheduler;
#     and tears them down in reverse order on shutdown;
#   • configure_logging() sets the root format/level (LOG_LEVEL).
#
# Run:
#   uvicorn trustledger.main:app --host 0.0.0.0 --port 8000
# The listener can also run alone: python -m trustledger.listener
# -----------------------------------------------------------------------------

from __future__ import annotations

import logging
import sys
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from .chain import JsonRpcProvider, TreasuryContract
from .config import Settings, get_settings
from .database import Database
from .errors import LedgerError
from .listener import DepositPoller
from .ownership import OwnershipOracle
from .reputation import PostCommitHooks, ReputationEngine, engine_from_settings
from .routes import router
from .schemas import HealthOut
from .scheduler import setup_scheduler

log = logging.getLogger("trustledger")


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, str(level).upper(), logging.INFO),
        format="[%(asctime)s][%(levelname)s] %(name)s: %(message)s",
        stream=sys.stdout,
    )


def create_app(
    settings: Optional[Settings] = None,
    *,
    database: Optional[Database] = None,
    provider: Optional[JsonRpcProvider] = None,
    oracle: Optional[OwnershipOracle] = None,
    reputation: Optional[ReputationEngine] = None,
    start_background: bool = True,
) -> FastAPI:
    """
    Creates and configures the application.
    Collaborators passed in are used as-is and NOT closed on shutdown (tests
    own them); the missing ones are built from settings.
    """
    s = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        log.info("[TrustLedger] starting up (env=%s)", s.ENV)
        own_db = database is None
        db = database or Database.from_settings(s)
        own_provider = provider is None
        treasury_provider = provider or JsonRpcProvider.from_settings(s, treasury=True)
        hooks = PostCommitHooks(reputation or engine_from_settings(s))

        app.state.db = db
        app.state.treasury_provider = treasury_provider
        app.state.treasury = TreasuryContract(s.TREASURY_ADDRESS) if s.TREASURY_ADDRESS else None
        app.state.oracle = oracle or OwnershipOracle.from_settings(s)
        app.state.hooks = hooks
        app.state.poller = None
        scheduler = None

        await db.create_all()
        if not await db.check_connection():
            raise RuntimeError("Database connection failed during startup.")

        if start_background:
            if app.state.treasury is not None and s.TREASURY_LISTENER_ENABLED:
                app.state.poller = DepositPoller.from_settings(db, treasury_provider, app.state.treasury, s)
                app.state.poller.start()
            else:
                log.warning("[TrustLedger] treasury listener disabled (TREASURY_ADDRESS unset or listener off)")
            scheduler = setup_scheduler(db, s)
            scheduler.start()

        try:
            yield
        finally:
            log.info("[TrustLedger] shutting down")
            if app.state.poller is not None:
                await app.state.poller.stop()
            if scheduler is not None:
                scheduler.shutdown(wait=False)
            await hooks.drain()
            if own_provider:
                await treasury_provider.aclose()
            if own_db:
                await db.dispose()

    app = FastAPI(
        title=s.PROJECT_NAME,
        version="1.0.0",
        description="TrustLedger billing backend (FastAPI + PostgreSQL + EVM treasury)",
        lifespan=lifespan,
    )
    app.include_router(router, tags=["billing"])

    @app.exception_handler(LedgerError)
    async def ledger_error_handler(request: Request, exc: LedgerError):
        return JSONResponse(
            status_code=exc.status_code,
            content={"ok": False, "error": exc.message, "code": exc.code},
        )

    @app.get("/healthz", response_model=HealthOut)
    async def healthz(request: Request):
        """
        Readiness: database ping, listener state and the post-commit queue.
        A listener in FAILED state makes the service unhealthy.
        """
        db_ok = await request.app.state.db.check_connection()
        poller = request.app.state.poller
        listener = poller.status() if poller is not None else {"state": "DISABLED"}
        ok = db_ok and not (poller is not None and poller.fatal)
        body = HealthOut(ok=ok, database=db_ok, listener=listener, post_commit=request.app.state.hooks.status())
        return JSONResponse(status_code=200 if ok else 503, content=body.model_dump(mode="json"))

    return app


app = create_app()


if __name__ == "__main__":
    configure_logging(get_settings().LOG_LEVEL)
    uvicorn.run("trustledger.main:app", host="0.0.0.0", port=8000)
