# 📂 backend/trustledger/database.py - engine, pool, sessions, schema
# -----------------------------------------------------------------------------
# This module is responsible for:
#   • the async SQLAlchemy engine (PostgreSQL via asyncpg; SQLite via aiosqlite
#     in tests),
#   • the connection pool (pool_size, max_overflow, pre_ping),
#   • the session factory and the "session as transaction" scope:
#       - Database.session_scope()  - commit on success, rollback on error;
#       - get_db()                  - FastAPI dependency returning the handle;
#   • startup/shutdown utilities: create_all, check_connection, dispose;
#   • insert_for() - dialect-aware INSERT so ON CONFLICT works on both stores.
#
# The Database handle is created once in main.py (lifespan) or by the
# standalone listener and passed explicitly to every component. There are no
# module-level engine singletons.
# -----------------------------------------------------------------------------

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from fastapi import Request
from sqlalchemy import text
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from .config import Settings, get_settings
from .models import Base

log = logging.getLogger("trustledger.database")


class Database:
    """
    Store handle: owns the AsyncEngine and the session factory.
        db = Database.from_settings()
        async with db.session_scope() as session:
            ...
    """

    def __init__(self, url: str, *, echo: bool = False, pool_size: int = 10, max_overflow: int = 10):
        self.url = url
        kwargs = {"echo": echo, "pool_pre_ping": True}
        # SQLite (tests) runs on its own pool class, no sizing knobs
        if not url.startswith("sqlite"):
            kwargs.update(pool_size=pool_size, max_overflow=max_overflow)
        self.engine: AsyncEngine = create_async_engine(url, **kwargs)
        # autoflush=False: manual flush control; expire_on_commit=False: objects stay usable after commit
        self.sessionmaker = async_sessionmaker(
            bind=self.engine,
            class_=AsyncSession,
            autoflush=False,
            expire_on_commit=False,
        )

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "Database":
        s = settings or get_settings()
        return cls(
            s.database_url,
            echo=s.DEBUG,
            pool_size=s.DB_POOL_SIZE,
            max_overflow=s.DB_MAX_OVERFLOW,
        )

    @property
    def dialect(self) -> str:
        return self.engine.dialect.name

    @asynccontextmanager
    async def session_scope(self) -> AsyncIterator[AsyncSession]:
        """
        "Session as transaction":
            async with db.session_scope() as session:
                ... work ...
        Commits on normal exit, rolls back on any exception (and re-raises),
        always closes.
        """
        session: AsyncSession = self.sessionmaker()
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()

    async def create_all(self) -> None:
        """Creates missing tables (idempotent). Migrations proper are out of band."""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def check_connection(self) -> bool:
        """Health check (SELECT 1)."""
        try:
            async with self.engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
            return True
        except Exception as e:
            log.warning("database health check failed: %s", e)
            return False

    async def dispose(self) -> None:
        await self.engine.dispose()


def insert_for(session: AsyncSession, model):
    """
    INSERT construct of the session's dialect, so callers can use
    on_conflict_do_nothing / on_conflict_do_update on PostgreSQL and SQLite.
    """
    name = session.get_bind().dialect.name
    if name == "postgresql":
        return postgresql.insert(model)
    if name == "sqlite":
        return sqlite.insert(model)
    raise RuntimeError(f"unsupported database dialect: {name}")


def get_db(request: Request) -> Database:
    """
    FastAPI dependency: the Database handle built in the app lifespan.
        @router.get("/x")
        async def x(db: Database = Depends(get_db)): ...
    """
    return request.app.state.db
