# vouchershop/infra/sql.py
from __future__ import annotations
import asyncio
from contextlib import asynccontextmanager
from typing import AsyncContextManager, Callable, Tuple

from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine,
)

from ..config import (
    DB_GATE_LIMIT, DB_MAX_OVERFLOW, DB_POOL_SIZE, DB_POOL_TIMEOUT,
)

# `async with gated(): ...` around every unit of DB work
Gated = Callable[[], AsyncContextManager[None]]

SQLITE_PRAGMAS = (
    "PRAGMA journal_mode=WAL;",
    # concurrent writers wait instead of failing with "database is locked"
    "PRAGMA busy_timeout=5000;",
    "PRAGMA synchronous=NORMAL;",
)


def normalize_async_url(url: str) -> str:
    for sync, aio in (
        ("sqlite://", "sqlite+aiosqlite://"),
        ("postgresql://", "postgresql+asyncpg://"),
        ("postgres://", "postgresql+asyncpg://"),  # Heroku-style
    ):
        if url.startswith(sync):
            return aio + url[len(sync):]
    return url


def backend_name(url: str) -> str:
    return "SQLite" if "sqlite" in url else "PostgreSQL"


def supports_row_locks(session: AsyncSession) -> bool:
    """SELECT ... FOR UPDATE [SKIP LOCKED] is only emitted on PostgreSQL."""
    return session.bind.dialect.name == "postgresql"


def _install_sqlite_pragmas(engine: AsyncEngine) -> None:
    @event.listens_for(engine.sync_engine, "connect")
    def _pragmas(dbapi_connection, _):
        cur = dbapi_connection.cursor()
        for pragma in SQLITE_PRAGMAS:
            cur.execute(pragma)
        cur.close()


# DB-GATE: bounds concurrent DB work to what the pool can serve
def make_gate(limit: int) -> Gated:
    sem = asyncio.Semaphore(max(1, limit))

    @asynccontextmanager
    async def gated():
        async with sem:
            yield

    return gated


def make_async_engine(
    database_url: str,
) -> Tuple[AsyncEngine, async_sessionmaker, Gated]:
    db_url = normalize_async_url(database_url)
    kw = dict(pool_pre_ping=True)

    if db_url.startswith("postgresql+asyncpg://"):
        kw.update(
            pool_size=DB_POOL_SIZE,
            max_overflow=DB_MAX_OVERFLOW,
            pool_timeout=DB_POOL_TIMEOUT,
        )
        gate_limit = DB_GATE_LIMIT or DB_POOL_SIZE
    else:
        gate_limit = DB_GATE_LIMIT or 10

    engine = create_async_engine(db_url, **kw)
    if db_url.startswith("sqlite+aiosqlite://"):
        _install_sqlite_pragmas(engine)

    SessionAsync = async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )
    return engine, SessionAsync, make_gate(gate_limit)
