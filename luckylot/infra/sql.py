import os
import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Callable, AsyncContextManager

from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    create_async_engine, async_sessionmaker, AsyncSession, AsyncEngine
)

logger = logging.getLogger(__name__)

Gated = Callable[[], AsyncContextManager[None]]


@dataclass
class GatedSession:
    """A session plus the engine gate every store call must pass through."""
    session: AsyncSession
    gated: Gated


def normalize_async_url(url: str) -> str:
    if url.startswith("sqlite://"):
        return url.replace("sqlite://", "sqlite+aiosqlite://", 1)
    if url.startswith("postgresql://"):
        return url.replace("postgresql://", "postgresql+asyncpg://", 1)
    if url.startswith("postgres://"):
        # Heroku-style URLs
        return url.replace("postgres://", "postgresql+asyncpg://", 1)
    return url


@asynccontextmanager
async def _gated(sem: asyncio.Semaphore):
    await sem.acquire()
    try:
        yield
    finally:
        sem.release()


def make_async_engine(
    database_url: str,
) -> tuple[AsyncEngine, async_sessionmaker, Gated]:
    db_url = normalize_async_url(database_url)
    kw = dict(future=True, pool_pre_ping=True)

    pool_size = None
    if db_url.startswith("postgresql+asyncpg://"):
        pool_size = int(os.getenv("DB_POOL_SIZE", "10"))
        kw.update(
            pool_size=pool_size,
            max_overflow=int(os.getenv("DB_MAX_OVERFLOW", "10")),
            pool_timeout=int(os.getenv("DB_POOL_TIMEOUT", "30")),
        )

    engine = create_async_engine(db_url, **kw)

    if db_url.startswith("sqlite+aiosqlite://"):
        @event.listens_for(engine.sync_engine, "connect")
        def _sqlite_pragmas(dbapi_connection, _):
            cur = dbapi_connection.cursor()
            cur.execute("PRAGMA journal_mode=WAL;")
            cur.execute("PRAGMA busy_timeout=5000;")
            cur.execute("PRAGMA synchronous=NORMAL;")
            cur.close()

    SessionAsync = async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )

    # one gate per engine, sized to the pool so waiting happens here and
    # not inside the pool checkout
    if pool_size is None:
        gate_limit = int(os.getenv("DB_GATE_LIMIT", "10"))
    else:
        gate_limit = int(os.getenv("DB_GATE_LIMIT", pool_size))
    db_gate = asyncio.Semaphore(max(1, gate_limit))

    def gated():
        return _gated(db_gate)

    logger.info("database engine ready (%s, gate=%d)",
                engine.url.get_backend_name(), gate_limit)
    return engine, SessionAsync, gated
