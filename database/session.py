"""
Async engine and session scope for the job store.

A plain database URL from settings picks its async driver automatically:

  postgresql:// / postgres://   → postgresql+asyncpg    (extra: postgres)
  mysql:// / mysql+pymysql://   → mysql+aiomysql        (extra: mysql)
  sqlite://                     → sqlite+aiosqlite

URLs that already name a driver are left alone.

    await init_db()                     # once, creates the jobs table
    async with get_session() as db:     # commit on success, rollback on error
        ...
    await close_db()
"""
from __future__ import annotations

import structlog
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Optional

from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import (
    create_async_engine, AsyncEngine, AsyncSession, async_sessionmaker,
)

from config.settings import get_settings
from database.models import Base

logger = structlog.get_logger()

ASYNC_DRIVERS = {
    "postgresql": "postgresql+asyncpg",
    "postgres": "postgresql+asyncpg",
    "mysql": "mysql+aiomysql",
    "mysql+pymysql": "mysql+aiomysql",
    "sqlite": "sqlite+aiosqlite",
}

SQLITE_BUSY_TIMEOUT = 30   # seconds a writer waits for the file lock

_engine: Optional[AsyncEngine] = None
_sessionmaker: Optional[async_sessionmaker[AsyncSession]] = None


def _to_async_url(db_url: str) -> str:
    scheme, sep, rest = db_url.partition("://")
    if not sep or scheme not in ASYNC_DRIVERS:
        return db_url
    return f"{ASYNC_DRIVERS[scheme]}://{rest}"


def _engine_kwargs(async_url: str) -> dict[str, Any]:
    kwargs: dict[str, Any] = {"echo": get_settings().debug}
    if make_url(async_url).get_backend_name() == "sqlite":
        # Concurrent claims queue on the file lock instead of failing fast
        kwargs["connect_args"] = {"timeout": SQLITE_BUSY_TIMEOUT}
        return kwargs
    kwargs.update(
        pool_size=10,
        max_overflow=20,
        pool_timeout=30,
        pool_recycle=1800,
        pool_pre_ping=True,
    )
    return kwargs


def _redacted(url: str) -> str:
    return make_url(url).render_as_string(hide_password=True)


def get_engine(db_url: Optional[str] = None) -> AsyncEngine:
    """The process-wide engine. `db_url` is only read when the engine is first built."""
    global _engine
    if _engine is None:
        async_url = _to_async_url(db_url or get_settings().database.url)
        _engine = create_async_engine(async_url, **_engine_kwargs(async_url))
        logger.info("database_engine_created",
                    dialect=_engine.dialect.name,
                    url=_redacted(async_url))
    return _engine


def _get_sessionmaker() -> async_sessionmaker[AsyncSession]:
    global _sessionmaker
    if _sessionmaker is None:
        _sessionmaker = async_sessionmaker(get_engine(), expire_on_commit=False)
    return _sessionmaker


@asynccontextmanager
async def get_session() -> AsyncGenerator[AsyncSession, None]:
    async with _get_sessionmaker()() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def init_db(db_url: Optional[str] = None) -> None:
    engine = get_engine(db_url)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("database_initialized",
                dialect=engine.dialect.name,
                tables=sorted(Base.metadata.tables))


async def close_db() -> None:
    global _engine, _sessionmaker
    if _engine is None:
        return
    await _engine.dispose()
    _engine = None
    _sessionmaker = None
    logger.info("database_closed")
