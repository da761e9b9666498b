"""
Async engine and transactional session scopes for the SQL store.

The configured URL may name the plain dialect; the async driver is filled in:

    postgresql / postgres  → asyncpg
    mysql / mysql+pymysql  → aiomysql
    sqlite                 → aiosqlite

Lifecycle (api.main startup/shutdown, scripts/migrate_db.py):
    await init_db()
    async with get_session() as db:
        ...
    await close_db()

build_session_scope() gives a store its own engine, which is how the tests
point SqlAutomationStore at a throwaway SQLite file.
"""
from __future__ import annotations

import structlog
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from typing import AsyncGenerator, Callable, Optional

from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import (
    create_async_engine, AsyncEngine, AsyncSession, async_sessionmaker,
)

from config.settings import DatabaseConfig, get_settings
from database.models import Base

logger = structlog.get_logger()

SessionScope = Callable[[], AbstractAsyncContextManager[AsyncSession]]

ASYNC_DRIVERS = {
    "postgresql": "postgresql+asyncpg",
    "postgres": "postgresql+asyncpg",
    "mysql": "mysql+aiomysql",
    "mysql+pymysql": "mysql+aiomysql",
    "sqlite": "sqlite+aiosqlite",
}

_engine: Optional[AsyncEngine] = None
_scope: Optional[SessionScope] = None


def async_url(url: str) -> str:
    """Swap a sync driver name for its async counterpart; other URLs pass through."""
    parsed = make_url(url)
    driver = ASYNC_DRIVERS.get(parsed.drivername)
    if driver is None:
        return url
    return parsed.set(drivername=driver).render_as_string(hide_password=False)


def _pool_options(url: str, config: DatabaseConfig) -> dict:
    if make_url(url).get_backend_name() == "sqlite":
        return {"connect_args": {"check_same_thread": False}}
    return {
        "pool_size": config.pool_size,
        "max_overflow": config.max_overflow,
        "pool_recycle": config.pool_recycle,
        "pool_pre_ping": True,
    }


def _new_engine(url: str, config: Optional[DatabaseConfig] = None, echo: bool = False) -> AsyncEngine:
    config = config or DatabaseConfig(url=url)
    url = async_url(url)
    engine = create_async_engine(url, echo=echo, **_pool_options(url, config))
    logger.info("database_engine_created",
                dialect=engine.dialect.name,
                database=engine.url.database)
    return engine


def _scope_for(engine: AsyncEngine) -> SessionScope:
    """One session per block: commit on exit, roll back and re-raise on error."""
    factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    @asynccontextmanager
    async def scope() -> AsyncGenerator[AsyncSession, None]:
        async with factory() as session:
            try:
                yield session
            except Exception:
                await session.rollback()
                raise
            await session.commit()

    return scope


def get_engine() -> AsyncEngine:
    global _engine
    if _engine is None:
        settings = get_settings()
        _engine = _new_engine(settings.database.url, settings.database, echo=settings.debug)
    return _engine


@asynccontextmanager
async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """Transactional session on the process-wide engine."""
    global _scope
    if _scope is None:
        _scope = _scope_for(get_engine())
    async with _scope() as session:
        yield session


def build_session_scope(url: str) -> tuple[SessionScope, AsyncEngine]:
    engine = _new_engine(url)
    return _scope_for(engine), engine


async def init_db(engine: Optional[AsyncEngine] = None) -> None:
    """Create any missing tables."""
    engine = engine or get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("database_initialized",
                dialect=engine.dialect.name,
                tables=sorted(Base.metadata.tables))


async def close_db() -> None:
    global _engine, _scope
    if _engine is None:
        return
    await _engine.dispose()
    _engine = None
    _scope = None
    logger.info("database_closed")
