"""
Async engine and session scopes for the programs scheduler database.

URLs are written in their sync form in settings.yaml and mapped to the
async driver here:
  postgresql:// or postgres://  → postgresql+asyncpg://
  sqlite://                     → sqlite+aiosqlite://

Process lifecycle:
    await init_db(settings.database.url)    # bind the process engine, create tables
    async with get_session() as db:         # one transaction, committed on exit
        ...
    await close_db()

Stores built around their own engine (tests, scripts against a second
database) pass a factory from create_session_factory() to get_session().
"""
from __future__ import annotations

import structlog
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import (
    create_async_engine, AsyncEngine, AsyncSession, async_sessionmaker,
)
from sqlalchemy.pool import StaticPool

from config.settings import get_settings
from database.models import Base

logger = structlog.get_logger()

_ASYNC_DRIVERS = (
    ("postgresql://", "postgresql+asyncpg://"),
    ("postgres://", "postgresql+asyncpg://"),
    ("sqlite://", "sqlite+aiosqlite://"),
)

# Postgres pool sized for one ticker plus admin traffic per replica
_PG_POOL = {
    "pool_size": 5,
    "max_overflow": 10,
    "pool_timeout": 30,
    "pool_recycle": 1800,
    "pool_pre_ping": True,
}

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def _to_async_url(db_url: str) -> str:
    for sync_prefix, async_prefix in _ASYNC_DRIVERS:
        if db_url.startswith(sync_prefix):
            return async_prefix + db_url[len(sync_prefix):]
    return db_url


def _is_memory_sqlite(db_url: str) -> bool:
    url = make_url(db_url)
    return url.get_backend_name() == "sqlite" and url.database in (None, "", ":memory:")


def _engine_kwargs(db_url: str, echo: bool = False) -> dict:
    """Per-dialect engine options for an async URL."""
    if make_url(db_url).get_backend_name() != "sqlite":
        return {"echo": echo, **_PG_POOL}

    kwargs = {"echo": echo, "connect_args": {"check_same_thread": False}}
    if _is_memory_sqlite(db_url):
        # Each new connection would open its own empty database
        kwargs["poolclass"] = StaticPool
    return kwargs


def _redacted(engine: AsyncEngine) -> str:
    return engine.url.render_as_string(hide_password=True)


def create_engine_for(db_url: str, echo: bool = False) -> AsyncEngine:
    db_url = _to_async_url(db_url)
    return create_async_engine(db_url, **_engine_kwargs(db_url, echo=echo))


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    # Jobs are returned as pydantic copies after commit, so rows must stay loaded
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


def configure_engine(db_url: str, echo: bool = False) -> AsyncEngine:
    """Bind the process engine to db_url, replacing nothing if one is already bound."""
    global _engine, _session_factory
    if _engine is None:
        _engine = create_engine_for(db_url, echo=echo)
        _session_factory = create_session_factory(_engine)
        logger.info("database_engine_created", dialect=_engine.dialect.name, url=_redacted(_engine))
    return _engine


def get_engine() -> AsyncEngine:
    """Return the process engine, binding it to the configured URL on first use."""
    if _engine is None:
        settings = get_settings()
        configure_engine(settings.database.url, echo=settings.debug)
    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    get_engine()
    return _session_factory


@asynccontextmanager
async def get_session(
    factory: Optional[async_sessionmaker[AsyncSession]] = None,
) -> AsyncGenerator[AsyncSession, None]:
    """One transaction: commit on clean exit, roll back and re-raise otherwise."""
    factory = factory or get_session_factory()
    async with factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def create_tables(engine: AsyncEngine) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def init_db(db_url: Optional[str] = None, echo: bool = False) -> AsyncEngine:
    """Bind the process engine (to db_url when given) and create missing tables."""
    engine = configure_engine(db_url, echo=echo) if db_url else get_engine()
    await create_tables(engine)
    logger.info("database_initialized", dialect=engine.dialect.name,
                tables=sorted(Base.metadata.tables))
    return engine


async def close_db() -> None:
    """Dispose the process engine. A later get_session() binds a new one."""
    global _engine, _session_factory
    engine, _engine, _session_factory = _engine, None, None
    if engine is not None:
        await engine.dispose()
        logger.info("database_closed")
