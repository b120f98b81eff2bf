"""
Async engine and transactional sessions for the welcome pipeline tables.

URLs in settings use the plain scheme; the async driver is filled in here:
  postgresql:// or postgres://   → postgresql+asyncpg://
  mysql:// or mysql+pymysql://   → mysql+aiomysql://
  sqlite://                      → sqlite+aiosqlite://

Usage:
    await init_db()                      # create tables at startup
    async with get_session() as db:      # commit on exit, rollback on error
        db.add(row)
    await close_db()                     # dispose the pool at shutdown

Tests and scripts that need their own database build an engine with
make_engine() and pass create_session_factory(engine) to SqlStore.
"""
from __future__ import annotations

import structlog
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator

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
    ("mysql+pymysql://", "mysql+aiomysql://"),
    ("mysql://", "mysql+aiomysql://"),
    ("sqlite://", "sqlite+aiosqlite://"),
)

# Server databases only; SQLite keeps SQLAlchemy's defaults
_POOL_KWARGS = {
    "pool_size": 10,
    "max_overflow": 20,
    "pool_timeout": 30,
    "pool_recycle": 1800,
    "pool_pre_ping": True,
}

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def _to_async_url(db_url: str) -> str:
    """Swap a plain database URL for its async-driver form; others pass through."""
    for plain, driver in _ASYNC_DRIVERS:
        if db_url.startswith(plain):
            return driver + db_url[len(plain):]
    return db_url


def _safe_url(engine: AsyncEngine) -> str:
    url = str(engine.url)
    return url.split("@")[-1] if "@" in url else url


def _is_sqlite_memory(db_url: str) -> bool:
    return db_url.startswith("sqlite") and (":memory:" in db_url or db_url.rstrip("/").endswith(":"))


def make_engine(db_url: str, echo: bool = False) -> AsyncEngine:
    """Build an async engine with pool settings suited to the dialect."""
    db_url = _to_async_url(db_url)
    kwargs: dict[str, Any] = {"echo": echo}
    if _is_sqlite_memory(db_url):
        # One shared connection, otherwise every checkout sees an empty database
        kwargs.update(poolclass=StaticPool, connect_args={"check_same_thread": False})
    elif db_url.startswith("sqlite"):
        kwargs["connect_args"] = {"check_same_thread": False}
    else:
        kwargs.update(_POOL_KWARGS)
    return create_async_engine(db_url, **kwargs)


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    # Rows are converted to pydantic models after commit, so keep them loaded
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


def get_engine() -> AsyncEngine:
    """Process-wide engine for settings.database.url, built on first use."""
    global _engine
    if _engine is None:
        settings = get_settings()
        _engine = make_engine(settings.database.url, echo=settings.debug)
        logger.info("database_engine_created",
                    dialect=_engine.dialect.name,
                    url=_safe_url(_engine))
    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    global _session_factory
    if _session_factory is None:
        _session_factory = create_session_factory(get_engine())
    return _session_factory


@asynccontextmanager
async def session_scope(
    factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    """One transaction: commit when the block exits, roll back if it raises."""
    async with factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


def get_session():
    return session_scope(get_session_factory())


async def init_db(engine: AsyncEngine | None = None) -> None:
    """create_all for the welcome_messages and messages tables."""
    engine = engine or get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("database_initialized",
                dialect=engine.dialect.name,
                tables=sorted(Base.metadata.tables))


async def close_db() -> None:
    global _engine, _session_factory
    if _engine is not None:
        await _engine.dispose()
        logger.info("database_closed", url=_safe_url(_engine))
    _engine = None
    _session_factory = None
