"""
Async engine and sessions for the SQL execution store.

Plain URLs from settings.yaml are mapped to their async drivers:

  postgresql:// , postgres://     → postgresql+asyncpg://   (extra: postgres)
  mysql:// , mysql+pymysql://     → mysql+aiomysql://       (extra: mysql)
  sqlite://                       → sqlite+aiosqlite://

One engine per process. init_db(url) with a different URL disposes the
current engine first, so tests and the migration script can re-point it.
"""
from __future__ import annotations

import structlog
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from sqlalchemy import event, inspect
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import (
    create_async_engine, AsyncEngine, AsyncSession, async_sessionmaker,
)

from config.settings import DatabaseConfig, get_settings
from database.models import Base

logger = structlog.get_logger()

ASYNC_DRIVERS = {
    "postgresql": "postgresql+asyncpg",
    "postgres": "postgresql+asyncpg",
    "mysql": "mysql+aiomysql",
    "mysql+pymysql": "mysql+aiomysql",
    "sqlite": "sqlite+aiosqlite",
}

SQLITE_BUSY_TIMEOUT_MS = 5000

_engine: Optional[AsyncEngine] = None
_session_factory: Optional[async_sessionmaker[AsyncSession]] = None


def to_async_url(db_url: str) -> str:
    scheme, sep, rest = db_url.partition("://")
    if not sep:
        return db_url
    return f"{ASYNC_DRIVERS.get(scheme, scheme)}://{rest}"


def display_url(engine: AsyncEngine) -> str:
    return engine.url.render_as_string(hide_password=True)


def _engine_options(db_url: str, config: DatabaseConfig) -> dict:
    options: dict = {"echo": config.echo or get_settings().debug}
    if make_url(db_url).get_backend_name() == "sqlite":
        return options
    return {
        **options,
        "pool_size": config.pool_size,
        "max_overflow": config.max_overflow,
        "pool_recycle": config.pool_recycle_seconds,
        "pool_pre_ping": True,
    }


def _install_sqlite_pragmas(engine: AsyncEngine) -> None:
    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_connection, _record):
        cursor = dbapi_connection.cursor()
        cursor.execute(f"PRAGMA busy_timeout = {SQLITE_BUSY_TIMEOUT_MS}")
        cursor.execute("PRAGMA foreign_keys = ON")
        cursor.close()


def get_engine(url: Optional[str] = None) -> AsyncEngine:
    """Return the process engine, creating it from `url` or settings."""
    global _engine
    if _engine is None:
        config = get_settings().database
        db_url = to_async_url(url or config.url)
        _engine = create_async_engine(db_url, **_engine_options(db_url, config))
        if _engine.dialect.name == "sqlite":
            _install_sqlite_pragmas(_engine)
        logger.info("database_engine_created", dialect=_engine.dialect.name,
                    url=display_url(_engine))
    return _engine


def _get_session_factory() -> async_sessionmaker[AsyncSession]:
    global _session_factory
    if _session_factory is None:
        _session_factory = async_sessionmaker(get_engine(), expire_on_commit=False)
    return _session_factory


@asynccontextmanager
async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """Transactional scope: commit on success, roll back on any error."""
    async with _get_session_factory()() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def list_tables(engine: Optional[AsyncEngine] = None) -> list[str]:
    engine = engine or get_engine()
    async with engine.connect() as conn:
        return await conn.run_sync(lambda sync_conn: inspect(sync_conn).get_table_names())


async def missing_tables(engine: Optional[AsyncEngine] = None) -> list[str]:
    existing = set(await list_tables(engine))
    return sorted(set(Base.metadata.tables) - existing)


async def init_db(url: Optional[str] = None) -> AsyncEngine:
    """Create the execution tables, re-pointing the engine when `url` differs."""
    if url and _engine is not None and \
            _engine.url.render_as_string(hide_password=False) != to_async_url(url):
        await close_db()
    engine = get_engine(url)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("database_initialized", dialect=engine.dialect.name,
                tables=sorted(Base.metadata.tables))
    return engine


async def close_db() -> None:
    global _engine, _session_factory
    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _session_factory = None
        logger.info("database_closed")
