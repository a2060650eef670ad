"""Database engine and sessions.

Everything in the sync pipeline awaits the store, so only an async engine is
configured: aiosqlite for local SQLite, asyncpg for PostgreSQL.
"""

from __future__ import annotations

from typing import AsyncGenerator

from sqlalchemy import event
from sqlalchemy.engine import URL
from sqlalchemy.engine.url import make_url
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from .config import settings


def _is_sqlite(url: URL) -> bool:
    return url.drivername.startswith("sqlite")


def _with_driver(url: URL, drivername: str) -> URL:
    """Return a copy of URL with a different drivername."""
    return url.set(drivername=drivername)


def async_url_for(database_url: str) -> URL:
    """Upgrade plain sqlite:// and postgresql:// URLs to their async drivers."""
    url = make_url(database_url)
    if url.drivername == "sqlite":
        return _with_driver(url, "sqlite+aiosqlite")
    if url.drivername == "postgresql":
        return _with_driver(url, "postgresql+asyncpg")
    return url


async_url: URL = async_url_for(settings.database_url)

async_engine_kwargs: dict = {"pool_pre_ping": True}
if not _is_sqlite(async_url):
    async_engine_kwargs.update(
        {
            "pool_size": max(1, int(settings.db_pool_size)),
            "max_overflow": max(0, int(settings.db_max_overflow)),
            "pool_timeout": max(1, int(settings.db_pool_timeout_s)),
            "pool_recycle": max(0, int(settings.db_pool_recycle_s)),
        }
    )

async_engine = create_async_engine(async_url, **async_engine_kwargs)
AsyncSessionLocal = async_sessionmaker(async_engine, expire_on_commit=False, autoflush=False)

if _is_sqlite(async_url):

    @event.listens_for(async_engine.sync_engine, "connect")
    def _set_sqlite_pragmas(dbapi_connection, connection_record):
        # status_history rows cascade with their application
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON;")
        cursor.close()


async def init_db() -> None:
    """
    Create tables on SQLite.

    Postgres schema is managed outside this service.
    """
    if not _is_sqlite(async_url):
        return
    from .models import Base
    async with async_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency that yields an AsyncSession."""
    async with AsyncSessionLocal() as session:
        yield session
