from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from quotefeed.db.models import Base
from quotefeed.settings import AppSettings, get_settings

logger = logging.getLogger(__name__)


def sanitize_database_url(url: str) -> str:
    """Hide the password portion of ``url`` so it can be logged."""

    if "://" not in url:
        return url

    scheme, rest = url.split("://", 1)
    if "@" in rest:
        auth, host_db = rest.split("@", 1)
        if ":" in auth:
            user, _ = auth.split(":", 1)
            return f"{scheme}://{user}:***@{host_db}"
        return f"{scheme}://{auth}@{host_db}"
    return url


def _ensure_sqlite_directory(url: str) -> None:
    path = url.split(":///", 1)[-1]
    if path and path != ":memory:":
        Path(path).parent.mkdir(parents=True, exist_ok=True)


def create_engine(settings: AppSettings | None = None) -> AsyncEngine:
    """Create the async SQLAlchemy engine for the configured database.

    PostgreSQL gets a warm connection pool; SQLite is used for local
    development and keeps SQLAlchemy's defaults.
    """

    settings = settings or get_settings()
    url = settings.resolved_database_url

    if settings.database_type == "sqlite":
        _ensure_sqlite_directory(url)
        return create_async_engine(url, future=True, echo=False)

    return create_async_engine(
        url,
        future=True,
        echo=False,
        pool_size=10,  # Maintain 10 warm connections
        max_overflow=20,  # Allow up to 30 total connections
        pool_pre_ping=True,  # Validate connections before use
        pool_recycle=1800,  # Recycle connections every 30 min
        pool_timeout=30,  # Timeout for getting connection from pool
    )


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)


@asynccontextmanager
async def session_scope(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncIterator[AsyncSession]:
    """Yield a session that commits on success and rolls back on error.

    Used by the reconciler and CLI commands, which manage sessions outside
    of FastAPI's dependency system.
    """

    async with session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def init_models(engine: AsyncEngine) -> None:
    """Create any missing tables; existing tables are left untouched."""

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
