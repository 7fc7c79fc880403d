"""
Async database session management — PostgreSQL, MySQL, SQLite.

Driver mapping:
  postgresql://  → postgresql+asyncpg://     (requires asyncpg)
  mysql://       → mysql+aiomysql://         (requires aiomysql)
  sqlite://      → sqlite+aiosqlite://       (requires aiosqlite)

Usage:
    db = Database("sqlite:///./assistant.db")
    await db.init()                    # Call once at startup
    async with db.session() as s:      # Use in stores
        result = await s.execute(...)
    await db.close()                   # Call at shutdown

Each Database owns its engine, so tests can run several isolated databases
side by side.
"""
from __future__ import annotations

import structlog
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from sqlalchemy.ext.asyncio import (
    create_async_engine, AsyncEngine, AsyncSession, async_sessionmaker,
)

from database.models import Base

logger = structlog.get_logger()


def _to_async_url(db_url: str) -> str:
    """Convert a sync database URL to its async driver equivalent."""
    replacements = [
        ("postgresql://", "postgresql+asyncpg://"),
        ("postgres://", "postgresql+asyncpg://"),
        ("mysql://", "mysql+aiomysql://"),
        ("mysql+pymysql://", "mysql+aiomysql://"),
        ("sqlite://", "sqlite+aiosqlite://"),
    ]
    for sync_prefix, async_prefix in replacements:
        if db_url.startswith(sync_prefix):
            return db_url.replace(sync_prefix, async_prefix, 1)
    # Already has async driver or unknown: return as-is
    return db_url


def _engine_kwargs(db_url: str, echo: bool = False) -> dict:
    """Return database-specific engine configuration."""
    base = {"echo": echo}

    if "sqlite" in db_url:
        # SQLite: no connection pooling needed
        return {**base, "connect_args": {"check_same_thread": False}}

    # PostgreSQL / MySQL: connection pool tuning
    return {
        **base,
        "pool_size": 10,
        "max_overflow": 20,
        "pool_timeout": 30,
        "pool_recycle": 1800,
        "pool_pre_ping": True,
    }


def _safe_url(engine: AsyncEngine) -> str:
    url = str(engine.url)
    return url.split("@")[-1] if "@" in url else url


class Database:
    """One async engine plus its session factory."""

    def __init__(self, url: str, echo: bool = False):
        self.url = _to_async_url(url)
        self.engine: AsyncEngine = create_async_engine(self.url, **_engine_kwargs(self.url, echo))
        self._session_factory = async_sessionmaker(
            self.engine,
            class_=AsyncSession,
            expire_on_commit=False,
        )
        logger.info("database_engine_created",
                    dialect=self.engine.dialect.name,
                    url=_safe_url(self.engine))

    @asynccontextmanager
    async def session(self) -> AsyncGenerator[AsyncSession, None]:
        """Provide a transactional async session scope."""
        async with self._session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    async def init(self) -> None:
        """Create all tables. Call once at application startup."""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("database_initialized",
                    dialect=self.engine.dialect.name,
                    tables=list(Base.metadata.tables.keys()))

    async def close(self) -> None:
        """Dispose engine connections. Call at application shutdown."""
        await self.engine.dispose()
        logger.info("database_closed")

