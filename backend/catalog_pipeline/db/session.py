"""
Database engine and session management.

Flow:
  1. The process builds ONE Database object at startup (API lifespan or
     Celery worker bootstrap) from Settings and hands it to the services.
  2. Each store operation opens a short-lived session with
     ``async with database.session() as session`` — the transaction commits
     on clean exit and rolls back on any exception.
  3. The connection goes back to the pool when the block exits.

There is no module-level engine: services receive the Database they use,
so tests can point the whole pipeline at an in-memory SQLite engine.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from sqlalchemy import text
from sqlalchemy.pool import NullPool
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from catalog_pipeline.core.config import Settings

logger = logging.getLogger(__name__)


class Database:
    """Owns the async engine and the session factory for one process."""

    def __init__(self, engine: AsyncEngine) -> None:
        self.engine = engine
        # expire_on_commit=False keeps ORM objects usable after commit
        self._sessionmaker = async_sessionmaker(
            bind=engine,
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )

    @classmethod
    def from_settings(cls, settings: Settings, pooled: bool = True) -> "Database":
        """
        pooled=False is for Celery tasks: each task runs its own event loop,
        and asyncpg connections cannot outlive the loop that opened them.
        """
        if not pooled:
            return cls(create_async_engine(
                settings.database_url,
                poolclass=NullPool,
                echo=settings.db_echo_sql,
            ))

        engine = create_async_engine(
            settings.database_url,
            pool_size=settings.db_pool_size,
            max_overflow=settings.db_max_overflow,
            pool_pre_ping=True,          # detect stale connections before use
            pool_recycle=3600,           # recycle connections every hour
            echo=settings.db_echo_sql,   # log SQL in dev; disable in prod
        )
        return cls(engine)

    @asynccontextmanager
    async def session(self) -> AsyncGenerator[AsyncSession, None]:
        """Transaction-scoped session: commit on success, rollback on error."""
        async with self._sessionmaker() as session:
            async with session.begin():
                yield session

    async def create_all(self) -> None:
        """Create tables from ORM metadata (local dev and tests only)."""
        from catalog_pipeline.models.attempts import Base

        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def check_health(self) -> dict:
        """Ping the database; used by /ready."""
        try:
            async with self.engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
            return {"status": "ok"}
        except Exception as exc:
            logger.error("DB health check failed: %s", exc)
            return {"status": "error", "detail": str(exc)}

    async def dispose(self) -> None:
        await self.engine.dispose()
