"""
Database engine, session factory and unit of work.

Flow:
  1. The API lifespan (or the worker context) builds one `Database` from
     settings and calls `open()`.
  2. Services receive `database.unit_of_work` as their unit-of-work factory.
     Each `async with uow_factory() as uow:` block is one transaction:
     committed on clean exit, rolled back if the block raises.
  3. `close()` disposes the connection pool.

Workers run every Celery task inside a fresh event loop, so they build the
engine with NullPool — pooled asyncpg connections cannot cross loops.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncContextManager, AsyncGenerator, Callable

from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import NullPool

from documind.core.config import Settings
from documind.repositories.chunks import ChunkRepository
from documind.repositories.documents import DocumentRepository
from documind.repositories.entities import KnowledgeGraphRepository

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Unit of work
# ---------------------------------------------------------------------------

class UnitOfWork:
    """One transaction plus the typed repositories bound to it."""

    def __init__(self, session: AsyncSession) -> None:
        self.session   = session
        self.documents = DocumentRepository(session)
        self.chunks    = ChunkRepository(session)
        self.graph     = KnowledgeGraphRepository(session)


UnitOfWorkFactory = Callable[[], AsyncContextManager[UnitOfWork]]


# ---------------------------------------------------------------------------
# Database handle
# ---------------------------------------------------------------------------

class Database:
    """Explicitly opened/closed engine + session factory."""

    def __init__(self, settings: Settings, *, use_null_pool: bool = False) -> None:
        self._settings      = settings
        self._use_null_pool = use_null_pool
        self._engine: AsyncEngine | None = None
        self._sessionmaker: async_sessionmaker[AsyncSession] | None = None

    @property
    def engine(self) -> AsyncEngine:
        if self._engine is None:
            raise RuntimeError("Database is not open")
        return self._engine

    def open(self) -> None:
        if self._engine is not None:
            return

        if self._use_null_pool:
            pool_kwargs: dict = {"poolclass": NullPool}
        else:
            pool_kwargs = {
                "pool_size":     self._settings.db_pool_size,
                "max_overflow":  self._settings.db_max_overflow,
                "pool_pre_ping": True,          # detect stale connections before use
                "pool_recycle":  3600,          # recycle connections every hour
            }

        self._engine = create_async_engine(
            self._settings.database_url,
            echo=self._settings.db_echo_sql,
            **pool_kwargs,
        )
        # expire_on_commit=False keeps ORM objects usable after commit
        self._sessionmaker = async_sessionmaker(
            bind=self._engine,
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )
        logger.info("Database opened | null_pool=%s", self._use_null_pool)

    async def close(self) -> None:
        if self._engine is None:
            return
        await self._engine.dispose()
        self._engine = None
        self._sessionmaker = None
        logger.info("Database closed")

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    @asynccontextmanager
    async def session(self) -> AsyncGenerator[AsyncSession, None]:
        if self._sessionmaker is None:
            raise RuntimeError("Database is not open")
        async with self._sessionmaker() as session:
            async with session.begin():
                yield session
            # Transaction commits automatically on context exit (begin() block)

    @asynccontextmanager
    async def unit_of_work(self) -> AsyncGenerator[UnitOfWork, None]:
        async with self.session() as session:
            yield UnitOfWork(session)

    # ------------------------------------------------------------------
    # Health check helper
    # ------------------------------------------------------------------

    async def check_health(self) -> dict:
        """Ping the database; used by /health/ready."""
        try:
            async with self.engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
            return {"status": "ok"}
        except Exception as exc:
            logger.error("DB health check failed: %s", exc)
            return {"status": "error", "detail": str(exc)}
