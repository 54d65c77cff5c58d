"""
Async PostgreSQL connection manager using SQLAlchemy 2.0+ async engine.
"""
from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from shared.config import Settings, get_settings
from shared.models.orm import Base
from shared.utils.logging import get_logger

logger = get_logger(__name__)


class DatabaseManager:
    """Manages async SQLAlchemy engine and session factory."""

    def __init__(self, settings: Settings | None = None) -> None:
        self._settings = settings or get_settings()
        self._engine: Optional[AsyncEngine] = None
        self._session_factory: Optional[async_sessionmaker[AsyncSession]] = None

    async def connect(self) -> None:
        """Create the async engine and session factory."""
        self._engine = create_async_engine(
            self._settings.database_url_str,
            pool_size=self._settings.db_pool_min,
            max_overflow=self._settings.db_pool_max - self._settings.db_pool_min,
            pool_pre_ping=True,
            pool_recycle=300,
            echo=self._settings.debug,
            connect_args={
                "timeout": self._settings.db_command_timeout,
                "command_timeout": self._settings.db_command_timeout,
            },
        )
        self._session_factory = async_sessionmaker(
            bind=self._engine,
            class_=AsyncSession,
            expire_on_commit=False,
        )
        logger.info("database_connected", url=self._settings.database_url_safe_log)

    async def disconnect(self) -> None:
        """Dispose of the engine and all connections."""
        if self._engine:
            await self._engine.dispose()
            self._engine = None
            self._session_factory = None
            logger.info("database_disconnected")

    @property
    def engine(self) -> AsyncEngine:
        if self._engine is None:
            raise RuntimeError("DatabaseManager not connected.")
        return self._engine

    async def ping(self) -> bool:
        """Cheap liveness probe used by /ready."""
        try:
            async with self.read_session() as session:
                await session.execute(text("SELECT 1"))
            return True
        except Exception as exc:
            logger.warning("database_ping_failed", error=str(exc))
            return False

    async def create_schema(self) -> None:
        """Create any missing tables and indexes. Existing tables are left alone."""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("database_schema_ensured", tables=sorted(Base.metadata.tables))

    @asynccontextmanager
    async def read_session(self) -> AsyncIterator[AsyncSession]:
        """Provide a read-only session (no commit)."""
        if self._session_factory is None:
            raise RuntimeError("DatabaseManager not connected.")
        async with self._session_factory() as session:
            yield session

    @asynccontextmanager
    async def write_session(self) -> AsyncIterator[AsyncSession]:
        """Provide a transactional session that auto-commits on success."""
        if self._session_factory is None:
            raise RuntimeError("DatabaseManager not connected.")
        async with self._session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise
