"""
Persistence - Database Connection and Session Management

Handles database connectivity, session management, schema creation and
health checks for the idempotency store and the delivery tracker.
"""
import time
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

import structlog
from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from ..shared.config import DatabaseSettings, get_settings
from .models import Base

logger = structlog.get_logger(__name__)


class DatabaseManager:
    """
    Manages database connections and sessions.
    Implements connection pooling, schema creation and health checks.
    """

    def __init__(self, database_url: Optional[str] = None, settings: Optional[DatabaseSettings] = None):
        self._database_url = database_url
        self._settings = settings
        self.engine: Optional[AsyncEngine] = None
        self.session_factory: Optional[async_sessionmaker] = None
        self._is_connected = False

    @property
    def settings(self) -> DatabaseSettings:
        if self._settings is None:
            self._settings = get_settings().database
        return self._settings

    def get_database_url(self) -> str:
        """Get database URL, preferring the explicit constructor argument."""
        return self._database_url or self.settings.get_database_url()

    async def initialize(self, create_tables: bool = False) -> None:
        """Create the engine and session factory; optionally ensure the schema."""
        if self.engine is not None:
            return

        database_url = self.get_database_url()
        try:
            if database_url.startswith("sqlite"):
                # SQLite pools reject size arguments
                self.engine = create_async_engine(database_url, echo=self.settings.db_echo)
            else:
                self.engine = create_async_engine(
                    database_url,
                    echo=self.settings.db_echo,
                    pool_size=self.settings.db_pool_size,
                    max_overflow=self.settings.db_max_overflow,
                    pool_pre_ping=True,
                    pool_recycle=3600,
                )

            self.session_factory = async_sessionmaker(
                bind=self.engine,
                class_=AsyncSession,
                expire_on_commit=False
            )

            if create_tables:
                await self.create_tables()

            self._is_connected = await self.health_check()
            logger.info("Database connection initialized", connected=self._is_connected)

        except Exception as e:
            logger.error("Database engine setup failed", url_dialect=database_url.split(":", 1)[0], error=str(e))
            raise

    async def create_tables(self) -> None:
        """Create the webhook tables from ORM metadata."""
        if not self.engine:
            raise RuntimeError("Database not initialized. Call initialize() first.")
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Database tables ensured", tables=sorted(Base.metadata.tables))

    async def health_check(self) -> bool:
        """Run SELECT 1; False when the engine is missing or the query fails."""
        if not self.engine:
            return False

        try:
            async with self.engine.begin() as conn:
                result = await conn.execute(text("SELECT 1"))
                return result.scalar() == 1
        except Exception as e:
            logger.error("Database health check failed", error=str(e))
            return False

    async def close(self) -> None:
        """Dispose of the engine and its pooled connections."""
        if self.engine:
            await self.engine.dispose()
            self.engine = None
            self.session_factory = None
            self._is_connected = False
            logger.info("Database engine disposed")

    @asynccontextmanager
    async def get_session(self) -> AsyncGenerator[AsyncSession, None]:
        """
        Get database session with automatic rollback on error.

        Usage:
            async with db_manager.get_session() as session:
                ...
        """
        if not self.session_factory:
            raise RuntimeError("Database not initialized. Call initialize() first.")

        async with self.session_factory() as session:
            try:
                yield session
            except Exception:
                await session.rollback()
                raise

    async def get_health_status(self) -> dict:
        """Health summary for monitoring endpoints."""
        start_time = time.time()
        is_healthy = await self.health_check()
        return {
            "status": "healthy" if is_healthy else "unhealthy",
            "connected": is_healthy,
            "dialect": self.dialect_name,
            "response_time_ms": round((time.time() - start_time) * 1000, 2),
        }

    @property
    def dialect_name(self) -> str:
        return self.engine.dialect.name if self.engine else ""

    @property
    def is_connected(self) -> bool:
        return self._is_connected
