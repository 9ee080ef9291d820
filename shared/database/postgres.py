"""
PostgreSQL Client
=================

Async PostgreSQL engine and session factory using SQLAlchemy 2.0 with
asyncpg. The pipeline's tables are declared on ``Base`` in
``services/rule_pipeline/store/tables.py``.

Version: 0.1.0
"""

import time
from typing import Any

from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from shared.config import settings
from shared.logging import get_logger

logger = get_logger(__name__)


class Base(DeclarativeBase):
    """SQLAlchemy declarative base for ORM models."""

    pass


class PostgresClient:
    """
    Async PostgreSQL client wrapper.

    Manages the engine, its connection pool and the session factory.
    """

    _engine: AsyncEngine | None = None
    _session_factory: async_sessionmaker[AsyncSession] | None = None

    @classmethod
    def get_engine(cls) -> AsyncEngine:
        """Get or create the async engine."""
        if cls._engine is None:
            cls._engine = create_async_engine(
                settings.postgres.async_url,
                echo=settings.debug,
                pool_size=10,
                max_overflow=10,
                pool_pre_ping=True,
            )
            logger.info(
                "postgres_engine_created",
                host=settings.postgres.host,
                database=settings.postgres.db,
            )
        return cls._engine

    @classmethod
    def get_session_factory(cls) -> async_sessionmaker[AsyncSession]:
        """Get or create the session factory."""
        if cls._session_factory is None:
            cls._session_factory = async_sessionmaker(
                cls.get_engine(),
                class_=AsyncSession,
                expire_on_commit=False,
                autoflush=False,
            )
        return cls._session_factory

    @classmethod
    async def create_tables(cls) -> list[str]:
        """Create every table declared on ``Base``; returns the table names."""
        async with cls.get_engine().begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        tables = sorted(Base.metadata.tables)
        logger.info("postgres_tables_created", tables=tables)
        return tables

    @classmethod
    async def close(cls) -> None:
        """Dispose of the engine and release all connections."""
        if cls._engine is not None:
            await cls._engine.dispose()
            cls._engine = None
            cls._session_factory = None
            logger.info("postgres_engine_closed")

    @classmethod
    async def health_check(cls) -> dict[str, Any]:
        """
        Check database health.

        Returns:
            dict with status and latency
        """
        try:
            start = time.perf_counter()
            async with cls.get_session_factory()() as session:
                await session.execute(text("SELECT 1"))
            latency_ms = (time.perf_counter() - start) * 1000
            return {
                "status": "healthy",
                "latency_ms": round(latency_ms, 2),
                "database": settings.postgres.db,
            }
        except Exception as e:
            logger.error("postgres_health_check_failed", error=str(e))
            return {"status": "unhealthy", "error": str(e)}
