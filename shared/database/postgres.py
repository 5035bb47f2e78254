"""
PostgreSQL Client
=================

Async PostgreSQL client using SQLAlchemy 2.0 with asyncpg.

Version: 0.1.0
"""

import time
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
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

    Manages connection pooling, session lifecycle and the pipeline schema.
    """

    _engine: AsyncEngine | None = None
    _session_factory: async_sessionmaker[AsyncSession] | None = None

    @classmethod
    def get_engine(cls) -> AsyncEngine:
        """Get or create the async engine."""
        if cls._engine is None:
            cls._engine = create_async_engine(
                settings.postgres.async_url,
                echo=False,
                pool_size=settings.postgres.pool_size,
                max_overflow=20,
                pool_pre_ping=True,
                pool_recycle=3600,
                connect_args={"server_settings": {"application_name": "regulatory-truth"}},
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
    async def create_all(cls) -> None:
        """Create all tables registered on ``Base``."""
        async with cls.get_engine().begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("postgres_tables_created", tables=sorted(Base.metadata.tables))

    @classmethod
    async def close(cls) -> None:
        """Close the engine and release all connections."""
        if cls._engine is not None:
            await cls._engine.dispose()
            cls._engine = None
            cls._session_factory = None
            logger.info("postgres_engine_closed")

    @classmethod
    async def missing_tables(cls, session: AsyncSession) -> list[str]:
        """Tables registered on ``Base`` that the database does not have."""
        expected = sorted(Base.metadata.tables)
        if not expected:
            return []
        result = await session.execute(
            text("SELECT table_name FROM information_schema.tables WHERE table_name = ANY(:names)"),
            {"names": expected},
        )
        present = {row[0] for row in result.all()}
        return [name for name in expected if name not in present]

    @classmethod
    async def health_check(cls) -> dict[str, Any]:
        """
        Check database health.

        Degraded when the connection works but pipeline tables are missing.
        """
        try:
            start = time.perf_counter()
            async with cls.get_session_factory()() as session:
                missing = await cls.missing_tables(session)
            latency_ms = (time.perf_counter() - start) * 1000

            health: dict[str, Any] = {
                "status": "degraded" if missing else "healthy",
                "latency_ms": round(latency_ms, 2),
                "host": settings.postgres.host,
                "database": settings.postgres.db,
            }
            if missing:
                health["missing_tables"] = missing
            return health
        except (SQLAlchemyError, OSError) as e:
            logger.error("postgres_health_check_failed", error=str(e))
            return {
                "status": "unhealthy",
                "error": str(e),
            }


@asynccontextmanager
async def postgres_session() -> AsyncGenerator[AsyncSession, None]:
    """
    Context manager for PostgreSQL sessions.

    Commits on success, rolls back on any exception.

    Usage:
        async with postgres_session() as session:
            result = await session.execute(select(RuleRow))
    """
    session_factory = PostgresClient.get_session_factory()
    async with session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
