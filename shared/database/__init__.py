"""
Database Module
===============

Async clients for the pipeline's persistence and queue backends.

Clients:
- PostgreSQL (asyncpg + SQLAlchemy), pipeline state
- Redis (redis.asyncio), stage work queues

Usage:
    from shared.database import postgres_session

    async with postgres_session() as session:
        result = await session.execute(select(EvidenceRow))
"""

from shared.database.postgres import (
    Base,
    PostgresClient,
    postgres_session,
)
from shared.database.redis import (
    RedisClient,
)


__all__ = [
    # PostgreSQL
    "Base",
    "PostgresClient",
    "postgres_session",
    # Redis
    "RedisClient",
]
