"""Database session factory and Redis client setup."""

import redis.asyncio as redis
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine


def setup_db_session(db_url: str, pool_size: int = 20) -> async_sessionmaker[AsyncSession]:
    """Create async database session factory.

    Args:
        db_url: PostgreSQL connection URL (postgresql+psycopg://...)
        pool_size: Maximum number of connections in the pool (default: 20)

    Returns:
        Async session factory for creating database sessions
    """
    engine = create_async_engine(
        db_url,
        pool_size=pool_size,
        max_overflow=0,
        pool_pre_ping=True,
        echo=False,
    )

    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,  # Jobs are read after their UoW closes
    )


def setup_redis(redis_url: str) -> redis.Redis:
    """Create the shared Redis client for rate-limit counters and the task queue.

    Responses are decoded to str so counters and queue ids come back as text.
    """
    return redis.from_url(redis_url, decode_responses=True)
