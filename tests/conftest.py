"""pytest fixtures for the ID photo backend tests.

Provides:
- postgres_container: Session-scoped testcontainer PostgreSQL instance
- redis_container: Session-scoped testcontainer Redis instance
- utc_timezone: Autouse fixture enforcing UTC timezone
- session: Function-scoped database session with table truncation
- uow_factory: Function-scoped UnitOfWork factory over the test database
- redis_client: Function-scoped redis.asyncio client, flushed after each test
"""

import os
import subprocess
import sys
from pathlib import Path
from typing import AsyncGenerator

import pytest
import pytest_asyncio
import redis.asyncio as redis
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from idphoto.core.database import setup_db_session

os.environ.setdefault("APP_ENV", "test")

BACKEND_ROOT = Path(__file__).resolve().parent.parent


def _docker_or_skip():
    """Skip container-backed tests when no Docker daemon is reachable."""
    try:
        import docker

        docker.from_env().ping()
    except Exception as e:
        pytest.skip(f"Docker not available: {e}")


@pytest.fixture(scope="session")
def postgres_container():
    """Provide session-scoped PostgreSQL container with migrations applied.

    Container starts once per test session and is reused across all tests.
    Migrations are applied using subprocess to avoid asyncio event loop conflicts.
    """
    _docker_or_skip()
    from testcontainers.postgres import PostgresContainer

    with PostgresContainer(
        image="postgres:17",
        username="test",
        password="test",
        dbname="test_idphoto",
    ) as container:
        db_url = container.get_connection_url(driver="psycopg")

        env = os.environ.copy()
        env["DATABASE_URL"] = db_url
        env["APP_ENV"] = "test"

        subprocess.run(
            [sys.executable, "-m", "alembic", "upgrade", "head"],
            check=True,
            capture_output=True,
            text=True,
            env=env,
            cwd=BACKEND_ROOT,
        )

        yield container


@pytest.fixture(scope="session")
def redis_container():
    """Provide session-scoped Redis container."""
    _docker_or_skip()
    from testcontainers.redis import RedisContainer

    with RedisContainer(image="redis:7-alpine") as container:
        yield container


@pytest.fixture(scope="session", autouse=True)
def utc_timezone():
    """Enforce UTC timezone for all tests."""
    os.environ["TZ"] = "UTC"
    yield


@pytest_asyncio.fixture(scope="function")
async def session(postgres_container) -> AsyncGenerator[AsyncSession, None]:
    """Provide function-scoped database session with table truncation.

    Each test gets a fresh session with empty tables (truncated between tests).
    """
    db_url = postgres_container.get_connection_url(driver="psycopg")
    session_factory = setup_db_session(db_url, pool_size=5)

    async with session_factory() as session:
        yield session

        # Rollback uncommitted changes first to avoid FK violations on delete
        await session.rollback()

        # Dependent tables first
        await session.execute(text("DELETE FROM generated_images"))
        await session.execute(text("DELETE FROM generation_jobs"))
        await session.execute(text("DELETE FROM uploaded_images"))
        await session.execute(text("DELETE FROM session_quotas"))
        await session.commit()

    await session_factory.kw["bind"].dispose()


@pytest_asyncio.fixture(scope="function")
async def uow_factory(session: AsyncSession):
    """Provide function-scoped UnitOfWork factory.

    Returns a callable that creates UoW instances on the test session's engine.
    """
    from sqlalchemy.ext.asyncio import async_sessionmaker

    from idphoto.uow import create_uow_factory

    session_factory = async_sessionmaker(
        bind=session.bind,
        expire_on_commit=False,
    )
    return create_uow_factory(session_factory)


@pytest_asyncio.fixture(scope="function")
async def redis_client(redis_container) -> AsyncGenerator[redis.Redis, None]:
    """Provide a decoded redis.asyncio client against a clean database."""
    client = redis.Redis(
        host=redis_container.get_container_host_ip(),
        port=int(redis_container.get_exposed_port(6379)),
        decode_responses=True,
    )
    await client.flushdb()

    yield client

    await client.flushdb()
    await client.aclose()
