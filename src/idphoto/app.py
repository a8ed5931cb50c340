"""FastAPI application factory."""

import asyncio
from contextlib import asynccontextmanager
from typing import Awaitable, Callable

import structlog
from fastapi import FastAPI, Response, status
from sqlalchemy import text

from idphoto.bootstrap import build_services
from idphoto.core import timezone  # noqa: F401
from idphoto.core.config import Settings, configure_logging

logger = structlog.get_logger(__name__)

RESTART_DELAY = 1  # Fixed 1 second delay between restarts


def create_resilient_worker(
    coro_func: Callable[[], Awaitable[None]], worker_name: str, shutdown_event: asyncio.Event
) -> asyncio.Task:
    """Create a worker with automatic restart on failure.

    Args:
        coro_func: Worker coroutine function (e.g., QueueWorker.run)
        worker_name: Human-readable worker name for logging
        shutdown_event: Event to signal graceful shutdown

    Returns:
        Initial task handle (will be auto-recreated on crash)
    """

    def on_worker_done(task: asyncio.Task):
        if shutdown_event.is_set():
            logger.info("worker.shutdown_complete", worker=worker_name)
            return

        if task.cancelled():
            logger.info("worker.cancelled", worker=worker_name)
            return

        exc = task.exception()
        if exc:
            logger.error(
                "worker.crashed",
                worker=worker_name,
                error=str(exc),
                error_type=type(exc).__name__,
                retry_in_seconds=RESTART_DELAY,
                exc_info=exc,
            )
        else:
            # Consumers loop forever; returning at all is unexpected
            logger.warning(
                "worker.stopped_unexpectedly",
                worker=worker_name,
                retry_in_seconds=RESTART_DELAY,
            )

        async def restart_worker():
            await asyncio.sleep(RESTART_DELAY)

            if shutdown_event.is_set():
                return

            logger.info("worker.restarting", worker=worker_name)
            new_task = asyncio.create_task(coro_func())
            new_task.add_done_callback(on_worker_done)

        asyncio.create_task(restart_worker())

    task = asyncio.create_task(coro_func())
    task.add_done_callback(on_worker_done)
    return task


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan context manager.

    Handles startup and shutdown tasks:
    - Startup: Configure logging, wire services, recover orphaned jobs, start workers
    - Shutdown: Stop workers, close connection pools
    """
    settings = Settings()  # type: ignore[call-arg]
    configure_logging(settings)

    services = build_services(settings)
    app.state.services = services
    app.state.session_factory = services.session_factory
    app.state.uow_factory = services.uow_factory
    app.state.redis = services.redis

    # Re-queue jobs lost by a previous process before consumers start;
    # recover() logs its own failures and never raises
    await services.recovery.recover()

    shutdown_event = asyncio.Event()
    worker_task = create_resilient_worker(
        services.queue_worker.run, "generation", shutdown_event
    )

    logger.info("application.startup", db_url=settings.database_url.split("@")[-1])

    yield

    logger.info("application.shutdown")
    shutdown_event.set()

    worker_task.cancel()
    await asyncio.gather(worker_task, return_exceptions=True)

    await services.redis.aclose()
    engine = services.session_factory.kw.get("bind")
    if engine is not None:
        await engine.dispose()


def create_app() -> FastAPI:
    """Create and configure FastAPI application.

    Returns:
        Configured FastAPI application instance
    """
    app = FastAPI(
        title="ID Photo Generation Backend",
        description="ID photo generation, rate limiting and print layout composition",
        version="0.1.0",
        lifespan=lifespan,
    )

    @app.get("/health")
    async def health_check(response: Response):
        """Health check endpoint with database and Redis connectivity tests.

        Returns:
            200: {"status": "healthy"} if both connections succeed
            503: {"status": "unhealthy", "error": {...}} otherwise
        """
        try:
            async with app.state.session_factory() as session:
                result = await session.execute(text("SELECT 1"))
                result.scalar()

            await app.state.redis.ping()

            logger.debug("health_check.success")
            return {"status": "healthy"}

        except Exception as e:
            logger.error(
                "health_check.failed",
                error=str(e),
                error_type=type(e).__name__,
            )
            response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
            return {
                "status": "unhealthy",
                "error": {
                    "type": type(e).__name__,
                    "message": str(e),
                },
            }

    return app


# Create app instance for uvicorn
app = create_app()
