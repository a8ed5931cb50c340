"""Explicit wiring of the generation backend.

Every component receives its collaborators through its constructor; this
module is the one place that decides which concrete implementations are used.
Tests build the same graph with fakes by passing them in.
"""

import asyncio
from dataclasses import dataclass

import redis.asyncio as redis
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from idphoto.core.config import Settings
from idphoto.core.database import setup_db_session, setup_redis
from idphoto.queue import BackoffOptions, EnqueueOptions, QueueWorker, RedisTaskQueue
from idphoto.services.compositor import Compositor
from idphoto.services.genai import GeminiClient, GenAIClient
from idphoto.services.generation import GenerationService
from idphoto.services.quotas import QuotaService
from idphoto.services.rate_limiter import RateLimiter, RedisCounterStore
from idphoto.services.recovery import RecoveryService
from idphoto.services.storage import S3Storage, Storage
from idphoto.services.watermark import WatermarkService
from idphoto.uow import UoWFactory, create_uow_factory
from idphoto.workers.generation_worker import GenerationWorker


@dataclass
class Services:
    """The wired component graph of one process."""

    settings: Settings
    session_factory: async_sessionmaker[AsyncSession]
    redis: redis.Redis
    uow_factory: UoWFactory
    rate_limiter: RateLimiter
    task_queue: RedisTaskQueue
    storage: Storage
    genai: GenAIClient
    watermark: WatermarkService
    compositor: Compositor
    quotas: QuotaService
    generation: GenerationService
    generation_worker: GenerationWorker
    queue_worker: QueueWorker
    recovery: RecoveryService


def enqueue_options_from_settings(settings: Settings) -> EnqueueOptions:
    return EnqueueOptions(
        attempts=settings.generation_job_attempts,
        backoff=BackoffOptions(delay_seconds=settings.generation_backoff_seconds),
    )


def build_rate_limiter(settings: Settings, redis_client: redis.Redis) -> RateLimiter:
    return RateLimiter(
        counter_store=RedisCounterStore(redis_client),
        model_limits=settings.model_rate_limits,
        primary_model=settings.primary_model,
        fallback_model=settings.fallback_model,
        default_token_estimate=settings.default_token_estimate,
    )


def build_task_queue(settings: Settings, redis_client: redis.Redis) -> RedisTaskQueue:
    return RedisTaskQueue(
        redis_client,
        name=settings.generation_queue_name,
        lock_seconds=settings.queue_lock_seconds,
    )


def build_recovery_service(
    settings: Settings, uow_factory: UoWFactory, task_queue: RedisTaskQueue
) -> RecoveryService:
    return RecoveryService(
        uow_factory=uow_factory,
        task_queue=task_queue,
        lookback_hours=settings.recovery_lookback_hours,
        enqueue_options=enqueue_options_from_settings(settings),
    )


def build_services(
    settings: Settings,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
    redis_client: redis.Redis | None = None,
    storage: Storage | None = None,
    genai: GenAIClient | None = None,
) -> Services:
    """Build the component graph, creating any collaborator not passed in."""
    session_factory = session_factory or setup_db_session(
        settings.database_url, settings.db_pool_size
    )
    redis_client = redis_client or setup_redis(settings.redis_url)
    uow_factory = create_uow_factory(session_factory)

    storage = storage or S3Storage(
        bucket=settings.storage_bucket,
        region=settings.storage_region,
        endpoint_url=settings.storage_endpoint_url,
        access_key=settings.storage_access_key,
        secret_key=settings.storage_secret_key,
    )
    genai = genai or GeminiClient(
        api_key=settings.google_api_key,
        timeout_seconds=settings.genai_timeout_seconds,
    )

    # Shared by every decode/resize/encode in the process to cap memory
    image_semaphore = asyncio.Semaphore(settings.image_operation_concurrency)

    rate_limiter = build_rate_limiter(settings, redis_client)
    task_queue = build_task_queue(settings, redis_client)
    watermark = WatermarkService(image_semaphore)
    compositor = Compositor(storage, image_semaphore)
    quotas = QuotaService(uow_factory, default_max_previews=settings.anonymous_max_previews)

    generation = GenerationService(
        uow_factory=uow_factory,
        task_queue=task_queue,
        quotas=quotas,
        storage=storage,
        enqueue_options=enqueue_options_from_settings(settings),
        signed_url_ttl_seconds=settings.signed_url_ttl_seconds,
    )
    generation_worker = GenerationWorker(
        uow_factory=uow_factory,
        rate_limiter=rate_limiter,
        genai=genai,
        storage=storage,
        watermark=watermark,
        quotas=quotas,
        generated_images_days=settings.generated_images_days,
    )
    queue_worker = QueueWorker(
        task_queue,
        generation_worker.process,
        concurrency=settings.generation_worker_concurrency,
    )

    return Services(
        settings=settings,
        session_factory=session_factory,
        redis=redis_client,
        uow_factory=uow_factory,
        rate_limiter=rate_limiter,
        task_queue=task_queue,
        storage=storage,
        genai=genai,
        watermark=watermark,
        compositor=compositor,
        quotas=quotas,
        generation=generation,
        generation_worker=generation_worker,
        queue_worker=queue_worker,
        recovery=build_recovery_service(settings, uow_factory, task_queue),
    )
