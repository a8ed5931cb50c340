"""In-memory collaborators for tests that do not need PostgreSQL or Redis.

Each fake implements the same async interface as its production counterpart
(repositories/UnitOfWork, CounterStore, TaskQueue, Storage, GenAIClient).
"""

import io
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Iterable
from uuid import UUID

from PIL import Image

from idphoto.core.timezone import utcnow
from idphoto.models import GeneratedImage, GenerationJob, SessionQuota, UploadedImage
from idphoto.queue.task_queue import EnqueueOptions, JobState, QueuedJob
from idphoto.services.exceptions import StorageError
from idphoto.services.genai import GeneratedImageData
from idphoto.services.rate_limiter import CounterIncrement


def make_image_bytes(
    width: int = 64, height: int = 64, color=(200, 30, 30), fmt: str = "PNG"
) -> bytes:
    output = io.BytesIO()
    Image.new("RGB", (width, height), color).save(output, format=fmt)
    return output.getvalue()


# Repositories / UnitOfWork


@dataclass
class InMemoryDatabase:
    jobs: dict[UUID, GenerationJob] = field(default_factory=dict)
    images: list[GeneratedImage] = field(default_factory=list)
    uploads: dict[UUID, UploadedImage] = field(default_factory=dict)
    quotas: dict[str, SessionQuota] = field(default_factory=dict)


class FakeJobRepository:
    def __init__(self, db: InMemoryDatabase):
        self.db = db

    async def add(self, job: GenerationJob) -> GenerationJob:
        self.db.jobs[job.id] = job
        return job

    async def get_by_id(self, job_id: UUID) -> GenerationJob | None:
        return self.db.jobs.get(job_id)

    async def mark_processing(self, job: GenerationJob, started_at: datetime | None = None) -> None:
        job.mark_processing(started_at or utcnow())

    async def mark_completed(self, job: GenerationJob, model_used: str, is_fallback: bool) -> None:
        job.mark_completed(utcnow(), model_used=model_used, is_fallback=is_fallback)

    async def mark_failed(self, job: GenerationJob, error_message: str) -> None:
        job.mark_failed(error_message, utcnow())

    async def record_error(self, job: GenerationJob, error_message: str) -> None:
        job.record_error(error_message)

    async def find_stale_jobs(self, statuses, created_after: datetime) -> list[GenerationJob]:
        jobs = [
            job
            for job in self.db.jobs.values()
            if job.status in statuses and job.created_at > created_after
        ]
        return sorted(jobs, key=lambda job: job.created_at)

    async def find_by_owner(self, owner_id: str, limit: int = 100) -> list[GenerationJob]:
        jobs = [job for job in self.db.jobs.values() if job.owner_id == owner_id]
        return sorted(jobs, key=lambda job: job.created_at, reverse=True)[:limit]

    async def find_by_session(self, session_id: str, limit: int = 100) -> list[GenerationJob]:
        jobs = [job for job in self.db.jobs.values() if job.session_id == session_id]
        return sorted(jobs, key=lambda job: job.created_at, reverse=True)[:limit]


class FakeImageRepository:
    def __init__(self, db: InMemoryDatabase):
        self.db = db

    async def add(self, image: GeneratedImage) -> GeneratedImage:
        self.db.images.append(image)
        return image

    async def find_by_job(self, job_id: UUID, preview_only: bool = False) -> list[GeneratedImage]:
        rows = [
            image
            for image in self.db.images
            if image.job_id == job_id and (image.is_preview or not preview_only)
        ]
        return sorted(rows, key=lambda image: (image.variation_index, image.is_preview))

    async def delete_by_job(self, job_id: UUID) -> int:
        before = len(self.db.images)
        self.db.images = [image for image in self.db.images if image.job_id != job_id]
        return before - len(self.db.images)


class FakeUploadRepository:
    def __init__(self, db: InMemoryDatabase):
        self.db = db

    async def add(self, image: UploadedImage) -> UploadedImage:
        self.db.uploads[image.id] = image
        return image

    async def get_by_id(self, image_id: UUID) -> UploadedImage | None:
        return self.db.uploads.get(image_id)


class FakeQuotaRepository:
    def __init__(self, db: InMemoryDatabase):
        self.db = db

    async def get_by_session(self, session_id: str) -> SessionQuota | None:
        return self.db.quotas.get(session_id)

    async def upsert_increment(
        self, session_id: str, increment_by: int, max_previews: int
    ) -> SessionQuota:
        quota = self.db.quotas.get(session_id)
        if quota is None:
            quota = SessionQuota(session_id=session_id, preview_count=0, max_previews=max_previews)
            self.db.quotas[session_id] = quota
        quota.preview_count += increment_by
        return quota

    async def upsert_reset(self, session_id: str, max_previews: int) -> SessionQuota:
        quota = SessionQuota(session_id=session_id, preview_count=0, max_previews=max_previews)
        self.db.quotas[session_id] = quota
        return quota

    async def upsert_increase_max(
        self, session_id: str, additional_previews: int, base_max_previews: int
    ) -> SessionQuota:
        quota = self.db.quotas.get(session_id)
        if quota is None:
            quota = SessionQuota(
                session_id=session_id,
                preview_count=0,
                max_previews=base_max_previews + additional_previews,
            )
            self.db.quotas[session_id] = quota
        else:
            quota.max_previews += additional_previews
        return quota


class FakeUnitOfWork:
    def __init__(self, db: InMemoryDatabase):
        self.jobs = FakeJobRepository(db)
        self.images = FakeImageRepository(db)
        self.uploads = FakeUploadRepository(db)
        self.quotas = FakeQuotaRepository(db)

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        return False


def fake_uow_factory(db: InMemoryDatabase):
    async def _create_uow():
        return FakeUnitOfWork(db)

    return _create_uow


# Rate limiter counters


class FakeCounterStore:
    def __init__(self):
        self.values: dict[str, int] = {}
        self.ttls: dict[str, int] = {}

    async def get(self, key: str) -> int:
        return self.values.get(key, 0)

    async def increment(self, increments: Iterable[CounterIncrement]) -> None:
        for increment in increments:
            self.values[increment.key] = self.values.get(increment.key, 0) + increment.amount
            self.ttls[increment.key] = increment.ttl_seconds

    async def ttl(self, key: str) -> int:
        return self.ttls.get(key, 0)


# Task queue


class FakeTaskQueue:
    """Queue with the RedisTaskQueue surface, held in dicts."""

    def __init__(self, name: str = "generation", lock_seconds: int = 30):
        self.name = name
        self.lock_seconds = lock_seconds
        self.jobs: dict[str, QueuedJob] = {}
        self.waiting: list[str] = []
        self.paused = False
        self.enqueued: list[tuple[str, dict[str, Any], EnqueueOptions]] = []
        self.completed: list[str] = []
        self.failed: list[tuple[str, str, bool]] = []
        self.fail_enqueue_for: set[str] = set()

    async def enqueue(self, job_id: str, payload: dict[str, Any], options: EnqueueOptions) -> bool:
        if job_id in self.fail_enqueue_for:
            raise ConnectionError("queue unavailable")
        if job_id in self.jobs:
            return False
        self.jobs[job_id] = QueuedJob(
            id=job_id,
            payload=payload,
            attempts_made=0,
            max_attempts=options.attempts,
            state=JobState.WAITING,
        )
        self.waiting.append(job_id)
        self.enqueued.append((job_id, payload, options))
        return True

    async def reserve(self, timeout: float = 5.0) -> QueuedJob | None:
        if self.paused or not self.waiting:
            return None
        job = self.jobs[self.waiting.pop(0)]
        job.state = JobState.ACTIVE
        return job

    async def extend_lock(self, job_id: str) -> bool:
        return True

    async def complete(self, job_id: str) -> None:
        self.completed.append(job_id)
        self.jobs.pop(job_id, None)

    async def fail(self, job_id: str, error: str, retry: bool = True) -> bool:
        job = self.jobs[job_id]
        job.attempts_made += 1
        job.failed_reason = error
        will_retry = retry and job.attempts_made < job.max_attempts
        job.state = JobState.DELAYED if will_retry else JobState.FAILED
        self.failed.append((job_id, error, will_retry))
        return will_retry

    async def recover_stalled(self) -> int:
        return 0

    async def list_job_ids(self, states: Iterable[JobState]) -> set[str]:
        wanted = set(states)
        ids = set()
        for job in self.jobs.values():
            state = job.state
            if state == JobState.WAITING and self.paused:
                state = JobState.PAUSED
            if state in wanted:
                ids.add(job.id)
        return ids

    async def get_job(self, job_id: str) -> QueuedJob | None:
        return self.jobs.get(job_id)

    async def is_paused(self) -> bool:
        return self.paused

    async def pause(self) -> None:
        self.paused = True

    async def resume(self) -> None:
        self.paused = False


# Object storage


class FakeStorage:
    def __init__(self):
        self.objects: dict[str, tuple[bytes, str]] = {}
        self.get_calls: list[str] = []
        self.fail_keys: set[str] = set()

    async def get(self, key: str) -> bytes:
        self.get_calls.append(key)
        if key in self.fail_keys or key not in self.objects:
            raise StorageError(f"Failed to download {key}")
        return self.objects[key][0]

    async def put(self, key: str, data: bytes, mime_type: str) -> str:
        self.objects[key] = (data, mime_type)
        return key

    async def signed_url(self, key: str, ttl_seconds: int) -> str:
        return f"https://storage.test/{key}?expires={ttl_seconds}"


# GenAI


class FakeGenAI:
    """Returns scripted outcomes in call order; generates a PNG once the script runs out."""

    def __init__(self, outcomes: list[GeneratedImageData | Exception] | None = None):
        self.outcomes = list(outcomes or [])
        self.calls: list[str] = []

    async def generate(self, image_bytes: bytes, mime_type: str, model: str) -> GeneratedImageData:
        self.calls.append(model)
        if self.outcomes:
            outcome = self.outcomes.pop(0)
            if isinstance(outcome, Exception):
                raise outcome
            return outcome
        return GeneratedImageData(
            image_bytes=make_image_bytes(), mime_type="image/png", token_usage=1200
        )
