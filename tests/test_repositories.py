"""Repository layer tests against PostgreSQL.

Tests focus on the queries with real logic:
- Stale job lookup (status filter, lookback cutoff, oldest first)
- History ordering per owner / session
- Generated image ordering, preview filter and per-job cleanup
- Session quota UPSERT behavior

Simple CRUD operations are not tested (trust SQLAlchemy/PostgreSQL).
"""

from datetime import timedelta

import pytest

from idphoto.core.timezone import utcnow
from idphoto.models import GeneratedImage, GenerationJob, JobStatus, UploadedImage
from idphoto.repositories import (
    GeneratedImageRepository,
    GenerationJobRepository,
    SessionQuotaRepository,
)

pytestmark = pytest.mark.integration


def make_job(age: timedelta, status=JobStatus.PENDING, **kwargs) -> GenerationJob:
    values = {
        "grid_config_id": "solo-a",
        "session_id": "sess-1",
        "status": status,
        "created_at": utcnow() - age,
    }
    values.update(kwargs)
    return GenerationJob(**values)


@pytest.mark.asyncio
async def test_find_stale_jobs(session):
    """Only pending/processing jobs newer than the cutoff, oldest first."""
    newest = make_job(timedelta(minutes=1), JobStatus.PROCESSING)
    oldest = make_job(timedelta(hours=3), JobStatus.PENDING)
    too_old = make_job(timedelta(hours=30), JobStatus.PENDING)
    completed = make_job(timedelta(minutes=2), JobStatus.COMPLETED)
    failed = make_job(timedelta(minutes=2), JobStatus.FAILED)
    session.add_all([newest, oldest, too_old, completed, failed])
    await session.commit()

    repo = GenerationJobRepository(session)
    stale = await repo.find_stale_jobs(
        [JobStatus.PENDING, JobStatus.PROCESSING], utcnow() - timedelta(hours=24)
    )

    assert [job.id for job in stale] == [oldest.id, newest.id]


@pytest.mark.asyncio
async def test_history_queries(session):
    first = make_job(timedelta(hours=2), owner_id="user-1", session_id=None)
    second = make_job(timedelta(hours=1), owner_id="user-1", session_id="sess-1")
    anonymous = make_job(timedelta(minutes=30), session_id="sess-2")
    session.add_all([first, second, anonymous])
    await session.commit()

    repo = GenerationJobRepository(session)

    assert [job.id for job in await repo.find_by_owner("user-1")] == [second.id, first.id]
    assert [job.id for job in await repo.find_by_session("sess-2")] == [anonymous.id]
    assert await repo.find_by_owner("user-9") == []


@pytest.mark.asyncio
async def test_lifecycle_updates_persist(session):
    job = make_job(timedelta(minutes=1))
    session.add(job)
    await session.commit()

    repo = GenerationJobRepository(session)
    await repo.mark_processing(job)
    await repo.mark_completed(job, model_used="gemini-2.5-flash-image", is_fallback=True)
    await session.commit()

    session.expunge_all()
    stored = await repo.get_by_id(job.id)
    assert stored.status == JobStatus.COMPLETED
    assert stored.model_used == "gemini-2.5-flash-image"
    assert stored.is_fallback is True
    assert stored.started_at is not None


@pytest.mark.asyncio
async def test_generated_images_ordering_and_cleanup(session):
    upload = UploadedImage(session_id="sess-1", storage_key="uploads/a.jpg")
    session.add(upload)
    job = make_job(timedelta(minutes=1), uploaded_image_id=upload.id)
    session.add(job)
    await session.flush()

    for index in (2, 1):
        for is_preview in (True, False):
            session.add(
                GeneratedImage(
                    job_id=job.id,
                    variation_index=index,
                    storage_key=f"generated/{job.id}/{index}-{is_preview}.png",
                    mime_type="image/png",
                    file_size=10,
                    is_preview=is_preview,
                )
            )
    await session.commit()

    repo = GeneratedImageRepository(session)

    rows = await repo.find_by_job(job.id)
    assert [(row.variation_index, row.is_preview) for row in rows] == [
        (1, False),
        (1, True),
        (2, False),
        (2, True),
    ]

    previews = await repo.find_by_job(job.id, preview_only=True)
    assert [row.variation_index for row in previews] == [1, 2]
    assert all(row.is_preview for row in previews)

    assert await repo.delete_by_job(job.id) == 4
    await session.commit()
    assert await repo.find_by_job(job.id) == []


@pytest.mark.asyncio
async def test_session_quota_upserts(session):
    """INSERT ON CONFLICT DO UPDATE keeps one row per session."""
    repo = SessionQuotaRepository(session)

    created = await repo.upsert_increment("sess-1", increment_by=1, max_previews=3)
    assert created.preview_count == 1
    assert created.max_previews == 3

    incremented = await repo.upsert_increment("sess-1", increment_by=2, max_previews=3)
    assert incremented.preview_count == 3

    increased = await repo.upsert_increase_max("sess-1", additional_previews=5, base_max_previews=3)
    assert increased.max_previews == 8
    assert increased.preview_count == 3

    reset = await repo.upsert_reset("sess-1", max_previews=4)
    assert reset.preview_count == 0
    assert reset.max_previews == 4
    await session.commit()

    stored = await repo.get_by_session("sess-1")
    assert stored.preview_count == 0
    assert await repo.get_by_session("sess-unknown") is None


@pytest.mark.asyncio
async def test_session_quota_created_by_increase_max(session):
    repo = SessionQuotaRepository(session)

    quota = await repo.upsert_increase_max("sess-new", additional_previews=2, base_max_previews=3)

    assert quota.preview_count == 0
    assert quota.max_previews == 5
