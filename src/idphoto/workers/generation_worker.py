"""Generation worker: turns one queued ``{"jobId": ...}`` into stored images.

Pipeline per delivery:
1. Load the job; skip missing or already-terminal jobs (duplicate delivery).
2. Fail the job without retry if its uploaded image is gone.
3. Mark processing and clear rows left by an interrupted earlier run.
4. For each variation, sequentially: acquire a rate-limit slot, generate,
   record usage, store full + watermarked preview, commit both rows.
5. Mark completed with the model used and, in the same transaction, count
   the previews against an anonymous session's quota.

## Transaction boundaries

Every durable step gets its own UnitOfWork so that rows for variation i are
committed before variation i+1 starts, and so that the failure bookkeeping
in step 6 runs in a fresh transaction after whatever broke the pipeline.

## Failure handling

6. On error the job stays retryable until the queue's last attempt:
   - intermediate attempt, transient error: error message recorded, status
     stays processing, exception re-raised so the queue backs off and retries
   - final attempt, or PermanentError: job marked failed, exception re-raised
   Rate-limit exhaustion is stored with a "Rate limit exceeded: " prefix.
"""

import time
from datetime import datetime, timedelta
from uuid import UUID

import structlog

from idphoto.core.timezone import utcnow
from idphoto.models.generated_image import GeneratedImage
from idphoto.queue.task_queue import QueuedJob
from idphoto.services.exceptions import (
    PermanentError,
    RateLimitExceededError,
    UpstreamGenerationError,
)
from idphoto.services.genai import GenAIClient, GeneratedImageData
from idphoto.services.quotas import QuotaService
from idphoto.services.rate_limiter import ModelSelection, RateLimiter
from idphoto.services.storage import Storage
from idphoto.services.watermark import WatermarkService
from idphoto.uow import UoWFactory

logger = structlog.get_logger(__name__)

RATE_LIMIT_ERROR_PREFIX = "Rate limit exceeded: "


def image_extension(mime_type: str) -> str:
    normalized = mime_type.lower()
    if "jpeg" in normalized or "jpg" in normalized:
        return "jpg"
    if "webp" in normalized:
        return "webp"
    return "png"


def full_image_key(job_id: UUID, variation_index: int, mime_type: str = "image/png") -> str:
    return f"generated/{job_id}/variation-{variation_index}-full.{image_extension(mime_type)}"


def preview_image_key(job_id: UUID, variation_index: int, mime_type: str = "image/png") -> str:
    extension = image_extension(mime_type)
    return f"generated/{job_id}/variation-{variation_index}-preview.{extension}"


def format_failure_message(error: Exception) -> str:
    if isinstance(error, RateLimitExceededError):
        return f"{RATE_LIMIT_ERROR_PREFIX}{error}"
    return str(error) or type(error).__name__


class GenerationWorker:
    """Processes generation jobs delivered by the task queue."""

    def __init__(
        self,
        uow_factory: UoWFactory,
        rate_limiter: RateLimiter,
        genai: GenAIClient,
        storage: Storage,
        watermark: WatermarkService,
        quotas: QuotaService,
        generated_images_days: int = 7,
    ):
        """Initialize generation worker.

        Args:
            uow_factory: Creates UnitOfWork instances
            rate_limiter: Chooses the model for each call and records usage
            genai: External image generation client
            storage: Object storage for source and generated images
            watermark: Produces the preview rendition
            quotas: Anonymous preview allowance
            generated_images_days: Lifetime of generated image rows
        """
        self.uow_factory = uow_factory
        self.rate_limiter = rate_limiter
        self.genai = genai
        self.storage = storage
        self.watermark = watermark
        self.quotas = quotas
        self.generated_images_days = generated_images_days

    async def process(self, queued_job: QueuedJob) -> None:
        """Run the pipeline for one delivery (QueueWorker handler)."""
        job_id = UUID(str(queued_job.payload["jobId"]))
        start_time = time.time()

        async with await self.uow_factory() as uow:
            job = await uow.jobs.get_by_id(job_id)
            if job is None:
                logger.warning("generation.job.not_found", job_id=str(job_id))
                return

            if job.is_terminal:
                logger.info(
                    "generation.job.already_finished",
                    job_id=str(job_id),
                    status=job.status.value,
                )
                return

            upload = None
            if job.uploaded_image_id is not None:
                upload = await uow.uploads.get_by_id(job.uploaded_image_id)

            if upload is None:
                message = (
                    "Uploaded image missing"
                    if job.uploaded_image_id is None
                    else "Uploaded image not found"
                )
                await uow.jobs.mark_failed(job, message)
                logger.error("generation.job.failed", job_id=str(job_id), error_message=message)
                return

            await uow.jobs.mark_processing(job)
            removed = await uow.images.delete_by_job(job.id)
            source_key = upload.storage_key
            source_mime = upload.mime_type

        logger.info(
            "generation.job.started",
            job_id=str(job_id),
            attempt=queued_job.attempt,
            variation_count=job.variation_count,
            stale_images_removed=removed,
        )

        try:
            source = await self.storage.get(source_key)
            expires_at = utcnow() + timedelta(days=self.generated_images_days)
            selections: list[ModelSelection] = []

            for variation_index in range(1, job.variation_count + 1):
                generated, selection = await self._generate_variation(
                    job_id, variation_index, source, source_mime
                )
                selections.append(selection)
                await self._store_variation(job_id, variation_index, generated, expires_at)

            is_fallback = any(selection.is_fallback for selection in selections)
            model_used = next(
                (selection.model for selection in selections if selection.is_fallback),
                selections[-1].model,
            )

            # Completion and quota usage commit together
            async with await self.uow_factory() as uow:
                completed = await uow.jobs.get_by_id(job_id)
                await uow.jobs.mark_completed(
                    completed, model_used=model_used, is_fallback=is_fallback  # type: ignore[arg-type]
                )
                if job.is_anonymous:
                    await self.quotas.record_usage(
                        uow, job.session_id, job.variation_count  # type: ignore[arg-type]
                    )

            logger.info(
                "generation.job.completed",
                job_id=str(job_id),
                model_used=model_used,
                is_fallback=is_fallback,
                duration_seconds=time.time() - start_time,
            )

        except Exception as e:
            await self._record_failure(job_id, queued_job, e)
            raise

    async def _generate_variation(
        self, job_id: UUID, variation_index: int, source: bytes, source_mime: str
    ) -> tuple[GeneratedImageData, ModelSelection]:
        selection = await self.rate_limiter.acquire_slot(self.rate_limiter.default_token_estimate)

        try:
            generated = await self.genai.generate(source, source_mime, selection.model)
        except UpstreamGenerationError as e:
            if selection.is_fallback or not e.is_rate_limit:
                raise

            logger.warning(
                "generation.primary_rate_limited",
                job_id=str(job_id),
                variation_index=variation_index,
                model=selection.model,
                error=str(e),
            )
            selection = ModelSelection(model=self.rate_limiter.fallback_model, is_fallback=True)
            generated = await self.genai.generate(source, source_mime, selection.model)

        await self.rate_limiter.record_request(selection.model, generated.token_usage)

        logger.debug(
            "generation.variation.generated",
            job_id=str(job_id),
            variation_index=variation_index,
            model=selection.model,
            is_fallback=selection.is_fallback,
            token_usage=generated.token_usage,
        )
        return generated, selection

    async def _store_variation(
        self,
        job_id: UUID,
        variation_index: int,
        generated: GeneratedImageData,
        expires_at: datetime,
    ) -> None:
        full_key = full_image_key(job_id, variation_index, generated.mime_type)
        await self.storage.put(full_key, generated.image_bytes, generated.mime_type)

        preview_bytes, preview_mime = await self.watermark.apply_preview_watermark(
            generated.image_bytes, generated.mime_type
        )
        preview_key = preview_image_key(job_id, variation_index, preview_mime)
        await self.storage.put(preview_key, preview_bytes, preview_mime)

        async with await self.uow_factory() as uow:
            await uow.images.add(
                GeneratedImage(
                    job_id=job_id,
                    variation_index=variation_index,
                    storage_key=full_key,
                    mime_type=generated.mime_type,
                    file_size=len(generated.image_bytes),
                    is_preview=False,
                    expires_at=expires_at,
                )
            )
            await uow.images.add(
                GeneratedImage(
                    job_id=job_id,
                    variation_index=variation_index,
                    storage_key=preview_key,
                    mime_type=preview_mime,
                    file_size=len(preview_bytes),
                    is_preview=True,
                    expires_at=expires_at,
                )
            )

    async def _record_failure(self, job_id: UUID, queued_job: QueuedJob, error: Exception) -> None:
        message = format_failure_message(error)
        terminal = queued_job.is_final_attempt or isinstance(error, PermanentError)

        try:
            async with await self.uow_factory() as uow:
                job = await uow.jobs.get_by_id(job_id)
                if job is None or job.is_terminal:
                    return
                if terminal:
                    await uow.jobs.mark_failed(job, message)
                else:
                    await uow.jobs.record_error(job, message)
        except Exception as store_error:
            # The original error is re-raised by the caller either way
            logger.error(
                "generation.job.failure_not_recorded",
                job_id=str(job_id),
                error=str(store_error),
            )

        logger.error(
            "generation.job.failed",
            job_id=str(job_id),
            error_type=type(error).__name__,
            error_message=message,
            attempt=queued_job.attempt,
            terminal=terminal,
        )
