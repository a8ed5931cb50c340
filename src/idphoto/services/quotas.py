"""Free preview allowance for anonymous sessions."""

import structlog

from idphoto.models.session_quota import SessionQuota
from idphoto.uow import UnitOfWork, UoWFactory

logger = structlog.get_logger(__name__)

DEFAULT_MAX_PREVIEWS = 3


class QuotaService:
    """Tracks how many previews an anonymous session has generated."""

    def __init__(self, uow_factory: UoWFactory, default_max_previews: int = DEFAULT_MAX_PREVIEWS):
        self.uow_factory = uow_factory
        self.default_max_previews = default_max_previews

    async def get_quota(self, session_id: str) -> SessionQuota:
        """Current quota; a session without a row has used nothing yet."""
        async with await self.uow_factory() as uow:
            quota = await uow.quotas.get_by_session(session_id)

        if quota is None:
            return SessionQuota(
                session_id=session_id,
                preview_count=0,
                max_previews=self.default_max_previews,
            )
        return quota

    async def can_generate(self, session_id: str, requested: int = 1) -> bool:
        quota = await self.get_quota(session_id)
        return quota.remaining >= requested

    async def increment_usage(self, session_id: str, amount: int = 1) -> SessionQuota:
        """Count ``amount`` previews (floored, at least 1) against the session."""
        async with await self.uow_factory() as uow:
            return await self.record_usage(uow, session_id, amount)

    async def record_usage(self, uow: UnitOfWork, session_id: str, amount: int = 1) -> SessionQuota:
        """Like ``increment_usage`` but inside the caller's transaction."""
        quota = await uow.quotas.upsert_increment(
            session_id,
            increment_by=max(1, int(amount)),
            max_previews=self.default_max_previews,
        )

        logger.debug(
            "quota.incremented",
            session_id=session_id,
            preview_count=quota.preview_count,
            max_previews=quota.max_previews,
        )
        return quota

    async def reset_quota(self, session_id: str, max_previews: int | None = None) -> SessionQuota:
        """Zero the count (e.g. after purchase), optionally with a new ceiling."""
        new_max = self.default_max_previews if max_previews is None else max_previews
        async with await self.uow_factory() as uow:
            quota = await uow.quotas.upsert_reset(session_id, max_previews=new_max)

        logger.info("quota.reset", session_id=session_id, max_previews=new_max)
        return quota

    async def increase_max_quota(self, session_id: str, additional_previews: int) -> SessionQuota:
        """Raise the ceiling (e.g. after sign-up)."""
        async with await self.uow_factory() as uow:
            quota = await uow.quotas.upsert_increase_max(
                session_id,
                additional_previews=additional_previews,
                base_max_previews=self.default_max_previews,
            )

        logger.info(
            "quota.max_increased",
            session_id=session_id,
            max_previews=quota.max_previews,
        )
        return quota
