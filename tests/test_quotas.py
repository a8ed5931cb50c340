"""QuotaService tests against in-memory repositories."""

import pytest
from fakes import InMemoryDatabase, fake_uow_factory

from idphoto.services.quotas import QuotaService


@pytest.fixture
def db() -> InMemoryDatabase:
    return InMemoryDatabase()


@pytest.fixture
def quotas(db) -> QuotaService:
    return QuotaService(fake_uow_factory(db), default_max_previews=3)


@pytest.mark.asyncio
async def test_new_session_has_full_allowance(quotas, db):
    quota = await quotas.get_quota("sess-1")

    assert quota.preview_count == 0
    assert quota.max_previews == 3
    assert quota.remaining == 3
    assert db.quotas == {}


@pytest.mark.asyncio
async def test_can_generate_checks_requested_count(quotas):
    await quotas.increment_usage("sess-1", 2)

    assert await quotas.can_generate("sess-1", 1) is True
    assert await quotas.can_generate("sess-1", 2) is False


@pytest.mark.asyncio
@pytest.mark.parametrize("amount, expected", [(0, 1), (-2, 1), (2.7, 2), (4, 4)])
async def test_increment_is_at_least_one(quotas, amount, expected):
    quota = await quotas.increment_usage("sess-1", amount)
    assert quota.preview_count == expected


@pytest.mark.asyncio
async def test_reset_and_increase(quotas):
    await quotas.increment_usage("sess-1", 3)

    reset = await quotas.reset_quota("sess-1", max_previews=5)
    assert reset.preview_count == 0
    assert reset.max_previews == 5

    increased = await quotas.increase_max_quota("sess-1", 2)
    assert increased.max_previews == 7
