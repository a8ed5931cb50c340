"""Recovery CLI tests with the database, Redis and queue patched out."""

from unittest.mock import AsyncMock, MagicMock

import pytest

from idphoto.cli import recover_jobs
from idphoto.services.recovery import RecoveryResult


@pytest.fixture
def patched(monkeypatch):
    monkeypatch.setenv("APP_ENV", "test")
    redis_client = MagicMock(aclose=AsyncMock())
    recovery_service = MagicMock()
    captured = {}

    def fake_build_recovery_service(settings, uow_factory, task_queue):
        captured["settings"] = settings
        return recovery_service

    monkeypatch.setattr(recover_jobs, "setup_db_session", MagicMock())
    monkeypatch.setattr(recover_jobs, "setup_redis", MagicMock(return_value=redis_client))
    monkeypatch.setattr(recover_jobs, "build_task_queue", MagicMock())
    monkeypatch.setattr(recover_jobs, "build_recovery_service", fake_build_recovery_service)
    return recovery_service, redis_client, captured


def test_parse_args_defaults():
    args = recover_jobs.parse_args([])
    assert args.lookback_hours is None
    assert args.dry_run is False
    assert args.verbose is False


@pytest.mark.asyncio
async def test_success_exit_code_and_summary(patched, capsys):
    recovery_service, redis_client, captured = patched
    recovery_service.recover = AsyncMock(
        return_value=RecoveryResult(stale_count=3, already_queued_count=1, requeued_count=2)
    )

    exit_code = await recover_jobs.async_main(["--lookback-hours", "72", "--dry-run"])

    assert exit_code == 0
    recovery_service.recover.assert_awaited_once_with(dry_run=True)
    assert captured["settings"].recovery_lookback_hours == 72
    redis_client.aclose.assert_awaited_once()

    out = capsys.readouterr().out
    assert "Jobs re-queued: 2" in out
    assert "[DRY RUN]" in out


@pytest.mark.asyncio
async def test_partial_success_exit_code(patched):
    recovery_service, _, _ = patched
    recovery_service.recover = AsyncMock(
        return_value=RecoveryResult(requeued_count=1, errors=["Failed to re-queue job x: down"])
    )

    assert await recover_jobs.async_main([]) == 2


@pytest.mark.asyncio
async def test_failure_exit_code(patched):
    recovery_service, _, _ = patched
    recovery_service.recover = AsyncMock(
        return_value=RecoveryResult(errors=["Failed to recover generation queue: down"])
    )

    assert await recover_jobs.async_main([]) == 1
