"""CLI command for re-queueing generation jobs lost by the task queue.

Usage:
    python -m idphoto.cli.recover_jobs [OPTIONS]

Examples:
    # Re-queue orphaned jobs from the last 24 hours
    python -m idphoto.cli.recover_jobs

    # Look further back
    python -m idphoto.cli.recover_jobs --lookback-hours 72

    # Dry run (no queue writes)
    python -m idphoto.cli.recover_jobs --dry-run

    # Verbose logging
    python -m idphoto.cli.recover_jobs -v
"""

import asyncio
import sys
from argparse import ArgumentParser, Namespace

import structlog

from idphoto.bootstrap import build_recovery_service, build_task_queue
from idphoto.core import timezone  # noqa: F401
from idphoto.core.config import Settings, configure_logging
from idphoto.core.database import setup_db_session, setup_redis
from idphoto.uow import create_uow_factory

logger = structlog.get_logger(__name__)


def parse_args(argv: list[str] | None = None) -> Namespace:
    """Parse command-line arguments."""
    parser = ArgumentParser(
        description="Re-queue pending/processing generation jobs missing from the task queue",
        epilog="Jobs older than the lookback window are presumed abandoned and left alone",
    )

    parser.add_argument(
        "--lookback-hours",
        type=int,
        help="Only consider jobs created within this many hours (default: from settings)",
    )

    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Report orphaned jobs without re-queueing them",
    )

    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose logging (DEBUG level)",
    )

    return parser.parse_args(argv)


async def async_main(argv: list[str] | None = None) -> int:
    """Main CLI entry point (async).

    Returns:
        Exit code: 0 (success), 1 (error), 2 (partial success)
    """
    args = parse_args(argv)

    settings = Settings()  # type: ignore[call-arg]

    if args.verbose:
        settings.log_level = "DEBUG"
    if args.lookback_hours is not None:
        settings.recovery_lookback_hours = args.lookback_hours

    configure_logging(settings)

    logger.info(
        "cli.started",
        lookback_hours=settings.recovery_lookback_hours,
        dry_run=args.dry_run,
        queue=settings.generation_queue_name,
    )

    session_factory = setup_db_session(settings.database_url, settings.db_pool_size)
    uow_factory = create_uow_factory(session_factory)
    redis_client = setup_redis(settings.redis_url)

    try:
        task_queue = build_task_queue(settings, redis_client)
        recovery_service = build_recovery_service(settings, uow_factory, task_queue)

        result = await recovery_service.recover(dry_run=args.dry_run)

        print("\n" + "=" * 60)
        print("Generation Queue Recovery Summary")
        print("=" * 60)
        print(f"Queue resumed: {'yes' if result.queue_resumed else 'no'}")
        print(f"Unfinished jobs in window: {result.stale_count}")
        print(f"Already queued: {result.already_queued_count}")
        print(f"Jobs re-queued: {result.requeued_count}")
        print(f"Jobs marked failed: {result.failed_count}")

        if result.errors:
            print(f"\nErrors encountered: {len(result.errors)}")
            for error in result.errors[:5]:
                print(f"  - {error}")
            if len(result.errors) > 5:
                print(f"  ... and {len(result.errors) - 5} more errors")

        if args.dry_run:
            print("\n[DRY RUN] Nothing was written to the queue")

        print("=" * 60 + "\n")

        if not result.errors:
            logger.info("cli.success", requeued=result.requeued_count)
            return 0
        elif result.requeued_count > 0:
            logger.warning("cli.partial_success")
            return 2
        else:
            logger.error("cli.failure")
            return 1

    except KeyboardInterrupt:
        logger.info("cli.interrupted")
        print("\nRecovery interrupted by user", file=sys.stderr)
        return 130

    except Exception as e:
        logger.error(
            "cli.unexpected_error",
            error=str(e),
            error_type=type(e).__name__,
        )
        print(f"\nUnexpected error: {e}", file=sys.stderr)
        return 1

    finally:
        await redis_client.aclose()


def main() -> None:
    """Synchronous entry point for CLI."""
    sys.exit(asyncio.run(async_main()))


if __name__ == "__main__":
    main()
