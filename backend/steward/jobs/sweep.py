"""Scheduled billing sweep, run from cron or an ECS scheduled task.

    python -m steward.jobs.sweep            # time-driven transitions and reminders
    python -m steward.jobs.sweep --backfill # also backfill provider references

Exit status is 1 when any action failed so the scheduler flags the run.
"""

import argparse
import asyncio
import sys
import uuid

import structlog

from steward.core.config import get_settings
from steward.core.logging import configure_structlog
from steward.db import close_db, close_redis, get_session_factory, init_db, init_redis
from steward.middleware.correlation import bind_correlation_id
from steward.providers.registry import build_provider_adapters
from steward.services.backfill_service import BackfillService
from steward.services.dunning_service import DunningService
from steward.services.subscription_service import SubscriptionService

logger = structlog.get_logger(__name__)


async def run(backfill: bool = False, dry_run: bool = False) -> int:
    settings = get_settings()
    run_id = uuid.uuid4().hex
    bind_correlation_id(f"sweep-{run_id}")

    await init_db()
    await init_redis()
    try:
        factory = get_session_factory()
        adapters = build_provider_adapters(settings)
        subscriptions = SubscriptionService(factory, adapters, settings)
        failed = 0

        report = await DunningService(factory, subscriptions, settings=settings).run_sweep(run_id=run_id)
        failed += report.failed
        if report.skipped:
            logger.info("sweep_skipped_lock_held", run_id=run_id, holder=report.holder)

        if backfill:
            backfill_report = await BackfillService(factory, adapters).run(
                limit=settings.backfill_limit,
                dry_run=dry_run,
            )
            failed += backfill_report.failed
    finally:
        await close_redis()
        await close_db()

    return 1 if failed else 0


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Run the billing sweep once")
    parser.add_argument("--backfill", action="store_true", help="also backfill missing provider references")
    parser.add_argument("--dry-run", action="store_true", help="report backfill changes without writing")
    args = parser.parse_args(argv)

    settings = get_settings()
    configure_structlog(log_level="DEBUG" if settings.debug else "INFO", json_logs=not settings.debug)
    return asyncio.run(run(backfill=args.backfill, dry_run=args.dry_run))


if __name__ == "__main__":
    sys.exit(main())
