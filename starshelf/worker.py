"""Worker process: drives delayed and queued durable invocations.

Run with `python -m starshelf.worker`.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import timedelta
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from starshelf.config.database import init_db
from starshelf.config.settings import settings
from starshelf.durable import DurableRuntime
from starshelf.jobs import create_runtime
from starshelf.sanitize import sanitize_log_extra

logger = logging.getLogger(__name__)

POLL_JOB_ID = "durable-run-due"
PRUNE_JOB_ID = "durable-prune"


async def poll_due(runtime: DurableRuntime) -> int:
    processed = await runtime.run_due()
    if processed:
        logger.info("Drove due invocations", extra=sanitize_log_extra(count=processed))
    return processed


def prune_journal(runtime: DurableRuntime) -> int:
    return runtime.prune(older_than=timedelta(days=settings.DURABLE_JOURNAL_RETENTION_DAYS))


def build_scheduler(runtime: DurableRuntime) -> AsyncIOScheduler:
    scheduler = AsyncIOScheduler(timezone="UTC")
    scheduler.add_job(
        poll_due,
        IntervalTrigger(seconds=settings.DURABLE_POLL_INTERVAL_SECONDS),
        args=[runtime],
        id=POLL_JOB_ID,
        max_instances=1,
        coalesce=True,
    )
    scheduler.add_job(
        prune_journal,
        CronTrigger(hour=3, minute=30, timezone="UTC"),
        args=[runtime],
        id=PRUNE_JOB_ID,
        max_instances=1,
        coalesce=True,
    )
    return scheduler


def prepare(runtime: DurableRuntime) -> None:
    """Create tables, requeue interrupted invocations and apply journal retention."""
    init_db()
    recovered = runtime.recover()
    pruned = prune_journal(runtime)
    logger.info(
        "Worker prepared",
        extra=sanitize_log_extra(
            environment=settings.ENVIRONMENT,
            services=runtime.services,
            recovered=recovered,
            pruned=pruned,
        ),
    )


async def run_worker(runtime: Optional[DurableRuntime] = None) -> None:
    runtime = runtime or create_runtime()
    prepare(runtime)

    scheduler = build_scheduler(runtime)
    scheduler.start()
    logger.info(
        "Worker started",
        extra=sanitize_log_extra(poll_interval_seconds=settings.DURABLE_POLL_INTERVAL_SECONDS),
    )
    try:
        await poll_due(runtime)
        await asyncio.Event().wait()
    finally:
        scheduler.shutdown(wait=False)


if __name__ == "__main__":
    logging.basicConfig(
        level=logging.DEBUG if settings.DEBUG else logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    try:
        asyncio.run(run_worker())
    except (KeyboardInterrupt, SystemExit):
        logger.info("Worker stopped")
