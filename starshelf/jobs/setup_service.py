"""Bootstrap for the daily starred-repository sync job."""

from __future__ import annotations

import logging
from typing import Any, Optional

from starshelf.config.settings import settings
from starshelf.durable import InvocationContext, Service, handler
from starshelf.jobs.cron import CRON_JOB_SERVICE
from starshelf.jobs.github_jobs import GITHUB_JOBS_SERVICE
from starshelf.sanitize import sanitize_log_extra

logger = logging.getLogger(__name__)

SYNC_ENTRYPOINT = "update_user_starred_repos"


class SetupService(Service):
    """Ensures exactly one daily sync cron job exists."""

    name = "SetupService"

    def __init__(self, *, job_id: Optional[str] = None, cron_expression: Optional[str] = None) -> None:
        self._job_id = job_id or settings.DAILY_SYNC_JOB_ID
        self._cron_expression = cron_expression or settings.DAILY_SYNC_CRON

    @handler
    async def initialize(self, ctx: InvocationContext) -> dict[str, Any]:
        job = await ctx.call(CRON_JOB_SERVICE, "get_info", key=self._job_id)
        if job is not None:
            logger.info("Daily sync job already exists", extra=sanitize_log_extra(job_id=self._job_id))
            return {
                "status": "already_exists",
                "job_id": self._job_id,
                "next_execution_time": job["next_execution_time"],
            }

        job = await ctx.call(
            CRON_JOB_SERVICE,
            "initiate",
            {
                "id": self._job_id,
                "cron_expression": self._cron_expression,
                "service": GITHUB_JOBS_SERVICE,
                "method": SYNC_ENTRYPOINT,
            },
            key=self._job_id,
        )
        logger.info(
            "Daily sync job created",
            extra=sanitize_log_extra(job_id=self._job_id, next_execution_time=job["next_execution_time"]),
        )
        return {
            "status": "created",
            "job_id": self._job_id,
            "next_execution_time": job["next_execution_time"],
        }

    @handler
    async def get_status(self, ctx: InvocationContext) -> dict[str, Any]:
        job = await ctx.call(CRON_JOB_SERVICE, "get_info", key=self._job_id)
        return {"initialized": job is not None, "job_id": self._job_id, "job": job}

    @handler
    async def teardown(self, ctx: InvocationContext) -> dict[str, Any]:
        job = await ctx.call(CRON_JOB_SERVICE, "get_info", key=self._job_id)
        if job is None:
            return {"status": "not_found", "job_id": self._job_id}

        await ctx.call(CRON_JOB_SERVICE, "cancel", key=self._job_id)
        logger.info("Daily sync job cancelled", extra=sanitize_log_extra(job_id=self._job_id))
        return {"status": "cancelled", "job_id": self._job_id}
