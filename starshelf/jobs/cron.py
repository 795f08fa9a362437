"""Self-rescheduling cron jobs built from a keyed object and delayed invocations."""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from typing import Any, Optional

from starshelf.durable import (
    InvocationContext,
    ObjectContext,
    Service,
    SharedObjectContext,
    TerminalError,
    VirtualObject,
    handler,
    shared,
)
from starshelf.sanitize import sanitize_log_extra
from starshelf.services.cron_schedule import InvalidCronExpression, next_occurrence

logger = logging.getLogger(__name__)

JOB_STATE = "job-state"
CRON_JOB_SERVICE = "CronJob"


@dataclass(slots=True)
class JobRequest:
    """Invariant definition of a scheduled job."""

    cron_expression: str
    service: str
    method: str
    id: Optional[str] = None
    key: Optional[str] = None
    payload: Any = None

    @classmethod
    def from_payload(cls, payload: Any) -> "JobRequest":
        if not isinstance(payload, dict):
            raise TerminalError("Job request must be an object.")

        missing = [name for name in ("cron_expression", "service", "method") if not payload.get(name)]
        if missing:
            raise TerminalError(f"Job request is missing: {', '.join(missing)}")

        return cls(
            cron_expression=str(payload["cron_expression"]),
            service=str(payload["service"]),
            method=str(payload["method"]),
            id=payload.get("id"),
            key=payload.get("key"),
            payload=payload.get("payload"),
        )

    def to_payload(self) -> dict[str, Any]:
        return asdict(self)


class CronJob(VirtualObject):
    """One instance per job id; owns the job definition and its next firing."""

    name = CRON_JOB_SERVICE

    @handler
    async def initiate(self, ctx: ObjectContext, request: dict[str, Any]) -> dict[str, Any]:
        if ctx.get(JOB_STATE) is not None:
            raise TerminalError("Job already exists for this ID.")

        job_request = JobRequest.from_payload(request)
        info = await self._schedule_next_execution(ctx, job_request)
        logger.info(
            "Cron job initiated",
            extra=sanitize_log_extra(
                job_id=ctx.key,
                cron_expression=job_request.cron_expression,
                target=f"{job_request.service}.{job_request.method}",
                next_execution_time=info["next_execution_time"],
            ),
        )
        return info

    @handler
    async def execute(self, ctx: ObjectContext) -> dict[str, Any]:
        job_state = ctx.get(JOB_STATE)
        if job_state is None:
            # Cancelled (or never initiated) while this firing was in flight.
            raise TerminalError("Job not found.")

        job_request = JobRequest.from_payload(job_state["request"])
        target_id = await ctx.send(
            job_request.service,
            job_request.method,
            job_request.payload,
            key=job_request.key,
        )
        logger.info(
            "Cron job fired",
            extra=sanitize_log_extra(
                job_id=ctx.key,
                target=f"{job_request.service}.{job_request.method}",
                target_invocation_id=target_id,
            ),
        )

        return await self._schedule_next_execution(ctx, job_request)

    @handler
    async def cancel(self, ctx: ObjectContext) -> None:
        job_state = ctx.get(JOB_STATE)
        if job_state is not None:
            await ctx.cancel(job_state["next_execution_id"])
            logger.info(
                "Cron job cancelled",
                extra=sanitize_log_extra(job_id=ctx.key, next_execution_id=job_state["next_execution_id"]),
            )

        ctx.clear_all()
        return None

    @shared
    async def get_info(self, ctx: SharedObjectContext) -> Optional[dict[str, Any]]:
        return ctx.get(JOB_STATE)

    async def _schedule_next_execution(self, ctx: ObjectContext, job_request: JobRequest) -> dict[str, Any]:
        current = await ctx.now()
        try:
            next_time = next_occurrence(job_request.cron_expression, current)
        except InvalidCronExpression as exc:
            raise TerminalError(f"Invalid cron expression: {exc}") from exc

        next_execution_id = await ctx.send(self.name, "execute", key=ctx.key, delay=next_time - current)
        job_info = {
            "request": job_request.to_payload(),
            "next_execution_time": next_time.isoformat(),
            "next_execution_id": next_execution_id,
        }
        ctx.set(JOB_STATE, job_info)
        return job_info


class CronJobInitiator(Service):
    """Creates cron jobs, generating an id when the request has none."""

    name = "CronJobInitiator"

    @handler
    async def create(self, ctx: InvocationContext, request: dict[str, Any]) -> str:
        if not isinstance(request, dict):
            raise TerminalError("Job request must be an object.")

        job_id = request.get("id") or await ctx.uuid4()
        job = await ctx.call(CRON_JOB_SERVICE, "initiate", {**request, "id": job_id}, key=job_id)
        return f"Job created with ID {job_id} and next execution time {job['next_execution_time']}"
