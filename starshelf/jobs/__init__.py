"""Durable services and their wiring into a runtime."""

from __future__ import annotations

from typing import Any, Callable, Optional

from starshelf.config.database import SessionLocal
from starshelf.durable import DurableRuntime, Service
from starshelf.jobs.cron import CronJob, CronJobInitiator
from starshelf.jobs.github_jobs import GithubJobs
from starshelf.jobs.setup_service import SetupService


def build_services(
    *,
    session_factory: Callable[[], Any] = SessionLocal,
    github_jobs: Optional[GithubJobs] = None,
    setup_service: Optional[SetupService] = None,
) -> list[Service]:
    """Every service the runtime serves."""
    return [
        CronJob(),
        CronJobInitiator(),
        github_jobs or GithubJobs(session_factory=session_factory),
        setup_service or SetupService(),
    ]


def create_runtime(
    *,
    session_factory: Callable[[], Any] = SessionLocal,
    clock: Optional[Callable[[], Any]] = None,
    services: Optional[list[Service]] = None,
    **runtime_options: Any,
) -> DurableRuntime:
    runtime = DurableRuntime(session_factory=session_factory, clock=clock, **runtime_options)
    return runtime.register(*(services or build_services(session_factory=session_factory)))


__all__ = [
    "CronJob",
    "CronJobInitiator",
    "GithubJobs",
    "SetupService",
    "build_services",
    "create_runtime",
]
