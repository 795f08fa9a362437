from __future__ import annotations

import asyncio
from datetime import timedelta

from apscheduler.triggers.interval import IntervalTrigger

from starshelf.durable import DurableRuntime, Service, handler
from starshelf.models.repo import Repo
from starshelf.seed import SAMPLE_REPOS, run_seed
from starshelf.worker import POLL_JOB_ID, PRUNE_JOB_ID, build_scheduler, poll_due, prune_journal


class Noop(Service):
    name = "Noop"

    @handler
    async def run(self, ctx) -> str:
        return "done"


def _runtime(session_factory, clock) -> DurableRuntime:
    return DurableRuntime(session_factory=session_factory, clock=clock, max_attempts=1).register(Noop())


def test_scheduler_polls_and_prunes(session_factory, clock) -> None:
    scheduler = build_scheduler(_runtime(session_factory, clock))

    jobs = {job.id: job for job in scheduler.get_jobs()}

    assert set(jobs) == {POLL_JOB_ID, PRUNE_JOB_ID}
    assert isinstance(jobs[POLL_JOB_ID].trigger, IntervalTrigger)


def test_poll_due_drives_pending_invocations(session_factory, clock) -> None:
    runtime = _runtime(session_factory, clock)
    invocation_id = runtime.enqueue("Noop", "run", delay=timedelta(seconds=5))

    assert asyncio.run(poll_due(runtime)) == 0
    clock.advance(seconds=5)
    assert asyncio.run(poll_due(runtime)) == 1
    assert runtime.get_invocation(invocation_id)["result"] == "done"


def test_prune_journal_applies_retention(session_factory, clock) -> None:
    runtime = _runtime(session_factory, clock)
    asyncio.run(runtime.invoke("Noop", "run"))

    assert prune_journal(runtime) == 0
    clock.advance(days=15)
    assert prune_journal(runtime) == 1


def test_seed_replaces_repos_with_samples(session_factory) -> None:
    db = session_factory()
    db.add(Repo(repo="someone/else"))
    db.commit()
    db.close()

    seeded = run_seed(session_factory)

    db = session_factory()
    names = sorted(repo.repo for repo in db.query(Repo).all())
    db.close()
    assert len(seeded) == len(SAMPLE_REPOS)
    assert names == ["octocat/Hello-World", "vercel/next.js"]
