from __future__ import annotations

import asyncio
from datetime import timedelta
from typing import Any

import pytest

from starshelf.durable import (
    DurableRuntime,
    InvocationNotFoundError,
    ObjectContext,
    ObjectLockedError,
    Service,
    SharedObjectContext,
    TerminalError,
    UnknownHandlerError,
    VirtualObject,
    handler,
    shared,
)
from starshelf.models.durable import Invocation, ObjectState


class FlakyService(Service):
    name = "Flaky"

    def __init__(self) -> None:
        self.side_effects = 0
        self.child_runs = 0
        self.failures_left = 0
        self.always_fail = False

    @handler
    async def work(self, ctx, payload: dict[str, Any]) -> dict[str, Any]:
        value = await ctx.run("side-effect", self._side_effect, payload["n"])
        if self.always_fail:
            raise RuntimeError("upstream unavailable")
        if self.failures_left > 0:
            self.failures_left -= 1
            raise RuntimeError("transient")
        return {"value": value}

    @handler
    async def reject(self, ctx, payload: dict[str, Any]) -> None:
        await ctx.run("side-effect", self._side_effect, 0)
        raise TerminalError("bad request")

    @handler
    async def parent(self, ctx) -> dict[str, Any]:
        child = await ctx.call("Flaky", "child", {"n": 2})
        if self.failures_left > 0:
            self.failures_left -= 1
            raise RuntimeError("parent hiccup")
        token = await ctx.uuid4()
        return {"child": child, "token": token}

    @handler
    async def child(self, ctx, payload: dict[str, Any]) -> int:
        self.child_runs += 1
        return payload["n"] * 10

    @handler
    async def ping(self, ctx) -> str:
        return "pong"

    @handler
    async def fan_out(self, ctx) -> str:
        return await ctx.send("Flaky", "ping")

    @handler
    async def doomed_parent(self, ctx) -> None:
        await ctx.call("Flaky", "broken_child", {})

    @handler
    async def broken_child(self, ctx, payload: dict[str, Any]) -> None:
        raise RuntimeError("child down")

    def _side_effect(self, n: int) -> int:
        self.side_effects += 1
        return n + 1


class Counter(VirtualObject):
    name = "Counter"

    @handler
    async def add(self, ctx: ObjectContext, payload: dict[str, Any]) -> int:
        total = ctx.get("total", 0) + payload["amount"]
        ctx.set("total", total)
        if payload.get("explode"):
            raise TerminalError("refusing")
        return total

    @handler
    async def reset(self, ctx: ObjectContext) -> None:
        ctx.clear_all()

    @shared
    async def total(self, ctx: SharedObjectContext) -> int:
        return ctx.get("total", 0)


def _runtime(session_factory, clock, service: FlakyService, *, max_attempts: int = 5) -> DurableRuntime:
    return DurableRuntime(
        session_factory=session_factory,
        clock=clock,
        max_attempts=max_attempts,
        backoff_base_seconds=0,
        backoff_max_seconds=0,
    ).register(service, Counter())


def test_completed_steps_are_not_repeated_on_retry(session_factory, clock) -> None:
    service = FlakyService()
    service.failures_left = 2
    runtime = _runtime(session_factory, clock, service)

    result = asyncio.run(runtime.invoke("Flaky", "work", {"n": 1}, invocation_id="inv-1"))

    assert result == {"value": 2}
    assert service.side_effects == 1
    snapshot = runtime.get_invocation("inv-1")
    assert snapshot["status"] == "completed"
    assert snapshot["attempts"] == 3
    assert snapshot["result"] == {"value": 2}


def test_terminal_errors_are_not_retried(session_factory, clock) -> None:
    service = FlakyService()
    runtime = _runtime(session_factory, clock, service)

    with pytest.raises(TerminalError, match="bad request"):
        asyncio.run(runtime.invoke("Flaky", "reject", {}, invocation_id="inv-terminal"))

    snapshot = runtime.get_invocation("inv-terminal")
    assert snapshot["status"] == "failed"
    assert snapshot["terminal"] is True
    assert snapshot["attempts"] == 1


def test_transient_errors_exhaust_attempts(session_factory, clock) -> None:
    service = FlakyService()
    service.always_fail = True
    runtime = _runtime(session_factory, clock, service, max_attempts=3)

    with pytest.raises(RuntimeError, match="upstream unavailable"):
        asyncio.run(runtime.invoke("Flaky", "work", {"n": 1}, invocation_id="inv-transient"))

    snapshot = runtime.get_invocation("inv-transient")
    assert snapshot["status"] == "failed"
    assert snapshot["terminal"] is False
    assert snapshot["attempts"] == 3
    assert service.side_effects == 1


def test_nested_call_runs_child_once_across_parent_retries(session_factory, clock) -> None:
    service = FlakyService()
    service.failures_left = 1
    runtime = _runtime(session_factory, clock, service)

    result = asyncio.run(runtime.invoke("Flaky", "parent", invocation_id="inv-parent"))

    assert result["child"] == 20
    assert service.child_runs == 1
    children = runtime.list_invocations(service="Flaky", handler="child")
    assert len(children) == 1
    assert children[0]["parent_id"] == "inv-parent"
    assert children[0]["status"] == "completed"


def test_delayed_invocation_does_not_run_before_due(session_factory, clock) -> None:
    service = FlakyService()
    runtime = _runtime(session_factory, clock, service)

    invocation_id = runtime.enqueue("Flaky", "ping", delay=timedelta(minutes=5))

    assert asyncio.run(runtime.run_due()) == 0
    assert runtime.get_invocation(invocation_id)["status"] == "pending"

    clock.advance(minutes=5)
    assert asyncio.run(runtime.run_due()) == 1
    snapshot = runtime.get_invocation(invocation_id)
    assert snapshot["status"] == "completed"
    assert snapshot["result"] == "pong"


def test_enqueue_is_idempotent_per_invocation_id(session_factory, clock) -> None:
    runtime = _runtime(session_factory, clock, FlakyService())

    first = runtime.enqueue("Flaky", "ping", invocation_id="same", delay=60)
    second = runtime.enqueue("Flaky", "ping", invocation_id="same", delay=600)

    assert first == second == "same"
    assert len(runtime.list_invocations(service="Flaky")) == 1


def test_cancelled_invocation_never_runs(session_factory, clock) -> None:
    runtime = _runtime(session_factory, clock, FlakyService())
    invocation_id = runtime.enqueue("Flaky", "ping", delay=timedelta(hours=1))

    assert runtime.cancel(invocation_id) is True
    assert runtime.cancel(invocation_id) is False

    clock.advance(hours=2)
    assert asyncio.run(runtime.run_due()) == 0
    assert runtime.get_invocation(invocation_id)["status"] == "cancelled"


@pytest.mark.asyncio
async def test_object_state_commits_only_on_success(session_factory, clock) -> None:
    runtime = _runtime(session_factory, clock, FlakyService())

    await runtime.invoke("Counter", "add", {"amount": 2}, key="a")
    await runtime.invoke("Counter", "add", {"amount": 3}, key="a")
    with pytest.raises(TerminalError):
        await runtime.invoke("Counter", "add", {"amount": 100, "explode": True}, key="a")

    assert await runtime.invoke("Counter", "total", key="a") == 5
    assert await runtime.invoke("Counter", "total", key="b") == 0


@pytest.mark.asyncio
async def test_clear_all_removes_object_state(session_factory, clock) -> None:
    runtime = _runtime(session_factory, clock, FlakyService())

    await runtime.invoke("Counter", "add", {"amount": 4}, key="a")
    await runtime.invoke("Counter", "reset", key="a")

    assert await runtime.invoke("Counter", "total", key="a") == 0


def test_keyed_and_unknown_handlers_are_validated(session_factory, clock) -> None:
    runtime = _runtime(session_factory, clock, FlakyService())

    with pytest.raises(UnknownHandlerError):
        asyncio.run(runtime.invoke("Nope", "missing"))
    with pytest.raises(TerminalError, match="requires an object key"):
        asyncio.run(runtime.invoke("Counter", "total"))
    with pytest.raises(TerminalError, match="is not keyed"):
        asyncio.run(runtime.invoke("Flaky", "ping", key="x"))


def test_recover_requeues_interrupted_invocations(session_factory, clock) -> None:
    runtime = _runtime(session_factory, clock, FlakyService())
    invocation_id = runtime.enqueue("Flaky", "ping")

    db = session_factory()
    db.query(Invocation).filter(Invocation.id == invocation_id).update({"status": "running"})
    db.commit()
    db.close()

    assert runtime.recover() == 1
    assert runtime.get_invocation(invocation_id)["status"] == "pending"
    assert asyncio.run(runtime.run_due()) == 1
    assert runtime.get_invocation(invocation_id)["status"] == "completed"


def test_prune_drops_finished_invocations_past_retention(session_factory, clock) -> None:
    service = FlakyService()
    runtime = _runtime(session_factory, clock, service)
    asyncio.run(runtime.invoke("Flaky", "work", {"n": 1}, invocation_id="old"))
    pending_id = runtime.enqueue("Flaky", "ping", delay=timedelta(days=30))

    clock.advance(days=20)

    assert runtime.prune(older_than=timedelta(days=14)) == 1
    with pytest.raises(InvocationNotFoundError):
        runtime.get_invocation("old")
    assert runtime.get_invocation(pending_id)["status"] == "pending"


def _mark_running(session_factory, invocation_id: str) -> None:
    db = session_factory()
    db.query(Invocation).filter(Invocation.id == invocation_id).update({"status": "running"})
    db.commit()
    db.close()


def test_recover_requeues_sent_invocations(session_factory, clock) -> None:
    runtime = _runtime(session_factory, clock, FlakyService())
    sent_id = asyncio.run(runtime.invoke("Flaky", "fan_out", invocation_id="inv-fan-out"))
    _mark_running(session_factory, sent_id)

    assert runtime.get_invocation(sent_id)["parent_id"] == "inv-fan-out"
    assert runtime.recover() == 1
    assert asyncio.run(runtime.run_due()) == 1
    assert runtime.get_invocation(sent_id)["status"] == "completed"


def test_recover_leaves_awaited_children_to_their_parent(session_factory, clock) -> None:
    service = FlakyService()
    runtime = _runtime(session_factory, clock, service)
    asyncio.run(runtime.invoke("Flaky", "parent", invocation_id="inv-parent"))
    child = runtime.list_invocations(service="Flaky", handler="child")[0]
    _mark_running(session_factory, child["id"])

    assert child["detached"] is False
    assert runtime.recover() == 0
    assert runtime.get_invocation(child["id"])["status"] == "running"


def test_children_fail_with_their_parent_and_are_pruned(session_factory, clock) -> None:
    runtime = _runtime(session_factory, clock, FlakyService(), max_attempts=2)

    with pytest.raises(RuntimeError, match="child down"):
        asyncio.run(runtime.invoke("Flaky", "doomed_parent", invocation_id="inv-doomed"))

    children = runtime.list_invocations(service="Flaky", handler="broken_child")
    assert len(children) == 1
    assert children[0]["status"] == "failed"
    assert children[0]["parent_id"] == "inv-doomed"

    clock.advance(days=20)
    assert runtime.prune(older_than=timedelta(days=14)) == 2
    assert runtime.list_invocations(service="Flaky") == []


def test_exclusive_handler_waits_for_lease_held_elsewhere(session_factory, clock) -> None:
    runtime = DurableRuntime(
        session_factory=session_factory,
        clock=clock,
        max_attempts=1,
        lock_poll_seconds=0.001,
        lock_wait_seconds=0.01,
    ).register(Counter())
    db = session_factory()
    db.add(
        ObjectState(
            object_name="Counter",
            object_key="a",
            state={"total": 1},
            locked_by="other-process",
            locked_until=clock() + timedelta(minutes=5),
        )
    )
    db.commit()
    db.close()

    with pytest.raises(ObjectLockedError):
        asyncio.run(runtime.invoke("Counter", "add", {"amount": 1}, key="a"))

    clock.advance(minutes=6)
    assert asyncio.run(runtime.invoke("Counter", "add", {"amount": 1}, key="a")) == 2

    db = session_factory()
    row = db.query(ObjectState).filter_by(object_name="Counter", object_key="a").one()
    assert row.locked_by is None
    db.close()
