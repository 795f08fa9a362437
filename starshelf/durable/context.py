"""Handler-facing contexts: memoized steps, replay-safe values and durable calls."""

from __future__ import annotations

import copy
import inspect
import json
import logging
import random
import uuid
from datetime import datetime, timedelta
from functools import partial
from typing import TYPE_CHECKING, Any, Callable, Optional

from sqlalchemy.exc import IntegrityError

from starshelf.durable.errors import TerminalError
from starshelf.models.durable import JournalEntry
from starshelf.sanitize import sanitize_log_extra
from starshelf.timeutils import parse_datetime

if TYPE_CHECKING:
    from starshelf.durable.runtime import DurableRuntime

logger = logging.getLogger(__name__)

# Fixed namespace so child invocation ids are stable across replays.
_CHILD_ID_NAMESPACE = uuid.UUID("5b0f3c9e-7a41-4c55-9d0e-3f6a2b8c1d47")


def ensure_json(value: Any, *, what: str) -> Any:
    try:
        json.dumps(value)
    except (TypeError, ValueError) as exc:
        raise TerminalError(f"{what} is not JSON serializable: {exc}") from exc
    return value


class StepJournal:
    """Operation log for one invocation, keyed by step name."""

    def __init__(self, session_factory: Callable[[], Any], invocation_id: str) -> None:
        self._session_factory = session_factory
        self._invocation_id = invocation_id
        self._entries: Optional[dict[str, Any]] = None

    def lookup(self, step_name: str) -> tuple[bool, Any]:
        entries = self._load()
        if step_name in entries:
            return True, copy.deepcopy(entries[step_name])
        return False, None

    def record(self, step_name: str, value: Any) -> Any:
        ensure_json(value, what=f"Result of step '{step_name}'")
        entries = self._load()

        db = self._session_factory()
        try:
            db.add(JournalEntry(invocation_id=self._invocation_id, step_name=step_name, value={"value": value}))
            db.commit()
        except IntegrityError:
            # Another attempt committed the step first; its result wins.
            db.rollback()
            existing = (
                db.query(JournalEntry)
                .filter_by(invocation_id=self._invocation_id, step_name=step_name)
                .first()
            )
            value = (existing.value or {}).get("value") if existing is not None else value
        finally:
            db.close()

        entries[step_name] = copy.deepcopy(value)
        return value

    def _load(self) -> dict[str, Any]:
        if self._entries is not None:
            return self._entries

        db = self._session_factory()
        try:
            rows = db.query(JournalEntry).filter(JournalEntry.invocation_id == self._invocation_id).all()
            self._entries = {row.step_name: (row.value or {}).get("value") for row in rows}
        finally:
            db.close()
        return self._entries


class InvocationContext:
    """Context handed to every handler of a stateless service."""

    def __init__(self, runtime: "DurableRuntime", *, invocation_id: str, journal: StepJournal) -> None:
        self._runtime = runtime
        self._invocation_id = invocation_id
        self._journal = journal
        self._sequence = 0

    @property
    def invocation_id(self) -> str:
        return self._invocation_id

    async def run(self, step_name: str, action: Callable[..., Any], *args: Any) -> Any:
        """Run `action` once per invocation and replay its journaled result afterwards."""

        found, value = self._journal.lookup(step_name)
        if found:
            logger.debug(
                "Replaying journaled step",
                extra=sanitize_log_extra(invocation_id=self._invocation_id, step=step_name),
            )
            return value

        result = action(*args)
        if inspect.isawaitable(result):
            result = await result
        return self._journal.record(step_name, result)

    async def now(self) -> datetime:
        raw = await self.run(self._next_step("now"), lambda: self._runtime.now().isoformat())
        return parse_datetime(raw)

    async def random(self) -> float:
        return await self.run(self._next_step("random"), random.random)

    async def uuid4(self) -> str:
        return await self.run(self._next_step("uuid"), lambda: str(uuid.uuid4()))

    async def call(self, service: str, handler: str, payload: Any = None, *, key: Optional[str] = None) -> Any:
        """Invoke another handler durably and wait for its result."""

        step_name = self._next_step("call")
        child_id = self._child_id(step_name)
        return await self.run(
            step_name,
            partial(
                self._runtime.call_child,
                child_id,
                service,
                handler,
                payload,
                key=key,
                parent_id=self._invocation_id,
            ),
        )

    async def send(
        self,
        service: str,
        handler: str,
        payload: Any = None,
        *,
        key: Optional[str] = None,
        delay: timedelta | float | None = None,
    ) -> str:
        """Enqueue a fire-and-forget invocation, optionally delayed; returns its id."""

        step_name = self._next_step("send")
        child_id = self._child_id(step_name)
        return await self.run(
            step_name,
            partial(
                self._runtime.enqueue,
                service,
                handler,
                payload,
                key=key,
                delay=delay,
                invocation_id=child_id,
                parent_id=self._invocation_id,
            ),
        )

    async def cancel(self, invocation_id: str) -> bool:
        return await self.run(self._next_step("cancel"), self._runtime.cancel, invocation_id)

    def _next_step(self, kind: str) -> str:
        self._sequence += 1
        return f"__{kind}:{self._sequence}"

    def _child_id(self, step_name: str) -> str:
        return uuid.uuid5(_CHILD_ID_NAMESPACE, f"{self._invocation_id}:{step_name}").hex


class SharedObjectContext(InvocationContext):
    """Read-only view of a virtual object's committed state."""

    def __init__(
        self,
        runtime: "DurableRuntime",
        *,
        invocation_id: str,
        journal: StepJournal,
        key: str,
        state: dict[str, Any],
    ) -> None:
        super().__init__(runtime, invocation_id=invocation_id, journal=journal)
        self._key = key
        self._state = copy.deepcopy(state)

    @property
    def key(self) -> str:
        return self._key

    def get(self, name: str, default: Any = None) -> Any:
        return copy.deepcopy(self._state.get(name, default))

    def state_keys(self) -> list[str]:
        return sorted(self._state)


class ObjectContext(SharedObjectContext):
    """Exclusive context; state changes commit together with the invocation result."""

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self._dirty = False

    @property
    def dirty(self) -> bool:
        return self._dirty

    def set(self, name: str, value: Any) -> None:
        ensure_json(value, what=f"State '{name}'")
        self._state[name] = copy.deepcopy(value)
        self._dirty = True

    def clear(self, name: str) -> None:
        if name in self._state:
            del self._state[name]
            self._dirty = True

    def clear_all(self) -> None:
        if self._state:
            self._state.clear()
        self._dirty = True

    def snapshot(self) -> dict[str, Any]:
        return copy.deepcopy(self._state)
