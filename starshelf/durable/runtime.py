"""In-process durable execution runtime backed by the relational store.

Invocations are rows in `invocations`; each named step a handler runs through
its context is memoized in `journal_entries`, so a retried or recovered
invocation replays completed steps instead of repeating their side effects.
Virtual-object state lives in `object_states` and is committed together with
the invocation that changed it.

Delayed invocations are picked up by `run_due`, which the worker polls.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from datetime import timedelta
from typing import Any, Callable, Iterable, Optional

from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError
from tenacity import AsyncRetrying, retry_if_not_exception_type, stop_after_attempt, wait_exponential

from starshelf.config.database import SessionLocal
from starshelf.config.settings import settings
from starshelf.durable.context import (
    InvocationContext,
    ObjectContext,
    SharedObjectContext,
    StepJournal,
    ensure_json,
)
from starshelf.durable.errors import InvocationNotFoundError, ObjectLockedError, TerminalError, UnknownHandlerError
from starshelf.durable.service import HANDLER_SHARED, HandlerSpec, Service
from starshelf.models.durable import (
    FINISHED_STATUSES,
    STATUS_CANCELLED,
    STATUS_COMPLETED,
    STATUS_FAILED,
    STATUS_PENDING,
    STATUS_RUNNING,
    Invocation,
    JournalEntry,
    ObjectState,
)
from starshelf.sanitize import sanitize_log_extra
from starshelf.timeutils import as_utc, utcnow

logger = logging.getLogger(__name__)


class DurableRuntime:
    """Registers services and drives their invocations to completion."""

    def __init__(
        self,
        *,
        session_factory: Callable[[], Any] = SessionLocal,
        clock: Optional[Callable[[], Any]] = None,
        max_attempts: Optional[int] = None,
        backoff_base_seconds: Optional[float] = None,
        backoff_max_seconds: Optional[float] = None,
        lease_seconds: Optional[float] = None,
        lock_poll_seconds: Optional[float] = None,
        lock_wait_seconds: Optional[float] = None,
    ) -> None:
        self._session_factory = session_factory
        self._clock = clock or utcnow
        self._max_attempts = max_attempts or settings.DURABLE_MAX_ATTEMPTS
        self._backoff_base_seconds = (
            settings.DURABLE_BACKOFF_BASE_SECONDS if backoff_base_seconds is None else backoff_base_seconds
        )
        self._backoff_max_seconds = (
            settings.DURABLE_BACKOFF_MAX_SECONDS if backoff_max_seconds is None else backoff_max_seconds
        )
        self._lease = timedelta(seconds=lease_seconds or settings.DURABLE_OBJECT_LEASE_SECONDS)
        self._lock_poll_seconds = settings.DURABLE_LOCK_POLL_SECONDS if lock_poll_seconds is None else lock_poll_seconds
        self._lock_wait_seconds = settings.DURABLE_LOCK_WAIT_SECONDS if lock_wait_seconds is None else lock_wait_seconds
        self._handlers: dict[tuple[str, str], HandlerSpec] = {}
        self._locks: dict[tuple[str, str], asyncio.Lock] = {}

    def register(self, *services: Service) -> "DurableRuntime":
        for service in services:
            for handler_name, spec in service.handler_specs().items():
                self._handlers[(spec.service, handler_name)] = spec
            logger.info(
                "Registered durable service",
                extra=sanitize_log_extra(service=service.name, keyed=service.keyed),
            )
        return self

    @property
    def services(self) -> list[str]:
        return sorted({service for service, _ in self._handlers})

    def now(self):
        return as_utc(self._clock())

    async def invoke(
        self,
        service: str,
        handler: str,
        payload: Any = None,
        *,
        key: Optional[str] = None,
        invocation_id: Optional[str] = None,
    ) -> Any:
        """Run a handler immediately and wait for its result (ingress call)."""

        spec = self._resolve(service, handler, key)
        ensure_json(payload, what="Invocation payload")
        invocation_id = invocation_id or uuid.uuid4().hex
        self._insert_invocation(
            invocation_id,
            spec,
            payload,
            key=key,
            status=STATUS_RUNNING,
            run_at=self.now(),
        )
        logger.info(
            "Invocation started",
            extra=sanitize_log_extra(invocation_id=invocation_id, service=service, handler=handler, key=key),
        )
        return await self._drive(invocation_id, spec, payload, key)

    def enqueue(
        self,
        service: str,
        handler: str,
        payload: Any = None,
        *,
        key: Optional[str] = None,
        delay: timedelta | float | None = None,
        invocation_id: Optional[str] = None,
        parent_id: Optional[str] = None,
    ) -> str:
        """Persist a pending invocation due after `delay`; idempotent per id."""

        spec = self._resolve(service, handler, key)
        ensure_json(payload, what="Invocation payload")
        invocation_id = invocation_id or uuid.uuid4().hex
        run_at = self.now() + _as_timedelta(delay)
        self._insert_invocation(
            invocation_id,
            spec,
            payload,
            key=key,
            status=STATUS_PENDING,
            run_at=run_at,
            parent_id=parent_id,
        )
        logger.info(
            "Invocation scheduled",
            extra=sanitize_log_extra(
                invocation_id=invocation_id,
                service=service,
                handler=handler,
                key=key,
                run_at=run_at.isoformat(),
            ),
        )
        return invocation_id

    def cancel(self, invocation_id: str) -> bool:
        """Cancel a pending invocation. Running or finished ones are left alone."""

        db = self._session_factory()
        try:
            updated = (
                db.query(Invocation)
                .filter(Invocation.id == invocation_id, Invocation.status == STATUS_PENDING)
                .update({"status": STATUS_CANCELLED, "updated_at": self.now()}, synchronize_session=False)
            )
            db.commit()
        finally:
            db.close()

        logger.info(
            "Invocation cancel requested",
            extra=sanitize_log_extra(invocation_id=invocation_id, cancelled=bool(updated)),
        )
        return bool(updated)

    def get_invocation(self, invocation_id: str) -> dict[str, Any]:
        db = self._session_factory()
        try:
            row = db.get(Invocation, invocation_id)
            if row is None:
                raise InvocationNotFoundError(invocation_id)
            return row.to_dict()
        finally:
            db.close()

    def list_invocations(
        self,
        *,
        service: Optional[str] = None,
        handler: Optional[str] = None,
        key: Optional[str] = None,
        statuses: Optional[Iterable[str]] = None,
    ) -> list[dict[str, Any]]:
        db = self._session_factory()
        try:
            query = db.query(Invocation)
            if service is not None:
                query = query.filter(Invocation.service == service)
            if handler is not None:
                query = query.filter(Invocation.handler == handler)
            if key is not None:
                query = query.filter(Invocation.object_key == key)
            if statuses is not None:
                query = query.filter(Invocation.status.in_(list(statuses)))
            return [row.to_dict() for row in query.order_by(Invocation.run_at, Invocation.created_at).all()]
        finally:
            db.close()

    async def run_due(self, *, limit: Optional[int] = None) -> int:
        """Drive every pending invocation whose `run_at` has passed."""

        batch_size = limit or settings.DURABLE_POLL_BATCH_SIZE
        db = self._session_factory()
        try:
            due_ids = [
                row.id
                for row in db.query(Invocation.id)
                .filter(Invocation.status == STATUS_PENDING, Invocation.run_at <= self.now())
                .order_by(Invocation.run_at)
                .limit(batch_size)
                .all()
            ]
        finally:
            db.close()

        processed = 0
        for invocation_id in due_ids:
            row = self._claim(invocation_id)
            if row is None:
                continue
            processed += 1

            spec = self._handlers.get((row["service"], row["handler"]))
            if spec is None:
                error = UnknownHandlerError(f"Unknown handler {row['service']}.{row['handler']}")
                self._record_failure(invocation_id, error, terminal=True, final=True)
                logger.error(
                    "Due invocation targets an unregistered handler",
                    extra=sanitize_log_extra(invocation_id=invocation_id, service=row["service"], handler=row["handler"]),
                )
                continue

            try:
                await self._drive(invocation_id, spec, row["payload"], row["key"])
            except Exception as exc:
                # Already recorded on the invocation row; keep draining the batch.
                logger.warning(
                    "Due invocation did not complete",
                    extra=sanitize_log_extra(
                        invocation_id=invocation_id,
                        service=spec.service,
                        handler=spec.name,
                        error=str(exc),
                        terminal=isinstance(exc, TerminalError),
                    ),
                )
        return processed

    def recover(self) -> int:
        """Return interrupted detached invocations to the queue so they replay.

        Awaited nested calls are left to their parent, whose replay drives them
        again. Object leases held by recovered invocations are released.
        """

        db = self._session_factory()
        try:
            interrupted_ids = [
                row.id
                for row in db.query(Invocation.id)
                .filter(Invocation.status == STATUS_RUNNING, Invocation.detached.is_(True))
                .all()
            ]
            if interrupted_ids:
                db.query(Invocation).filter(Invocation.id.in_(interrupted_ids)).update(
                    {"status": STATUS_PENDING, "updated_at": self.now()}, synchronize_session=False
                )
                db.query(ObjectState).filter(ObjectState.locked_by.in_(interrupted_ids)).update(
                    {"locked_by": None, "locked_until": None}, synchronize_session=False
                )
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

        if interrupted_ids:
            logger.info("Recovered interrupted invocations", extra=sanitize_log_extra(count=len(interrupted_ids)))
        return len(interrupted_ids)

    def prune(self, *, older_than: timedelta) -> int:
        """Delete finished invocations and their journals past the retention window."""

        cutoff = self.now() - older_than
        db = self._session_factory()
        try:
            stale_ids = [
                row.id
                for row in db.query(Invocation.id)
                .filter(Invocation.status.in_(FINISHED_STATUSES), Invocation.updated_at < cutoff)
                .all()
            ]
            if stale_ids:
                db.query(JournalEntry).filter(JournalEntry.invocation_id.in_(stale_ids)).delete(
                    synchronize_session=False
                )
                db.query(Invocation).filter(Invocation.id.in_(stale_ids)).delete(synchronize_session=False)
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

        logger.info("Pruned finished invocations", extra=sanitize_log_extra(count=len(stale_ids)))
        return len(stale_ids)

    async def call_child(
        self,
        invocation_id: str,
        service: str,
        handler: str,
        payload: Any = None,
        *,
        key: Optional[str] = None,
        parent_id: Optional[str] = None,
    ) -> Any:
        """Execute a nested call once per parent attempt, reusing the child's own journal."""

        spec = self._resolve(service, handler, key)
        ensure_json(payload, what="Invocation payload")
        row = self._insert_invocation(
            invocation_id,
            spec,
            payload,
            key=key,
            status=STATUS_RUNNING,
            run_at=self.now(),
            parent_id=parent_id,
            detached=False,
        )
        if row["status"] == STATUS_COMPLETED:
            return row["result"]
        if row["status"] == STATUS_FAILED and row["terminal"]:
            raise TerminalError(row["error"] or f"{service}.{handler} failed")

        try:
            return await self._attempt(invocation_id, spec, payload, key)
        except TerminalError as exc:
            self._record_failure(invocation_id, exc, terminal=True, final=True)
            raise
        except Exception as exc:
            self._record_failure(invocation_id, exc, terminal=False, final=False)
            raise

    async def _drive(self, invocation_id: str, spec: HandlerSpec, payload: Any, key: Optional[str]) -> Any:
        def _log_retry(retry_state) -> None:
            logger.warning(
                "Invocation attempt failed; retrying",
                extra=sanitize_log_extra(
                    invocation_id=invocation_id,
                    service=spec.service,
                    handler=spec.name,
                    attempt=retry_state.attempt_number,
                    error=str(retry_state.outcome.exception()),
                ),
            )

        result: Any = None
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self._max_attempts),
                wait=wait_exponential(multiplier=self._backoff_base_seconds, max=self._backoff_max_seconds),
                retry=retry_if_not_exception_type(TerminalError),
                before_sleep=_log_retry,
                reraise=True,
            ):
                with attempt:
                    result = await self._attempt(invocation_id, spec, payload, key)
        except TerminalError as exc:
            self._record_failure(invocation_id, exc, terminal=True, final=True)
            logger.warning(
                "Invocation failed with terminal error",
                extra=sanitize_log_extra(
                    invocation_id=invocation_id,
                    service=spec.service,
                    handler=spec.name,
                    error=str(exc),
                ),
            )
            raise
        except Exception as exc:
            self._record_failure(invocation_id, exc, terminal=False, final=True)
            logger.exception(
                "Invocation failed after retries",
                extra=sanitize_log_extra(
                    invocation_id=invocation_id,
                    service=spec.service,
                    handler=spec.name,
                    attempts=self._max_attempts,
                    error=str(exc),
                ),
            )
            raise

        logger.info(
            "Invocation completed",
            extra=sanitize_log_extra(invocation_id=invocation_id, service=spec.service, handler=spec.name),
        )
        return result

    async def _attempt(self, invocation_id: str, spec: HandlerSpec, payload: Any, key: Optional[str]) -> Any:
        self._bump_attempts(invocation_id)
        journal = StepJournal(self._session_factory, invocation_id)

        if not spec.keyed:
            ctx = InvocationContext(self, invocation_id=invocation_id, journal=journal)
            result = await self._call_handler(spec, ctx, payload)
            self._mark_completed(invocation_id, result)
            return result

        if spec.kind == HANDLER_SHARED:
            shared_ctx = SharedObjectContext(
                self,
                invocation_id=invocation_id,
                journal=journal,
                key=key,
                state=self._load_state(spec.service, key),
            )
            result = await self._call_handler(spec, shared_ctx, payload)
            self._mark_completed(invocation_id, result)
            return result

        async with self._lock_for(spec.service, key):
            await self._acquire_lease(spec.service, key, invocation_id)
            completed = False
            try:
                object_ctx = ObjectContext(
                    self,
                    invocation_id=invocation_id,
                    journal=journal,
                    key=key,
                    state=self._load_state(spec.service, key),
                )
                result = await self._call_handler(spec, object_ctx, payload)
                state = object_ctx.snapshot() if object_ctx.dirty else None
                self._mark_completed(invocation_id, result, object_name=spec.service, object_key=key, state=state)
                completed = True
                return result
            finally:
                if not completed:
                    self._release_lease(spec.service, key, invocation_id)

    @staticmethod
    async def _call_handler(spec: HandlerSpec, ctx: InvocationContext, payload: Any) -> Any:
        if payload is None:
            result = await spec.fn(ctx)
        else:
            result = await spec.fn(ctx, payload)
        return ensure_json(result, what=f"Result of {spec.service}.{spec.name}")

    def _resolve(self, service: str, handler: str, key: Optional[str]) -> HandlerSpec:
        spec = self._handlers.get((service, handler))
        if spec is None:
            raise UnknownHandlerError(f"Unknown handler {service}.{handler}")
        if spec.keyed and not key:
            raise TerminalError(f"{service}.{handler} requires an object key")
        if not spec.keyed and key:
            raise TerminalError(f"{service}.{handler} is not keyed")
        return spec

    def _lock_for(self, object_name: str, key: str) -> asyncio.Lock:
        lock = self._locks.get((object_name, key))
        if lock is None:
            lock = asyncio.Lock()
            self._locks[(object_name, key)] = lock
        return lock

    async def _acquire_lease(self, object_name: str, key: str, invocation_id: str) -> None:
        """Wait until `invocation_id` holds the database lease on an object key.

        The in-process lock only orders handlers of this runtime; the lease
        orders writers across processes sharing the database.
        """

        deadline = time.monotonic() + self._lock_wait_seconds
        while not self._try_lease(object_name, key, invocation_id):
            if time.monotonic() >= deadline:
                raise ObjectLockedError(f"{object_name}/{key} is locked by another invocation")
            await asyncio.sleep(self._lock_poll_seconds)

    def _try_lease(self, object_name: str, key: str, invocation_id: str) -> bool:
        now = self.now()
        values = {"locked_by": invocation_id, "locked_until": now + self._lease}
        db = self._session_factory()
        try:
            taken = (
                db.query(ObjectState)
                .filter(
                    ObjectState.object_name == object_name,
                    ObjectState.object_key == key,
                    or_(
                        ObjectState.locked_by.is_(None),
                        ObjectState.locked_by == invocation_id,
                        ObjectState.locked_until < now,
                    ),
                )
                .update(values, synchronize_session=False)
            )
            if taken:
                db.commit()
                return True

            if db.query(ObjectState.id).filter_by(object_name=object_name, object_key=key).first() is not None:
                db.rollback()
                return False

            db.add(ObjectState(object_name=object_name, object_key=key, state={}, **values))
            try:
                db.commit()
            except IntegrityError:
                db.rollback()
                return False
            return True
        finally:
            db.close()

    def _release_lease(self, object_name: str, key: str, invocation_id: str) -> None:
        db = self._session_factory()
        try:
            row = (
                db.query(ObjectState)
                .filter_by(object_name=object_name, object_key=key, locked_by=invocation_id)
                .with_for_update()
                .first()
            )
            if row is not None:
                if row.state:
                    row.locked_by = None
                    row.locked_until = None
                else:
                    db.delete(row)
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def _insert_invocation(
        self,
        invocation_id: str,
        spec: HandlerSpec,
        payload: Any,
        *,
        key: Optional[str],
        status: str,
        run_at,
        parent_id: Optional[str] = None,
        detached: bool = True,
    ) -> dict[str, Any]:
        db = self._session_factory()
        try:
            row = db.get(Invocation, invocation_id)
            if row is None:
                row = Invocation(
                    id=invocation_id,
                    service=spec.service,
                    handler=spec.name,
                    object_key=key,
                    payload=payload,
                    status=status,
                    run_at=run_at,
                    attempts=0,
                    parent_id=parent_id,
                    detached=detached,
                )
                db.add(row)
                try:
                    db.commit()
                except IntegrityError:
                    db.rollback()
                    row = db.get(Invocation, invocation_id)
            return row.to_dict()
        finally:
            db.close()

    def _claim(self, invocation_id: str) -> Optional[dict[str, Any]]:
        db = self._session_factory()
        try:
            claimed = (
                db.query(Invocation)
                .filter(Invocation.id == invocation_id, Invocation.status == STATUS_PENDING)
                .update({"status": STATUS_RUNNING, "updated_at": self.now()}, synchronize_session=False)
            )
            db.commit()
            if not claimed:
                return None
            row = db.get(Invocation, invocation_id)
            data = row.to_dict()
            data["payload"] = row.payload
            return data
        finally:
            db.close()

    def _bump_attempts(self, invocation_id: str) -> None:
        db = self._session_factory()
        try:
            db.query(Invocation).filter(Invocation.id == invocation_id).update(
                {"attempts": Invocation.attempts + 1, "updated_at": self.now()},
                synchronize_session=False,
            )
            db.commit()
        finally:
            db.close()

    def _load_state(self, object_name: str, key: str) -> dict[str, Any]:
        db = self._session_factory()
        try:
            row = db.query(ObjectState).filter_by(object_name=object_name, object_key=key).first()
            return dict(row.state or {}) if row is not None else {}
        finally:
            db.close()

    def _mark_completed(
        self,
        invocation_id: str,
        result: Any,
        *,
        object_name: Optional[str] = None,
        object_key: Optional[str] = None,
        state: Optional[dict[str, Any]] = None,
    ) -> None:
        db = self._session_factory()
        try:
            if object_name is not None:
                row = (
                    db.query(ObjectState)
                    .filter_by(object_name=object_name, object_key=object_key, locked_by=invocation_id)
                    .with_for_update()
                    .first()
                )
                if row is None:
                    raise ObjectLockedError(f"Lease on {object_name}/{object_key} lapsed before completion")
                final_state = row.state if state is None else state
                if final_state:
                    row.state = final_state
                    row.locked_by = None
                    row.locked_until = None
                else:
                    db.delete(row)

            db.query(Invocation).filter(Invocation.id == invocation_id).update(
                {
                    "status": STATUS_COMPLETED,
                    "result": {"value": result},
                    "error": None,
                    "terminal": False,
                    "updated_at": self.now(),
                },
                synchronize_session=False,
            )
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def _record_failure(self, invocation_id: str, exc: BaseException, *, terminal: bool, final: bool) -> None:
        values: dict[str, Any] = {
            "error": f"{type(exc).__name__}: {exc}",
            "terminal": terminal,
            "updated_at": self.now(),
        }
        if final:
            values["status"] = STATUS_FAILED

        db = self._session_factory()
        try:
            db.query(Invocation).filter(Invocation.id == invocation_id).update(values, synchronize_session=False)
            if final:
                self._fail_stranded_children(db, invocation_id)
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def _fail_stranded_children(self, db: Any, parent_id: str) -> None:
        """Nested calls still running when their parent gives up are never driven again."""

        parents = [parent_id]
        while parents:
            child_ids = [
                row.id
                for row in db.query(Invocation.id)
                .filter(
                    Invocation.parent_id.in_(parents),
                    Invocation.detached.is_(False),
                    Invocation.status == STATUS_RUNNING,
                )
                .all()
            ]
            if not child_ids:
                return
            db.query(Invocation).filter(Invocation.id.in_(child_ids)).update(
                {
                    "status": STATUS_FAILED,
                    "error": f"Parent invocation {parent_id} failed",
                    "updated_at": self.now(),
                },
                synchronize_session=False,
            )
            db.query(ObjectState).filter(ObjectState.locked_by.in_(child_ids)).update(
                {"locked_by": None, "locked_until": None}, synchronize_session=False
            )
            parents = child_ids


def _as_timedelta(delay: timedelta | float | None) -> timedelta:
    if delay is None:
        return timedelta(0)
    if isinstance(delay, timedelta):
        return max(delay, timedelta(0))
    return timedelta(seconds=max(float(delay), 0.0))
