"""Persistence for the durable runtime: invocations, step journal and object state."""

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB

from starshelf.config.database import Base
from starshelf.timeutils import isoformat_utc, utcnow

JSONType = JSON().with_variant(JSONB(), "postgresql")

STATUS_PENDING = "pending"
STATUS_RUNNING = "running"
STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"
STATUS_CANCELLED = "cancelled"

FINISHED_STATUSES = (STATUS_COMPLETED, STATUS_FAILED, STATUS_CANCELLED)


class Invocation(Base):
    """One call of a service handler, immediate or delayed."""

    __tablename__ = "invocations"

    id = Column(String(64), primary_key=True)
    service = Column(String(100), nullable=False)
    handler = Column(String(100), nullable=False)
    object_key = Column(String(200), nullable=True)
    payload = Column(JSONType, nullable=True)

    status = Column(String(20), nullable=False, default=STATUS_PENDING)
    run_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    attempts = Column(Integer, nullable=False, default=0)
    result = Column(JSONType, nullable=True)
    error = Column(Text, nullable=True)
    terminal = Column(Boolean, nullable=False, default=False)
    parent_id = Column(String(64), nullable=True, index=True)
    # False for awaited nested calls, which only run while their parent drives them.
    detached = Column(Boolean, nullable=False, default=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("idx_invocations_status_run_at", "status", "run_at"),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "service": self.service,
            "handler": self.handler,
            "key": self.object_key,
            "status": self.status,
            "run_at": isoformat_utc(self.run_at),
            "attempts": self.attempts,
            "result": (self.result or {}).get("value") if isinstance(self.result, dict) else None,
            "error": self.error,
            "terminal": bool(self.terminal),
            "parent_id": self.parent_id,
            "detached": bool(self.detached),
        }

    def __repr__(self):
        return f"<Invocation {self.service}.{self.handler} {self.id} ({self.status})>"


class JournalEntry(Base):
    """Memoized result of one named step inside an invocation."""

    __tablename__ = "journal_entries"

    id = Column(Integer, primary_key=True, autoincrement=True)
    invocation_id = Column(String(64), nullable=False, index=True)
    step_name = Column(String(500), nullable=False)
    value = Column(JSONType, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        UniqueConstraint("invocation_id", "step_name", name="uq_journal_entries_step"),
    )

    def __repr__(self):
        return f"<JournalEntry {self.invocation_id}:{self.step_name}>"


class ObjectState(Base):
    """Committed key-value state of one virtual object instance.

    `locked_by` holds the invocation currently writing the key; the lease lapses
    at `locked_until` if its holder never finishes.
    """

    __tablename__ = "object_states"

    id = Column(Integer, primary_key=True, autoincrement=True)
    object_name = Column(String(100), nullable=False)
    object_key = Column(String(200), nullable=False)
    state = Column(JSONType, nullable=False, default=dict)
    locked_by = Column(String(64), nullable=True)
    locked_until = Column(DateTime(timezone=True), nullable=True)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint("object_name", "object_key", name="uq_object_states_key"),
    )

    def __repr__(self):
        return f"<ObjectState {self.object_name}/{self.object_key}>"

