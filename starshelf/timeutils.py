"""UTC helpers shared by models, the runtime and the sync jobs."""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from dateutil import parser as date_parser


def utcnow() -> datetime:
    return datetime.now(UTC)


def as_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive values (SQLite drops tzinfo) and normalize aware ones."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def isoformat_utc(value: datetime | None) -> str | None:
    normalized = as_utc(value)
    return normalized.isoformat() if normalized is not None else None


def parse_datetime(raw: Any) -> datetime | None:
    """Parse ISO-8601 strings or pass datetimes through, always returning UTC."""
    if isinstance(raw, datetime):
        return as_utc(raw)
    if not isinstance(raw, str) or not raw.strip():
        return None
    try:
        return as_utc(date_parser.isoparse(raw.strip()))
    except (TypeError, ValueError):
        return None
