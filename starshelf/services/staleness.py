"""Probabilistic refresh policy for expensive per-repository fetches."""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Optional

from starshelf.timeutils import as_utc


def refresh_probability(
    last_updated_at: Optional[datetime],
    *,
    max_outdated: timedelta,
    now: datetime,
) -> float:
    """Chance that a cached value should be refreshed now.

    Never fetched or at least `max_outdated` old: 1.0. Otherwise the chance
    ramps linearly from 0 at age zero to 1 at the threshold.
    """

    if last_updated_at is None:
        return 1.0
    if max_outdated <= timedelta(0):
        return 1.0

    age = as_utc(now) - as_utc(last_updated_at)
    if age >= max_outdated:
        return 1.0
    if age <= timedelta(0):
        return 0.0
    return age / max_outdated


def should_refresh(
    last_updated_at: Optional[datetime],
    *,
    max_outdated: timedelta,
    now: datetime,
    draw: float,
) -> bool:
    """Decide with one draw in [0, 1) whether to refresh."""

    probability = refresh_probability(last_updated_at, max_outdated=max_outdated, now=now)
    if probability >= 1.0:
        return True
    return draw < probability
