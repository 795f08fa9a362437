"""Five-field cron evaluation in UTC on top of APScheduler's cron trigger."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

from apscheduler.triggers.cron import CronTrigger

from starshelf.timeutils import as_utc

# Standard cron numbers days of week from Sunday (0 and 7); APScheduler numbers
# them from Monday, so numeric fields are rewritten to names before parsing.
_CRON_WEEKDAYS = ("sun", "mon", "tue", "wed", "thu", "fri", "sat", "sun")


class InvalidCronExpression(ValueError):
    """Raised when an expression is not a valid five-field cron schedule."""


def parse_cron(expression: str) -> list[CronTrigger]:
    """Build the triggers whose union is the schedule.

    Cron fires on either day field when both day-of-month and day-of-week are
    restricted, while a single `CronTrigger` requires both to match. That case
    becomes two triggers, one per day field.
    """

    if not isinstance(expression, str) or not expression.strip():
        raise InvalidCronExpression("cron expression is empty")

    fields = expression.split()
    if len(fields) != 5:
        raise InvalidCronExpression(f"expected 5 fields, got {len(fields)} in {expression!r}")

    minute, hour, day, month, day_of_week = fields
    weekdays = _normalize_day_of_week(day_of_week)
    if _is_restricted(day) and _is_restricted(day_of_week):
        day_fields = [(day, "*"), ("*", weekdays)]
    else:
        day_fields = [(day, weekdays)]

    try:
        return [
            CronTrigger(
                minute=minute,
                hour=hour,
                day=day_value,
                month=month,
                day_of_week=day_of_week_value,
                timezone=UTC,
            )
            for day_value, day_of_week_value in day_fields
        ]
    except ValueError as exc:
        raise InvalidCronExpression(f"{expression!r}: {exc}") from exc


def next_occurrence(expression: str, after: datetime) -> datetime:
    """First fire time strictly after `after`, in UTC."""

    start = as_utc(after) + timedelta(microseconds=1)
    fire_times = [
        fire_time
        for fire_time in (trigger.get_next_fire_time(None, start) for trigger in parse_cron(expression))
        if fire_time is not None
    ]
    if not fire_times:
        raise InvalidCronExpression(f"{expression!r} has no future occurrence")
    return min(fire_times).astimezone(UTC)


def _is_restricted(field: str) -> bool:
    return not (field.startswith("*") or field == "?")


def _normalize_day_of_week(field: str) -> str:
    if field in ("*", "?"):
        return "*"

    names: list[str] = []
    for part in field.split(","):
        base, _, step = part.partition("/")
        if step and not step.isdigit():
            raise InvalidCronExpression(f"invalid day-of-week step {part!r}")

        if base == "*":
            start, end = 0, 6
        elif "-" in base:
            low, _, high = base.partition("-")
            if not (low.isdigit() and high.isdigit()):
                names.append(part.lower())
                continue
            start, end = int(low), int(high)
        elif base.isdigit():
            start = int(base)
            end = 6 if step else start
        else:
            names.append(part.lower())
            continue

        if start > 7 or end > 7 or start > end:
            raise InvalidCronExpression(f"invalid day-of-week range {part!r}")
        stride = int(step) if step else 1
        if stride < 1:
            raise InvalidCronExpression(f"invalid day-of-week step {part!r}")
        names.extend(_CRON_WEEKDAYS[day] for day in range(start, end + 1, stride))

    return ",".join(dict.fromkeys(names))
