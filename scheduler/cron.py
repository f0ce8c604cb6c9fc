"""Schedule arithmetic for cron, interval and one-shot tasks.

schedule_value meaning per schedule_type:

    "cron"      5-field cron expression, evaluated in the scheduler timezone
                ("0 9 * * 1-5" -> weekdays at 9am)
    "interval"  milliseconds between runs ("3600000" -> hourly)
    "once"      ISO-8601 timestamp ("2025-06-01T09:00:00Z")

All returned datetimes are timezone-aware UTC.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from croniter import croniter

from core.models.tasks import ScheduleType


class ScheduleError(ValueError):
    """Invalid schedule_type / schedule_value combination."""


def get_timezone(name: str) -> ZoneInfo:
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ScheduleError(f"Unknown timezone: {name!r}") from exc


def parse_interval_ms(value: str) -> int:
    try:
        ms = int(str(value).strip())
    except ValueError as exc:
        raise ScheduleError(f"Invalid interval: {value!r}") from exc
    if ms <= 0:
        raise ScheduleError(f"Interval must be positive: {value!r}")
    return ms


def parse_timestamp(value: str) -> datetime:
    """Parse an ISO timestamp. Naive values are taken as UTC."""
    try:
        dt = datetime.fromisoformat(str(value).strip().replace("Z", "+00:00"))
    except ValueError as exc:
        raise ScheduleError(f"Invalid timestamp: {value!r}") from exc
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def validate_schedule(schedule_type: ScheduleType | str, value: str) -> None:
    """Raise ScheduleError unless `value` is valid for `schedule_type`."""
    if schedule_type == "cron":
        if len(str(value).split()) != 5 or not croniter.is_valid(value):
            raise ScheduleError(f"Invalid cron expression: {value!r}")
    elif schedule_type == "interval":
        parse_interval_ms(value)
    elif schedule_type == "once":
        parse_timestamp(value)
    else:
        raise ScheduleError(f"Unknown schedule type: {schedule_type!r}")


def _next_cron(expression: str, now: datetime, tz: str) -> datetime:
    validate_schedule("cron", expression)
    local_now = _aware(now).astimezone(get_timezone(tz))
    nxt = croniter(expression, local_now).get_next(datetime)
    return nxt.astimezone(timezone.utc)


def _aware(dt: datetime) -> datetime:
    return dt if dt.tzinfo is not None else dt.replace(tzinfo=timezone.utc)


def first_run(
    schedule_type: ScheduleType | str,
    value: str,
    now: datetime,
    tz: str = "UTC",
) -> datetime:
    """When a newly created task should first fire."""
    if schedule_type == "once":
        return parse_timestamp(value)
    if schedule_type == "interval":
        return _aware(now).astimezone(timezone.utc) + timedelta(milliseconds=parse_interval_ms(value))
    if schedule_type == "cron":
        return _next_cron(value, now, tz)
    raise ScheduleError(f"Unknown schedule type: {schedule_type!r}")


def next_run(
    schedule_type: ScheduleType | str,
    value: str,
    now: datetime,
    tz: str = "UTC",
) -> datetime | None:
    """When a task should fire again after running at `now`.

    Computed from the completion time, not the previous schedule slot, so
    missed slots are never replayed. None means the task is finished.
    """
    if schedule_type == "once":
        return None
    return first_run(schedule_type, value, now, tz)
