"""Cron expression evaluation.

Pure functions over five-field cron expressions (minute, hour,
day-of-month, month, day-of-week) and IANA timezone names. Next-run
computation is delegated to croniter, evaluated in the schedule's own
timezone and returned in UTC.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from croniter import croniter

from queuepilot.core.errors import ValidationError

_DAYS = ["Sunday", "Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday"]
_MONTHS = ["", "January", "February", "March", "April", "May", "June",
           "July", "August", "September", "October", "November", "December"]


@dataclass
class CronValidation:
    valid: bool
    error: Optional[str] = None


def validate(expression: str) -> CronValidation:
    """Check a cron expression without raising."""
    if not isinstance(expression, str) or not expression.strip():
        return CronValidation(False, "Cron expression is empty")
    parts = expression.split()
    if len(parts) != 5:
        return CronValidation(False, f"Expected 5 fields, got {len(parts)}")
    try:
        croniter(expression)
    except (ValueError, KeyError) as exc:
        return CronValidation(False, f"Invalid cron expression: {exc}")
    return CronValidation(True)


def get_zone(tz_name: Optional[str]) -> ZoneInfo:
    """Resolve an IANA timezone name, raising ``ValidationError`` when unknown."""
    name = tz_name or "UTC"
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ValidationError(f"Unknown timezone: {name}") from exc


def next_run_time(expression: str, tz_name: str = "UTC", after: Optional[datetime] = None) -> datetime:
    """Return the first fire time strictly after *after* (default: now), in UTC."""
    result = validate(expression)
    if not result.valid:
        raise ValidationError(result.error or "Invalid cron expression")
    zone = get_zone(tz_name)
    base = after or datetime.now(timezone.utc)
    if base.tzinfo is None:
        base = base.replace(tzinfo=timezone.utc)
    local_base = base.astimezone(zone)
    nxt = croniter(expression, local_base).get_next(datetime)
    if nxt.tzinfo is None:
        nxt = nxt.replace(tzinfo=zone)
    nxt = nxt.astimezone(timezone.utc)
    # croniter works at minute granularity; guard the strict ordering
    if nxt <= base:
        nxt = croniter(expression, nxt.astimezone(zone)).get_next(datetime).astimezone(timezone.utc)
    return nxt


def next_run_times(expression: str, tz_name: str = "UTC", after: Optional[datetime] = None, count: int = 5) -> list[datetime]:
    times: list[datetime] = []
    cursor = after
    for _ in range(max(0, count)):
        cursor = next_run_time(expression, tz_name, cursor)
        times.append(cursor)
    return times


def _name(value: str, names: list[str]) -> str:
    try:
        return names[int(value) % len(names)] if names is _DAYS else names[int(value)]
    except (ValueError, IndexError):
        return value


def _names(field_value: str, names: list[str]) -> str:
    if "-" in field_value and "," not in field_value and "/" not in field_value:
        start, _, end = field_value.partition("-")
        return f"{_name(start, names)} to {_name(end, names)}"
    return ", ".join(_name(v, names) for v in field_value.split(","))


def describe(expression: str) -> str:
    """Human-readable summary of a cron expression."""
    if not validate(expression).valid:
        return "Invalid expression"
    minute, hour, day_of_month, month, day_of_week = expression.split()

    if (minute, hour, day_of_month, month, day_of_week) == ("0", "*", "*", "*", "*"):
        return "Every hour at minute 0"
    if (minute, hour, day_of_month, month, day_of_week) == ("0", "0", "*", "*", "*"):
        return "Every day at midnight"
    if (minute, hour, day_of_month, month, day_of_week) == ("0", "9", "*", "*", "1-5"):
        return "Weekdays at 9:00 AM"
    if (minute, hour, day_of_month, month, day_of_week) == ("0", "9", "*", "*", "1"):
        return "Every Monday at 9:00 AM"

    if minute == "*" and hour == "*":
        desc = "Every minute"
    elif minute.startswith("*/") and hour == "*":
        desc = f"Every {minute[2:]} minutes"
    elif minute == "*":
        desc = f"Every minute of hour {hour}"
    elif hour == "*":
        desc = f"Every hour at minute {minute}"
    elif hour.startswith("*/"):
        desc = f"Every {hour[2:]} hours at minute {minute}"
    elif minute.isdigit() and hour.isdigit():
        desc = f"At {int(hour)}:{minute.zfill(2)}"
    else:
        desc = f"At minute {minute} of hour {hour}"

    if day_of_week != "*":
        joined = _names(day_of_week, _DAYS)
        desc += f" {joined}" if " to " in joined else f" on {joined}"
    if day_of_month != "*":
        desc += f" on day {day_of_month}"
    if month != "*":
        desc += f" in {_names(month, _MONTHS)}"
    return desc
