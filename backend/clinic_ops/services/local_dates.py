"""Calendar-date helpers for branch-local "today", due dates and windows.

Every value that leaves this module is a plain ``date``; instants are only
accepted as inputs and are converted with an explicit timezone so a visit
at 23:30 local time is never filed under the next UTC day.
"""
from __future__ import annotations

import math
from datetime import date, datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo

from clinic_ops.core.settings import settings


def branch_timezone(branch: str | None = None) -> ZoneInfo:
    code = (branch or "").strip().upper()
    name = settings.branch_timezones.get(code) or settings.app_tz
    return ZoneInfo(name)


def to_local_date(value: datetime | date | str, tz: ZoneInfo) -> date:
    if isinstance(value, str):
        raw = value.strip()
        if len(raw) == 10:
            return date.fromisoformat(raw)
        value = datetime.fromisoformat(raw.replace("Z", "+00:00"))
    if isinstance(value, datetime):
        if value.tzinfo is None:
            # Stored instants without an offset are UTC.
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(tz).date()
    return value


def today_local(branch: str | None = None, *, now: datetime | None = None) -> date:
    return to_local_date(now or datetime.now(timezone.utc), branch_timezone(branch))


def local_day_bounds(day: date, tz: ZoneInfo) -> tuple[datetime, datetime]:
    """UTC [start, end) instants covering ``day`` in ``tz``."""
    start = datetime.combine(day, time.min, tzinfo=tz).astimezone(timezone.utc)
    end = datetime.combine(day + timedelta(days=1), time.min, tzinfo=tz).astimezone(timezone.utc)
    return start, end


def add_days(day: date, days: int) -> date:
    return day + timedelta(days=days)


def coerce_tolerance_days(value: object) -> int:
    if isinstance(value, bool) or value is None:
        return 0
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0
    if not math.isfinite(number):
        return 0
    return max(0, int(number))


def followup_window(due_date: date, tolerance_days: object) -> tuple[date, date]:
    tolerance = coerce_tolerance_days(tolerance_days)
    return add_days(due_date, -tolerance), add_days(due_date, tolerance)
