from datetime import date, datetime, timezone
from zoneinfo import ZoneInfo

import pytest

from clinic_ops.services.local_dates import (
    branch_timezone,
    coerce_tolerance_days,
    followup_window,
    local_day_bounds,
    to_local_date,
    today_local,
)

MANILA = ZoneInfo("Asia/Manila")


@pytest.mark.parametrize(
    "value,expected",
    [
        (datetime(2024, 5, 8, 15, 59, tzinfo=timezone.utc), date(2024, 5, 8)),
        (datetime(2024, 5, 8, 16, 0, tzinfo=timezone.utc), date(2024, 5, 9)),
        (datetime(2024, 5, 8, 17, 0), date(2024, 5, 9)),
        ("2024-05-08T17:00:00Z", date(2024, 5, 9)),
        ("2024-05-08", date(2024, 5, 8)),
        (date(2024, 5, 8), date(2024, 5, 8)),
    ],
)
def test_to_local_date_uses_branch_calendar(value, expected):
    assert to_local_date(value, MANILA) == expected


def test_today_local_crosses_midnight_before_utc():
    now = datetime(2024, 12, 31, 16, 30, tzinfo=timezone.utc)
    assert today_local("SI", now=now) == date(2025, 1, 1)


def test_branch_timezone_falls_back_to_app_tz():
    assert branch_timezone("SL").key == "Asia/Manila"
    assert branch_timezone(None).key == "Asia/Manila"


def test_local_day_bounds_are_utc_half_open():
    start, end = local_day_bounds(date(2024, 5, 3), MANILA)
    assert start == datetime(2024, 5, 2, 16, 0, tzinfo=timezone.utc)
    assert end == datetime(2024, 5, 3, 16, 0, tzinfo=timezone.utc)


@pytest.mark.parametrize(
    "raw,expected",
    [
        (7, 7),
        (0, 0),
        (-5, 0),
        ("3", 3),
        (2.9, 2),
        (None, 0),
        ("abc", 0),
        (float("nan"), 0),
        (float("inf"), 0),
        (True, 0),
    ],
)
def test_coerce_tolerance_days(raw, expected):
    assert coerce_tolerance_days(raw) == expected


def test_followup_window_is_symmetric():
    assert followup_window(date(2024, 2, 15), 30) == (date(2024, 1, 16), date(2024, 3, 16))
    assert followup_window(date(2024, 2, 15), -1) == (date(2024, 2, 15), date(2024, 2, 15))
