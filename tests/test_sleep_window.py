"""Sleep window evaluation tests."""

from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo

import pytest

from lifesign.schemas.family import SleepWindow
from lifesign.services.sleep_window import describe, is_suppressed, time_until_window_ends

SEOUL = ZoneInfo("Asia/Seoul")
MONDAY = datetime(2024, 3, 4)  # naive local wall-clock time


def overnight(**kwargs) -> SleepWindow:
    return SleepWindow(enabled=True, start_minute=22 * 60, end_minute=6 * 60, **kwargs)


def brute_force(local: datetime, window: SleepWindow) -> bool:
    """Reference check that expands the window into explicit minute sets."""
    if not window.enabled or local.isoweekday() not in window.active_weekdays:
        return False
    minute = local.hour * 60 + local.minute
    if window.start_minute <= window.end_minute:
        covered = set(range(window.start_minute, window.end_minute + 1))
    else:
        covered = set(range(window.start_minute, 24 * 60)) | set(range(0, window.end_minute + 1))
    return minute in covered


WINDOWS = [
    SleepWindow(enabled=False),
    overnight(),
    overnight(active_weekdays=[6, 7]),
    SleepWindow(enabled=True, start_minute=13 * 60, end_minute=14 * 60 + 30),
    SleepWindow(enabled=True, start_minute=23 * 60 + 45, end_minute=15, active_weekdays=[1, 3, 5]),
    SleepWindow(enabled=True, start_minute=0, end_minute=0),
    SleepWindow(enabled=True, start_minute=9 * 60, end_minute=9 * 60, active_weekdays=[]),
]


@pytest.mark.parametrize("window", WINDOWS)
def test_agrees_with_enumeration_over_a_week(window):
    for step in range(7 * 24 * 4):
        local = MONDAY + timedelta(minutes=15 * step)
        assert is_suppressed(local, window) == brute_force(local, window), local


@pytest.mark.parametrize("window", WINDOWS)
def test_window_boundaries(window):
    for day in range(7):
        base = MONDAY + timedelta(days=day)
        for minute in (window.start_minute - 1, window.start_minute, window.end_minute, window.end_minute + 1):
            if 0 <= minute < 24 * 60:
                local = base + timedelta(minutes=minute)
                assert is_suppressed(local, window) == brute_force(local, window), local


def test_overnight_window():
    window = overnight()
    assert is_suppressed(MONDAY.replace(hour=23, minute=30), window)
    assert is_suppressed(MONDAY.replace(hour=5), window)
    assert not is_suppressed(MONDAY.replace(hour=12), window)


def test_disabled_or_missing_window():
    assert not is_suppressed(MONDAY.replace(hour=23), None)
    assert not is_suppressed(MONDAY.replace(hour=23), SleepWindow(enabled=False, start_minute=0, end_minute=1439))


def test_weekday_filter():
    window = overnight(active_weekdays=[6, 7])
    saturday = MONDAY + timedelta(days=5)
    assert is_suppressed(saturday.replace(hour=23), window)
    assert not is_suppressed(MONDAY.replace(hour=23), window)


def test_aware_instant_uses_family_timezone():
    window = overnight()
    # 14:30 UTC is 23:30 in Seoul
    instant = datetime(2024, 3, 4, 14, 30, tzinfo=timezone.utc)
    assert is_suppressed(instant, window, SEOUL)
    assert not is_suppressed(instant, window, ZoneInfo("UTC"))


def test_time_until_window_ends():
    window = overnight()
    assert time_until_window_ends(MONDAY.replace(hour=23), window) == timedelta(hours=7)
    assert time_until_window_ends(MONDAY.replace(hour=5, minute=30), window) == timedelta(minutes=30)
    assert time_until_window_ends(MONDAY.replace(hour=12), window) is None


def test_weekdays_are_normalized():
    window = SleepWindow(enabled=True, active_weekdays=[3, 1, 3])
    assert window.active_weekdays == [1, 3]
    with pytest.raises(ValueError):
        SleepWindow(active_weekdays=[0])


def test_describe():
    assert describe(overnight()) == "매일 22:00 - 06:00"
    assert describe(overnight(active_weekdays=[6, 7])) == "토, 일 22:00 - 06:00"
    assert describe(None) == "수면 시간 제외 비활성화됨"
