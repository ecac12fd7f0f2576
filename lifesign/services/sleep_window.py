"""Sleep window evaluation.

Pure functions over a SleepWindow and an instant. Aware instants are
converted to the family's time zone; naive ones are taken as local wall-clock
time already.
"""

from datetime import datetime, timedelta
from typing import Optional
from zoneinfo import ZoneInfo

from lifesign.schemas.family import MINUTES_PER_DAY, SleepWindow

DAY_NAMES = ["월", "화", "수", "목", "금", "토", "일"]


def _local(now: datetime, tz: Optional[ZoneInfo]) -> datetime:
    if tz is not None and now.tzinfo is not None:
        return now.astimezone(tz)
    return now


def minute_in_window(minute: int, window: SleepWindow) -> bool:
    """Whether a minute-of-day lies inside the window's time range."""
    if window.crosses_midnight:
        # e.g. 22:00 - 06:00
        return minute >= window.start_minute or minute <= window.end_minute
    return window.start_minute <= minute <= window.end_minute


def is_suppressed(now: datetime, window: Optional[SleepWindow], tz: Optional[ZoneInfo] = None) -> bool:
    """Whether monitoring is paused at ``now``."""
    if window is None or not window.enabled:
        return False

    local = _local(now, tz)
    if local.isoweekday() not in window.active_weekdays:
        return False

    return minute_in_window(local.hour * 60 + local.minute, window)


def time_until_window_ends(
    now: datetime, window: Optional[SleepWindow], tz: Optional[ZoneInfo] = None
) -> Optional[timedelta]:
    """Time left in the current sleep window, or None when not suppressed."""
    if not is_suppressed(now, window, tz):
        return None

    local = _local(now, tz)
    minute = local.hour * 60 + local.minute
    remaining = window.end_minute - minute
    if remaining < 0:
        # Overnight window, before midnight: ends tomorrow
        remaining += MINUTES_PER_DAY
    return timedelta(minutes=remaining)


def describe(window: Optional[SleepWindow]) -> str:
    """Short human-readable schedule, e.g. '매일 22:00 - 06:00'."""
    if window is None or not window.enabled:
        return "수면 시간 제외 비활성화됨"

    start = f"{window.start_minute // 60:02d}:{window.start_minute % 60:02d}"
    end = f"{window.end_minute // 60:02d}:{window.end_minute % 60:02d}"
    if len(window.active_weekdays) == 7:
        return f"매일 {start} - {end}"
    days = ", ".join(DAY_NAMES[d - 1] for d in window.active_weekdays)
    return f"{days} {start} - {end}"
