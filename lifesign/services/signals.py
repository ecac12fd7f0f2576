"""Device liveness signals: activity, location and meal reports.

Writes are throttled against the stored record so chatty devices do not
hammer the store. A DeviceSession carries per-launch state (whether the
launch baseline was written) instead of a process-wide flag.
"""

import logging
import math
import secrets
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional
from zoneinfo import ZoneInfo

from lifesign.config import settings
from lifesign.models.family import Family
from lifesign.services.family_store import FamilyStore
from lifesign.utils.clock import as_utc, utcnow

logger = logging.getLogger(__name__)

EARTH_RADIUS_M = 6_371_000.0


def distance_m(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance (haversine)."""
    d_lat = math.radians(lat2 - lat1)
    d_lon = math.radians(lon2 - lon1)
    a = (
        math.sin(d_lat / 2) ** 2
        + math.cos(math.radians(lat1)) * math.cos(math.radians(lat2)) * math.sin(d_lon / 2) ** 2
    )
    return 2 * EARTH_RADIUS_M * math.asin(math.sqrt(a))


def local_date(at: datetime, tz_name: str) -> str:
    return at.astimezone(ZoneInfo(tz_name)).date().isoformat()


def meals_today(family: Family, now: Optional[datetime] = None) -> int:
    """Meals counted for the family's current local day."""
    today = local_date(now or utcnow(), family.timezone)
    return family.meals_today if family.meals_date == today else 0


@dataclass
class DeviceSession:
    family_id: str
    id: str = field(default_factory=lambda: f"ses_{secrets.token_hex(6)}")
    started_at: datetime = field(default_factory=utcnow)
    baseline_sent: bool = False


class SessionRegistry:
    """Live device sessions, created at app launch and dropped at exit."""

    def __init__(self):
        self._sessions: dict[str, DeviceSession] = {}
        self._lock = threading.Lock()

    def open(self, family_id: str) -> DeviceSession:
        session = DeviceSession(family_id=family_id)
        with self._lock:
            self._sessions[session.id] = session
        return session

    def get(self, session_id: str) -> Optional[DeviceSession]:
        with self._lock:
            return self._sessions.get(session_id)

    def close(self, session_id: str) -> bool:
        with self._lock:
            return self._sessions.pop(session_id, None) is not None


@dataclass
class SignalResult:
    written: bool
    reason: str


@dataclass
class MealResult(SignalResult):
    meal_number: Optional[int] = None  # 1-based count for the local day
    at: Optional[datetime] = None


class SignalRecorder:
    def __init__(
        self,
        store: FamilyStore,
        activity_interval: Optional[float] = None,
        location_min_distance: Optional[float] = None,
        location_min_interval: Optional[float] = None,
        max_meals_per_day: Optional[int] = None,
    ):
        self.store = store
        self.activity_interval = timedelta(
            seconds=activity_interval if activity_interval is not None else settings.activity_write_interval_seconds
        )
        self.location_min_distance = (
            location_min_distance if location_min_distance is not None else settings.location_min_distance_m
        )
        self.location_min_interval = timedelta(
            seconds=location_min_interval if location_min_interval is not None else settings.location_min_interval_seconds
        )
        self.max_meals_per_day = max_meals_per_day or settings.max_meals_per_day

    def record_activity(
        self,
        family_id: str,
        at: Optional[datetime] = None,
        kind: str = "screen_on",
        session: Optional[DeviceSession] = None,
        force: bool = False,
    ) -> SignalResult:
        at = as_utc(at) or utcnow()
        family = self.store.require(family_id)
        last = as_utc(family.last_activity_at)

        if last is not None and at <= last:
            return SignalResult(False, "stale")

        baseline = session is not None and not session.baseline_sent
        if not (force or baseline or family.alert_active or last is None):
            if at - last < self.activity_interval:
                return SignalResult(False, "batched")

        self.store.update(family_id, last_activity_at=at, last_activity_type=kind)
        if baseline:
            session.baseline_sent = True
        logger.debug("Activity recorded for %s at %s (%s)", family_id, at.isoformat(), kind)
        return SignalResult(True, "baseline" if baseline else "recorded")

    def record_location(
        self,
        family_id: str,
        lat: float,
        lon: float,
        at: Optional[datetime] = None,
        force: bool = False,
    ) -> SignalResult:
        at = as_utc(at) or utcnow()
        family = self.store.require(family_id)
        last_at = as_utc(family.last_location_at)

        if not force and family.last_location_lat is not None and last_at is not None:
            if at <= last_at:
                return SignalResult(False, "stale")
            moved = distance_m(family.last_location_lat, family.last_location_lon, lat, lon)
            if moved < self.location_min_distance and at - last_at < self.location_min_interval:
                return SignalResult(False, "throttled")

        self.store.update(
            family_id,
            last_location_lat=lat,
            last_location_lon=lon,
            last_location_at=at,
        )
        logger.debug("Location recorded for %s: %.5f, %.5f", family_id, lat, lon)
        return SignalResult(True, "recorded")

    def record_meal(self, family_id: str, at: Optional[datetime] = None) -> MealResult:
        """Count a meal for the family's local day and clear any food alert.

        A day holds at most ``max_meals_per_day`` meals; further reports are
        refused with reason ``daily_limit``.
        """
        at = as_utc(at) or utcnow()
        while True:
            family = self.store.require(family_id)
            last = as_utc(family.last_meal_at)
            if last is not None and at <= last:
                return MealResult(False, "stale")

            day = local_date(at, family.timezone)
            count = family.meals_today if family.meals_date == day else 0
            if count >= self.max_meals_per_day:
                return MealResult(False, "daily_limit", count)

            updated = self.store.compare_and_set(
                family_id,
                family.version,
                last_meal_at=at,
                meals_today=count + 1,
                meals_date=day,
                food_alert_active=False,
            )
            if updated is not None:
                break

        logger.info("Meal %d recorded for %s on %s", count + 1, family_id, day)
        return MealResult(True, "recorded", count + 1, at)
