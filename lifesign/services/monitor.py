"""Survival monitoring.

Each tick evaluates every opted-in family against its inactivity threshold.
Alert state changes are compare-and-set against the family's version so
overlapping ticks never double-raise; notifications go out only after the
raised state is persisted.
"""

import logging
import math
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional
from zoneinfo import ZoneInfo

from apscheduler.schedulers.background import BackgroundScheduler

from lifesign.config import settings
from lifesign.models.family import Family
from lifesign.schemas.family import FamilySettings, Location
from lifesign.services.code_registry import CodeRegistry
from lifesign.services.family_store import FamilyStore
from lifesign.services.notifier import FOOD_ALERT, SURVIVAL_ALERT, FanoutResult, Notifier
from lifesign.services.sleep_window import is_suppressed
from lifesign.utils.clock import as_utc, utcnow

logger = logging.getLogger(__name__)

HOUR_SECONDS = 3600


class Outcome(str, Enum):
    NO_BASELINE = "no_baseline"
    ACTIVE = "active"
    SUPPRESSED = "suppressed"
    ALREADY_ACTIVE = "already_active"
    RAISED = "raised"
    CLEARED = "cleared"
    CONFLICT = "conflict"
    MISSING = "missing"
    FAILED = "failed"


@dataclass
class Evaluation:
    family_id: str
    outcome: Outcome
    hours_inactive: Optional[int] = None
    fanout: Optional[FanoutResult] = None
    food_outcome: Optional[Outcome] = None


@dataclass
class TickReport:
    now: datetime
    evaluations: list[Evaluation] = field(default_factory=list)

    def count(self, outcome: Outcome) -> int:
        return sum(1 for e in self.evaluations if e.outcome == outcome)

    @property
    def outcomes(self) -> dict[str, str]:
        return {e.family_id: e.outcome.value for e in self.evaluations}

    @property
    def food_raised(self) -> int:
        return sum(1 for e in self.evaluations if e.food_outcome == Outcome.RAISED)


def family_settings(family: Family) -> FamilySettings:
    """Validated settings view; raises on malformed stored values."""
    return FamilySettings(
        monitoring_enabled=family.monitoring_enabled,
        alert_threshold_hours=family.alert_threshold_hours,
        sleep_window=family.sleep_window,
        timezone=family.timezone,
        food_alert_hours=family.food_alert_hours,
    )


def last_location(family: Family) -> Optional[Location]:
    if family.last_location_lat is None or family.last_location_lon is None:
        return None
    return Location(
        lat=family.last_location_lat,
        lon=family.last_location_lon,
        at=as_utc(family.last_location_at),
    )


def inactive_hours(family: Family, now: datetime) -> Optional[float]:
    if family.last_activity_at is None:
        return None
    return (now - as_utc(family.last_activity_at)).total_seconds() / HOUR_SECONDS


class SurvivalMonitor:
    def __init__(
        self,
        store: FamilyStore,
        notifier: Notifier,
        registry: Optional[CodeRegistry] = None,
        concurrency: Optional[int] = None,
    ):
        self.store = store
        self.notifier = notifier
        self.registry = registry
        self.concurrency = concurrency or settings.monitor_concurrency

    def tick(self, now: Optional[datetime] = None) -> TickReport:
        """Evaluate every monitored family once.

        Failing to list families is surfaced; failures inside one family
        are logged and reported as FAILED for that family only.
        """
        now = as_utc(now) or utcnow()
        if self.registry is not None:
            try:
                self.registry.purge_expired(now)
            except Exception:
                logger.exception("Purging expired codes failed")

        families = self.store.list_monitored()
        report = TickReport(now=now)
        if not families:
            return report

        logger.info("Checking %d monitored family(ies)", len(families))
        with ThreadPoolExecutor(
            max_workers=min(len(families), self.concurrency),
            thread_name_prefix="monitor",
        ) as pool:
            futures = [pool.submit(self._evaluate_safely, family.id, now) for family in families]
            report.evaluations = [f.result() for f in futures]

        logger.info(
            "Survival check done: raised=%d cleared=%d suppressed=%d failed=%d food_raised=%d",
            report.count(Outcome.RAISED), report.count(Outcome.CLEARED),
            report.count(Outcome.SUPPRESSED), report.count(Outcome.FAILED), report.food_raised,
        )
        return report

    def _evaluate_safely(self, family_id: str, now: datetime) -> Evaluation:
        try:
            evaluation = self.evaluate(family_id, now)
        except Exception:
            logger.exception("Survival check failed for family %s", family_id)
            return Evaluation(family_id=family_id, outcome=Outcome.FAILED)
        try:
            evaluation.food_outcome = self.evaluate_food(family_id, now)
        except Exception:
            logger.exception("Meal check failed for family %s", family_id)
            evaluation.food_outcome = Outcome.FAILED
        return evaluation

    def evaluate(self, family_id: str, now: datetime) -> Evaluation:
        family = self.store.get(family_id)
        if family is None or not family.monitoring_enabled:
            return Evaluation(family_id=family_id, outcome=Outcome.MISSING)

        config = family_settings(family)
        hours = inactive_hours(family, now)
        if hours is None:
            logger.info("Family %s (%s) has no activity baseline yet", family.id, family.subject_name)
            return Evaluation(family_id=family_id, outcome=Outcome.NO_BASELINE)

        whole_hours = math.floor(hours)
        logger.debug(
            "Family %s: %.1fh since last activity (threshold %dh)",
            family.id, hours, config.alert_threshold_hours,
        )

        if hours > config.alert_threshold_hours:
            if is_suppressed(now, config.sleep_window, ZoneInfo(config.timezone)):
                logger.info("Family %s is inside its sleep window, evaluation paused", family.id)
                return Evaluation(family_id, Outcome.SUPPRESSED, whole_hours)
            if family.alert_active:
                return Evaluation(family_id, Outcome.ALREADY_ACTIVE, whole_hours)
            return self._raise(family, whole_hours, now)

        if family.alert_active:
            return self._clear(family, whole_hours, now)
        return Evaluation(family_id, Outcome.ACTIVE, whole_hours)

    def _raise(self, family: Family, hours: int, now: datetime) -> Evaluation:
        updated = self.store.compare_and_set(
            family.id,
            family.version,
            alert_active=True,
            alert_raised_at=now,
            alert_hours_inactive=hours,
            alert_cleared_at=None,
        )
        if updated is None:
            logger.info("Family %s changed during evaluation, skipping", family.id)
            return Evaluation(family.id, Outcome.CONFLICT, hours)

        logger.warning("SURVIVAL ALERT: %s (%s) inactive for %dh", family.subject_name, family.id, hours)
        location = last_location(updated)
        payload = {
            "hours_inactive": hours,
            "location": location.model_dump(mode="json") if location else None,
        }
        try:
            fanout = self.notifier.notify_family(updated, SURVIVAL_ALERT, payload)
        except Exception:
            # Alert stays active; the next tick will not resend
            logger.exception("Survival notification failed for family %s", family.id)
            fanout = None
        return Evaluation(family.id, Outcome.RAISED, hours, fanout)

    def _clear(self, family: Family, hours: int, now: datetime) -> Evaluation:
        updated = self.store.compare_and_set(
            family.id,
            family.version,
            alert_active=False,
            alert_cleared_at=now,
        )
        if updated is None:
            return Evaluation(family.id, Outcome.CONFLICT, hours)
        logger.info("Cleared survival alert for %s (%s)", family.subject_name, family.id)
        return Evaluation(family.id, Outcome.CLEARED, hours)

    def evaluate_food(self, family_id: str, now: datetime) -> Outcome:
        """Raise a food alert once the last meal is older than the family's limit.

        Uses the same sleep window as the survival check. Recording a meal
        clears the alert, so there is no clearing path here.
        """
        family = self.store.get(family_id)
        if family is None or not family.monitoring_enabled:
            return Outcome.MISSING
        if family.last_meal_at is None:
            return Outcome.NO_BASELINE

        config = family_settings(family)
        hours = (now - as_utc(family.last_meal_at)).total_seconds() / HOUR_SECONDS
        if hours <= config.food_alert_hours:
            return Outcome.ACTIVE
        if is_suppressed(now, config.sleep_window, ZoneInfo(config.timezone)):
            return Outcome.SUPPRESSED
        if family.food_alert_active:
            return Outcome.ALREADY_ACTIVE

        whole_hours = math.floor(hours)
        updated = self.store.compare_and_set(
            family.id,
            family.version,
            food_alert_active=True,
            food_alert_raised_at=now,
        )
        if updated is None:
            return Outcome.CONFLICT

        logger.warning("FOOD ALERT: %s (%s) without a meal for %dh", family.subject_name, family.id, whole_hours)
        try:
            self.notifier.notify_family(updated, FOOD_ALERT, {"hours_without_food": whole_hours})
        except Exception:
            logger.exception("Food notification failed for family %s", family.id)
        return Outcome.RAISED

    def resend_alert(self, family_id: str) -> FanoutResult:
        """Operator-triggered resend of an active alert. Alert state is untouched."""
        family = self.store.require(family_id)
        if not family.alert_active:
            raise ValueError(f"No active alert for family {family_id}")
        location = last_location(family)
        return self.notifier.notify_family(family, SURVIVAL_ALERT, {
            "hours_inactive": family.alert_hours_inactive,
            "location": location.model_dump(mode="json") if location else None,
        })


class MonitorWorker:
    """Runs the monitor tick as an APScheduler interval job."""

    JOB_ID = "survival-tick"

    def __init__(
        self,
        monitor: SurvivalMonitor,
        interval: Optional[float] = None,
        max_instances: Optional[int] = None,
    ):
        self.monitor = monitor
        self.interval = interval or settings.tick_interval_seconds
        self.max_instances = max_instances or settings.monitor_max_overlapping_ticks
        self.scheduler: Optional[BackgroundScheduler] = None
        self.last_report: Optional[TickReport] = None

    def start(self) -> None:
        if self.running:
            return
        # A shut down scheduler cannot be started again
        self.scheduler = BackgroundScheduler(timezone="UTC")
        self.scheduler.add_job(
            self._run_tick,
            "interval",
            seconds=self.interval,
            id=self.JOB_ID,
            max_instances=self.max_instances,
            coalesce=True,
            next_run_time=utcnow(),
        )
        self.scheduler.start()
        logger.info("Survival monitor started (every %ss)", self.interval)

    def stop(self) -> None:
        if self.running:
            self.scheduler.shutdown(wait=True)
        logger.info("Survival monitor stopped")

    @property
    def running(self) -> bool:
        return self.scheduler is not None and self.scheduler.running

    def _run_tick(self) -> None:
        try:
            self.last_report = self.monitor.tick()
        except Exception as e:
            logger.error("Survival tick failed: %s", e)
