"""Survival monitoring API endpoints."""

from typing import Optional
from zoneinfo import ZoneInfo

from fastapi import APIRouter, Depends, HTTPException, status

from lifesign.api.deps import get_family, http_error, notifier, survival_monitor
from lifesign.errors import LifeSignError
from lifesign.models.family import Family
from lifesign.schemas.monitoring import (
    FanoutResponse,
    MonitoringStatusResponse,
    RecipientResultResponse,
    TickRequest,
    TickResponse,
)
from lifesign.services.monitor import Outcome, family_settings, inactive_hours
from lifesign.services.notifier import TEST_MESSAGE, FanoutResult
from lifesign.services.sleep_window import describe, is_suppressed, time_until_window_ends
from lifesign.utils.clock import utcnow

router = APIRouter(tags=["monitoring"])


def fanout_response(result: FanoutResult) -> FanoutResponse:
    return FanoutResponse(
        sent=result.sent,
        total=result.total,
        per_recipient=[
            RecipientResultResponse(token=r.token, success=r.success, error=r.error)
            for r in result.per_recipient
        ],
    )


@router.post("/monitoring/tick", response_model=TickResponse)
def run_tick(request: Optional[TickRequest] = None):
    """Evaluate all monitored families now (external scheduler trigger)."""
    now = request.now if request and request.now else None
    try:
        report = survival_monitor.tick(now)
    except LifeSignError as e:
        raise http_error(e)
    return TickResponse(
        evaluated=len(report.evaluations),
        raised=report.count(Outcome.RAISED),
        cleared=report.count(Outcome.CLEARED),
        suppressed=report.count(Outcome.SUPPRESSED),
        failed=report.count(Outcome.FAILED),
        food_raised=report.food_raised,
        outcomes=report.outcomes,
    )


@router.get("/families/{family_id}/monitoring", response_model=MonitoringStatusResponse)
def monitoring_status(family: Family = Depends(get_family)):
    """Live view of how the next tick would see this family."""
    now = utcnow()
    config = family_settings(family)
    tz = ZoneInfo(config.timezone)
    hours = inactive_hours(family, now)
    remaining = time_until_window_ends(now, config.sleep_window, tz)

    return MonitoringStatusResponse(
        family_id=family.id,
        monitoring_enabled=config.monitoring_enabled,
        hours_inactive=int(hours) if hours is not None else None,
        alert_threshold_hours=config.alert_threshold_hours,
        suppressed=is_suppressed(now, config.sleep_window, tz),
        suppressed_for_minutes=int(remaining.total_seconds() // 60) if remaining is not None else None,
        sleep_schedule=describe(config.sleep_window),
        alert_active=family.alert_active,
    )


@router.post("/families/{family_id}/alert/resend", response_model=FanoutResponse)
def resend_alert(family_id: str):
    """Re-send the active survival alert. Does not change alert state."""
    try:
        result = survival_monitor.resend_alert(family_id)
    except LifeSignError as e:
        raise http_error(e)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    return fanout_response(result)


@router.post("/families/{family_id}/notifications/test", response_model=FanoutResponse)
def send_test_notification(family: Family = Depends(get_family)):
    """Send a test push to every resolved recipient."""
    return fanout_response(notifier.notify_family(family, TEST_MESSAGE, {}))
