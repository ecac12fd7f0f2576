"""Device signal API endpoints: activity, location, meals, app sessions."""

from fastapi import APIRouter, Depends, HTTPException, status

from lifesign.api.deps import device_sessions, get_family, http_error, notifier, signal_recorder
from lifesign.api.monitoring import fanout_response
from lifesign.errors import LifeSignError
from lifesign.models.family import Family
from lifesign.schemas.monitoring import (
    ActivityRequest,
    LocationRequest,
    MealRequest,
    MealResponse,
    SessionResponse,
    SignalResponse,
)
from lifesign.services.notifier import MEAL_RECORDED

router = APIRouter(tags=["signals"])


@router.post("/families/{family_id}/sessions", response_model=SessionResponse, status_code=status.HTTP_201_CREATED)
def open_session(family: Family = Depends(get_family)):
    """Start a device session (called once per app launch)."""
    session = device_sessions.open(family.id)
    return SessionResponse(
        session_id=session.id,
        family_id=session.family_id,
        started_at=session.started_at,
    )


@router.delete("/families/{family_id}/sessions/{session_id}", status_code=status.HTTP_204_NO_CONTENT)
def close_session(family_id: str, session_id: str):
    session = device_sessions.get(session_id)
    if session is None or session.family_id != family_id:
        raise HTTPException(status_code=404, detail="Session not found")
    device_sessions.close(session_id)


@router.post("/families/{family_id}/activity", response_model=SignalResponse)
def record_activity(request: ActivityRequest, family: Family = Depends(get_family)):
    """Primary device reports interaction."""
    session = None
    if request.session_id:
        session = device_sessions.get(request.session_id)
        if session is None or session.family_id != family.id:
            raise HTTPException(status_code=404, detail="Session not found")

    try:
        result = signal_recorder.record_activity(
            family.id,
            at=request.at,
            kind=request.kind,
            session=session,
            force=request.force,
        )
    except LifeSignError as e:
        raise http_error(e)
    return SignalResponse(written=result.written, reason=result.reason)


@router.post("/families/{family_id}/location", response_model=SignalResponse)
def record_location(request: LocationRequest, family: Family = Depends(get_family)):
    """Primary device reports a location fix."""
    try:
        result = signal_recorder.record_location(
            family.id,
            request.lat,
            request.lon,
            at=request.at,
            force=request.force,
        )
    except LifeSignError as e:
        raise http_error(e)
    return SignalResponse(written=result.written, reason=result.reason)


@router.post("/families/{family_id}/meals", response_model=MealResponse)
def record_meal(request: MealRequest, family: Family = Depends(get_family)):
    """Primary device reports a meal; watchers get a meal_recorded push."""
    try:
        result = signal_recorder.record_meal(family.id, at=request.at)
        notified = None
        if result.written:
            notified = fanout_response(notifier.notify(family.id, MEAL_RECORDED, {
                "at": result.at,
                "meal_number": result.meal_number,
            }))
    except LifeSignError as e:
        raise http_error(e)
    return MealResponse(
        written=result.written,
        reason=result.reason,
        meal_number=result.meal_number,
        notified=notified,
    )
