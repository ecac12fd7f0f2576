"""Family API endpoints."""

from fastapi import APIRouter, Depends, HTTPException, status

from lifesign.api.deps import family_store, get_family, http_error
from lifesign.errors import LifeSignError
from lifesign.models.family import ApprovalState, Family
from lifesign.schemas.family import (
    AlertState,
    FamilyResponse,
    MealState,
    SettingsUpdateRequest,
)
from lifesign.services.monitor import family_settings, last_location
from lifesign.services.signals import meals_today
from lifesign.utils.clock import as_utc

router = APIRouter(tags=["family"])


def family_response(family: Family) -> FamilyResponse:
    return FamilyResponse(
        id=family.id,
        connection_code=family.connection_code,
        subject_name=family.subject_name,
        settings=family_settings(family),
        last_activity_at=as_utc(family.last_activity_at),
        last_location=last_location(family),
        alert_state=AlertState(
            is_active=family.alert_active,
            raised_at=as_utc(family.alert_raised_at),
            hours_inactive=family.alert_hours_inactive,
            cleared_at=as_utc(family.alert_cleared_at),
        ),
        meals=MealState(
            last_meal_at=as_utc(family.last_meal_at),
            meals_today=meals_today(family),
            food_alert_active=family.food_alert_active,
        ),
        approval_state=ApprovalState(family.approval_state),
    )


@router.get("/families/{family_id}", response_model=FamilyResponse)
def get_family_detail(family: Family = Depends(get_family)):
    """Family record with settings, last signals and alert state."""
    return family_response(family)


@router.patch("/families/{family_id}/settings", response_model=FamilyResponse)
def update_settings(request: SettingsUpdateRequest, family: Family = Depends(get_family)):
    """Update monitoring settings. Omitted fields stay unchanged."""
    fields = {}
    if request.monitoring_enabled is not None:
        fields["monitoring_enabled"] = request.monitoring_enabled
    if request.alert_threshold_hours is not None:
        fields["alert_threshold_hours"] = request.alert_threshold_hours
    if request.sleep_window is not None:
        fields["sleep_window"] = request.sleep_window.model_dump()
    if request.clear_sleep_window:
        fields["sleep_window"] = None
    if request.timezone is not None:
        fields["timezone"] = request.timezone
    if request.food_alert_hours is not None:
        fields["food_alert_hours"] = request.food_alert_hours
    if request.recipient_tokens is not None:
        fields["recipient_tokens"] = request.recipient_tokens

    if not fields:
        return family_response(family)

    try:
        updated = family_store.update(family.id, **fields)
    except LifeSignError as e:
        raise http_error(e)
    return family_response(updated)


@router.delete("/families/{family_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_family(family_id: str):
    """Delete a family, its code and all recipient registrations."""
    try:
        deleted = family_store.delete(family_id)
    except LifeSignError as e:
        raise http_error(e)
    if not deleted:
        raise HTTPException(status_code=404, detail="Family not found")
