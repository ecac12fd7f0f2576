"""Family, pairing and device schemas."""

from datetime import datetime
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, Field, field_validator, model_validator

from lifesign.models.family import ApprovalState

MINUTES_PER_DAY = 24 * 60


def check_timezone(name: Optional[str]) -> Optional[str]:
    """Reject names the tz database does not know."""
    if name is None:
        return None
    try:
        ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError, OSError) as e:
        raise ValueError(f"unknown time zone: {name}") from e
    return name


class SleepWindow(BaseModel):
    enabled: bool = False
    start_minute: int = Field(default=22 * 60, ge=0, lt=MINUTES_PER_DAY)
    end_minute: int = Field(default=6 * 60, ge=0, lt=MINUTES_PER_DAY)
    active_weekdays: list[int] = Field(default_factory=lambda: [1, 2, 3, 4, 5, 6, 7])  # ISO, 1=Monday

    @field_validator("active_weekdays")
    @classmethod
    def _check_weekdays(cls, v: list[int]) -> list[int]:
        for day in v:
            if day < 1 or day > 7:
                raise ValueError(f"weekday out of range: {day}")
        return sorted(set(v))

    @property
    def crosses_midnight(self) -> bool:
        return self.start_minute > self.end_minute


class FamilySettings(BaseModel):
    monitoring_enabled: bool = False
    alert_threshold_hours: int = Field(default=12, ge=1, le=72)
    sleep_window: Optional[SleepWindow] = None
    timezone: str = "Asia/Seoul"
    food_alert_hours: int = Field(default=8, ge=1, le=72)

    @field_validator("timezone")
    @classmethod
    def _check_timezone(cls, v: Optional[str]) -> Optional[str]:
        return check_timezone(v)


class Location(BaseModel):
    lat: float
    lon: float
    at: Optional[datetime] = None


class AlertState(BaseModel):
    is_active: bool = False
    raised_at: Optional[datetime] = None
    hours_inactive: Optional[int] = None
    cleared_at: Optional[datetime] = None


class MealState(BaseModel):
    last_meal_at: Optional[datetime] = None
    meals_today: int = 0
    food_alert_active: bool = False


class FamilyResponse(BaseModel):
    id: str
    connection_code: str
    subject_name: str
    settings: FamilySettings
    last_activity_at: Optional[datetime]
    last_location: Optional[Location]
    alert_state: AlertState
    meals: MealState
    approval_state: ApprovalState


class FamilySetupRequest(BaseModel):
    subject_name: str = Field(min_length=1)
    monitoring_enabled: bool = True
    alert_threshold_hours: Optional[int] = Field(default=None, ge=1, le=72)
    sleep_window: Optional[SleepWindow] = None
    timezone: Optional[str] = None

    @field_validator("timezone")
    @classmethod
    def _check_timezone(cls, v: Optional[str]) -> Optional[str]:
        return check_timezone(v)


class FamilySetupResponse(BaseModel):
    family_id: str
    connection_code: str
    expires_at: datetime


class SettingsUpdateRequest(BaseModel):
    monitoring_enabled: Optional[bool] = None
    alert_threshold_hours: Optional[int] = Field(default=None, ge=1, le=72)
    sleep_window: Optional[SleepWindow] = None
    clear_sleep_window: bool = False
    timezone: Optional[str] = None
    food_alert_hours: Optional[int] = Field(default=None, ge=1, le=72)
    recipient_tokens: Optional[list[str]] = None

    @field_validator("timezone")
    @classmethod
    def _check_timezone(cls, v: Optional[str]) -> Optional[str]:
        return check_timezone(v)

    @model_validator(mode="after")
    def _window_or_clear(self):
        if self.clear_sleep_window and self.sleep_window is not None:
            raise ValueError("sleep_window and clear_sleep_window are mutually exclusive")
        return self


class ApprovalStateResponse(BaseModel):
    family_id: str
    approval_state: ApprovalState


class ApprovalRequest(BaseModel):
    decision: ApprovalState
    push_token: Optional[str] = None
    device_name: Optional[str] = None

    @field_validator("decision")
    @classmethod
    def _not_unset(cls, v: ApprovalState) -> ApprovalState:
        if v == ApprovalState.UNSET:
            raise ValueError("decision must be 'approved' or 'rejected'")
        return v


class ApprovalResponse(BaseModel):
    family_id: str
    approval_state: ApprovalState
    changed: bool


class PairingCancelResponse(BaseModel):
    family_id: str
    cancelled: bool  # False when the family was approved first or is gone


class CodeLookupResponse(BaseModel):
    family_id: str
    subject_name: str
    approval_state: ApprovalState


class DeviceRegisterRequest(BaseModel):
    connection_code: str = Field(pattern=r"^\d{4}$")
    push_token: str = Field(min_length=1)
    device_name: Optional[str] = None
    platform: Optional[str] = None


class DeviceResponse(BaseModel):
    id: str
    connection_code: str
    device_name: Optional[str]
    platform: Optional[str]
    status: str
    last_seen: Optional[str]
