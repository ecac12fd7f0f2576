"""Signal, monitoring and notification schemas."""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field


class ActivityRequest(BaseModel):
    at: Optional[datetime] = None
    kind: str = "screen_on"
    session_id: Optional[str] = None
    force: bool = False


class LocationRequest(BaseModel):
    lat: float = Field(ge=-90, le=90)
    lon: float = Field(ge=-180, le=180)
    at: Optional[datetime] = None
    force: bool = False


class MealRequest(BaseModel):
    at: Optional[datetime] = None


class SignalResponse(BaseModel):
    written: bool
    reason: str


class SessionResponse(BaseModel):
    session_id: str
    family_id: str
    started_at: datetime


class TickRequest(BaseModel):
    now: Optional[datetime] = None


class TickResponse(BaseModel):
    evaluated: int
    raised: int
    cleared: int
    suppressed: int
    failed: int
    food_raised: int = 0
    outcomes: dict[str, str]


class MonitoringStatusResponse(BaseModel):
    family_id: str
    monitoring_enabled: bool
    hours_inactive: Optional[int]
    alert_threshold_hours: int
    suppressed: bool
    suppressed_for_minutes: Optional[int]
    sleep_schedule: str
    alert_active: bool


class RecipientResultResponse(BaseModel):
    token: str
    success: bool
    error: Optional[str] = None


class FanoutResponse(BaseModel):
    sent: int
    total: int
    per_recipient: list[RecipientResultResponse]


class MealResponse(BaseModel):
    written: bool
    reason: str
    meal_number: Optional[int] = None
    notified: Optional[FanoutResponse] = None
