"""Family model."""

import secrets
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from sqlalchemy import JSON, Column
from sqlmodel import Field, SQLModel


class ApprovalState(str, Enum):
    UNSET = "unset"
    APPROVED = "approved"
    REJECTED = "rejected"


def new_family_id() -> str:
    return f"fam_{secrets.token_hex(4)}"


class Family(SQLModel, table=True):
    __tablename__ = "families"

    id: str = Field(default_factory=new_family_id, primary_key=True)
    connection_code: str = Field(index=True)  # 4-digit code
    subject_name: str

    # Settings
    monitoring_enabled: bool = Field(default=False, index=True)
    alert_threshold_hours: int = Field(default=12)
    sleep_window: Optional[dict] = Field(default=None, sa_column=Column(JSON))
    timezone: str = Field(default="Asia/Seoul")
    food_alert_hours: int = Field(default=8)

    # Legacy recipients embedded on the record
    recipient_tokens: list[str] = Field(default_factory=list, sa_column=Column(JSON))

    # Signals
    last_activity_at: Optional[datetime] = None
    last_activity_type: Optional[str] = None
    last_location_lat: Optional[float] = None
    last_location_lon: Optional[float] = None
    last_location_at: Optional[datetime] = None
    last_meal_at: Optional[datetime] = None
    meals_today: int = Field(default=0)
    meals_date: Optional[str] = None  # local ISO date meals_today counts for

    # Alert state
    alert_active: bool = Field(default=False)
    alert_raised_at: Optional[datetime] = None
    alert_hours_inactive: Optional[int] = None
    alert_cleared_at: Optional[datetime] = None
    food_alert_active: bool = Field(default=False)
    food_alert_raised_at: Optional[datetime] = None

    # Pairing
    approval_state: str = Field(default=ApprovalState.UNSET.value)  # 'unset' | 'approved' | 'rejected'
    approved_at: Optional[datetime] = None

    version: int = Field(default=0)  # bumped on every write
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def is_paired(self) -> bool:
        return self.approval_state == ApprovalState.APPROVED.value
