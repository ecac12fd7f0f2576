"""Pending connection code model."""

from datetime import datetime, timezone

from sqlmodel import Field, SQLModel


class PendingCode(SQLModel, table=True):
    __tablename__ = "pending_codes"

    code: str = Field(primary_key=True)  # 4-digit code, one live reservation each
    family_id: str = Field(index=True)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    expires_at: datetime
