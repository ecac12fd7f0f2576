"""Watcher device models."""

import secrets
from datetime import datetime, timezone
from typing import Optional

from sqlmodel import Field, SQLModel


class DeviceRegistration(SQLModel, table=True):
    """A watcher's push endpoint, registered against a connection code."""

    __tablename__ = "device_registrations"

    id: str = Field(default_factory=lambda: f"dev_{secrets.token_hex(4)}", primary_key=True)
    connection_code: str = Field(index=True)
    push_token: str
    device_name: Optional[str] = None
    platform: Optional[str] = None  # 'ios' | 'android'
    status: str = Field(default="active")  # 'active' | 'revoked'
    last_seen: Optional[datetime] = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class CompanionDevice(SQLModel, table=True):
    """A device approved as a companion while pairing."""

    __tablename__ = "companion_devices"

    id: str = Field(default_factory=lambda: f"cmp_{secrets.token_hex(4)}", primary_key=True)
    family_id: str = Field(foreign_key="families.id", index=True)
    push_token: str
    device_name: Optional[str] = None
    is_active: bool = Field(default=True)
    approved_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
