"""LifeSign Database Models."""

from lifesign.models.family import ApprovalState, Family
from lifesign.models.pending_code import PendingCode
from lifesign.models.device import CompanionDevice, DeviceRegistration

__all__ = [
    "ApprovalState",
    "Family",
    "PendingCode",
    "DeviceRegistration",
    "CompanionDevice",
]
