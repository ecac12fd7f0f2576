"""Watcher device registration API endpoints."""

from fastapi import APIRouter, Depends, HTTPException, status
from sqlmodel import Session, select

from lifesign.api.deps import http_error, pairing_service
from lifesign.database import get_session
from lifesign.errors import LifeSignError
from lifesign.models.device import DeviceRegistration
from lifesign.schemas.family import DeviceRegisterRequest, DeviceResponse
from lifesign.utils.clock import utcnow

router = APIRouter(tags=["devices"])


def device_response(device: DeviceRegistration) -> DeviceResponse:
    return DeviceResponse(
        id=device.id,
        connection_code=device.connection_code,
        device_name=device.device_name,
        platform=device.platform,
        status=device.status,
        last_seen=device.last_seen.isoformat() if device.last_seen else None,
    )


@router.post("/devices", response_model=DeviceResponse)
def register_device(
    request: DeviceRegisterRequest,
    session: Session = Depends(get_session),
):
    """Register a watcher push token against a connection code.

    Re-registering the same token refreshes it instead of duplicating.
    """
    try:
        pairing_service.lookup(request.connection_code)
    except LifeSignError as e:
        raise http_error(e)

    device = session.exec(
        select(DeviceRegistration).where(
            DeviceRegistration.connection_code == request.connection_code,
            DeviceRegistration.push_token == request.push_token,
        )
    ).first()
    if device is None:
        device = DeviceRegistration(
            connection_code=request.connection_code,
            push_token=request.push_token,
        )

    device.device_name = request.device_name or device.device_name
    device.platform = request.platform or device.platform
    device.status = "active"
    device.last_seen = utcnow()
    session.add(device)
    session.commit()
    session.refresh(device)

    return device_response(device)


@router.get("/connect/{code}/devices", response_model=list[DeviceResponse])
def list_devices(code: str, session: Session = Depends(get_session)):
    """List active devices registered for a connection code."""
    devices = session.exec(
        select(DeviceRegistration).where(
            DeviceRegistration.connection_code == code,
            DeviceRegistration.status == "active",
        )
    ).all()
    return [device_response(d) for d in devices]


@router.delete("/devices/{device_id}", status_code=status.HTTP_204_NO_CONTENT)
def revoke_device(device_id: str, session: Session = Depends(get_session)):
    """Revoke a device so it no longer receives alerts."""
    device = session.get(DeviceRegistration, device_id)
    if not device:
        raise HTTPException(status_code=404, detail="Device not found")

    device.status = "revoked"
    session.add(device)
    session.commit()
