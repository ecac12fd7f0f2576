"""Pairing API endpoints.

Primary device: family setup, approval polling, long-poll wait, completion
and cancellation. Watcher device: code lookup and the approval decision.
"""

from fastapi import APIRouter, Depends, HTTPException, Query, status

from lifesign.api.deps import get_family, http_error, pairing_service
from lifesign.config import settings
from lifesign.errors import LifeSignError
from lifesign.models.family import ApprovalState, Family
from lifesign.schemas.family import (
    ApprovalRequest,
    ApprovalResponse,
    ApprovalStateResponse,
    CodeLookupResponse,
    FamilySetupRequest,
    FamilySetupResponse,
    PairingCancelResponse,
)
from lifesign.utils.clock import as_utc

router = APIRouter(tags=["pairing"])


@router.post("/families", response_model=FamilySetupResponse, status_code=status.HTTP_201_CREATED)
def setup_family(request: FamilySetupRequest):
    """Create a family and issue its connection code."""
    try:
        family, pending = pairing_service.setup_family(
            subject_name=request.subject_name,
            monitoring_enabled=request.monitoring_enabled,
            alert_threshold_hours=request.alert_threshold_hours,
            sleep_window=request.sleep_window,
            timezone=request.timezone,
        )
    except LifeSignError as e:
        raise http_error(e)

    return FamilySetupResponse(
        family_id=family.id,
        connection_code=pending.code,
        expires_at=as_utc(pending.expires_at),
    )


@router.get("/families/{family_id}/approval", response_model=ApprovalStateResponse)
def get_approval(family: Family = Depends(get_family)):
    """Current approval state (polling path)."""
    return ApprovalStateResponse(
        family_id=family.id,
        approval_state=ApprovalState(family.approval_state),
    )


@router.get("/families/{family_id}/approval/wait", response_model=ApprovalStateResponse)
def wait_approval(
    family_id: str,
    since: ApprovalState = Query(default=ApprovalState.UNSET),
    timeout: float = Query(default=settings.longpoll_max_seconds, gt=0),
):
    """Long-poll: return as soon as the approval state differs from ``since``."""
    try:
        state = pairing_service.wait_for_change(family_id, since, timeout)
    except LifeSignError as e:
        raise http_error(e)
    return ApprovalStateResponse(family_id=family_id, approval_state=state)


@router.post("/families/{family_id}/pairing/complete", response_model=ApprovalStateResponse)
def complete_pairing(family_id: str):
    """Primary device saw the approval: retire the pending code."""
    try:
        family = pairing_service.complete_pairing(family_id)
    except LifeSignError as e:
        raise http_error(e)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    return ApprovalStateResponse(
        family_id=family.id,
        approval_state=ApprovalState(family.approval_state),
    )


@router.delete("/families/{family_id}/pairing", response_model=PairingCancelResponse)
def cancel_pairing(family_id: str):
    """Timeout or "try again": expire the code and drop the unpaired family.

    An approval that landed before the code was retired wins; the caller
    sees ``cancelled: false`` and should finish pairing instead.
    """
    try:
        cancelled = pairing_service.cancel_pairing(family_id)
    except LifeSignError as e:
        raise http_error(e)
    return PairingCancelResponse(family_id=family_id, cancelled=cancelled)


@router.get("/connect/{code}", response_model=CodeLookupResponse)
def lookup_code(code: str):
    """Watcher looks up a connection code before deciding."""
    try:
        family = pairing_service.lookup(code)
    except LifeSignError as e:
        raise http_error(e)
    return CodeLookupResponse(
        family_id=family.id,
        subject_name=family.subject_name,
        approval_state=ApprovalState(family.approval_state),
    )


@router.post("/connect/{code}/approval", response_model=ApprovalResponse)
def set_approval(code: str, request: ApprovalRequest):
    """Watcher approves or rejects. Repeating a decision is a no-op."""
    try:
        result = pairing_service.set_approval(
            code,
            request.decision,
            push_token=request.push_token,
            device_name=request.device_name,
        )
    except LifeSignError as e:
        raise http_error(e)
    return ApprovalResponse(
        family_id=result.family.id,
        approval_state=result.state,
        changed=result.changed,
    )
