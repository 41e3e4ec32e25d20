"""
Registration API endpoints for Registrations Service.
Read models and action triggers for the registration control of an event or
activity. Errors from the flow are RegistrationError subclasses, rendered by
the application's exception handler.
"""

from fastapi import APIRouter, Depends, HTTPException, status, Path, Body
from typing import Dict, Optional
import logging

from registrations.api.dependencies import (
    get_optional_auth,
    get_required_auth,
    get_registration_hub,
    get_registration_hubs,
)
from registrations.schemas.registration import (
    CancelRequest,
    CapacitySnapshot,
    OfferingKind,
    RegistrationActionResponse,
    RegistrationListResponse,
    RegistrationView,
)
from registrations.services.registration_hub import RegistrationHub
from registrations.services.registration_store import AuthSession

logger = logging.getLogger(__name__)

router = APIRouter(tags=["registrations"])


@router.get("/{collection}/{event_id}/capacity", response_model=CapacitySnapshot)
async def get_capacity(
    event_id: str = Path(..., min_length=1, description="Event or activity ID"),
    hub: RegistrationHub = Depends(get_registration_hub)
):
    """
    Get the enrolled count and remaining spots.

    Raises:
        HTTPException: 503 while the count is unknown
    """
    snapshot = await hub.get_snapshot(event_id)
    if snapshot is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Availability is temporarily unavailable"
        )
    return snapshot


@router.get("/{collection}/{event_id}/registration", response_model=RegistrationView)
async def get_registration(
    event_id: str = Path(..., min_length=1, description="Event or activity ID"),
    auth: Optional[AuthSession] = Depends(get_optional_auth),
    hub: RegistrationHub = Depends(get_registration_hub)
):
    """Get the caller's registration state."""
    return await hub.get_view(event_id, auth)


@router.post("/{collection}/{event_id}/registration", response_model=RegistrationActionResponse)
async def register(
    event_id: str = Path(..., min_length=1, description="Event or activity ID"),
    auth: Optional[AuthSession] = Depends(get_optional_auth),
    hub: RegistrationHub = Depends(get_registration_hub)
):
    """
    Register the caller. A full activity puts the caller on its waitlist.

    A request made while another is in flight, or for a sold-out event,
    is answered with performed=false and no remote call.
    """
    notice, view = await hub.register(event_id, auth)
    if notice:
        logger.info(f"User {auth.user_id} registered for {hub.kind.value} {event_id} ({view.state.value})")
    return RegistrationActionResponse(performed=notice is not None, notice=notice, view=view)


@router.post("/{collection}/{event_id}/registration/cancel", response_model=RegistrationActionResponse)
async def cancel_registration(
    event_id: str = Path(..., min_length=1, description="Event or activity ID"),
    cancel_request: Optional[CancelRequest] = Body(None),
    auth: AuthSession = Depends(get_required_auth),
    hub: RegistrationHub = Depends(get_registration_hub)
):
    """
    Cancel the caller's registration or waitlist place. Nothing happens
    unless `confirm` is true.
    """
    notice, view = await hub.cancel(event_id, auth, confirmed=bool(cancel_request and cancel_request.confirm))
    if notice:
        logger.info(f"User {auth.user_id} cancelled registration for {hub.kind.value} {event_id}")
    return RegistrationActionResponse(performed=notice is not None, notice=notice, view=view)


@router.get("/me/registrations", response_model=RegistrationListResponse)
async def list_my_registrations(
    auth: AuthSession = Depends(get_required_auth),
    hubs: Dict[OfferingKind, RegistrationHub] = Depends(get_registration_hubs)
):
    """List the caller's event and activity registrations, soonest first."""
    records = []
    for hub in hubs.values():
        records.extend(await hub.list_user_registrations(auth))

    def starts(record):
        start_at = record.event.start_at if record.event else None
        return (start_at is None, start_at.timestamp() if start_at else 0.0)

    records.sort(key=starts)
    return RegistrationListResponse(items=records, total=len(records))
