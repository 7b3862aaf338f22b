"""API routes for display pairing, status polling and day plan assignment.

Devices only ever call ``init`` and ``status``; everything else is driven
from the admin UI. Changes reach the device on its next status poll.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from dayplanner.database import get_db, get_session_factory
from dayplanner.schemas.display import (
    AssignDayPlanRequest,
    AssignDayPlanResponse,
    CleanupResponse,
    DayPlanRead,
    DisconnectDisplayResponse,
    DisplayRead,
    DisplayStatusResponse,
    PairingInitResponse,
    RegisterDisplayRequest,
    RegisterDisplayResponse,
)
from dayplanner.services import display_service
from dayplanner.services.display_service import (
    AlreadyPairedError,
    CrossOrganisationError,
    DayPlanNotFoundError,
    DisplayNotFoundError,
    DisplayPairingError,
    NotPairedError,
    OrganisationGoneError,
    OrganisationNotFoundError,
    PairingCodeNotFoundError,
)
from dayplanner.services.pairing_code import ExhaustedRetriesError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/displays/pairing", tags=["displays"])


_STATUS_CODES: dict[type[DisplayPairingError], int] = {
    DisplayNotFoundError: 404,
    PairingCodeNotFoundError: 404,
    OrganisationNotFoundError: 404,
    DayPlanNotFoundError: 404,
    AlreadyPairedError: 400,
    NotPairedError: 400,
    OrganisationGoneError: 400,
    CrossOrganisationError: 403,
}


def _http_error(exc: DisplayPairingError) -> HTTPException:
    return HTTPException(_STATUS_CODES.get(type(exc), 400), detail=str(exc))


@router.post("/init", response_model=PairingInitResponse)
async def init_pairing(db: AsyncSession = Depends(get_db)):
    """Create a PENDING display and hand its pairing code to the device."""
    try:
        display = await display_service.init_display(db)
    except ExhaustedRetriesError as exc:
        logger.error("Error initializing display: %s", exc)
        raise HTTPException(500, detail="Failed to generate pairing code")
    return PairingInitResponse(code=display.pairing_code, device_id=display.id)


@router.get("/status/{device_id}", response_model=DisplayStatusResponse)
async def get_status(device_id: str, db: AsyncSession = Depends(get_db)):
    """Polled by devices: pairing state and the assigned day plan."""
    try:
        result = await display_service.get_display_status(db, device_id)
    except DisplayPairingError as exc:
        raise _http_error(exc)

    display = result.display
    return DisplayStatusResponse(
        status=display.status,
        is_paired=display.is_paired,
        organisation_id=display.organisation_id,
        device_name=display.name,
        day_plan=DayPlanRead.model_validate(result.day_plan) if result.day_plan else None,
        was_reset=result.was_reset,
        reset_reason=result.repair.reason if result.was_reset else None,
    )


@router.post("/register", response_model=RegisterDisplayResponse)
async def register_display(payload: RegisterDisplayRequest, db: AsyncSession = Depends(get_db)):
    """Bind a pairing code to an organisation."""
    if not payload.pairing_code or not payload.organisation_id:
        raise HTTPException(
            400,
            detail="Missing required fields: pairingCode and organisationId are required",
        )
    try:
        display = await display_service.register_display(
            db,
            pairing_code=payload.pairing_code,
            organisation_id=payload.organisation_id,
            device_name=payload.device_name,
        )
    except DisplayPairingError as exc:
        raise _http_error(exc)
    return RegisterDisplayResponse(display=DisplayRead.model_validate(display))


@router.post("/cleanup", response_model=CleanupResponse)
async def cleanup_displays(
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
):
    """Reset displays linked to organisations that no longer exist."""
    report = await display_service.cleanup_orphans(session_factory)
    if not report.details:
        return CleanupResponse(message="No orphaned displays found", cleaned=0)
    return CleanupResponse(
        message=f"Cleaned up {report.cleaned} orphaned display(s)",
        cleaned=report.cleaned,
        details=report.details,
    )


@router.get("/{organisation_id}", response_model=list[DisplayRead])
async def list_displays(organisation_id: str, db: AsyncSession = Depends(get_db)):
    """List the displays paired to an organisation, newest first."""
    displays = await display_service.list_displays_for_organisation(db, organisation_id)
    return [DisplayRead.model_validate(d) for d in displays]


@router.put("/{display_id}/dayplan", response_model=AssignDayPlanResponse)
async def assign_day_plan(
    display_id: str,
    payload: AssignDayPlanRequest,
    db: AsyncSession = Depends(get_db),
):
    """Show a day plan on a display."""
    if not payload.day_plan_id:
        raise HTTPException(400, detail="dayPlanId is required")
    try:
        display, day_plan = await display_service.assign_day_plan(
            db, display_id=display_id, day_plan_id=payload.day_plan_id
        )
    except DisplayPairingError as exc:
        raise _http_error(exc)
    return AssignDayPlanResponse(
        display=DisplayRead.model_validate(display),
        day_plan=DayPlanRead.model_validate(day_plan),
    )


@router.post("/{display_id}/disconnect", response_model=DisconnectDisplayResponse)
async def disconnect_display(display_id: str, db: AsyncSession = Depends(get_db)):
    try:
        display = await display_service.disconnect_display(db, display_id)
    except DisplayPairingError as exc:
        raise _http_error(exc)
    return DisconnectDisplayResponse(
        message="Display disconnected successfully",
        display=DisplayRead.model_validate(display),
    )


@router.post("/{display_id}/reset", response_model=PairingInitResponse)
async def reset_display(display_id: str, db: AsyncSession = Depends(get_db)):
    """Delete the display and issue a new id and pairing code."""
    try:
        display = await display_service.reset_display(db, display_id)
    except DisplayPairingError as exc:
        raise _http_error(exc)
    except ExhaustedRetriesError as exc:
        logger.error("Error resetting display %s: %s", display_id, exc)
        raise HTTPException(500, detail="Failed to generate pairing code")
    return PairingInitResponse(
        code=display.pairing_code,
        device_id=display.id,
        message="Display reset successfully",
    )
