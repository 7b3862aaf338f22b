"""Pydantic schemas for display pairing and status polling.

Wire payloads are camelCase (``deviceId``, ``isPaired``...) because deployed
display devices already speak that format; Python code uses snake_case.
"""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from dayplanner.models.display import DeviceStatus


class CamelModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        from_attributes=True,
    )


# ---------------------------------------------------------------------------
# Day plans (read-only from the display's point of view)
# ---------------------------------------------------------------------------

class ScheduleItemRead(CamelModel):
    id: int
    day_plan_id: str
    position: int
    time: str
    type: str
    title: str
    speaker: str | None = None
    location: str | None = None
    details: str | None = None
    duration: str | None = None


class DayPlanRead(CamelModel):
    id: str
    event_id: str
    name: str
    date: str | None = None
    schedule_items: list[ScheduleItemRead] = []


# ---------------------------------------------------------------------------
# Displays
# ---------------------------------------------------------------------------

class DisplayRead(CamelModel):
    id: str
    pairing_code: str
    status: DeviceStatus
    name: str
    organisation_id: str | None = None
    current_day_plan_id: str | None = None
    is_active: bool
    created_at: datetime
    updated_at: datetime


class PairingInitResponse(CamelModel):
    success: bool = True
    code: str
    device_id: str
    message: str | None = None


class DisplayStatusResponse(CamelModel):
    """Payload polled by display devices."""

    status: DeviceStatus
    is_paired: bool
    organisation_id: str | None = None
    device_name: str | None = None
    day_plan: DayPlanRead | None = None
    was_reset: bool = False
    reset_reason: str | None = None


class RegisterDisplayRequest(CamelModel):
    # Optional so that missing fields are reported as 400, like the other
    # pairing validation errors.
    pairing_code: str | None = None
    organisation_id: str | None = None
    device_name: str | None = None


class RegisterDisplayResponse(CamelModel):
    success: bool = True
    display: DisplayRead


class AssignDayPlanRequest(CamelModel):
    day_plan_id: str | None = None


class AssignDayPlanResponse(CamelModel):
    success: bool = True
    display: DisplayRead
    day_plan: DayPlanRead


class DisconnectDisplayResponse(CamelModel):
    success: bool = True
    message: str
    display: DisplayRead


class CleanupDetail(CamelModel):
    id: str
    success: bool
    error: str | None = None


class CleanupResponse(CamelModel):
    success: bool = True
    message: str
    cleaned: int
    details: list[CleanupDetail] = []
