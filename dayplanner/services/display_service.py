"""Display registry and pairing state machine.

Lifecycle:
- ``init_display`` creates a PENDING display with a fresh pairing code.
- ``register_display`` binds a PENDING display to an organisation (PAIRED).
  Registering an already PAIRED display always fails; a reset is required.
- ``disconnect_display`` puts a display back to PENDING in place.
- ``reset_display`` deletes the row and creates a new one (new id, new code).

Organisations and day plans can be deleted while displays still reference
them. Those dangling references are repaired lazily by
``repair_if_dangling``, which is shared by the status poll, the day plan
assignment and the batch cleanup.
"""

from __future__ import annotations

import asyncio
import enum
import logging
from dataclasses import dataclass, field

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from dayplanner.models.display import DeviceStatus, Display
from dayplanner.models.planning import DayPlan, Organisation
from dayplanner.schemas.display import CleanupDetail
from dayplanner.services import planning_service
from dayplanner.services.pairing_code import generate_unique_pairing_code

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class DisplayPairingError(RuntimeError):
    """Base class for rejected pairing operations."""


class DisplayNotFoundError(DisplayPairingError):
    def __init__(self, display_id: str):
        super().__init__("Display not found")
        self.display_id = display_id


class PairingCodeNotFoundError(DisplayPairingError):
    def __init__(self, pairing_code: str):
        super().__init__("Invalid pairing code")
        self.pairing_code = pairing_code


class OrganisationNotFoundError(DisplayPairingError):
    def __init__(self, organisation_id: str):
        super().__init__("Organisation not found")
        self.organisation_id = organisation_id


class DayPlanNotFoundError(DisplayPairingError):
    def __init__(self, day_plan_id: str):
        super().__init__("DayPlan not found")
        self.day_plan_id = day_plan_id


class AlreadyPairedError(DisplayPairingError):
    def __init__(self, display_id: str):
        super().__init__("Display is already paired")
        self.display_id = display_id


class NotPairedError(DisplayPairingError):
    def __init__(self, display_id: str):
        super().__init__("Display must be paired with an organisation first")
        self.display_id = display_id


class OrganisationGoneError(DisplayPairingError):
    def __init__(self, display_id: str, organisation_id: str):
        super().__init__("Display organisation no longer exists. Display has been reset.")
        self.display_id = display_id
        self.organisation_id = organisation_id


class CrossOrganisationError(DisplayPairingError):
    def __init__(self, display_id: str, day_plan_id: str):
        super().__init__("DayPlan must belong to the same organisation as the display")
        self.display_id = display_id
        self.day_plan_id = day_plan_id


# ---------------------------------------------------------------------------
# Dangling reference repair
# ---------------------------------------------------------------------------

class RepairKind(str, enum.Enum):
    ORGANISATION_GONE = "organisation_gone"
    DAY_PLAN_GONE = "day_plan_gone"


_REPAIR_REASONS = {
    RepairKind.ORGANISATION_GONE: "Organisation no longer exists",
    RepairKind.DAY_PLAN_GONE: "Day plan no longer exists",
}


@dataclass(frozen=True)
class RepairEvent:
    display_id: str
    kind: RepairKind
    missing_id: str

    @property
    def reason(self) -> str:
        return _REPAIR_REASONS[self.kind]

    @property
    def resets_pairing(self) -> bool:
        return self.kind is RepairKind.ORGANISATION_GONE


def find_dangling_reference(
    display: Display,
    *,
    organisation_exists: bool,
    day_plan_exists: bool = True,
) -> RepairEvent | None:
    """Decide which repair, if any, a display needs.

    A missing organisation takes precedence: resetting the pairing also
    drops the day plan assignment.
    """
    if display.organisation_id and not organisation_exists:
        return RepairEvent(display.id, RepairKind.ORGANISATION_GONE, display.organisation_id)
    if display.current_day_plan_id and not day_plan_exists:
        return RepairEvent(display.id, RepairKind.DAY_PLAN_GONE, display.current_day_plan_id)
    return None


def _reset_to_pending(display: Display) -> None:
    display.status = DeviceStatus.PENDING
    display.organisation_id = None
    display.current_day_plan_id = None
    display.is_active = False


def apply_repair(display: Display, event: RepairEvent) -> None:
    if event.kind is RepairKind.ORGANISATION_GONE:
        _reset_to_pending(display)
    else:
        display.current_day_plan_id = None


async def repair_if_dangling(
    db: AsyncSession,
    display: Display,
    *,
    check_day_plan: bool = True,
) -> tuple[RepairEvent | None, DayPlan | None]:
    """Look up the display's references and repair the ones that are gone.

    Returns the repair applied (or None) and the resolved day plan when
    ``check_day_plan`` is set and the assignment is still valid.
    """
    organisation_ok = True
    if display.organisation_id:
        organisation_ok = await planning_service.organisation_exists(db, display.organisation_id)

    day_plan: DayPlan | None = None
    day_plan_ok = True
    if organisation_ok and check_day_plan and display.current_day_plan_id:
        day_plan = await planning_service.get_day_plan(db, display.current_day_plan_id)
        day_plan_ok = day_plan is not None

    event = find_dangling_reference(
        display, organisation_exists=organisation_ok, day_plan_exists=day_plan_ok
    )
    if event:
        apply_repair(display, event)
        await db.flush()
        logger.warning(
            "%s (%s) for display %s, reference cleared",
            event.reason, event.missing_id, display.id,
        )
    return event, day_plan


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

async def get_display(db: AsyncSession, display_id: str) -> Display | None:
    return await db.get(Display, display_id)


async def get_display_by_code(db: AsyncSession, pairing_code: str) -> Display | None:
    stmt = select(Display).where(Display.pairing_code == pairing_code)
    result = await db.execute(stmt)
    return result.scalar_one_or_none()


async def list_displays_for_organisation(db: AsyncSession, organisation_id: str) -> list[Display]:
    stmt = (
        select(Display)
        .where(Display.organisation_id == organisation_id)
        .order_by(Display.created_at.desc())
    )
    result = await db.execute(stmt)
    return list(result.scalars().all())


async def _require_display(db: AsyncSession, display_id: str) -> Display:
    display = await get_display(db, display_id)
    if not display:
        raise DisplayNotFoundError(display_id)
    return display


# ---------------------------------------------------------------------------
# State machine
# ---------------------------------------------------------------------------

async def init_display(db: AsyncSession) -> Display:
    """Create a PENDING display with a fresh pairing code."""
    code = await generate_unique_pairing_code(db)
    display = Display(
        pairing_code=code,
        status=DeviceStatus.PENDING,
        name=f"Display {code}",
    )
    db.add(display)
    await db.flush()
    logger.info("Display created with pairing code %s (%s)", code, display.id)
    return display


async def register_display(
    db: AsyncSession,
    *,
    pairing_code: str,
    organisation_id: str,
    device_name: str | None = None,
) -> Display:
    """Bind the display holding ``pairing_code`` to an organisation.

    Checks run in a fixed order: organisation, pairing code, current status.
    """
    if not await planning_service.organisation_exists(db, organisation_id):
        logger.warning("Display registration failed: organisation %s not found", organisation_id)
        raise OrganisationNotFoundError(organisation_id)

    display = await get_display_by_code(db, pairing_code)
    if not display:
        logger.warning("Display registration failed: invalid pairing code %s", pairing_code)
        raise PairingCodeNotFoundError(pairing_code)

    if display.status == DeviceStatus.PAIRED:
        logger.warning("Display registration failed: display already paired %s", pairing_code)
        raise AlreadyPairedError(display.id)

    display.status = DeviceStatus.PAIRED
    display.organisation_id = organisation_id
    display.name = device_name or display.name
    await db.flush()

    logger.info("Display %s paired to organisation %s", display.id, organisation_id)
    return display


@dataclass
class DisplayStatusResult:
    display: Display
    day_plan: DayPlan | None = None
    repair: RepairEvent | None = None

    @property
    def was_reset(self) -> bool:
        return self.repair is not None and self.repair.resets_pairing


async def get_display_status(db: AsyncSession, device_id: str) -> DisplayStatusResult:
    """Status seen by a polling device, after repairing dangling references."""
    display = await _require_display(db, device_id)
    repair, day_plan = await repair_if_dangling(db, display)
    return DisplayStatusResult(display=display, day_plan=day_plan, repair=repair)


async def assign_day_plan(
    db: AsyncSession,
    *,
    display_id: str,
    day_plan_id: str,
) -> tuple[Display, DayPlan]:
    """Point a paired display at a day plan of its own organisation."""
    display = await _require_display(db, display_id)

    if not display.organisation_id:
        raise NotPairedError(display_id)
    organisation_id = display.organisation_id

    repair, _ = await repair_if_dangling(db, display, check_day_plan=False)
    if repair:
        # The reset must survive the error response.
        await db.commit()
        raise OrganisationGoneError(display_id, organisation_id)

    day_plan = await planning_service.get_day_plan(db, day_plan_id)
    if not day_plan:
        logger.error("DayPlan %s not found", day_plan_id)
        raise DayPlanNotFoundError(day_plan_id)

    if day_plan.event.organisation_id != display.organisation_id:
        logger.error(
            "DayPlan %s belongs to a different organisation than display %s",
            day_plan_id, display_id,
        )
        raise CrossOrganisationError(display_id, day_plan_id)

    display.current_day_plan_id = day_plan.id
    await db.flush()
    logger.info("DayPlan %s assigned to display %s", day_plan_id, display_id)
    return display, day_plan


async def disconnect_display(db: AsyncSession, display_id: str) -> Display:
    display = await _require_display(db, display_id)
    _reset_to_pending(display)
    await db.flush()
    logger.info("Display %s disconnected", display_id)
    return display


async def reset_display(db: AsyncSession, display_id: str) -> Display:
    """Hard reset: the old id stops existing, a new PENDING display replaces it."""
    display = await _require_display(db, display_id)
    await db.delete(display)
    await db.flush()

    new_display = await init_display(db)
    logger.info("Display %s reset, new display created: %s", display_id, new_display.id)
    return new_display


# ---------------------------------------------------------------------------
# Batch cleanup
# ---------------------------------------------------------------------------

@dataclass
class CleanupReport:
    cleaned: int = 0
    details: list[CleanupDetail] = field(default_factory=list)


async def _cleanup_one(
    session_factory: async_sessionmaker[AsyncSession],
    display_id: str,
    organisation_id: str,
) -> CleanupDetail:
    try:
        async with session_factory() as db:
            display = await _require_display(db, display_id)
            repair, _ = await repair_if_dangling(db, display, check_day_plan=False)
            await db.commit()
    except Exception as exc:
        logger.error("Failed to clean up display %s: %s", display_id, exc)
        return CleanupDetail(id=display_id, success=False, error=str(exc))

    if repair is None:
        logger.info("Display %s is no longer orphaned, skipped", display_id)
        return CleanupDetail(id=display_id, success=False, error="Display is no longer orphaned")

    logger.info(
        "Cleaned up orphaned display %s (was linked to deleted org %s)",
        display_id, organisation_id,
    )
    return CleanupDetail(id=display_id, success=True)


async def find_orphaned_displays(db: AsyncSession) -> list[tuple[str, str]]:
    """Return (display_id, organisation_id) for displays whose organisation is gone."""
    stmt = (
        select(Display.id, Display.organisation_id)
        .outerjoin(Organisation, Organisation.id == Display.organisation_id)
        .where(Display.organisation_id.is_not(None), Organisation.id.is_(None))
    )
    result = await db.execute(stmt)
    return [(row.id, row.organisation_id) for row in result.all()]


async def cleanup_orphans(session_factory: async_sessionmaker[AsyncSession]) -> CleanupReport:
    """Reset every display that points at a deleted organisation.

    Each display is repaired in its own session, concurrently; one failure
    does not affect the others.
    """
    async with session_factory() as db:
        orphans = await find_orphaned_displays(db)

    if not orphans:
        return CleanupReport()

    details = await asyncio.gather(
        *(_cleanup_one(session_factory, display_id, org_id) for display_id, org_id in orphans)
    )
    return CleanupReport(
        cleaned=sum(1 for d in details if d.success),
        details=list(details),
    )
