from __future__ import annotations

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from dayplanner.models.display import DeviceStatus, Display
from dayplanner.services import display_service, planning_service
from dayplanner.services.display_service import RepairKind

from factories import make_day_plan, make_organisation


async def _paired_display(db: AsyncSession, organisation_id: str = "org1") -> Display:
    display = await display_service.init_display(db)
    return await display_service.register_display(
        db, pairing_code=display.pairing_code, organisation_id=organisation_id
    )


# ---------------------------------------------------------------------------
# Init / register
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_init_creates_pending_display(db: AsyncSession):
    display = await display_service.init_display(db)
    await db.commit()

    assert display.status == DeviceStatus.PENDING
    assert display.name == f"Display {display.pairing_code}"
    assert display.organisation_id is None

    result = await display_service.get_display_status(db, display.id)
    assert result.display.is_paired is False
    assert result.day_plan is None
    assert result.was_reset is False


@pytest.mark.asyncio
async def test_register_pairs_display(db: AsyncSession):
    await make_organisation(db, "org1")
    display = await display_service.init_display(db)
    await db.commit()

    paired = await display_service.register_display(
        db, pairing_code=display.pairing_code, organisation_id="org1", device_name="Saal"
    )
    await db.commit()

    assert paired.id == display.id
    assert paired.status == DeviceStatus.PAIRED
    assert paired.organisation_id == "org1"
    assert paired.name == "Saal"
    assert paired.is_active is True

    result = await display_service.get_display_status(db, display.id)
    assert result.display.is_paired is True
    assert result.display.organisation_id == "org1"


@pytest.mark.asyncio
async def test_register_keeps_default_name_without_device_name(db: AsyncSession):
    await make_organisation(db, "org1")
    display = await _paired_display(db)
    assert display.name == f"Display {display.pairing_code}"


@pytest.mark.asyncio
async def test_register_checks_organisation_before_code(db: AsyncSession):
    with pytest.raises(display_service.OrganisationNotFoundError):
        await display_service.register_display(
            db, pairing_code="000000", organisation_id="missing"
        )


@pytest.mark.asyncio
async def test_register_unknown_code(db: AsyncSession):
    await make_organisation(db, "org1")
    with pytest.raises(display_service.PairingCodeNotFoundError):
        await display_service.register_display(
            db, pairing_code="000000", organisation_id="org1"
        )


@pytest.mark.asyncio
async def test_register_is_not_idempotent(db: AsyncSession):
    await make_organisation(db, "org1")
    await make_organisation(db, "org2")
    display = await _paired_display(db)

    for org in ("org1", "org2"):
        with pytest.raises(display_service.AlreadyPairedError):
            await display_service.register_display(
                db, pairing_code=display.pairing_code, organisation_id=org
            )
    assert display.organisation_id == "org1"


@pytest.mark.asyncio
async def test_register_leaves_is_active_untouched(db: AsyncSession):
    await make_organisation(db, "org1")
    display = await _paired_display(db)
    await display_service.disconnect_display(db, display.id)

    again = await display_service.register_display(
        db, pairing_code=display.pairing_code, organisation_id="org1"
    )

    assert again.status == DeviceStatus.PAIRED
    assert again.is_active is False


# ---------------------------------------------------------------------------
# Status and lazy repair
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_status_unknown_device(db: AsyncSession):
    with pytest.raises(display_service.DisplayNotFoundError):
        await display_service.get_display_status(db, "does-not-exist")


@pytest.mark.asyncio
async def test_status_resets_display_once_organisation_is_gone(db: AsyncSession):
    await make_organisation(db, "org1")
    display = await _paired_display(db)
    await db.commit()

    await planning_service.delete_organisation(db, "org1")
    await db.commit()

    first = await display_service.get_display_status(db, display.id)
    await db.commit()
    assert first.was_reset is True
    assert first.repair.kind is RepairKind.ORGANISATION_GONE
    assert first.repair.reason == "Organisation no longer exists"
    assert first.display.status == DeviceStatus.PENDING
    assert first.display.organisation_id is None
    assert first.display.is_active is False

    for _ in range(3):
        again = await display_service.get_display_status(db, display.id)
        assert again.repair is None
        assert again.display.status == DeviceStatus.PENDING
        assert again.display.organisation_id is None


@pytest.mark.asyncio
async def test_status_clears_deleted_day_plan_but_keeps_pairing(db: AsyncSession):
    await make_organisation(db, "org1")
    display = await _paired_display(db)
    day_plan = await make_day_plan(db, "org1")
    await display_service.assign_day_plan(db, display_id=display.id, day_plan_id=day_plan.id)
    await db.commit()

    await db.delete(day_plan)
    await db.commit()

    result = await display_service.get_display_status(db, display.id)
    assert result.day_plan is None
    assert result.was_reset is False
    assert result.repair.kind is RepairKind.DAY_PLAN_GONE
    assert result.display.current_day_plan_id is None
    assert result.display.status == DeviceStatus.PAIRED


@pytest.mark.asyncio
async def test_status_returns_day_plan_with_ordered_items(db: AsyncSession):
    await make_organisation(db, "org1")
    display = await _paired_display(db)
    day_plan = await make_day_plan(
        db,
        "org1",
        items=[(2, "10:00", "Workshop"), (0, "08:30", "Ankommen"), (1, "09:00", "Andacht")],
    )
    await display_service.assign_day_plan(db, display_id=display.id, day_plan_id=day_plan.id)
    await db.commit()

    result = await display_service.get_display_status(db, display.id)
    assert result.day_plan is not None
    assert [i.title for i in result.day_plan.schedule_items] == ["Ankommen", "Andacht", "Workshop"]


def test_find_dangling_reference_prefers_organisation():
    display = Display(
        id="d1",
        pairing_code="123456",
        name="Display 123456",
        status=DeviceStatus.PAIRED,
        organisation_id="org1",
        current_day_plan_id="dp1",
    )

    event = display_service.find_dangling_reference(
        display, organisation_exists=False, day_plan_exists=False
    )
    assert event.kind is RepairKind.ORGANISATION_GONE
    assert event.missing_id == "org1"

    assert display_service.find_dangling_reference(display, organisation_exists=True) is None

    display_service.apply_repair(display, event)
    assert display.status == DeviceStatus.PENDING
    assert display.current_day_plan_id is None
    assert display_service.find_dangling_reference(display, organisation_exists=False) is None


# ---------------------------------------------------------------------------
# Day plan assignment
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_assign_requires_pairing(db: AsyncSession):
    display = await display_service.init_display(db)
    with pytest.raises(display_service.NotPairedError):
        await display_service.assign_day_plan(db, display_id=display.id, day_plan_id="dp")


@pytest.mark.asyncio
async def test_assign_unknown_display(db: AsyncSession):
    with pytest.raises(display_service.DisplayNotFoundError):
        await display_service.assign_day_plan(db, display_id="nope", day_plan_id="dp")


@pytest.mark.asyncio
async def test_assign_unknown_day_plan(db: AsyncSession):
    await make_organisation(db, "org1")
    display = await _paired_display(db)
    with pytest.raises(display_service.DayPlanNotFoundError):
        await display_service.assign_day_plan(db, display_id=display.id, day_plan_id="nope")


@pytest.mark.asyncio
async def test_assign_rejects_other_organisation_plan(db: AsyncSession):
    await make_organisation(db, "org1")
    await make_organisation(db, "org2")
    display = await _paired_display(db, "org1")
    own_plan = await make_day_plan(db, "org1", name="Own")
    foreign_plan = await make_day_plan(db, "org2", name="Foreign")
    await display_service.assign_day_plan(db, display_id=display.id, day_plan_id=own_plan.id)
    await db.commit()

    with pytest.raises(display_service.CrossOrganisationError):
        await display_service.assign_day_plan(
            db, display_id=display.id, day_plan_id=foreign_plan.id
        )

    result = await display_service.get_display_status(db, display.id)
    assert result.display.current_day_plan_id == own_plan.id
    assert result.day_plan.id == own_plan.id


@pytest.mark.asyncio
async def test_assign_resets_display_when_organisation_is_gone(session_factory):
    async with session_factory() as db:
        await make_organisation(db, "org1")
        display = await _paired_display(db)
        await db.commit()
        await planning_service.delete_organisation(db, "org1")
        await db.commit()

        with pytest.raises(display_service.OrganisationGoneError):
            await display_service.assign_day_plan(db, display_id=display.id, day_plan_id="dp")
        await db.rollback()

    async with session_factory() as db:
        stored = await display_service.get_display(db, display.id)
        assert stored.status == DeviceStatus.PENDING
        assert stored.organisation_id is None
        assert stored.is_active is False


# ---------------------------------------------------------------------------
# Disconnect / reset
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_disconnect_returns_display_to_pending(db: AsyncSession):
    await make_organisation(db, "org1")
    display = await _paired_display(db)
    day_plan = await make_day_plan(db, "org1")
    await display_service.assign_day_plan(db, display_id=display.id, day_plan_id=day_plan.id)

    out = await display_service.disconnect_display(db, display.id)
    assert out.status == DeviceStatus.PENDING
    assert out.organisation_id is None
    assert out.current_day_plan_id is None
    assert out.is_active is False

    # Same code can be paired again after a disconnect
    again = await display_service.register_display(
        db, pairing_code=display.pairing_code, organisation_id="org1"
    )
    assert again.status == DeviceStatus.PAIRED


@pytest.mark.asyncio
async def test_disconnect_unknown_display(db: AsyncSession):
    with pytest.raises(display_service.DisplayNotFoundError):
        await display_service.disconnect_display(db, "nope")


@pytest.mark.asyncio
async def test_reset_replaces_display(db: AsyncSession):
    await make_organisation(db, "org1")
    display = await _paired_display(db)
    old_id = display.id
    await db.commit()

    new_display = await display_service.reset_display(db, old_id)
    await db.commit()

    assert new_display.id != old_id
    assert new_display.status == DeviceStatus.PENDING
    assert new_display.organisation_id is None
    assert new_display.name == f"Display {new_display.pairing_code}"

    with pytest.raises(display_service.DisplayNotFoundError):
        await display_service.get_display_status(db, old_id)


# ---------------------------------------------------------------------------
# Batch cleanup
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_cleanup_resets_only_orphans(session_factory):
    async with session_factory() as db:
        await make_organisation(db, "org1")
        await make_organisation(db, "gone")
        healthy = await _paired_display(db, "org1")
        orphan_a = await _paired_display(db, "gone")
        orphan_b = await _paired_display(db, "gone")
        await db.commit()
        await planning_service.delete_organisation(db, "gone")
        await db.commit()

    report = await display_service.cleanup_orphans(session_factory)

    assert report.cleaned == 2
    assert {d.id for d in report.details} == {orphan_a.id, orphan_b.id}
    assert all(d.success for d in report.details)

    async with session_factory() as db:
        for display_id in (orphan_a.id, orphan_b.id):
            stored = await display_service.get_display(db, display_id)
            assert stored.status == DeviceStatus.PENDING
            assert stored.organisation_id is None
        stored = await display_service.get_display(db, healthy.id)
        assert stored.status == DeviceStatus.PAIRED
        assert stored.organisation_id == "org1"

    # Nothing left to do on a second sweep
    report = await display_service.cleanup_orphans(session_factory)
    assert report.cleaned == 0
    assert report.details == []


@pytest.mark.asyncio
async def test_cleanup_failures_are_isolated(session_factory, monkeypatch):
    async with session_factory() as db:
        await make_organisation(db, "gone")
        broken = await _paired_display(db, "gone")
        fine = await _paired_display(db, "gone")
        await db.commit()
        await planning_service.delete_organisation(db, "gone")
        await db.commit()

    real_repair = display_service.repair_if_dangling

    async def flaky_repair(db, display, **kwargs):
        if display.id == broken.id:
            raise RuntimeError("disk on fire")
        return await real_repair(db, display, **kwargs)

    monkeypatch.setattr(display_service, "repair_if_dangling", flaky_repair)

    report = await display_service.cleanup_orphans(session_factory)

    by_id = {d.id: d for d in report.details}
    assert report.cleaned == 1
    assert by_id[fine.id].success is True
    assert by_id[broken.id].success is False
    assert "disk on fire" in by_id[broken.id].error

    async with session_factory() as db:
        assert (await display_service.get_display(db, fine.id)).organisation_id is None
        assert (await display_service.get_display(db, broken.id)).organisation_id == "gone"


@pytest.mark.asyncio
async def test_cleanup_skips_display_whose_organisation_reappeared(session_factory, monkeypatch):
    async with session_factory() as db:
        await make_organisation(db, "org1")
        display = await _paired_display(db, "org1")
        await db.commit()

    async def stale_scan(db):
        return [(display.id, "org1")]

    monkeypatch.setattr(display_service, "find_orphaned_displays", stale_scan)

    report = await display_service.cleanup_orphans(session_factory)

    assert report.cleaned == 0
    assert [d.success for d in report.details] == [False]

    async with session_factory() as db:
        stored = await display_service.get_display(db, display.id)
        assert stored.status == DeviceStatus.PAIRED
        assert stored.organisation_id == "org1"
