"""
Read access to organisations and day plans, plus demo seeding.
"""

from __future__ import annotations

import logging

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from dayplanner.models.planning import DayPlan, Organisation

logger = logging.getLogger(__name__)


DEMO_ORGANISATIONS: list[dict[str, str]] = [
    {
        "id": "org1",
        "name": "Jugendgruppe St. Martin",
        "description": "Konfi-Tag Organisation St. Martin",
    },
    {
        "id": "org2",
        "name": "Ev. Jugend West",
        "description": "Evangelische Jugendgruppe Nord",
    },
    {
        "id": "org3",
        "name": "Konfi-Team Süd",
        "description": "Konfi-Tag Team Süd",
    },
]


async def get_organisation(db: AsyncSession, organisation_id: str) -> Organisation | None:
    return await db.get(Organisation, organisation_id)


async def organisation_exists(db: AsyncSession, organisation_id: str) -> bool:
    stmt = select(Organisation.id).where(Organisation.id == organisation_id)
    result = await db.execute(stmt)
    return result.scalar_one_or_none() is not None


async def create_organisation(
    db: AsyncSession,
    name: str,
    *,
    organisation_id: str | None = None,
    description: str | None = None,
) -> Organisation:
    org = Organisation(name=name, description=description)
    if organisation_id:
        org.id = organisation_id
    db.add(org)
    await db.flush()
    return org


async def delete_organisation(db: AsyncSession, organisation_id: str) -> bool:
    """Delete an organisation row.

    Displays still pointing at it are not touched here; they are reset by
    the pairing service the next time they are looked at.
    """
    result = await db.execute(delete(Organisation).where(Organisation.id == organisation_id))
    await db.flush()
    return result.rowcount > 0


async def get_day_plan(db: AsyncSession, day_plan_id: str) -> DayPlan | None:
    """Return a day plan with its owning event and ordered schedule items."""
    stmt = (
        select(DayPlan)
        .where(DayPlan.id == day_plan_id)
        .execution_options(populate_existing=True)
    )
    result = await db.execute(stmt)
    return result.scalar_one_or_none()


async def seed_demo_organisations(db: AsyncSession) -> None:
    for data in DEMO_ORGANISATIONS:
        if await get_organisation(db, data["id"]):
            continue
        await create_organisation(
            db,
            data["name"],
            organisation_id=data["id"],
            description=data["description"],
        )
        logger.info("Seeded organisation %s (%s)", data["id"], data["name"])
