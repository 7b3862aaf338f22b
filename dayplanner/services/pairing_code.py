"""
Pairing code generation.

Codes are 6-digit decimal strings a person can type on the admin UI. The
uniqueness check retries a bounded number of times.
"""

from __future__ import annotations

import secrets

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from dayplanner.config import settings
from dayplanner.models.display import Display

CODE_MIN = 100000
CODE_MAX = 999999


class ExhaustedRetriesError(RuntimeError):
    def __init__(self, attempts: int):
        super().__init__(f"Failed to generate unique pairing code after {attempts} attempts")
        self.attempts = attempts


def generate_pairing_code() -> str:
    return str(CODE_MIN + secrets.randbelow(CODE_MAX - CODE_MIN + 1))


async def is_code_unique(db: AsyncSession, code: str) -> bool:
    stmt = select(Display.id).where(Display.pairing_code == code)
    result = await db.execute(stmt)
    return result.scalar_one_or_none() is None


async def generate_unique_pairing_code(
    db: AsyncSession,
    *,
    max_attempts: int | None = None,
) -> str:
    """Draw codes until one is free in the registry.

    Raises ExhaustedRetriesError after ``max_attempts`` collisions.
    """
    if max_attempts is None:
        max_attempts = settings.pairing_code_max_attempts
    for _ in range(max_attempts):
        code = generate_pairing_code()
        if await is_code_unique(db, code):
            return code
    raise ExhaustedRetriesError(max_attempts)
