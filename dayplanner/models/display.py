"""Display device model.

A Display is created PENDING with a pairing code, becomes PAIRED once an
operator binds the code to an organisation, and falls back to PENDING on
disconnect or when its organisation disappears.

`organisation_id` and `current_day_plan_id` are deliberately plain columns
without foreign keys: dangling references are repaired lazily by the pairing
service, not by the database.
"""

from __future__ import annotations

import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy import Boolean, DateTime, Enum, String
from sqlalchemy.orm import Mapped, mapped_column

from dayplanner.database import Base


class DeviceStatus(str, enum.Enum):
    PENDING = "PENDING"
    PAIRED = "PAIRED"


class Display(Base):
    __tablename__ = "displays"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    pairing_code: Mapped[str] = mapped_column(String(6), nullable=False, unique=True, index=True)
    status: Mapped[DeviceStatus] = mapped_column(
        Enum(DeviceStatus), nullable=False, default=DeviceStatus.PENDING
    )
    name: Mapped[str] = mapped_column(String(120), nullable=False)

    organisation_id: Mapped[str | None] = mapped_column(String(36), nullable=True, index=True)
    current_day_plan_id: Mapped[str | None] = mapped_column(String(36), nullable=True)

    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
        nullable=False,
    )

    @property
    def is_paired(self) -> bool:
        return self.status == DeviceStatus.PAIRED

    def __repr__(self) -> str:  # pragma: no cover
        return f"<Display {self.id[:8]} code={self.pairing_code} {self.status.value}>"
