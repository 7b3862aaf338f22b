"""
Local key-value state kept by a display device between restarts.

Stored as a small JSON file. Keys:
- ``displayId``: server id of this display
- ``displayPaired``: last known pairing flag
- ``displayOrgId``: organisation the display is paired to
- ``assignedDayPlan``: last day plan payload, for offline rendering
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

from dayplanner.config import settings

logger = logging.getLogger(__name__)

STATE_KEYS = ("displayId", "displayPaired", "displayOrgId", "assignedDayPlan")


class DeviceStateStore:
    def __init__(self, path: Path | None = None) -> None:
        self.path = Path(path or settings.device_state_path)

    def load(self) -> dict[str, Any]:
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            logger.warning("Ignoring unreadable device state %s: %s", self.path, exc)
            return {}
        return data if isinstance(data, dict) else {}

    def _write(self, data: dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(json.dumps(data, indent=2), encoding="utf-8")

    def get(self, key: str, default: Any = None) -> Any:
        return self.load().get(key, default)

    def set(self, key: str, value: Any) -> None:
        self.update({key: value})

    def update(self, values: dict[str, Any]) -> None:
        data = self.load()
        data.update(values)
        self._write(data)

    def clear(self) -> None:
        """Forget everything about the current pairing."""
        data = self.load()
        for key in STATE_KEYS:
            data.pop(key, None)
        if data:
            self._write(data)
        elif self.path.exists():
            self.path.unlink()
        logger.info("Cleared local display state")
