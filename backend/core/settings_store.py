"""Settings persistence across sessions.

DatabaseSettingsStore keeps one row per device in PostgreSQL. When the
database is unavailable the session keeps working with in-memory
settings and the failure is only logged.
"""

from __future__ import annotations

import logging
from dataclasses import asdict
from typing import Dict, Optional, Protocol

from models import Settings

logger = logging.getLogger("smartspecs.settings_store")


class SettingsStore(Protocol):
    async def load(self, device_id: str) -> Optional[Settings]:
        ...

    async def save(self, device_id: str, settings: Settings) -> None:
        ...


class MemorySettingsStore:
    """Process-local store; settings survive session restarts but not the process."""

    def __init__(self) -> None:
        self._rows: Dict[str, dict] = {}

    async def load(self, device_id: str) -> Optional[Settings]:
        row = self._rows.get(device_id)
        return Settings(**row) if row is not None else None

    async def save(self, device_id: str, settings: Settings) -> None:
        self._rows[device_id] = asdict(settings)


class DatabaseSettingsStore:
    def __init__(self) -> None:
        # Imported lazily so the core runs without SQLAlchemy configured.
        from database import crud

        self._crud = crud

    async def load(self, device_id: str) -> Optional[Settings]:
        row = await self._crud.load_settings(device_id)
        if row is None:
            return None
        return Settings(
            voice_speed=row.voice_speed,
            high_contrast=row.high_contrast,
            haptic_feedback=row.haptic_feedback,
            audio_descriptions=row.audio_descriptions,
        )

    async def save(self, device_id: str, settings: Settings) -> None:
        await self._crud.save_settings(device_id, **asdict(settings))
        logger.debug("Persisted settings for device %s", device_id)
