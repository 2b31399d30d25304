"""CRUD operations for Smart Specs (async PostgreSQL)."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import update

from database.async_models import AssistSession, DeviceSettings, HazardLog
from database.connection import get_session

logger = logging.getLogger("smartspecs.crud")


# ---------------------------------------------------------------------------
#  Device settings
# ---------------------------------------------------------------------------

async def load_settings(device_id: str) -> Optional[DeviceSettings]:
    async with get_session() as db:
        return await db.get(DeviceSettings, device_id)


async def save_settings(
    device_id: str,
    voice_speed: int,
    high_contrast: bool,
    haptic_feedback: bool,
    audio_descriptions: bool,
) -> None:
    """Insert or update the settings row for *device_id*."""
    async with get_session() as db:
        row = await db.get(DeviceSettings, device_id)
        if row is None:
            row = DeviceSettings(device_id=device_id)
            db.add(row)
        row.voice_speed = voice_speed
        row.high_contrast = high_contrast
        row.haptic_feedback = haptic_feedback
        row.audio_descriptions = audio_descriptions


# ---------------------------------------------------------------------------
#  Assist sessions
# ---------------------------------------------------------------------------

async def create_session(session_id: str, device_id: Optional[str] = None) -> None:
    async with get_session() as db:
        db.add(AssistSession(session_id=session_id, device_id=device_id))


async def end_session(
    session_id: str,
    hazards_detected: int = 0,
    routes_completed: int = 0,
) -> None:
    async with get_session() as db:
        await db.execute(
            update(AssistSession)
            .where(AssistSession.session_id == session_id)
            .values(
                ended_at=datetime.now(timezone.utc),
                hazards_detected=hazards_detected,
                routes_completed=routes_completed,
            )
        )


# ---------------------------------------------------------------------------
#  Hazard log
# ---------------------------------------------------------------------------

async def save_hazard_event(
    session_id: str,
    label: str,
    severity: str,
    distance_m: Optional[float] = None,
) -> int:
    async with get_session() as db:
        evt = HazardLog(
            session_id=session_id,
            label=label,
            severity=severity,
            distance_m=distance_m,
        )
        db.add(evt)
        await db.flush()
        logger.debug("Logged hazard %s (%s) for session %s", label, severity, session_id)
        return evt.id

