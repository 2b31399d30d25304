"""Capability-provider interfaces the session core depends on.

The classifier, position source, speech engines and routing service live
outside the core. Classifier frames and position fixes are pushed in
through the SessionManager; speech output and routing are called out to
through the protocols below.
"""

from __future__ import annotations

import logging
import time
import uuid
from typing import Dict, Optional, Protocol

from exceptions import ProviderUnavailable
from models import ClassificationFrame, Coordinate, DetectedObject, Route

logger = logging.getLogger("smartspecs.providers")

MIN_RATE_WPM = 120
MAX_RATE_WPM = 280


def speech_rate_wpm(voice_speed: int) -> int:
    """Map the 0-100 voice speed setting to words per minute (50 -> 200 wpm)."""
    voice_speed = max(0, min(100, voice_speed))
    return round(MIN_RATE_WPM + (MAX_RATE_WPM - MIN_RATE_WPM) * voice_speed / 100)


class SpeechOutputProvider(Protocol):
    def speak(self, text: str, rate_wpm: int = 200) -> str:
        """Start speaking *text* and return its utterance id without waiting."""

    def stop(self, utterance_id: str) -> None:
        """Stop an in-progress utterance."""


class RoutingProvider(Protocol):
    async def plan_route(self, destination: str, origin: Optional[Coordinate]) -> Route:
        """Plan a walking route; raises ProviderUnavailable on failure."""


class ClientSpeechOutput:
    """Speech rendered on the wearable itself.

    The device speaks on every AnnouncementStarted event and reports the end
    of playback back to the session, so this provider only hands out
    utterance ids and remembers which ones are still playing. Once a
    streaming client has attached, speech is unavailable whenever no client
    is connected.
    """

    def __init__(self) -> None:
        self.in_flight: Dict[str, str] = {}
        self.connected = True
        self._clients = 0

    def attach(self) -> None:
        self._clients += 1
        self.connected = True

    def detach(self) -> None:
        self._clients = max(0, self._clients - 1)
        self.connected = self._clients > 0
        if not self.connected:
            logger.warning("Speech output lost: no device connected (%d in flight)", len(self.in_flight))

    def speak(self, text: str, rate_wpm: int = 200) -> str:
        if not self.connected:
            raise ProviderUnavailable("speech", "no device connected")
        utterance_id = uuid.uuid4().hex
        self.in_flight[utterance_id] = text
        return utterance_id

    def stop(self, utterance_id: str) -> None:
        self.in_flight.pop(utterance_id, None)

    def finished(self, utterance_id: str) -> None:
        self.in_flight.pop(utterance_id, None)


def frame_from_dict(data: dict) -> ClassificationFrame:
    """Parse a classifier frame payload ({frame_id?, timestamp?, objects: [...]})."""
    raw_objects = data.get("objects") or []
    if not isinstance(raw_objects, list):
        raise ValueError("objects must be a list of detections")
    objects = []
    for raw in raw_objects:
        if not isinstance(raw, dict) or "label" not in raw or "distance_m" not in raw:
            logger.debug("Skipping malformed detection: %s", raw)
            continue
        try:
            objects.append(DetectedObject(
                label=str(raw["label"]),
                confidence=float(raw.get("confidence", 0.0)),
                distance_m=float(raw["distance_m"]),
            ))
        except (TypeError, ValueError):
            logger.debug("Skipping malformed detection: %s", raw)
    return ClassificationFrame(
        frame_id=str(data.get("frame_id") or uuid.uuid4().hex[:12]),
        timestamp=float(data.get("timestamp") or time.time()),
        objects=tuple(objects),
    )
