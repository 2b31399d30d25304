"""Events carried on the Smart Specs EventBus.

Sensor input events (frames, positions) stay inside the core; everything
else is forwarded to the presentation client as ``{"type": <name>, ...}``.
"""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass
from enum import Enum
from typing import Any, ClassVar, Optional

from models import (
    ClassificationFrame,
    ClearReason,
    Coordinate,
    HazardEvent,
    ListeningState,
    Mode,
    Priority,
    Step,
)


def _jsonable(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.name if isinstance(value, Priority) else value.value
    if isinstance(value, dict):
        return {k: _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    return value


@dataclass(frozen=True)
class Event:
    client_facing: ClassVar[bool] = True

    @property
    def name(self) -> str:
        return type(self).__name__

    def to_dict(self) -> dict:
        return {"type": self.name, **_jsonable(dataclasses.asdict(self))}


# ---------------------------------------------------------------------------
#  Sensor input (internal)
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class FrameReceived(Event):
    client_facing: ClassVar[bool] = False
    frame: ClassificationFrame


@dataclass(frozen=True)
class PositionReceived(Event):
    client_facing: ClassVar[bool] = False
    position: Coordinate


# ---------------------------------------------------------------------------
#  Detection
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class HazardDetected(Event):
    hazard: HazardEvent


@dataclass(frozen=True)
class HazardCleared(Event):
    label: str
    reason: ClearReason
    timestamp: float


@dataclass(frozen=True)
class HapticPulse(Event):
    label: str
    distance_m: float


# ---------------------------------------------------------------------------
#  Navigation
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class StepAdvanced(Event):
    step_index: int
    steps_total: int
    step: Step


@dataclass(frozen=True)
class RouteCompleted(Event):
    destination: str


@dataclass(frozen=True)
class RerouteRequired(Event):
    destination: str
    position: Coordinate
    deviation_m: float


# ---------------------------------------------------------------------------
#  Voice channel
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class AnnouncementStarted(Event):
    utterance_id: str
    text: str
    priority: Priority
    rate_wpm: int


@dataclass(frozen=True)
class AnnouncementFinished(Event):
    utterance_id: str


@dataclass(frozen=True)
class AnnouncementInterrupted(Event):
    utterance_id: str
    text: str


@dataclass(frozen=True)
class QueueOverflow(Event):
    dropped_text: str
    dropped_priority: Priority
    requested_by: str


@dataclass(frozen=True)
class CommandNotUnderstood(Event):
    text: str
    reason: str = "unrecognized"


@dataclass(frozen=True)
class ListeningChanged(Event):
    state: ListeningState


# ---------------------------------------------------------------------------
#  Session
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ModeChanged(Event):
    mode: Mode
    previous: Mode


@dataclass(frozen=True)
class SettingsChanged(Event):
    voice_speed: int
    high_contrast: bool
    haptic_feedback: bool
    audio_descriptions: bool


@dataclass(frozen=True)
class StaleData(Event):
    source: str
    stale_for: float
    detail: Optional[str] = None


@dataclass(frozen=True)
class SOSTriggered(Event):
    mode: Mode


@dataclass(frozen=True)
class BatteryLow(Event):
    level: int
