"""Smart Specs data models shared between components."""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from enum import Enum, IntEnum
from typing import List, Optional, Tuple

from exceptions import InvalidRoute

EARTH_RADIUS_M = 6_371_000.0


class Mode(str, Enum):
    IDLE = "idle"
    DETECTING = "detecting"
    NAVIGATING = "navigating"


class Severity(str, Enum):
    INFO = "info"
    CAUTION = "caution"
    DANGER = "danger"


class Priority(IntEnum):
    """Announcement priority. Higher value wins the voice channel."""

    AMBIENT = 0
    NAVIGATION = 1
    HAZARD = 2
    EMERGENCY = 3


class ListeningState(str, Enum):
    OFF = "off"
    LISTENING = "listening"
    PROCESSING = "processing"


class TurnType(str, Enum):
    STRAIGHT = "straight"
    LEFT = "left"
    RIGHT = "right"
    SLIGHT_LEFT = "slight-left"
    SLIGHT_RIGHT = "slight-right"
    U_TURN = "u-turn"
    ARRIVE = "arrive"


class ClearReason(str, Enum):
    CLEARED = "cleared"
    SENSOR_STALL = "sensor_stall"


# ---------------------------------------------------------------------------
#  Perception
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class DetectedObject:
    label: str
    confidence: float
    distance_m: float


@dataclass(frozen=True)
class ClassificationFrame:
    """One classifier output frame."""
    frame_id: str
    timestamp: float
    objects: Tuple[DetectedObject, ...] = ()


@dataclass(frozen=True)
class HazardEvent:
    label: str
    severity: Severity
    description: str
    distance_m: float
    timestamp: float
    frame_id: str


# ---------------------------------------------------------------------------
#  Navigation
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Coordinate:
    lat: float
    lon: float

    def distance_to(self, other: "Coordinate") -> float:
        """Great-circle distance in metres (haversine)."""
        phi1, phi2 = math.radians(self.lat), math.radians(other.lat)
        dphi = phi2 - phi1
        dlmb = math.radians(other.lon - self.lon)
        a = math.sin(dphi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(dlmb / 2) ** 2
        return 2 * EARTH_RADIUS_M * math.asin(min(1.0, math.sqrt(a)))

    def offset_m(self, origin: "Coordinate") -> Tuple[float, float]:
        """Local (east, north) offset from *origin* in metres."""
        lat0 = math.radians(origin.lat)
        east = math.radians(self.lon - origin.lon) * math.cos(lat0) * EARTH_RADIUS_M
        north = math.radians(self.lat - origin.lat) * EARTH_RADIUS_M
        return east, north


def distance_to_segment(point: Coordinate, start: Coordinate, end: Coordinate) -> float:
    """Distance in metres from *point* to the segment start→end."""
    px, py = point.offset_m(start)
    ex, ey = end.offset_m(start)
    seg_len_sq = ex * ex + ey * ey
    if seg_len_sq == 0:
        return math.hypot(px, py)
    t = max(0.0, min(1.0, (px * ex + py * ey) / seg_len_sq))
    return math.hypot(px - t * ex, py - t * ey)


@dataclass(frozen=True)
class Step:
    instruction: str
    end: Coordinate
    distance_remaining: float = 0.0  # metres left on the route when this step begins
    turn_type: TurnType = TurnType.STRAIGHT


@dataclass(frozen=True)
class Route:
    """A complete route. Replaced wholesale on re-route, never edited."""
    destination: str
    steps: Tuple[Step, ...]
    origin: Optional[Coordinate] = None

    @property
    def final_waypoint(self) -> Coordinate:
        return self.steps[-1].end


# ---------------------------------------------------------------------------
#  Voice
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class AnnouncementRequest:
    text: str
    priority: Priority
    requested_by: str
    expires_at: float
    dedupe_key: Optional[str] = None


@dataclass(frozen=True)
class VoiceChannelState:
    """Read-only snapshot of the voice channel."""
    speaking: Optional[AnnouncementRequest]
    utterance_id: Optional[str]
    queued: Tuple[AnnouncementRequest, ...] = ()

    @property
    def status(self) -> str:
        if self.speaking is not None:
            return "speaking"
        if self.queued:
            return "queued"
        return "idle"


# ---------------------------------------------------------------------------
#  Settings
# ---------------------------------------------------------------------------

@dataclass
class Settings:
    voice_speed: int = 50
    high_contrast: bool = False
    haptic_feedback: bool = True
    audio_descriptions: bool = True

    def validate(self) -> None:
        if isinstance(self.voice_speed, bool) or not isinstance(self.voice_speed, int):
            raise ValueError("voice_speed must be an integer")
        if not 0 <= self.voice_speed <= 100:
            raise ValueError("voice_speed must be between 0 and 100")
        for name in ("high_contrast", "haptic_feedback", "audio_descriptions"):
            if not isinstance(getattr(self, name), bool):
                raise ValueError(f"{name} must be a boolean")


@dataclass
class Session:
    """Session record owned exclusively by the SessionManager."""
    id: str
    mode: Mode = Mode.IDLE
    settings: Settings = field(default_factory=Settings)
    listening: ListeningState = ListeningState.OFF
    battery: Optional[int] = None
    hazards_detected: int = 0
    routes_completed: int = 0


def steps_from_dicts(raw_steps: List[dict]) -> Tuple[Step, ...]:
    """Build Step tuples from JSON-like dicts ({instruction, lat, lon, ...})."""
    steps = []
    for i, raw in enumerate(raw_steps):
        try:
            steps.append(Step(
                instruction=str(raw["instruction"]),
                end=Coordinate(float(raw["lat"]), float(raw["lon"])),
                distance_remaining=float(raw.get("distance_remaining", 0.0)),
                turn_type=TurnType(raw.get("turn_type", TurnType.STRAIGHT.value)),
            ))
        except (KeyError, TypeError, ValueError) as exc:
            raise InvalidRoute(f"step {i} is malformed: {exc}") from exc
    return tuple(steps)
