import asyncio
import logging
import math
import time
from collections import deque
from dataclasses import dataclass
from typing import Callable, Deque, Dict, FrozenSet, Iterable, List, Optional

import config
from event_bus import EventBus
from events import Event, FrameReceived, HazardCleared, HazardDetected, StaleData
from models import ClassificationFrame, ClearReason, DetectedObject, HazardEvent, Severity

logger = logging.getLogger("smartspecs.hazard_detector")

_SEVERITY_RANK = {Severity.INFO: 0, Severity.CAUTION: 1, Severity.DANGER: 2}


def severity_for_distance(
    distance_m: float,
    danger_m: float = config.DANGER_DISTANCE_M,
    caution_m: float = config.CAUTION_DISTANCE_M,
) -> Severity:
    """Danger below *danger_m*, Caution up to and including *caution_m*, else Info."""
    if distance_m < danger_m:
        return Severity.DANGER
    if distance_m <= caution_m:
        return Severity.CAUTION
    return Severity.INFO


def describe_hazard(label: str, severity: Severity, distance_m: float) -> str:
    name = label.replace("_", " ").replace("-", " ")
    if severity is Severity.DANGER:
        return f"Stop. {name.capitalize()} {distance_m:.1f} meters ahead"
    if severity is Severity.CAUTION:
        return f"Caution, {name} {distance_m:.1f} meters ahead"
    return f"{name.capitalize()} about {distance_m:.0f} meters ahead"


@dataclass
class _Track:
    """Debounce state for one hazard class."""
    hits: Deque[bool]
    misses: int = 0
    event: Optional[HazardEvent] = None
    cleared_at: Optional[float] = None


class HazardDetector:
    """Turns noisy classifier frames into debounced hazard events.

    A hazard class is raised once it qualifies (confidence at or above
    the threshold) in ``min_hits`` of the last ``window`` frames, and
    cleared after ``clear_frames`` consecutive frames without it. A
    cleared class cannot be raised again until ``cooldown`` seconds have
    passed. If no frame arrives for ``stall_timeout`` seconds the active
    hazards are released with reason ``sensor_stall`` instead.
    """

    def __init__(
        self,
        bus: EventBus,
        window: int = config.HAZARD_WINDOW,
        min_hits: int = config.HAZARD_MIN_HITS,
        confidence_threshold: float = config.HAZARD_CONFIDENCE,
        clear_frames: int = config.HAZARD_CLEAR_FRAMES,
        stall_timeout: float = config.SENSOR_STALL_SEC,
        cooldown: float = config.HAZARD_COOLDOWN_SEC,
        danger_distance: float = config.DANGER_DISTANCE_M,
        caution_distance: float = config.CAUTION_DISTANCE_M,
        hazard_labels: Optional[Iterable[str]] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if not 1 <= min_hits <= window:
            raise ValueError("min_hits must be between 1 and window")
        self.bus = bus
        self.window = window
        self.min_hits = min_hits
        self.confidence_threshold = confidence_threshold
        self.clear_frames = clear_frames
        self.stall_timeout = stall_timeout
        self.cooldown = cooldown
        self.danger_distance = danger_distance
        self.caution_distance = caution_distance
        self.hazard_labels: Optional[FrozenSet[str]] = (
            frozenset(hazard_labels) if hazard_labels is not None else None
        )
        self._clock = clock

        self._tracks: Dict[str, _Track] = {}
        self._active = False
        self._stalled = False
        self._last_frame_at: Optional[float] = None
        self._stall_handle: Optional[asyncio.TimerHandle] = None

    # ------------------------------------------------------------------
    #  Lifecycle
    # ------------------------------------------------------------------

    @property
    def active(self) -> bool:
        return self._active

    @property
    def stalled(self) -> bool:
        return self._stalled

    def activate(self) -> None:
        self._tracks.clear()
        self._active = True
        self._stalled = False
        self._last_frame_at = self._clock()
        self._arm_stall_timer()
        logger.info("Hazard detection active")

    def deactivate(self) -> None:
        self._cancel_stall_timer()
        self._active = False
        self._tracks.clear()
        self._last_frame_at = None
        logger.info("Hazard detection inactive")

    # ------------------------------------------------------------------
    #  Frame processing
    # ------------------------------------------------------------------

    def handle(self, event: FrameReceived) -> None:
        """EventBus entry point."""
        self.process_frame(event.frame)

    def severity_for(self, distance_m: float) -> Severity:
        return severity_for_distance(distance_m, self.danger_distance, self.caution_distance)

    def process_frame(self, frame: ClassificationFrame) -> List[Event]:
        if not self._active:
            logger.debug("Ignoring frame %s while inactive", frame.frame_id)
            return []

        now = self._clock()
        self._last_frame_at = now
        if self._stalled:
            self._stalled = False
            logger.info("Classifier frames resumed (frame %s)", frame.frame_id)
        self._arm_stall_timer()

        qualifying = self._qualifying(frame.objects)
        for label in qualifying:
            if label not in self._tracks:
                self._tracks[label] = _Track(hits=deque(maxlen=self.window))

        emitted: List[Event] = []
        for label, track in list(self._tracks.items()):
            obj = qualifying.get(label)
            track.hits.append(obj is not None)
            if obj is not None:
                track.misses = 0
                emitted.extend(self._on_hit(label, track, obj, frame, now))
            else:
                emitted.extend(self._on_miss(label, track, frame, now))

        for event in emitted:
            self.bus.publish(event)
        return emitted

    def _qualifying(self, objects: Iterable[DetectedObject]) -> Dict[str, DetectedObject]:
        """Closest qualifying detection per hazard class."""
        best: Dict[str, DetectedObject] = {}
        for obj in objects:
            if obj.confidence < self.confidence_threshold or not math.isfinite(obj.distance_m):
                continue
            if self.hazard_labels is not None and obj.label not in self.hazard_labels:
                continue
            current = best.get(obj.label)
            if current is None or obj.distance_m < current.distance_m:
                best[obj.label] = obj
        return best

    def _make_event(self, label: str, obj: DetectedObject, frame: ClassificationFrame) -> HazardEvent:
        severity = self.severity_for(obj.distance_m)
        return HazardEvent(
            label=label,
            severity=severity,
            description=describe_hazard(label, severity, obj.distance_m),
            distance_m=obj.distance_m,
            timestamp=frame.timestamp,
            frame_id=frame.frame_id,
        )

    def _on_hit(self, label, track, obj, frame, now) -> List[Event]:
        if track.event is None:
            if sum(track.hits) < self.min_hits:
                return []
            if track.cleared_at is not None and now - track.cleared_at < self.cooldown:
                logger.debug("Suppressing %s during cooldown", label)
                return []
            track.event = self._make_event(label, obj, frame)
            track.cleared_at = None
            logger.info("Hazard raised: %s (%s, %.1fm)", label, track.event.severity.value, obj.distance_m)
            return [HazardDetected(track.event)]

        updated = self._make_event(label, obj, frame)
        escalated = _SEVERITY_RANK[updated.severity] > _SEVERITY_RANK[track.event.severity]
        track.event = updated
        if escalated:
            logger.info("Hazard escalated: %s -> %s", label, updated.severity.value)
            return [HazardDetected(updated)]
        return []

    def _on_miss(self, label, track, frame, now) -> List[Event]:
        if track.event is not None:
            track.misses += 1
            if track.misses >= self.clear_frames:
                track.event = None
                track.misses = 0
                track.cleared_at = now
                logger.info("Hazard cleared: %s", label)
                return [HazardCleared(label=label, reason=ClearReason.CLEARED, timestamp=frame.timestamp)]
            return []

        in_cooldown = track.cleared_at is not None and now - track.cleared_at < self.cooldown
        if not any(track.hits) and not in_cooldown:
            del self._tracks[label]
        return []

    # ------------------------------------------------------------------
    #  Sensor stall
    # ------------------------------------------------------------------

    def check_stall(self) -> bool:
        """Release active hazards if the classifier has gone quiet."""
        if not self._active or self._stalled or self._last_frame_at is None:
            return False
        now = self._clock()
        silent_for = now - self._last_frame_at
        if silent_for < self.stall_timeout:
            return False

        self._stalled = True
        released = [label for label, t in self._tracks.items() if t.event is not None]
        # Stale tracks are discarded without starting a cooldown.
        self._tracks.clear()
        logger.warning("Classifier stalled for %.1fs; releasing %d hazard(s)", silent_for, len(released))
        for label in released:
            self.bus.publish(HazardCleared(label=label, reason=ClearReason.SENSOR_STALL, timestamp=now))
        self.bus.publish(StaleData(source="classifier", stale_for=silent_for))
        return True

    def _on_stall_timer(self) -> None:
        self._stall_handle = None
        if not self.check_stall() and self._active and not self._stalled and self._last_frame_at is not None:
            remaining = self.stall_timeout - (self._clock() - self._last_frame_at)
            self._arm_stall_timer(max(remaining, 0.05))

    def _arm_stall_timer(self, delay: Optional[float] = None) -> None:
        self._cancel_stall_timer()
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        self._stall_handle = loop.call_later(
            self.stall_timeout if delay is None else delay, self._on_stall_timer
        )

    def _cancel_stall_timer(self) -> None:
        if self._stall_handle is not None:
            self._stall_handle.cancel()
            self._stall_handle = None

    # ------------------------------------------------------------------
    #  Read-only views
    # ------------------------------------------------------------------

    @property
    def active_hazards(self) -> List[HazardEvent]:
        hazards = [t.event for t in self._tracks.values() if t.event is not None]
        return sorted(hazards, key=lambda h: (-_SEVERITY_RANK[h.severity], h.distance_m))

    @property
    def current_hazard(self) -> Optional[HazardEvent]:
        """Most severe, then closest, active hazard."""
        hazards = self.active_hazards
        return hazards[0] if hazards else None
