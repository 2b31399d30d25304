"""Unit tests for HazardDetector debouncing, clearing and stall handling."""

import itertools

import pytest

from components.hazard_detector import HazardDetector, describe_hazard, severity_for_distance
from events import FrameReceived, HazardCleared, HazardDetected, StaleData
from models import ClassificationFrame, ClearReason, DetectedObject, Severity

_frame_ids = itertools.count(1)


def _frame(*objects, timestamp=0.0):
    """Build a frame from (label, confidence, distance_m) tuples."""
    return ClassificationFrame(
        frame_id=f"f{next(_frame_ids)}",
        timestamp=timestamp,
        objects=tuple(DetectedObject(*o) for o in objects),
    )


BIKE = ("bicycle", 0.9, 3.0)
NOTHING = ()


@pytest.fixture
def detector(bus, clock):
    d = HazardDetector(bus, clock=clock)
    d.activate()
    return d


def _feed(detector, *frames):
    emitted = []
    for objects in frames:
        emitted.extend(detector.process_frame(_frame(*objects)))
    return emitted


# ── Severity ─────────────────────────────────────────────────

@pytest.mark.parametrize("distance,expected", [
    (0.2, Severity.DANGER),
    (1.49, Severity.DANGER),
    (1.5, Severity.CAUTION),
    (4.0, Severity.CAUTION),
    (4.01, Severity.INFO),
    (20.0, Severity.INFO),
])
def test_severity_bands(distance, expected):
    assert severity_for_distance(distance) is expected


def test_describe_hazard_wording():
    assert describe_hazard("bicycle", Severity.DANGER, 1.24) == "Stop. Bicycle 1.2 meters ahead"
    assert describe_hazard("wet_floor", Severity.CAUTION, 2.0) == "Caution, wet floor 2.0 meters ahead"
    assert describe_hazard("car", Severity.INFO, 9.6) == "Car about 10 meters ahead"


# ── Debounce ─────────────────────────────────────────────────

def test_single_frame_is_not_enough(detector, recorder):
    _feed(detector, [BIKE])
    assert recorder.of(HazardDetected) == []


def test_two_consecutive_hits_raise_once(detector, recorder):
    _feed(detector, [BIKE], [BIKE], [BIKE], [BIKE])

    raised = recorder.of(HazardDetected)
    assert len(raised) == 1
    assert raised[0].hazard.label == "bicycle"
    assert raised[0].hazard.severity is Severity.CAUTION


def test_hit_miss_hit_raises_on_third_frame(detector, recorder):
    assert _feed(detector, [BIKE], NOTHING) == []
    emitted = _feed(detector, [BIKE])
    assert [type(e) for e in emitted] == [HazardDetected]


def test_low_confidence_detections_are_ignored(detector, recorder):
    _feed(detector, [("bicycle", 0.59, 3.0)], [("bicycle", 0.4, 3.0)], [("bicycle", 0.1, 3.0)])
    assert recorder.of(HazardDetected) == []


def test_closest_detection_of_a_class_wins(detector):
    _feed(detector, [("person", 0.9, 6.0), ("person", 0.8, 1.0)])
    emitted = _feed(detector, [("person", 0.9, 6.0), ("person", 0.8, 1.0)])
    assert emitted[0].hazard.severity is Severity.DANGER
    assert emitted[0].hazard.distance_m == 1.0


def test_hazard_labels_filter(bus, clock, recorder):
    detector = HazardDetector(bus, hazard_labels={"car"}, clock=clock)
    detector.activate()
    _feed(detector, [BIKE], [BIKE])
    assert recorder.of(HazardDetected) == []


def test_min_hits_must_fit_window(bus):
    with pytest.raises(ValueError):
        HazardDetector(bus, window=2, min_hits=3)


def test_escalation_is_announced_again(detector, recorder):
    _feed(detector, [BIKE], [BIKE], [("bicycle", 0.9, 1.0)])

    severities = [e.hazard.severity for e in recorder.of(HazardDetected)]
    assert severities == [Severity.CAUTION, Severity.DANGER]


def test_frames_ignored_while_inactive(bus, clock, recorder):
    detector = HazardDetector(bus, clock=clock)
    _feed(detector, [BIKE], [BIKE])
    assert recorder.events == []


def test_bus_frames_drive_detector(bus, detector, recorder):
    bus.subscribe_to(FrameReceived, handler=detector.handle)
    bus.publish(FrameReceived(_frame(BIKE)))
    bus.publish(FrameReceived(_frame(BIKE)))
    assert len(recorder.of(HazardDetected)) == 1


# ── Clearing & cooldown ──────────────────────────────────────

def test_clears_after_consecutive_misses(detector, recorder):
    _feed(detector, [BIKE], [BIKE], NOTHING)
    assert recorder.of(HazardCleared) == []

    _feed(detector, NOTHING)

    cleared = recorder.of(HazardCleared)
    assert len(cleared) == 1
    assert cleared[0].reason is ClearReason.CLEARED
    assert detector.current_hazard is None


def test_cooldown_suppresses_immediate_reraise(detector, clock, recorder):
    _feed(detector, [BIKE], [BIKE], NOTHING, NOTHING)
    _feed(detector, [BIKE], [BIKE])
    assert len(recorder.of(HazardDetected)) == 1

    clock.advance(5)
    _feed(detector, [BIKE])

    assert len(recorder.of(HazardDetected)) == 2


def test_current_hazard_is_most_severe(detector):
    _feed(detector, [BIKE, ("pole", 0.9, 1.0)], [BIKE, ("pole", 0.9, 1.0)])

    assert detector.current_hazard.label == "pole"
    assert [h.label for h in detector.active_hazards] == ["pole", "bicycle"]


# ── Sensor stall ─────────────────────────────────────────────

def test_stall_releases_active_hazards(detector, clock, recorder):
    _feed(detector, [BIKE], [BIKE])
    clock.advance(6)

    assert detector.check_stall() is True

    cleared = recorder.of(HazardCleared)
    assert [(c.label, c.reason) for c in cleared] == [("bicycle", ClearReason.SENSOR_STALL)]
    stale = recorder.of(StaleData)
    assert stale[0].source == "classifier"
    assert stale[0].stale_for == pytest.approx(6.0)
    assert detector.stalled
    assert detector.check_stall() is False


def test_no_stall_before_timeout(detector, clock):
    clock.advance(4.9)
    assert detector.check_stall() is False


def test_hazard_can_be_raised_right_after_stall(detector, clock, recorder):
    _feed(detector, [BIKE], [BIKE])
    clock.advance(6)
    detector.check_stall()

    _feed(detector, [BIKE], [BIKE])

    assert len(recorder.of(HazardDetected)) == 2
    assert not detector.stalled
