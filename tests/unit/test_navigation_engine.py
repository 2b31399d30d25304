"""Unit tests for the NavigationEngine route state machine."""

import pytest

from components.navigation_engine import NavigationEngine, NavState
from events import RerouteRequired, RouteCompleted, StaleData, StepAdvanced
from exceptions import InvalidRoute, InvalidStateTransition
from models import Coordinate, Route, Step

ORIGIN = Coordinate(40.0, -73.0)
# ~0.0009 degrees of latitude is ~100 m.
NORTH_100 = Coordinate(40.0009, -73.0)
NORTH_200 = Coordinate(40.0018, -73.0)
NORTH_300 = Coordinate(40.0027, -73.0)
NORTH_400 = Coordinate(40.0036, -73.0)
NORTH_500 = Coordinate(40.0045, -73.0)


def _route(*ends, destination="Library"):
    steps = tuple(Step(instruction=f"Walk to point {i + 1}", end=end) for i, end in enumerate(ends))
    return Route(destination=destination, steps=steps, origin=ORIGIN)


def _east_of(coord, metres):
    # One degree of longitude at 40N is ~85.3 km.
    return Coordinate(coord.lat, coord.lon + metres / 85_300)


@pytest.fixture
def engine(bus, clock):
    return NavigationEngine(bus, clock=clock)


@pytest.fixture
def navigating(engine):
    engine.load_route(_route(NORTH_100, NORTH_200, NORTH_300))
    engine.start()
    return engine


# ── Transitions ──────────────────────────────────────────────

def test_empty_route_is_rejected(engine):
    with pytest.raises(InvalidRoute):
        engine.load_route(Route(destination="Nowhere", steps=()))
    assert engine.state is NavState.IDLE


def test_start_requires_loaded_route(engine):
    with pytest.raises(InvalidStateTransition):
        engine.start()
    assert engine.state is NavState.IDLE


def test_start_returns_first_step(engine):
    engine.load_route(_route(NORTH_100, NORTH_200))
    first = engine.start()
    assert first.instruction == "Walk to point 1"
    assert engine.state is NavState.NAVIGATING


def test_loaded_route_can_be_replaced_before_start(engine):
    engine.load_route(_route(NORTH_100))
    engine.load_route(_route(NORTH_200, NORTH_300, destination="Park"))
    assert engine.state is NavState.ROUTE_LOADED
    assert engine.route.destination == "Park"


def test_cancel_then_cancel_again(navigating):
    navigating.cancel()
    assert navigating.state is NavState.CANCELLED
    with pytest.raises(InvalidStateTransition):
        navigating.cancel()
    assert navigating.state is NavState.CANCELLED


def test_reset_returns_to_idle(navigating):
    navigating.reset()
    assert navigating.state is NavState.IDLE
    assert navigating.route is None
    assert navigating.snapshot() is None


# ── Step advancement ─────────────────────────────────────────

def test_arrival_at_waypoint_advances_step(navigating, recorder):
    navigating.on_position_update(Coordinate(40.00088, -73.0))

    advanced = recorder.of(StepAdvanced)
    assert [e.step_index for e in advanced] == [1]
    assert advanced[0].steps_total == 3
    assert navigating.step_index == 1


def test_far_from_waypoint_does_not_advance(navigating, recorder):
    navigating.on_position_update(Coordinate(40.0004, -73.0))
    assert recorder.of(StepAdvanced) == []
    assert navigating.step_index == 0


def test_close_waypoints_advance_one_at_a_time_in_order(engine, recorder):
    near = Coordinate(40.00095, -73.0)  # ~5.5 m past the first waypoint
    engine.load_route(_route(NORTH_100, near, NORTH_300))
    engine.start()

    engine.on_position_update(NORTH_100)

    assert [e.step_index for e in recorder.of(StepAdvanced)] == [1, 2]
    assert engine.step_index == 2


def test_final_waypoint_completes_route(navigating, recorder):
    navigating.on_position_update(NORTH_100)
    navigating.on_position_update(NORTH_200)
    recorder.clear()

    navigating.on_position_update(NORTH_300)

    assert recorder.names() == ["RouteCompleted"]
    assert recorder.of(RouteCompleted)[0].destination == "Library"
    assert navigating.state is NavState.COMPLETED
    assert navigating.distance_remaining() == 0.0


def test_five_step_walkthrough_event_sequence(engine, recorder):
    waypoints = (NORTH_100, NORTH_200, NORTH_300, NORTH_400, NORTH_500)
    engine.load_route(_route(*waypoints))
    engine.start()

    for waypoint in waypoints:
        engine.on_position_update(waypoint)

    assert recorder.names() == ["StepAdvanced"] * 4 + ["RouteCompleted"]
    assert [e.step_index for e in recorder.of(StepAdvanced)] == [1, 2, 3, 4]
    assert engine.state is NavState.COMPLETED


def test_jump_to_final_waypoint_does_not_skip_steps(navigating, recorder):
    navigating.on_position_update(NORTH_300)

    assert recorder.of(StepAdvanced) == []
    assert recorder.of(RouteCompleted) == []
    assert navigating.step_index == 0
    assert navigating.state is NavState.NAVIGATING

    navigating.on_position_update(NORTH_100)
    navigating.on_position_update(NORTH_200)
    navigating.on_position_update(NORTH_300)

    assert [e.step_index for e in recorder.of(StepAdvanced)] == [1, 2]
    assert len(recorder.of(RouteCompleted)) == 1


def test_positions_ignored_when_not_navigating(engine, recorder):
    engine.load_route(_route(NORTH_100))
    assert engine.on_position_update(NORTH_100) == []
    assert recorder.events == []


# ── Off-route ────────────────────────────────────────────────

def test_brief_deviation_does_not_reroute(navigating, clock, recorder):
    navigating.on_position_update(_east_of(Coordinate(40.0004, -73.0), 50))
    clock.advance(5)
    navigating.on_position_update(Coordinate(40.0005, -73.0))
    clock.advance(5)
    navigating.on_position_update(Coordinate(40.0006, -73.0))

    assert recorder.of(RerouteRequired) == []
    assert not navigating.off_route


def test_sustained_deviation_reroutes_once(navigating, clock, recorder):
    away = _east_of(Coordinate(40.0004, -73.0), 50)
    navigating.on_position_update(away)
    clock.advance(9)
    navigating.on_position_update(away)
    clock.advance(1)
    navigating.on_position_update(away)

    reroutes = recorder.of(RerouteRequired)
    assert len(reroutes) == 1
    assert reroutes[0].destination == "Library"
    assert reroutes[0].deviation_m > 25
    assert navigating.off_route


def test_off_route_timer_check_without_new_fix(navigating, clock, recorder):
    navigating.on_position_update(_east_of(Coordinate(40.0004, -73.0), 50))
    clock.advance(8)

    assert navigating.check_off_route() is True
    assert len(recorder.of(RerouteRequired)) == 1


def test_replacement_route_keeps_navigating(navigating, clock, recorder):
    away = _east_of(Coordinate(40.0004, -73.0), 50)
    navigating.on_position_update(away)
    clock.advance(9)
    navigating.on_position_update(away)

    navigating.load_route(Route(destination="Library", steps=(Step("Turn right", NORTH_300),)))

    assert navigating.state is NavState.NAVIGATING
    assert navigating.step_index == 0
    assert not navigating.off_route
    assert navigating.current_step.instruction == "Turn right"


# ── Position stall ───────────────────────────────────────────

def test_position_stall_reported_once(navigating, clock, recorder):
    clock.advance(11)

    assert navigating.check_position_stall() is True
    assert navigating.check_position_stall() is False

    stale = recorder.of(StaleData)
    assert len(stale) == 1
    assert stale[0].source == "position"


def test_fresh_fix_prevents_stall(navigating, clock):
    clock.advance(8)
    navigating.on_position_update(Coordinate(40.0004, -73.0))
    clock.advance(8)
    assert navigating.check_position_stall() is False


# ── Views ────────────────────────────────────────────────────

def test_snapshot_shape(navigating):
    navigating.on_position_update(Coordinate(40.0004, -73.0))
    snap = navigating.snapshot()

    assert snap["destination"] == "Library"
    assert snap["state"] == "navigating"
    assert snap["currentStep"]["number"] == 1
    assert snap["stepsTotal"] == 3
    assert snap["distanceRemaining"] == pytest.approx(255, abs=5)
    assert snap["offRoute"] is False
