import asyncio
import logging
import time
from enum import Enum
from typing import Callable, List, Optional

import config
from exceptions import InvalidRoute, InvalidStateTransition
from event_bus import EventBus
from events import Event, PositionReceived, RerouteRequired, RouteCompleted, StaleData, StepAdvanced
from models import Coordinate, Route, Step, distance_to_segment

logger = logging.getLogger("smartspecs.navigation_engine")


class NavState(str, Enum):
    IDLE = "idle"
    ROUTE_LOADED = "route_loaded"
    NAVIGATING = "navigating"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


TERMINAL_STATES = (NavState.COMPLETED, NavState.CANCELLED)


class NavigationEngine:
    """Route state machine driven by position updates.

    Idle/Completed/Cancelled --load_route--> RouteLoaded --start--> Navigating
    --(last step reached)--> Completed; cancel() from any non-terminal state.

    While navigating, each position fix advances past every consecutive step
    whose endpoint lies within the arrival radius, one step at a time and in
    order. Sustained deviation from the current leg raises RerouteRequired;
    the replacement route is accepted through load_route() without leaving
    the Navigating state.
    """

    def __init__(
        self,
        bus: EventBus,
        arrival_radius: float = config.ARRIVAL_RADIUS_M,
        off_route_threshold: float = config.OFF_ROUTE_M,
        off_route_debounce: float = config.OFF_ROUTE_DEBOUNCE_SEC,
        position_stall_timeout: float = config.POSITION_STALL_SEC,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.bus = bus
        self.arrival_radius = arrival_radius
        self.off_route_threshold = off_route_threshold
        self.off_route_debounce = off_route_debounce
        self.position_stall_timeout = position_stall_timeout
        self._clock = clock

        self.state = NavState.IDLE
        self._route: Optional[Route] = None
        self._step_index = 0
        self._leg_start: Optional[Coordinate] = None
        self._last_position: Optional[Coordinate] = None
        self._distance_to_waypoint: Optional[float] = None

        self._off_route_since: Optional[float] = None
        self._off_route_deviation = 0.0
        self._reroute_reported = False
        self._off_route_handle: Optional[asyncio.TimerHandle] = None

        self._last_fix_at: Optional[float] = None
        self._position_stalled = False
        self._stall_handle: Optional[asyncio.TimerHandle] = None

    # ------------------------------------------------------------------
    #  Transitions
    # ------------------------------------------------------------------

    def load_route(self, route: Route) -> None:
        if not route.steps:
            raise InvalidRoute("route has no steps")

        if self.state is NavState.NAVIGATING:
            self._install(route)
            logger.info("Replacement route loaded for %s (%d steps)", route.destination, len(route.steps))
            return

        self._install(route)
        self.state = NavState.ROUTE_LOADED
        logger.info("Route loaded: %s (%d steps)", route.destination, len(route.steps))

    def start(self) -> Step:
        if self.state is not NavState.ROUTE_LOADED:
            raise InvalidStateTransition(self.state.value, "start navigation")
        self.state = NavState.NAVIGATING
        self._last_fix_at = self._clock()
        self._position_stalled = False
        self._arm_stall_timer()
        logger.info("Navigation started to %s", self._route.destination)
        return self.current_step

    def cancel(self) -> None:
        if self.state in TERMINAL_STATES:
            raise InvalidStateTransition(self.state.value, "cancel navigation")
        previous = self.state
        self._cancel_timers()
        self.state = NavState.CANCELLED
        logger.info("Navigation cancelled (was %s)", previous.value)

    def reset(self) -> None:
        """Discard the route and return to Idle."""
        self._cancel_timers()
        self.state = NavState.IDLE
        self._route = None
        self._step_index = 0
        self._leg_start = None
        self._last_position = None
        self._distance_to_waypoint = None
        self._clear_off_route()

    def _install(self, route: Route) -> None:
        self._route = route
        self._step_index = 0
        self._leg_start = route.origin or self._last_position
        self._distance_to_waypoint = None
        self._clear_off_route()

    # ------------------------------------------------------------------
    #  Position updates
    # ------------------------------------------------------------------

    def handle(self, event: PositionReceived) -> None:
        """EventBus entry point."""
        self.on_position_update(event.position)

    def on_position_update(self, position: Coordinate) -> List[Event]:
        if self.state is not NavState.NAVIGATING:
            logger.debug("Ignoring position fix while %s", self.state.value)
            return []

        now = self._clock()
        self._last_fix_at = now
        if self._position_stalled:
            self._position_stalled = False
            logger.info("Position fixes resumed")
        self._arm_stall_timer()

        self._last_position = position
        if self._leg_start is None:
            self._leg_start = position

        emitted: List[Event] = []
        steps = self._route.steps
        while True:
            step = steps[self._step_index]
            distance = position.distance_to(step.end)
            self._distance_to_waypoint = distance
            if distance > self.arrival_radius:
                break
            if self._step_index == len(steps) - 1:
                self._cancel_timers()
                self.state = NavState.COMPLETED
                logger.info("Arrived at %s", self._route.destination)
                emitted.append(RouteCompleted(destination=self._route.destination))
                break
            self._leg_start = step.end
            self._step_index += 1
            self._clear_off_route()
            logger.info("Advanced to step %d/%d", self._step_index + 1, len(steps))
            emitted.append(StepAdvanced(
                step_index=self._step_index,
                steps_total=len(steps),
                step=steps[self._step_index],
            ))

        for event in emitted:
            self.bus.publish(event)

        if self.state is NavState.NAVIGATING:
            self._check_off_route(position, now)
        return emitted

    # ------------------------------------------------------------------
    #  Off-route detection
    # ------------------------------------------------------------------

    def _deviation(self, position: Coordinate) -> float:
        target = self.current_step.end
        if self._leg_start is None:
            return 0.0
        return distance_to_segment(position, self._leg_start, target)

    def _check_off_route(self, position: Coordinate, now: float) -> None:
        deviation = self._deviation(position)
        if deviation <= self.off_route_threshold:
            if self._off_route_since is not None:
                logger.info("Back on route (deviation %.1fm)", deviation)
            self._clear_off_route()
            return

        self._off_route_deviation = deviation
        if self._off_route_since is None:
            self._off_route_since = now
            logger.info("Possible off-route: %.1fm from path", deviation)
            self._arm_off_route_timer()
        self.check_off_route()

    def check_off_route(self) -> bool:
        """Raise RerouteRequired once deviation has persisted past the debounce period."""
        if (
            self.state is not NavState.NAVIGATING
            or self._off_route_since is None
            or self._reroute_reported
        ):
            return False
        if self._clock() - self._off_route_since < self.off_route_debounce:
            return False
        self._reroute_reported = True
        self._cancel_off_route_timer()
        logger.warning("Off route by %.1fm; reroute required", self._off_route_deviation)
        self.bus.publish(RerouteRequired(
            destination=self._route.destination,
            position=self._last_position,
            deviation_m=round(self._off_route_deviation, 1),
        ))
        return True

    def _clear_off_route(self) -> None:
        self._cancel_off_route_timer()
        self._off_route_since = None
        self._off_route_deviation = 0.0
        self._reroute_reported = False

    def _on_off_route_timer(self) -> None:
        self._off_route_handle = None
        self.check_off_route()

    def _arm_off_route_timer(self) -> None:
        self._cancel_off_route_timer()
        loop = _running_loop()
        if loop is not None:
            self._off_route_handle = loop.call_later(self.off_route_debounce, self._on_off_route_timer)

    def _cancel_off_route_timer(self) -> None:
        if self._off_route_handle is not None:
            self._off_route_handle.cancel()
            self._off_route_handle = None

    # ------------------------------------------------------------------
    #  Position provider stall
    # ------------------------------------------------------------------

    def check_position_stall(self) -> bool:
        if self.state is not NavState.NAVIGATING or self._position_stalled or self._last_fix_at is None:
            return False
        silent_for = self._clock() - self._last_fix_at
        if silent_for < self.position_stall_timeout:
            return False
        self._position_stalled = True
        logger.warning("No position fix for %.1fs", silent_for)
        self.bus.publish(StaleData(source="position", stale_for=silent_for))
        return True

    def _on_stall_timer(self) -> None:
        self._stall_handle = None
        self.check_position_stall()

    def _arm_stall_timer(self) -> None:
        if self._stall_handle is not None:
            self._stall_handle.cancel()
            self._stall_handle = None
        loop = _running_loop()
        if loop is not None:
            self._stall_handle = loop.call_later(self.position_stall_timeout, self._on_stall_timer)

    def _cancel_timers(self) -> None:
        self._cancel_off_route_timer()
        if self._stall_handle is not None:
            self._stall_handle.cancel()
            self._stall_handle = None

    # ------------------------------------------------------------------
    #  Read-only views
    # ------------------------------------------------------------------

    @property
    def route(self) -> Optional[Route]:
        return self._route

    @property
    def step_index(self) -> int:
        return self._step_index

    @property
    def current_step(self) -> Optional[Step]:
        if self._route is None:
            return None
        return self._route.steps[self._step_index]

    @property
    def last_position(self) -> Optional[Coordinate]:
        return self._last_position

    @property
    def off_route(self) -> bool:
        return self._reroute_reported

    def distance_remaining(self) -> Optional[float]:
        """Metres to the destination along the remaining waypoints."""
        if self._route is None:
            return None
        steps = self._route.steps
        if self.state is NavState.COMPLETED:
            return 0.0
        if self._distance_to_waypoint is None:
            return steps[self._step_index].distance_remaining or None
        total = self._distance_to_waypoint
        for prev, nxt in zip(steps[self._step_index:], steps[self._step_index + 1:]):
            total += prev.end.distance_to(nxt.end)
        return total

    def snapshot(self) -> Optional[dict]:
        if self._route is None or self.state is NavState.IDLE:
            return None
        step = self.current_step
        remaining = self.distance_remaining()
        return {
            "destination": self._route.destination,
            "state": self.state.value,
            "currentStep": {
                "index": self._step_index,
                "number": self._step_index + 1,
                "instruction": step.instruction,
                "turnType": step.turn_type.value,
            },
            "stepsTotal": len(self._route.steps),
            "distanceRemaining": round(remaining, 1) if remaining is not None else None,
            "offRoute": self._reroute_reported,
        }


def _running_loop() -> Optional[asyncio.AbstractEventLoop]:
    try:
        return asyncio.get_running_loop()
    except RuntimeError:
        return None
