"""Smart Specs session manager.

The single entry point for the presentation client. Owns the Session
record and the lifecycles of the HazardDetector, NavigationEngine and
VoiceArbiter, and turns their events into announcements. Every public
operation runs to completion behind one asyncio lock, so a mode switch
never interleaves with a sensor update.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import asdict, fields, replace
from datetime import datetime
from typing import Callable, Optional, Set

import config
from components.hazard_detector import HazardDetector
from components.navigation_engine import TERMINAL_STATES, NavigationEngine
from components.voice_arbiter import Decision, VoiceArbiter
from event_bus import EventBus, Subscription
from events import (
    BatteryLow,
    CommandNotUnderstood,
    FrameReceived,
    HapticPulse,
    HazardDetected,
    ListeningChanged,
    ModeChanged,
    PositionReceived,
    RerouteRequired,
    RouteCompleted,
    SettingsChanged,
    SOSTriggered,
    StaleData,
    StepAdvanced,
)
from exceptions import InvalidRoute, InvalidStateTransition, ProviderUnavailable, SmartSpecsError
from models import (
    AnnouncementRequest,
    ClassificationFrame,
    Coordinate,
    HazardEvent,
    ListeningState,
    Mode,
    Priority,
    Route,
    Session,
    Settings,
    Severity,
)
from providers import RoutingProvider, SpeechOutputProvider, speech_rate_wpm
from settings_store import MemorySettingsStore, SettingsStore
from voice_commands import Intent, VoiceCommand, parse

logger = logging.getLogger("smartspecs.session")

HAZARD_PRIORITY = {
    Severity.DANGER: Priority.EMERGENCY,
    Severity.CAUTION: Priority.HAZARD,
    Severity.INFO: Priority.AMBIENT,
}

HAZARD_ANNOUNCEMENT_TTL = 4.0
SOS_ANNOUNCEMENT_TTL = 30.0
VOICE_SPEED_STEP = 10

_SETTING_FIELDS = {f.name for f in fields(Settings)}


def greeting_for(hour: int) -> str:
    if hour < 12:
        return "Good morning"
    if hour < 18:
        return "Good afternoon"
    return "Good evening"


def hazard_to_dict(hazard: Optional[HazardEvent]) -> Optional[dict]:
    if hazard is None:
        return None
    return {
        "label": hazard.label,
        "severity": hazard.severity.value,
        "description": hazard.description,
        "distanceM": hazard.distance_m,
        "timestamp": hazard.timestamp,
        "frameId": hazard.frame_id,
    }


class SessionManager:
    def __init__(
        self,
        bus: EventBus,
        speech: SpeechOutputProvider,
        settings_store: Optional[SettingsStore] = None,
        routing: Optional[RoutingProvider] = None,
        device_id: str = config.DEVICE_ID,
        announcement_ttl: float = config.ANNOUNCEMENT_TTL_SEC,
        clock: Callable[[], float] = time.monotonic,
        detector: Optional[HazardDetector] = None,
        navigator: Optional[NavigationEngine] = None,
        arbiter: Optional[VoiceArbiter] = None,
    ) -> None:
        self.bus = bus
        self.settings_store = settings_store or MemorySettingsStore()
        self.routing = routing
        self.device_id = device_id
        self.announcement_ttl = announcement_ttl
        self._clock = clock

        self.detector = detector or HazardDetector(bus, clock=clock)
        self.navigator = navigator or NavigationEngine(bus, clock=clock)
        self.arbiter = arbiter or VoiceArbiter(bus, speech, clock=clock)

        self.session = Session(id=uuid.uuid4().hex)
        self._lock = asyncio.Lock()
        self._frame_sub: Optional[Subscription] = None
        self._position_sub: Optional[Subscription] = None
        self._battery_warned = False
        self._tasks: Set[asyncio.Task] = set()

        bus.subscribe_to(HazardDetected, handler=self._on_hazard_detected, name="session.hazard")
        bus.subscribe_to(StepAdvanced, handler=self._on_step_advanced, name="session.step")
        bus.subscribe_to(RouteCompleted, handler=self._on_route_completed, name="session.arrival")
        bus.subscribe_to(RerouteRequired, handler=self._on_reroute_required, name="session.reroute")

        self._apply_settings()

    # ------------------------------------------------------------------
    #  Lifecycle
    # ------------------------------------------------------------------

    async def open(self) -> None:
        """Restore persisted settings and greet the user."""
        async with self._lock:
            try:
                stored = await self.settings_store.load(self.device_id)
            except Exception as exc:
                logger.warning("Could not load settings (using defaults): %s", exc)
                stored = None
            if stored is not None:
                try:
                    stored.validate()
                    self.session.settings = stored
                except ValueError as exc:
                    logger.warning("Ignoring invalid stored settings: %s", exc)
            self._apply_settings()
            greeting = greeting_for(datetime.now().hour)
            self._announce(f"{greeting}. Smart Specs is ready.", Priority.AMBIENT, "session", "greeting")
            logger.info("Session %s opened (device=%s)", self.session.id, self.device_id)

    async def close(self) -> None:
        async with self._lock:
            self._stop()
            self.arbiter.clear()
            for task in list(self._tasks):
                task.cancel()
            logger.info("Session %s closed", self.session.id)

    # ------------------------------------------------------------------
    #  Read-only state
    # ------------------------------------------------------------------

    @property
    def mode(self) -> Mode:
        return self.session.mode

    @property
    def listening(self) -> ListeningState:
        return self.session.listening

    def state(self) -> dict:
        s = self.session
        voice = self.arbiter.snapshot()
        hazard = self.detector.current_hazard if s.mode is Mode.DETECTING else None
        navigation = self.navigator.snapshot() if s.mode is Mode.NAVIGATING else None
        return {
            "sessionId": s.id,
            "mode": s.mode.value,
            "listening": s.listening.value,
            "voiceSpeed": s.settings.voice_speed,
            "battery": s.battery,
            "hazard": hazard_to_dict(hazard),
            "navigation": navigation,
            "settings": {
                "voiceSpeed": s.settings.voice_speed,
                "highContrast": s.settings.high_contrast,
                "hapticFeedback": s.settings.haptic_feedback,
                "audioDescriptions": s.settings.audio_descriptions,
            },
            "voiceChannel": {
                "status": voice.status,
                "speaking": voice.speaking.text if voice.speaking else None,
                "queued": len(voice.queued),
            },
        }

    # ------------------------------------------------------------------
    #  Mode commands
    # ------------------------------------------------------------------

    async def start_detection(self) -> None:
        async with self._lock:
            self._start_detection()

    async def start_navigation(self, route: Route) -> None:
        async with self._lock:
            self._start_navigation(route)

    async def navigate_to(self, destination: str) -> Route:
        """Plan a route with the routing provider and start navigating it."""
        async with self._lock:
            if self.session.mode is Mode.NAVIGATING:
                raise InvalidStateTransition(self.session.mode.value, "start navigation")
            route = await self._plan(destination)
            self._start_navigation(route)
            return route

    async def replace_route(self, route: Route) -> None:
        """Install a replacement route (after RerouteRequired) without leaving navigation."""
        async with self._lock:
            self._replace_route(route)

    async def stop(self) -> bool:
        """Return to Idle. Calling it while already Idle is a no-op."""
        async with self._lock:
            return self._stop()

    def _start_detection(self) -> None:
        if self.session.mode is Mode.DETECTING:
            raise InvalidStateTransition(self.session.mode.value, "start detection")
        if self.session.mode is Mode.NAVIGATING:
            self._leave_navigation()

        self.detector.activate()
        self._frame_sub = self.bus.subscribe_to(FrameReceived, handler=self.detector.handle, name="detector")
        self._set_mode(Mode.DETECTING)
        self._announce("Scanning environment", Priority.AMBIENT, "session", "mode")

    def _start_navigation(self, route: Route) -> None:
        if self.session.mode is Mode.NAVIGATING:
            raise InvalidStateTransition(self.session.mode.value, "start navigation")
        if not route.steps:
            raise InvalidRoute("route has no steps")
        if self.session.mode is Mode.DETECTING:
            self._leave_detection()

        self.navigator.reset()
        self.navigator.load_route(route)
        first = self.navigator.start()
        self._position_sub = self.bus.subscribe_to(
            PositionReceived, handler=self.navigator.handle, name="navigator"
        )
        self._set_mode(Mode.NAVIGATING)
        self._announce(
            f"Starting navigation to {route.destination}. {first.instruction}",
            Priority.NAVIGATION, "navigation", "nav:step",
        )

    def _replace_route(self, route: Route) -> None:
        if self.session.mode is not Mode.NAVIGATING:
            raise InvalidStateTransition(self.session.mode.value, "replace route")
        self.navigator.load_route(route)
        self._announce(
            f"New route. {route.steps[0].instruction}",
            Priority.NAVIGATION, "navigation", "nav:step",
        )

    def _stop(self) -> bool:
        mode = self.session.mode
        if mode is Mode.IDLE:
            return False
        if mode is Mode.DETECTING:
            self._leave_detection()
        else:
            self._leave_navigation()
        self._set_mode(Mode.IDLE)
        return True

    def _leave_detection(self) -> None:
        self.bus.unsubscribe(self._frame_sub)
        self._frame_sub = None
        self.detector.deactivate()
        self.arbiter.cancel_from("hazard")

    def _leave_navigation(self) -> None:
        self.bus.unsubscribe(self._position_sub)
        self._position_sub = None
        if self.navigator.state not in TERMINAL_STATES:
            self.navigator.cancel()
        self.navigator.reset()
        self.arbiter.cancel_from("navigation")

    def _set_mode(self, mode: Mode) -> None:
        previous = self.session.mode
        if previous is mode:
            return
        self.session.mode = mode
        logger.info("Mode %s -> %s", previous.value, mode.value)
        self.bus.publish(ModeChanged(mode=mode, previous=previous))

    # ------------------------------------------------------------------
    #  Settings
    # ------------------------------------------------------------------

    async def update_settings(self, **changes) -> Settings:
        async with self._lock:
            return await self._update_settings(changes)

    async def set_voice_speed(self, voice_speed: int) -> Settings:
        return await self.update_settings(voice_speed=voice_speed)

    async def _update_settings(self, changes: dict) -> Settings:
        unknown = set(changes) - _SETTING_FIELDS
        if unknown:
            raise ValueError(f"unknown setting(s): {', '.join(sorted(unknown))}")
        candidate = replace(self.session.settings, **changes)
        candidate.validate()

        self.session.settings = candidate
        self._apply_settings()
        self.bus.publish(SettingsChanged(**asdict(candidate)))
        logger.info("Settings updated: %s", changes)

        try:
            await self.settings_store.save(self.device_id, candidate)
        except Exception as exc:
            logger.warning("Could not persist settings: %s", exc)
        return candidate

    def _apply_settings(self) -> None:
        settings = self.session.settings
        self.arbiter.rate_wpm = speech_rate_wpm(settings.voice_speed)
        self.arbiter.ambient_enabled = settings.audio_descriptions

    # ------------------------------------------------------------------
    #  Listening & voice commands
    # ------------------------------------------------------------------

    async def toggle_listening(self) -> ListeningState:
        async with self._lock:
            if self.session.listening is ListeningState.OFF:
                self._set_listening(ListeningState.LISTENING)
            else:
                self._set_listening(ListeningState.OFF)
            return self.session.listening

    async def on_speech_recognized(self, text: str) -> Optional[VoiceCommand]:
        """SpeechInputProvider callback. Only honoured while listening."""
        async with self._lock:
            if self.session.listening is not ListeningState.LISTENING:
                logger.debug("Ignoring recognized speech while %s", self.session.listening.value)
                return None
            self._set_listening(ListeningState.PROCESSING)
            try:
                return await self._handle_command(text)
            finally:
                self._set_listening(ListeningState.OFF)

    async def submit_voice_command(self, text: str) -> Optional[VoiceCommand]:
        """Run a voice command. Failures are reported as CommandNotUnderstood, never raised."""
        async with self._lock:
            return await self._handle_command(text)

    def _set_listening(self, state: ListeningState) -> None:
        if self.session.listening is state:
            return
        self.session.listening = state
        self.bus.publish(ListeningChanged(state=state))

    async def _handle_command(self, text: str) -> Optional[VoiceCommand]:
        command = parse(text)
        if command is None:
            self._not_understood(text, "unrecognized")
            return None
        logger.info("Voice command: %s %s", command.intent.value, command.argument or "")
        try:
            handled = await self._dispatch_command(command)
        except SmartSpecsError as exc:
            logger.info("Voice command %s failed: %s", command.intent.value, exc)
            self._not_understood(text, str(exc))
            return None
        except ValueError as exc:
            self._not_understood(text, str(exc))
            return None
        if not handled:
            self._not_understood(text, f"not available while {self.session.mode.value}")
            return None
        return command

    async def _dispatch_command(self, command: VoiceCommand) -> bool:
        mode = self.session.mode
        intent = command.intent

        if intent is Intent.SOS:
            self._trigger_sos()
        elif intent is Intent.STOP:
            if not self._stop():
                self._announce("Nothing to stop", Priority.AMBIENT, "session", "command")
        elif intent in (Intent.FASTER, Intent.SLOWER):
            delta = VOICE_SPEED_STEP if intent is Intent.FASTER else -VOICE_SPEED_STEP
            speed = max(0, min(100, self.session.settings.voice_speed + delta))
            await self._update_settings({"voice_speed": speed})
            self._announce(f"Voice speed {speed}", Priority.AMBIENT, "session", "command")
        elif intent is Intent.START_DETECTION:
            if mode is Mode.DETECTING:
                self._announce("Already scanning", Priority.AMBIENT, "session", "command")
            else:
                self._start_detection()
        elif intent is Intent.NAVIGATE:
            route = await self._plan(command.argument)
            if mode is Mode.NAVIGATING:
                self._replace_route(route)
            else:
                self._start_navigation(route)
        elif intent is Intent.DESCRIBE and mode is Mode.DETECTING:
            hazard = self.detector.current_hazard
            text = hazard.description if hazard else "Path is clear"
            self._announce(text, Priority.HAZARD if hazard else Priority.AMBIENT, "hazard", "describe")
        elif intent is Intent.REPEAT and mode is Mode.NAVIGATING:
            step = self.navigator.current_step
            self._announce(step.instruction, Priority.NAVIGATION, "navigation", "nav:step")
        elif intent is Intent.DISTANCE and mode is Mode.NAVIGATING:
            remaining = self.navigator.distance_remaining()
            text = (
                f"About {remaining:.0f} meters to {self.navigator.route.destination}"
                if remaining is not None else "Distance not available yet"
            )
            self._announce(text, Priority.NAVIGATION, "navigation", "nav:distance")
        else:
            return False
        return True

    def _not_understood(self, text: str, reason: str) -> None:
        self.bus.publish(CommandNotUnderstood(text=text, reason=reason))
        self._announce("Sorry, I didn't catch that", Priority.AMBIENT, "session", "command")

    # ------------------------------------------------------------------
    #  SOS & battery
    # ------------------------------------------------------------------

    async def trigger_sos(self) -> None:
        async with self._lock:
            self._trigger_sos()

    def _trigger_sos(self) -> None:
        logger.warning("SOS triggered (mode=%s)", self.session.mode.value)
        self.bus.publish(SOSTriggered(mode=self.session.mode))
        self._announce(
            "Emergency SOS activated. Alerting your emergency contact.",
            Priority.EMERGENCY, "session", "sos", ttl=SOS_ANNOUNCEMENT_TTL,
        )

    async def report_battery(self, level: int) -> None:
        if isinstance(level, bool) or not isinstance(level, int) or not 0 <= level <= 100:
            raise ValueError("battery level must be an integer between 0 and 100")
        async with self._lock:
            self.session.battery = level
            if level > config.BATTERY_LOW_PCT:
                self._battery_warned = False
            elif not self._battery_warned:
                self._battery_warned = True
                logger.warning("Battery low: %d%%", level)
                self.bus.publish(BatteryLow(level=level))
                self._announce(f"Battery low, {level} percent", Priority.AMBIENT, "session", "battery")

    # ------------------------------------------------------------------
    #  Provider input
    # ------------------------------------------------------------------

    async def on_frame(self, frame: ClassificationFrame) -> None:
        async with self._lock:
            self.bus.publish(FrameReceived(frame=frame))

    async def on_position(self, position: Coordinate) -> None:
        async with self._lock:
            self.bus.publish(PositionReceived(position=position))

    async def on_utterance_finished(self, utterance_id: str) -> bool:
        async with self._lock:
            return self.arbiter.on_utterance_finished(utterance_id)

    async def on_speech_output_ready(self) -> None:
        """Speech output is reachable again; speak whatever is still queued."""
        async with self._lock:
            self.arbiter.resume()

    # ------------------------------------------------------------------
    #  Component event handlers
    # ------------------------------------------------------------------

    def _on_hazard_detected(self, event: HazardDetected) -> None:
        hazard = event.hazard
        self.session.hazards_detected += 1
        self._announce(
            hazard.description,
            HAZARD_PRIORITY[hazard.severity],
            "hazard",
            f"hazard:{hazard.label}",
            ttl=HAZARD_ANNOUNCEMENT_TTL,
        )
        if hazard.severity is Severity.DANGER and self.session.settings.haptic_feedback:
            self.bus.publish(HapticPulse(label=hazard.label, distance_m=hazard.distance_m))

    def _on_step_advanced(self, event: StepAdvanced) -> None:
        self._announce(event.step.instruction, Priority.NAVIGATION, "navigation", "nav:step")

    def _on_route_completed(self, event: RouteCompleted) -> None:
        self.session.routes_completed += 1
        self.bus.unsubscribe(self._position_sub)
        self._position_sub = None
        self.navigator.reset()
        self.arbiter.cancel_from("navigation")
        self._set_mode(Mode.IDLE)
        self._announce(f"You have arrived at {event.destination}", Priority.NAVIGATION, "session", "arrival")

    def _on_reroute_required(self, event: RerouteRequired) -> None:
        self._announce("You are off route", Priority.NAVIGATION, "navigation", "nav:reroute")
        if self.routing is None:
            return
        task = asyncio.get_running_loop().create_task(self._replan(event.destination, event.position))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _replan(self, destination: str, position: Optional[Coordinate]) -> None:
        async with self._lock:
            if self.session.mode is not Mode.NAVIGATING:
                return
            try:
                route = await self.routing.plan_route(destination, position)
                self._replace_route(route)
            except (ProviderUnavailable, InvalidRoute) as exc:
                logger.warning("Automatic reroute failed: %s", exc)
                self.bus.publish(StaleData(source="routing", stale_for=0.0, detail=str(exc)))

    async def _plan(self, destination: Optional[str]) -> Route:
        if not destination:
            raise InvalidRoute("no destination given")
        if self.routing is None:
            raise ProviderUnavailable("routing", "no routing provider configured")
        origin = self.navigator.last_position
        return await self.routing.plan_route(destination, origin)

    # ------------------------------------------------------------------
    #  Announcements
    # ------------------------------------------------------------------

    def _announce(
        self,
        text: str,
        priority: Priority,
        requested_by: str,
        dedupe_key: Optional[str] = None,
        ttl: Optional[float] = None,
    ) -> Decision:
        request = AnnouncementRequest(
            text=text,
            priority=priority,
            requested_by=requested_by,
            expires_at=self._clock() + (ttl if ttl is not None else self.announcement_ttl),
            dedupe_key=dedupe_key,
        )
        decision = self.arbiter.request(request)
        logger.debug("Announcement %r -> %s", text, decision.value)
        return decision
