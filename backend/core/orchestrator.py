from __future__ import annotations

import asyncio
import logging
import uuid
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

from fastapi import Body, FastAPI, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

import config
import redis_client
from database import connection, crud
from event_bus import EventBus
from events import Event, HazardDetected
from exceptions import InvalidRoute, InvalidStateTransition, ProviderUnavailable
from gemini_client import GeminiClassifier
from models import Coordinate, Route, steps_from_dicts
from providers import ClientSpeechOutput, frame_from_dict
from session_manager import SessionManager
from settings_store import DatabaseSettingsStore, MemorySettingsStore

logger = logging.getLogger("smartspecs.orchestrator")
logging.basicConfig(level=config.LOG_LEVEL)


# ---------------------------------------------------------------------------
#  Shared infrastructure (rebuilt on every application start)
# ---------------------------------------------------------------------------

bus: Optional[EventBus] = None
speech_output: Optional[ClientSpeechOutput] = None
session: Optional[SessionManager] = None
classifier: Optional[GeminiClassifier] = None


def build_session() -> SessionManager:
    """Wire a fresh bus, speech output and SessionManager together."""
    global bus, speech_output
    bus = EventBus()
    speech_output = ClientSpeechOutput()
    store = DatabaseSettingsStore() if connection.is_ready() else MemorySettingsStore()
    manager = SessionManager(bus, speech_output, settings_store=store)
    bus.subscribe(_publish_event, predicate=lambda e: e.client_facing, name="redis.publish")
    bus.subscribe_to(HazardDetected, handler=_log_hazard, name="db.hazard_log")
    return manager


def _session() -> SessionManager:
    if session is None:
        raise ProviderUnavailable("session", "service is starting up")
    return session


def _classifier() -> GeminiClassifier:
    global classifier
    if classifier is None:
        try:
            classifier = GeminiClassifier()
        except Exception as exc:
            raise ProviderUnavailable("classifier", str(exc)) from exc
    return classifier


async def _publish_event(event: Event) -> None:
    if session is None or not redis_client.is_connected():
        return
    try:
        await redis_client.publish_event(session.session.id, event.to_dict())
    except Exception as exc:
        logger.warning("Redis publish failed for %s: %s", event.name, exc)


async def _log_hazard(event: HazardDetected) -> None:
    if session is None or not connection.is_ready():
        return
    hazard = event.hazard
    try:
        await crud.save_hazard_event(
            session.session.id,
            label=hazard.label,
            severity=hazard.severity.value,
            distance_m=hazard.distance_m,
        )
    except Exception as exc:
        logger.warning("Hazard log write failed: %s", exc)


async def _snapshot() -> dict:
    """Current session state; mirrored to Redis when it is available."""
    s = _session()
    state = s.state()
    if redis_client.is_connected():
        try:
            await redis_client.set_session_state(s.session.id, state)
        except Exception as exc:
            logger.warning("Redis state write failed: %s", exc)
    return state


# ---------------------------------------------------------------------------
#  Application lifespan - initialise & tear down infra connections
# ---------------------------------------------------------------------------

@asynccontextmanager
async def lifespan(application: FastAPI):
    """Startup / shutdown hook."""
    global session
    # --- startup ---
    try:
        await connection.init_db()
        logger.info("PostgreSQL ready")
    except Exception as exc:
        logger.warning("DB init failed (running without persistence): %s", exc)

    try:
        await redis_client.init_redis()
        logger.info("Redis ready")
    except Exception as exc:
        logger.warning("Redis init failed (running without cache): %s", exc)

    session = build_session()
    await session.open()
    if connection.is_ready():
        try:
            await crud.create_session(session.session.id, device_id=session.device_id)
        except Exception as exc:
            logger.warning("DB session create failed: %s", exc)
    await _snapshot()

    yield

    # --- shutdown ---
    await session.close()
    if connection.is_ready():
        try:
            await crud.end_session(
                session.session.id,
                hazards_detected=session.session.hazards_detected,
                routes_completed=session.session.routes_completed,
            )
        except Exception as exc:
            logger.warning("DB session end failed: %s", exc)
    await bus.drain()
    session_id = session.session.id
    session = None

    try:
        if redis_client.is_connected():
            await redis_client.delete_session(session_id)
        await redis_client.close_redis()
    except Exception as exc:
        logger.warning("Redis close failed: %s", exc)
    await connection.close_db()


app = FastAPI(title="Smart Specs session service", version=config.SERVICE_VERSION, lifespan=lifespan)


# ---------------------------------------------------------------------------
#  Error mapping
# ---------------------------------------------------------------------------

def _error_body(kind: str, exc: Exception) -> dict:
    return {"error": kind, "detail": str(exc)}


@app.exception_handler(InvalidStateTransition)
async def _invalid_state(request: Request, exc: InvalidStateTransition) -> JSONResponse:
    return JSONResponse(status_code=409, content=_error_body("invalid_state_transition", exc))


@app.exception_handler(InvalidRoute)
async def _invalid_route(request: Request, exc: InvalidRoute) -> JSONResponse:
    return JSONResponse(status_code=422, content=_error_body("invalid_route", exc))


@app.exception_handler(ValueError)
async def _invalid_value(request: Request, exc: ValueError) -> JSONResponse:
    return JSONResponse(status_code=422, content=_error_body("invalid_value", exc))


@app.exception_handler(ProviderUnavailable)
async def _provider_unavailable(request: Request, exc: ProviderUnavailable) -> JSONResponse:
    return JSONResponse(status_code=503, content=_error_body("provider_unavailable", exc))


# ---------------------------------------------------------------------------
#  Request bodies
# ---------------------------------------------------------------------------

class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class CoordinateIn(_CamelModel):
    lat: float
    lon: float


class StepIn(_CamelModel):
    instruction: str
    lat: float
    lon: float
    distance_remaining: float = 0.0
    turn_type: str = "straight"


class NavigationRequest(_CamelModel):
    destination: str = Field(min_length=1)
    steps: Optional[List[StepIn]] = None
    origin: Optional[CoordinateIn] = None

    def to_route(self) -> Route:
        origin = Coordinate(self.origin.lat, self.origin.lon) if self.origin else None
        steps = steps_from_dicts([s.model_dump() for s in self.steps or []])
        return Route(destination=self.destination, steps=steps, origin=origin)


class SettingsUpdate(_CamelModel):
    voice_speed: Optional[int] = None
    high_contrast: Optional[bool] = None
    haptic_feedback: Optional[bool] = None
    audio_descriptions: Optional[bool] = None


class VoiceSpeedIn(_CamelModel):
    voice_speed: int


class TextIn(_CamelModel):
    text: str


class BatteryIn(_CamelModel):
    level: int


class CameraFrameIn(_CamelModel):
    image_b64: str
    frame_id: Optional[str] = None
    timestamp: Optional[float] = None
    mime_type: str = "image/jpeg"


# ---------------------------------------------------------------------------
#  Service info
# ---------------------------------------------------------------------------

def _infra() -> dict:
    return {"db_available": connection.is_ready(), "redis_available": redis_client.is_connected()}


@app.get("/")
async def root():
    return {"service": config.SERVICE_NAME, "status": "ok"}


@app.get("/health")
async def health():
    return {"status": "ok" if session is not None else "starting", **_infra()}


@app.get("/system")
async def system():
    return {"service": config.SERVICE_NAME, "version": config.SERVICE_VERSION, **_infra()}


# ---------------------------------------------------------------------------
#  Session commands
# ---------------------------------------------------------------------------

@app.get("/session/state")
async def get_state():
    return await _snapshot()


@app.post("/session/detection")
async def start_detection():
    await _session().start_detection()
    return await _snapshot()


@app.post("/session/navigation")
async def start_navigation(req: NavigationRequest):
    s = _session()
    if req.steps is None:
        await s.navigate_to(req.destination)
    else:
        await s.start_navigation(req.to_route())
    return await _snapshot()


@app.post("/session/navigation/route")
async def replace_route(req: NavigationRequest):
    await _session().replace_route(req.to_route())
    return await _snapshot()


@app.post("/session/stop")
async def stop():
    stopped = await _session().stop()
    return {"stopped": stopped, **(await _snapshot())}


@app.post("/session/listening/toggle")
async def toggle_listening():
    await _session().toggle_listening()
    return await _snapshot()


@app.put("/session/settings")
async def update_settings(req: SettingsUpdate):
    await _session().update_settings(**req.model_dump(exclude_unset=True))
    return await _snapshot()


@app.post("/session/voice-speed")
async def set_voice_speed(req: VoiceSpeedIn):
    await _session().set_voice_speed(req.voice_speed)
    return await _snapshot()


@app.post("/session/sos")
async def trigger_sos():
    await _session().trigger_sos()
    return await _snapshot()


@app.post("/session/voice-command")
async def voice_command(req: TextIn):
    command = await _session().submit_voice_command(req.text)
    return {
        "understood": command is not None,
        "intent": command.intent.value if command else None,
        "argument": command.argument if command else None,
    }


@app.post("/session/battery")
async def report_battery(req: BatteryIn):
    await _session().report_battery(req.level)
    return await _snapshot()


# ---------------------------------------------------------------------------
#  Provider input
# ---------------------------------------------------------------------------

@app.post("/providers/frame")
async def provider_frame(payload: Dict[str, Any] = Body(...)):
    frame = frame_from_dict(payload)
    await _session().on_frame(frame)
    return {"frame_id": frame.frame_id, "objects": len(frame.objects)}


@app.post("/providers/camera")
async def provider_camera(req: CameraFrameIn):
    frame = await _classifier().classify(
        req.image_b64,
        frame_id=req.frame_id or uuid.uuid4().hex[:12],
        timestamp=req.timestamp,
        image_mime=req.mime_type,
    )
    await _session().on_frame(frame)
    return {"frame_id": frame.frame_id, "objects": [o.label for o in frame.objects]}


@app.post("/providers/position")
async def provider_position(req: CoordinateIn):
    await _session().on_position(Coordinate(req.lat, req.lon))
    return {"accepted": True}


@app.post("/providers/speech/recognized")
async def provider_speech_recognized(req: TextIn):
    command = await _session().on_speech_recognized(req.text)
    return {"intent": command.intent.value if command else None}


@app.post("/providers/speech/{utterance_id}/finished")
async def provider_speech_finished(utterance_id: str):
    speech_output.finished(utterance_id)
    accepted = await _session().on_utterance_finished(utterance_id)
    return {"accepted": accepted}


# ---------------------------------------------------------------------------
#  WebSocket endpoint
# ---------------------------------------------------------------------------

@app.websocket("/session/stream")
async def websocket_session(websocket: WebSocket) -> None:
    await websocket.accept()
    s = _session()
    outbox: asyncio.Queue = asyncio.Queue()
    sub = bus.subscribe(
        lambda e: outbox.put_nowait(e.to_dict()),
        predicate=lambda e: e.client_facing,
        name="websocket",
    )
    speech_output.attach()
    await s.on_speech_output_ready()
    outbox.put_nowait({"type": "state", **s.state()})
    sender = asyncio.create_task(_pump(websocket, outbox))
    logger.info("Client connected to session %s", s.session.id)

    try:
        while True:
            payload = await websocket.receive_json()
            outbox.put_nowait(await handle_client_message(payload))
    except WebSocketDisconnect:
        logger.info("Client disconnected from session %s", s.session.id)
    finally:
        bus.unsubscribe(sub)
        speech_output.detach()
        sender.cancel()


async def _pump(websocket: WebSocket, outbox: asyncio.Queue) -> None:
    while True:
        frame = await outbox.get()
        await websocket.send_json(frame)


async def handle_client_message(payload: Any) -> dict:
    """Run one websocket command. Errors come back as error frames, never raise."""
    command = payload.get("type") if isinstance(payload, dict) else None
    try:
        result = await dispatch(payload if isinstance(payload, dict) else {})
        return {"type": "ack", "command": command, **result}
    except InvalidStateTransition as exc:
        return {"type": "error", "command": command, **_error_body("invalid_state_transition", exc)}
    except InvalidRoute as exc:
        return {"type": "error", "command": command, **_error_body("invalid_route", exc)}
    except ProviderUnavailable as exc:
        return {"type": "error", "command": command, **_error_body("provider_unavailable", exc)}
    except (ValueError, KeyError, TypeError) as exc:
        return {"type": "error", "command": command, **_error_body("invalid_request", exc)}
    except Exception as exc:
        logger.error("Dispatch error for %s: %s", command, exc, exc_info=True)
        return {"type": "error", "command": command, **_error_body("internal", exc)}


async def dispatch(payload: dict) -> dict:
    s = _session()
    kind = payload.get("type")

    if kind == "get_state":
        pass
    elif kind == "start_detection":
        await s.start_detection()
    elif kind == "start_navigation":
        req = NavigationRequest.model_validate(payload)
        if req.steps is None:
            await s.navigate_to(req.destination)
        else:
            await s.start_navigation(req.to_route())
    elif kind == "replace_route":
        await s.replace_route(NavigationRequest.model_validate(payload).to_route())
    elif kind == "stop":
        await s.stop()
    elif kind == "toggle_listening":
        await s.toggle_listening()
    elif kind == "set_voice_speed":
        await s.set_voice_speed(VoiceSpeedIn.model_validate(payload).voice_speed)
    elif kind == "update_settings":
        changes = SettingsUpdate.model_validate(payload.get("settings", {}))
        await s.update_settings(**changes.model_dump(exclude_unset=True))
    elif kind == "trigger_sos":
        await s.trigger_sos()
    elif kind == "voice_command":
        command = await s.submit_voice_command(TextIn.model_validate(payload).text)
        return {"understood": command is not None}
    elif kind == "report_battery":
        await s.report_battery(BatteryIn.model_validate(payload).level)
    elif kind == "frame":
        await s.on_frame(frame_from_dict(payload))
        return {}
    elif kind == "position":
        req = CoordinateIn.model_validate(payload)
        await s.on_position(Coordinate(req.lat, req.lon))
        return {}
    elif kind == "speech_recognized":
        await s.on_speech_recognized(TextIn.model_validate(payload).text)
    elif kind == "utterance_finished":
        utterance_id = str(payload.get("utteranceId") or payload["utterance_id"])
        speech_output.finished(utterance_id)
        return {"accepted": await s.on_utterance_finished(utterance_id)}
    else:
        raise ValueError(f"unknown command type: {kind!r}")

    return {"state": await _snapshot()}
