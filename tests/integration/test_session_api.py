"""In-process integration test: drive the FastAPI app over REST and the websocket."""

from unittest.mock import AsyncMock, patch

import pytest
from fastapi.testclient import TestClient

import orchestrator

ROUTE = {
    "destination": "Library",
    "steps": [
        {"instruction": "Head north on Main St", "lat": 40.0009, "lon": -73.0},
        {"instruction": "The library is on your right", "lat": 40.0018, "lon": -73.0},
    ],
    "origin": {"lat": 40.0, "lon": -73.0},
}

BIKE_FRAME = {"objects": [{"label": "bicycle", "confidence": 0.9, "distance_m": 1.2}]}


@pytest.fixture
def client():
    # No Postgres or Redis in the test environment: the service runs without them.
    with patch.object(orchestrator.connection, "init_db", AsyncMock(side_effect=ConnectionError("no db"))), \
         patch.object(orchestrator.redis_client, "init_redis", AsyncMock(side_effect=ConnectionError("no redis"))):
        with TestClient(orchestrator.app) as c:
            yield c


def _receive_until_ack(ws, limit=20):
    frames = []
    for _ in range(limit):
        frame = ws.receive_json()
        frames.append(frame)
        if frame["type"] in ("ack", "error"):
            return frames
    raise AssertionError(f"no reply in {frames}")


# ── Service info ─────────────────────────────────────────────

def test_service_info(client):
    assert client.get("/").json() == {"service": "smartspecs-session", "status": "ok"}
    health = client.get("/health").json()
    assert health["status"] == "ok"
    assert health["db_available"] is False
    system = client.get("/system").json()
    assert system["version"] == "2.4.1"
    assert system["redis_available"] is False


# ── REST ─────────────────────────────────────────────────────

def test_initial_state_after_greeting(client):
    state = client.get("/session/state").json()
    assert state["mode"] == "idle"
    assert state["voiceChannel"]["status"] == "speaking"
    assert state["voiceChannel"]["speaking"].endswith("Smart Specs is ready.")


def test_detection_and_hazard_over_rest(client):
    assert client.post("/session/detection").json()["mode"] == "detecting"

    resp = client.post("/session/detection")
    assert resp.status_code == 409
    assert resp.json()["error"] == "invalid_state_transition"

    client.post("/providers/frame", json=BIKE_FRAME)
    client.post("/providers/frame", json=BIKE_FRAME)

    hazard = client.get("/session/state").json()["hazard"]
    assert hazard["label"] == "bicycle"
    assert hazard["severity"] == "danger"

    resp = client.post("/providers/frame", json={"objects": 5})
    assert resp.status_code == 422
    assert resp.json()["error"] == "invalid_value"


def test_navigation_over_rest(client):
    assert client.post("/session/navigation", json={"destination": "Library", "steps": []}).status_code == 422
    assert client.post("/session/navigation", json={"destination": "Library"}).status_code == 503

    state = client.post("/session/navigation", json=ROUTE).json()
    assert state["mode"] == "navigating"
    assert state["navigation"]["currentStep"]["instruction"] == "Head north on Main St"

    client.post("/providers/position", json={"lat": 40.0009, "lon": -73.0})
    state = client.get("/session/state").json()
    assert state["navigation"]["currentStep"]["number"] == 2

    stopped = client.post("/session/stop").json()
    assert stopped["stopped"] is True
    assert stopped["mode"] == "idle"
    assert client.post("/session/stop").json()["stopped"] is False


def test_settings_round_trip(client):
    state = client.put("/session/settings", json={"voiceSpeed": 70, "highContrast": True}).json()
    assert state["voiceSpeed"] == 70
    assert state["settings"]["highContrast"] is True

    resp = client.post("/session/voice-speed", json={"voiceSpeed": 101})
    assert resp.status_code == 422
    assert client.get("/session/state").json()["voiceSpeed"] == 70


def test_voice_command_listening_and_battery(client):
    reply = client.post("/session/voice-command", json={"text": "Scan"}).json()
    assert reply == {"understood": True, "intent": "start_detection", "argument": None}

    assert client.post("/session/voice-command", json={"text": "la la la"}).json()["understood"] is False

    assert client.post("/providers/speech/recognized", json={"text": "stop"}).json() == {"intent": None}
    assert client.post("/session/listening/toggle").json()["listening"] == "listening"
    assert client.post("/providers/speech/recognized", json={"text": "stop"}).json() == {"intent": "stop"}
    state = client.get("/session/state").json()
    assert state["mode"] == "idle"
    assert state["listening"] == "off"

    assert client.post("/session/battery", json={"level": 10}).json()["battery"] == 10
    assert client.post("/session/battery", json={"level": 300}).status_code == 422


def test_utterance_completion_promotes_next(client):
    client.post("/session/detection")
    greeting_id = next(iter(orchestrator.speech_output.in_flight))

    assert client.post(f"/providers/speech/{greeting_id}/finished").json() == {"accepted": True}
    assert client.post(f"/providers/speech/{greeting_id}/finished").json() == {"accepted": False}

    channel = client.get("/session/state").json()["voiceChannel"]
    assert channel["speaking"] == "Scanning environment"


def test_sos_over_rest(client):
    state = client.post("/session/sos").json()
    assert state["voiceChannel"]["speaking"].startswith("Emergency SOS activated")


def test_camera_frames_need_classifier(client):
    with patch.object(orchestrator, "_classifier", side_effect=orchestrator.ProviderUnavailable("classifier")):
        resp = client.post("/providers/camera", json={"imageB64": "AAAA"})
    assert resp.status_code == 503


# ── WebSocket ────────────────────────────────────────────────

def test_websocket_stream(client):
    with client.websocket_connect("/session/stream") as ws:
        hello = ws.receive_json()
        assert hello["type"] == "state"
        assert hello["mode"] == "idle"

        ws.send_json({"type": "start_detection"})
        frames = _receive_until_ack(ws)
        assert {"type": "ModeChanged", "mode": "detecting", "previous": "idle"} in frames
        assert frames[-1]["type"] == "ack"
        assert frames[-1]["state"]["mode"] == "detecting"

        ws.send_json({"type": "start_detection"})
        assert _receive_until_ack(ws)[-1]["error"] == "invalid_state_transition"

        ws.send_json({"type": "frame", **BIKE_FRAME})
        _receive_until_ack(ws)
        ws.send_json({"type": "frame", **BIKE_FRAME})
        frames = _receive_until_ack(ws)
        names = [f["type"] for f in frames]
        assert "HazardDetected" in names
        assert "HapticPulse" in names
        started = [f for f in frames if f["type"] == "AnnouncementStarted"]
        assert started[0]["priority"] == "EMERGENCY"
        assert started[0]["rate_wpm"] == 200

        ws.send_json({"type": "warp"})
        assert _receive_until_ack(ws)[-1]["error"] == "invalid_request"


def test_speech_follows_device_connection(client):
    with client.websocket_connect("/session/stream") as ws:
        assert ws.receive_json()["type"] == "state"
    assert orchestrator.speech_output.connected is False

    channel = client.post("/session/sos").json()["voiceChannel"]
    assert channel["speaking"] is None
    assert channel["queued"] == 2

    with client.websocket_connect("/session/stream") as ws:
        frames = [ws.receive_json()]
        while frames[-1]["type"] != "state":
            frames.append(ws.receive_json())

    assert any(f["type"] == "AnnouncementStarted" and f["priority"] == "EMERGENCY" for f in frames)
    assert frames[-1]["voiceChannel"]["speaking"].startswith("Emergency SOS activated")
