"""Smart Specs runtime configuration (environment variables with defaults)."""

from __future__ import annotations

import os

SERVICE_NAME = "smartspecs-session"
SERVICE_VERSION = "2.4.1"

DEVICE_ID = os.getenv("SPECS_DEVICE_ID", "default")
LOG_LEVEL = os.getenv("SPECS_LOG_LEVEL", "INFO").upper()

# Hazard detection
HAZARD_WINDOW = int(os.getenv("SPECS_HAZARD_WINDOW", "3"))
HAZARD_MIN_HITS = int(os.getenv("SPECS_HAZARD_MIN_HITS", "2"))
HAZARD_CONFIDENCE = float(os.getenv("SPECS_HAZARD_CONFIDENCE", "0.6"))
HAZARD_CLEAR_FRAMES = int(os.getenv("SPECS_HAZARD_CLEAR_FRAMES", "2"))
SENSOR_STALL_SEC = float(os.getenv("SPECS_SENSOR_STALL_SEC", "5.0"))
HAZARD_COOLDOWN_SEC = float(os.getenv("SPECS_HAZARD_COOLDOWN_SEC", "4.0"))
DANGER_DISTANCE_M = float(os.getenv("SPECS_DANGER_DISTANCE_M", "1.5"))
CAUTION_DISTANCE_M = float(os.getenv("SPECS_CAUTION_DISTANCE_M", "4.0"))

# Navigation
ARRIVAL_RADIUS_M = float(os.getenv("SPECS_ARRIVAL_RADIUS_M", "10.0"))
OFF_ROUTE_M = float(os.getenv("SPECS_OFF_ROUTE_M", "25.0"))
OFF_ROUTE_DEBOUNCE_SEC = float(os.getenv("SPECS_OFF_ROUTE_DEBOUNCE_SEC", "8.0"))
POSITION_STALL_SEC = float(os.getenv("SPECS_POSITION_STALL_SEC", "10.0"))

# Voice channel
VOICE_QUEUE_MAX = int(os.getenv("SPECS_VOICE_QUEUE_MAX", "5"))
ANNOUNCEMENT_TTL_SEC = float(os.getenv("SPECS_ANNOUNCEMENT_TTL_SEC", "10.0"))
UTTERANCE_TIMEOUT_SEC = float(os.getenv("SPECS_UTTERANCE_TIMEOUT_SEC", "15.0"))

# Battery warning threshold (percent)
BATTERY_LOW_PCT = int(os.getenv("SPECS_BATTERY_LOW_PCT", "15"))
