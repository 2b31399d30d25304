"""Voice command grammar.

Recognized speech is normalized (lowercase, punctuation stripped) and
matched against a small phrase grammar. Anything else is left to the
caller to report as not understood.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from typing import Optional


class Intent(str, Enum):
    STOP = "stop"
    SOS = "sos"
    FASTER = "faster"
    SLOWER = "slower"
    START_DETECTION = "start_detection"
    NAVIGATE = "navigate"
    REPEAT = "repeat"
    DISTANCE = "distance"
    DESCRIBE = "describe"


@dataclass(frozen=True)
class VoiceCommand:
    intent: Intent
    argument: Optional[str] = None


_NAVIGATE = re.compile(r"^(?:navigate|take me|guide me|directions|go) to (?:the )?(?P<dest>.+)$")

_PHRASES = (
    (Intent.SOS, ("help", "sos", "emergency", "call for help")),
    (Intent.STOP, ("stop", "cancel", "end navigation", "stop navigation", "stop detection", "quit")),
    (Intent.FASTER, ("faster", "speak faster", "speed up", "talk faster")),
    (Intent.SLOWER, ("slower", "speak slower", "slow down", "talk slower")),
    (Intent.START_DETECTION, ("scan", "start detection", "detect hazards", "start scanning", "detection")),
    (Intent.REPEAT, ("repeat", "say that again", "again", "next step", "where am i", "what now")),
    (Intent.DISTANCE, ("how far", "how far is it", "distance", "how much further")),
    (Intent.DESCRIBE, ("whats ahead", "what is ahead", "what do you see", "describe", "anything ahead")),
)


def normalize(text: str) -> str:
    text = text.lower().replace("'", "")
    text = re.sub(r"[^a-z0-9 ]+", " ", text)
    text = re.sub(r"^(?:hey specs|specs|please)\s+", "", " ".join(text.split()))
    return re.sub(r"\s+please$", "", text)


def parse(text: str) -> Optional[VoiceCommand]:
    phrase = normalize(text)
    if not phrase:
        return None

    match = _NAVIGATE.match(phrase)
    if match:
        return VoiceCommand(Intent.NAVIGATE, match.group("dest").strip())

    for intent, phrases in _PHRASES:
        if phrase in phrases:
            return VoiceCommand(intent)
    return None
