"""Shared fakes for the Smart Specs test-suite."""

import itertools

import pytest

from event_bus import EventBus
from exceptions import ProviderUnavailable


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeSpeech:
    """Speech output that records utterances instead of playing them."""

    def __init__(self):
        self.spoken = []
        self.stopped = []
        self.fail = False
        self._ids = itertools.count(1)

    def speak(self, text, rate_wpm=200):
        if self.fail:
            raise ProviderUnavailable("speech", "tts offline")
        utterance_id = f"u{next(self._ids)}"
        self.spoken.append((utterance_id, text, rate_wpm))
        return utterance_id

    def stop(self, utterance_id):
        self.stopped.append(utterance_id)

    @property
    def texts(self):
        return [text for _, text, _ in self.spoken]

    @property
    def last_id(self):
        return self.spoken[-1][0]


class EventRecorder:
    def __init__(self, bus: EventBus):
        self.events = []
        bus.subscribe(self.events.append, name="recorder")

    def of(self, *types):
        return [e for e in self.events if isinstance(e, types)]

    def names(self):
        return [e.name for e in self.events]

    def clear(self):
        self.events.clear()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def bus():
    return EventBus()


@pytest.fixture
def recorder(bus):
    return EventRecorder(bus)


@pytest.fixture
def speech():
    return FakeSpeech()
