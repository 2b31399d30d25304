import asyncio
import itertools
import logging
import time
from dataclasses import dataclass, replace
from enum import Enum
from typing import Callable, List, Optional

import config
from event_bus import EventBus
from events import (
    AnnouncementFinished,
    AnnouncementInterrupted,
    AnnouncementStarted,
    QueueOverflow,
    StaleData,
)
from models import AnnouncementRequest, Priority, VoiceChannelState
from providers import SpeechOutputProvider

logger = logging.getLogger("smartspecs.voice_arbiter")

PREEMPTIBLE = (Priority.NAVIGATION, Priority.AMBIENT)


class Decision(str, Enum):
    SPEAKING = "speaking"
    PREEMPTED = "preempted"
    QUEUED = "queued"
    REPLACED = "replaced"
    DUPLICATE = "duplicate"
    DROPPED = "dropped"
    EXPIRED = "expired"
    SUPPRESSED = "suppressed"


@dataclass(frozen=True)
class _Slot:
    seq: int
    request: AnnouncementRequest


@dataclass(frozen=True)
class _Speaking:
    seq: int
    request: AnnouncementRequest
    utterance_id: str
    started_at: float


class VoiceArbiter:
    """Single-channel announcement scheduler.

    Exactly one request speaks at a time. Waiting requests are ordered by
    priority (highest first), then arrival. Emergency requests interrupt a
    Navigation or Ambient utterance; the interrupted request goes back in
    the queue with its original priority and arrival order. The queue holds
    at most ``max_queue`` requests; on overflow the lowest-priority, oldest
    request is dropped and QueueOverflow is published. Expiry is checked
    only when a request is about to be spoken.

    An utterance whose completion has not arrived within
    ``utterance_timeout`` seconds is abandoned: StaleData(speech) is
    published and the next request is promoted.

    ``request()`` never waits for speech: it returns a Decision at once.
    """

    def __init__(
        self,
        bus: EventBus,
        speech: SpeechOutputProvider,
        max_queue: int = config.VOICE_QUEUE_MAX,
        rate_wpm: int = 200,
        utterance_timeout: float = config.UTTERANCE_TIMEOUT_SEC,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_queue < 1:
            raise ValueError("max_queue must be at least 1")
        self.bus = bus
        self.speech = speech
        self.max_queue = max_queue
        self.rate_wpm = rate_wpm
        self.utterance_timeout = utterance_timeout
        self.ambient_enabled = True
        self._clock = clock

        self._seq = itertools.count()
        self._current: Optional[_Speaking] = None
        self._queue: List[_Slot] = []
        self._timeout_handle: Optional[asyncio.TimerHandle] = None

    # ------------------------------------------------------------------
    #  Requests
    # ------------------------------------------------------------------

    def request(self, req: AnnouncementRequest) -> Decision:
        if req.priority is Priority.AMBIENT and not self.ambient_enabled:
            logger.debug("Ambient announcement suppressed: %s", req.text)
            return Decision.SUPPRESSED
        if req.expires_at <= self._clock():
            logger.debug("Announcement already expired: %s", req.text)
            return Decision.EXPIRED

        if req.dedupe_key is not None:
            current = self._current
            if (
                current is not None
                and current.request.dedupe_key == req.dedupe_key
                and current.request.text == req.text
            ):
                return Decision.DUPLICATE
            for i, slot in enumerate(self._queue):
                if slot.request.dedupe_key == req.dedupe_key:
                    # Keeps the slot's place in the queue; priority only goes up.
                    merged = _Slot(slot.seq, replace(req, priority=max(slot.request.priority, req.priority)))
                    if self._can_preempt(merged.request):
                        del self._queue[i]
                        return self._preempt(merged)
                    self._queue[i] = merged
                    self._queue.sort(key=lambda s: (-s.request.priority, s.seq))
                    logger.debug("Replaced queued announcement %r", req.dedupe_key)
                    return Decision.REPLACED

        slot = _Slot(next(self._seq), req)

        if self._current is None:
            if self._queue:
                if not self._enqueue(slot):
                    return Decision.DROPPED
                self._promote()
            elif self._start(slot):
                return Decision.SPEAKING
            if self._current is not None and self._current.seq == slot.seq:
                return Decision.SPEAKING
            return Decision.QUEUED

        if self._can_preempt(req):
            return self._preempt(slot)

        if not self._enqueue(slot):
            return Decision.DROPPED
        return Decision.QUEUED

    def on_utterance_finished(self, utterance_id: str) -> bool:
        """Playback-complete callback from the speech output provider.

        Completions for an utterance that is no longer current (it was
        interrupted, or the id is unknown) are ignored.
        """
        if self._current is None or self._current.utterance_id != utterance_id:
            logger.debug("Ignoring stale completion for utterance %s", utterance_id)
            return False
        self._current = None
        self._cancel_timeout()
        self.bus.publish(AnnouncementFinished(utterance_id=utterance_id))
        self._promote()
        return True

    def check_utterance_timeout(self) -> bool:
        """Abandon the current utterance if its completion is overdue."""
        current = self._current
        if current is None:
            return False
        overdue_for = self._clock() - current.started_at
        if overdue_for < self.utterance_timeout:
            return False

        self._current = None
        self._cancel_timeout()
        try:
            self.speech.stop(current.utterance_id)
        except Exception as exc:
            logger.warning("Could not stop utterance %s: %s", current.utterance_id, exc)
        logger.warning("No completion for utterance %s after %.1fs", current.utterance_id, overdue_for)
        self.bus.publish(StaleData(
            source="speech",
            stale_for=overdue_for,
            detail=f"no completion for utterance {current.utterance_id}",
        ))
        self._promote()
        return True

    def resume(self) -> None:
        """Retry queued requests after the speech output comes back."""
        if self._current is None:
            self._promote()

    def cancel_from(self, requested_by: str) -> int:
        """Drop queued requests from one producer. The current utterance is left to finish."""
        before = len(self._queue)
        self._queue = [s for s in self._queue if s.request.requested_by != requested_by]
        removed = before - len(self._queue)
        if removed:
            logger.info("Dropped %d queued announcement(s) from %s", removed, requested_by)
        return removed

    def clear(self) -> None:
        """Silence the channel and forget everything queued."""
        self._queue.clear()
        if self._current is not None:
            current, self._current = self._current, None
            self._cancel_timeout()
            self._interrupt(current)

    # ------------------------------------------------------------------
    #  Internals
    # ------------------------------------------------------------------

    def _can_preempt(self, req: AnnouncementRequest) -> bool:
        current = self._current
        return (
            current is not None
            and req.priority is Priority.EMERGENCY
            and current.request.priority in PREEMPTIBLE
        )

    def _preempt(self, slot: _Slot) -> Decision:
        current, self._current = self._current, None
        self._cancel_timeout()
        self._interrupt(current)
        started = self._start(slot)
        self._enqueue(_Slot(current.seq, current.request))
        # On speech failure the new request is already queued.
        return Decision.PREEMPTED if started else Decision.QUEUED

    def _start(self, slot: _Slot) -> bool:
        try:
            utterance_id = self.speech.speak(slot.request.text, rate_wpm=self.rate_wpm)
        except Exception as exc:
            logger.warning("Speech output failed (%s); keeping request queued", exc)
            self._enqueue(slot)
            self.bus.publish(StaleData(source="speech", stale_for=0.0, detail=str(exc)))
            return False

        self._current = _Speaking(slot.seq, slot.request, utterance_id, self._clock())
        self._arm_timeout()
        logger.info("Speaking [%s] %s", slot.request.priority.name, slot.request.text)
        self.bus.publish(AnnouncementStarted(
            utterance_id=utterance_id,
            text=slot.request.text,
            priority=slot.request.priority,
            rate_wpm=self.rate_wpm,
        ))
        return True

    def _interrupt(self, speaking: _Speaking) -> None:
        try:
            self.speech.stop(speaking.utterance_id)
        except Exception as exc:
            logger.warning("Could not stop utterance %s: %s", speaking.utterance_id, exc)
        logger.info("Interrupted [%s] %s", speaking.request.priority.name, speaking.request.text)
        self.bus.publish(AnnouncementInterrupted(
            utterance_id=speaking.utterance_id,
            text=speaking.request.text,
        ))

    def _enqueue(self, slot: _Slot) -> bool:
        """Insert in priority order. Returns False if *slot* itself was dropped."""
        self._queue.append(slot)
        self._queue.sort(key=lambda s: (-s.request.priority, s.seq))
        if len(self._queue) <= self.max_queue:
            return True

        victim = min(self._queue, key=lambda s: (s.request.priority, s.seq))
        self._queue.remove(victim)
        logger.warning("Voice queue full; dropped [%s] %s", victim.request.priority.name, victim.request.text)
        self.bus.publish(QueueOverflow(
            dropped_text=victim.request.text,
            dropped_priority=victim.request.priority,
            requested_by=victim.request.requested_by,
        ))
        return victim is not slot

    def _promote(self) -> None:
        now = self._clock()
        while self._current is None and self._queue:
            slot = self._queue.pop(0)
            if slot.request.expires_at <= now:
                logger.info("Dropping expired announcement: %s", slot.request.text)
                continue
            if not self._start(slot):
                break

    def _on_timeout(self) -> None:
        self._timeout_handle = None
        if not self.check_utterance_timeout() and self._current is not None:
            remaining = self.utterance_timeout - (self._clock() - self._current.started_at)
            self._arm_timeout(max(remaining, 0.05))

    def _arm_timeout(self, delay: Optional[float] = None) -> None:
        self._cancel_timeout()
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        self._timeout_handle = loop.call_later(
            self.utterance_timeout if delay is None else delay, self._on_timeout
        )

    def _cancel_timeout(self) -> None:
        if self._timeout_handle is not None:
            self._timeout_handle.cancel()
            self._timeout_handle = None

    # ------------------------------------------------------------------
    #  Read-only views
    # ------------------------------------------------------------------

    @property
    def busy(self) -> bool:
        return self._current is not None

    @property
    def queue_length(self) -> int:
        return len(self._queue)

    def snapshot(self) -> VoiceChannelState:
        current = self._current
        return VoiceChannelState(
            speaking=current.request if current else None,
            utterance_id=current.utterance_id if current else None,
            queued=tuple(s.request for s in self._queue),
        )
