"""In-process publish/subscribe bus for Smart Specs events.

Delivery is synchronous and ordered: events published while another
event is being delivered (e.g. from inside a handler) are queued and
delivered afterwards, so every subscriber sees one publisher's events in
publish order. Coroutine handlers are scheduled as tasks on the running
loop. A failing handler is logged and never affects other subscribers
or the publisher.
"""

from __future__ import annotations

import asyncio
import inspect
import itertools
import logging
from collections import deque
from dataclasses import dataclass
from typing import Any, Callable, Deque, List, Optional, Set

from events import Event

logger = logging.getLogger("smartspecs.event_bus")

Predicate = Callable[[Event], bool]
Handler = Callable[[Event], Any]


@dataclass(frozen=True)
class Subscription:
    id: int
    predicate: Predicate
    handler: Handler
    name: str = ""


class EventBus:
    def __init__(self) -> None:
        self._subscriptions: List[Subscription] = []
        self._pending: Deque[Event] = deque()
        self._delivering = False
        self._ids = itertools.count(1)
        self._tasks: Set[asyncio.Task] = set()

    def subscribe(
        self,
        handler: Handler,
        predicate: Optional[Predicate] = None,
        name: str = "",
    ) -> Subscription:
        """Register *handler* for events matching *predicate* (all events if None)."""
        sub = Subscription(
            id=next(self._ids),
            predicate=predicate or (lambda _event: True),
            handler=handler,
            name=name or getattr(handler, "__qualname__", repr(handler)),
        )
        self._subscriptions.append(sub)
        logger.debug("Subscribed %s (id=%d)", sub.name, sub.id)
        return sub

    def subscribe_to(self, *event_types: type, handler: Handler, name: str = "") -> Subscription:
        return self.subscribe(handler, lambda e: isinstance(e, event_types), name=name)

    def unsubscribe(self, subscription: Optional[Subscription]) -> None:
        """Remove a subscription. Unknown or already-removed handles are ignored."""
        if subscription is None:
            return
        before = len(self._subscriptions)
        self._subscriptions = [s for s in self._subscriptions if s.id != subscription.id]
        if len(self._subscriptions) != before:
            logger.debug("Unsubscribed %s (id=%d)", subscription.name, subscription.id)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)

    def publish(self, event: Event) -> None:
        self._pending.append(event)
        if self._delivering:
            return
        self._delivering = True
        try:
            while self._pending:
                self._deliver(self._pending.popleft())
        finally:
            self._delivering = False

    def _deliver(self, event: Event) -> None:
        # Snapshot so (un)subscribing inside a handler doesn't affect this delivery.
        for sub in list(self._subscriptions):
            try:
                if not sub.predicate(event):
                    continue
                result = sub.handler(event)
                if inspect.isawaitable(result):
                    self._schedule(sub, event, result)
            except Exception:
                logger.exception("Subscriber %s failed on %s", sub.name, event.name)

    def _schedule(self, sub: Subscription, event: Event, awaitable) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning("No running loop; dropping async handler %s for %s", sub.name, event.name)
            if inspect.iscoroutine(awaitable):
                awaitable.close()
            return
        task = loop.create_task(awaitable)
        self._tasks.add(task)

        def _done(t: asyncio.Task) -> None:
            self._tasks.discard(t)
            if t.cancelled():
                return
            exc = t.exception()
            if exc is not None:
                logger.error("Async subscriber %s failed on %s: %s", sub.name, event.name, exc)

        task.add_done_callback(_done)

    async def drain(self) -> None:
        """Wait for scheduled coroutine handlers to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
