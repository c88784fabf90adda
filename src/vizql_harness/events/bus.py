"""Progress sink for one orchestration run.

The engine pushes :class:`ProgressEvent` objects here.  Whoever watches the
run (the CLI display, an SSE writer, a test) subscribes to the event kinds it
renders.  Delivery is best effort: a subscriber that raises is logged and
skipped, and once the consumer is gone the emitter is closed and later events
are dropped without touching the engine.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections import deque
from typing import Any, Callable

from vizql_harness.types import EventType, ProgressEvent

_logger = logging.getLogger(__name__)

ALL_EVENTS = "*"

Subscriber = Callable[[ProgressEvent], Any]


def topic_of(event_type: EventType | str) -> str:
    """Subscription key for an event kind, given as enum or its wire name."""
    if isinstance(event_type, EventType):
        return event_type.value
    return str(event_type)


class ProgressEmitter:
    """Fan progress events out to the subscribers of one run.

    Parameters
    ----------
    max_history:
        How many of the most recent events :attr:`history` keeps for late
        inspection.
    """

    def __init__(self, max_history: int = 200) -> None:
        self._subscribers: dict[str, list[Subscriber]] = {}
        self._history: deque[ProgressEvent] = deque(maxlen=max_history)
        self._closed = False

    def subscribe(self, event_type: EventType | str, subscriber: Subscriber) -> None:
        """Deliver events of *event_type* to *subscriber*; ``"*"`` matches every kind.

        The subscriber may be a plain function or a coroutine function.
        """
        self._subscribers.setdefault(topic_of(event_type), []).append(subscriber)

    def unsubscribe(self, event_type: EventType | str, subscriber: Subscriber) -> None:
        topic = topic_of(event_type)
        remaining = [s for s in self._subscribers.get(topic, []) if s != subscriber]
        if remaining:
            self._subscribers[topic] = remaining
        else:
            self._subscribers.pop(topic, None)

    async def emit(self, event: ProgressEvent) -> None:
        """Hand *event* to its subscribers and to the ``"*"`` subscribers.

        Never raises on a subscriber's behalf.  A no-op once closed.
        """
        if self._closed:
            return
        self._history.append(event)

        targets = self._subscribers.get(topic_of(event.type), []) + self._subscribers.get(ALL_EVENTS, [])
        if targets:
            await asyncio.gather(
                *(self._deliver(subscriber, event) for subscriber in targets),
                return_exceptions=True,
            )

    def close(self) -> None:
        """Mark the consumer as gone; later events are dropped."""
        if not self._closed:
            _logger.debug("Progress emitter closed after %d events", len(self._history))
        self._closed = True

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def history(self) -> list[ProgressEvent]:
        return list(self._history)

    @staticmethod
    async def _deliver(subscriber: Subscriber, event: ProgressEvent) -> None:
        try:
            outcome = subscriber(event)
            if inspect.isawaitable(outcome):
                await outcome
        except Exception:
            _logger.exception(
                "Progress subscriber %s failed on %s event",
                getattr(subscriber, "__name__", subscriber),
                event.type.value,
            )
