"""Change-event bus: "aggregate X changed" notifications for collaborators."""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass

from stepstreak.data.schemas import Aggregate

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ChangeEvent:
    """One committed change to a persisted aggregate."""

    aggregate: Aggregate
    key: str
    reason: str = ""


Subscriber = Callable[[ChangeEvent], Awaitable[None]]


class EventBus:
    """Dispatches change events to async subscribers.

    A subscriber registered without aggregates receives every event. A failing
    subscriber is logged and never blocks the others.
    """

    def __init__(self) -> None:
        self._subscribers: list[tuple[Subscriber, frozenset[Aggregate] | None]] = []

    def subscribe(self, handler: Subscriber, aggregates: Iterable[Aggregate] | None = None) -> None:
        """Register a handler, optionally filtered to some aggregate kinds."""
        self._subscribers.append((handler, frozenset(aggregates) if aggregates is not None else None))

    def unsubscribe(self, handler: Subscriber) -> None:
        self._subscribers = [(h, kinds) for h, kinds in self._subscribers if h is not handler]

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    async def publish(self, event: ChangeEvent) -> int:
        """Deliver one event. Returns the number of handlers that ran cleanly."""
        delivered = 0
        for handler, kinds in list(self._subscribers):
            if kinds is not None and event.aggregate not in kinds:
                continue
            try:
                await handler(event)
                delivered += 1
            except Exception:
                logger.exception("Subscriber failed on %s change (%s)", event.aggregate, event.key)
        return delivered

    async def publish_all(self, events: Iterable[ChangeEvent]) -> None:
        for event in events:
            await self.publish(event)
