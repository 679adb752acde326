from __future__ import annotations

import asyncio
import logging
from collections import deque
from collections.abc import Callable
from typing import Any

from ensemble.models import TransparencyEvent
from ensemble.store import CoordinationStore

logger = logging.getLogger(__name__)


class EventSubscription:
    """One observer's view of the event stream.

    Events arrive in commit order. When the bounded queue overflows the subscription is
    marked as lagging and stops receiving live events; once the queued events are consumed it
    re-reads everything after the last delivered id from the store and rejoins the live stream.
    Events are de-duplicated by id, so an event is never delivered twice.
    """

    def __init__(self, channel: EventChannel, maxsize: int, last_event_id: int = 0) -> None:
        self._channel = channel
        self._queue: asyncio.Queue[TransparencyEvent | None] = asyncio.Queue(maxsize=maxsize)
        self._backlog: deque[TransparencyEvent] = deque()
        self.last_event_id = last_event_id
        self.lagging = False
        self.closed = False

    def _offer(self, event: TransparencyEvent) -> None:
        if self.closed or self.lagging:
            return
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            self.lagging = True
            logger.debug("Event subscriber lagging at id=%s", self.last_event_id)

    def _close(self) -> None:
        self.closed = True
        try:
            self._queue.put_nowait(None)
        except asyncio.QueueFull:
            self.lagging = True

    def _catch_up(self) -> None:
        store = self._channel.store
        if store is None:
            logger.warning("Event subscriber dropped events; no store to catch up from")
        else:
            self._backlog.extend(store.events_since(self.last_event_id))
        self.lagging = False

    def _accept(self, event: TransparencyEvent) -> bool:
        if event.id is not None and event.id <= self.last_event_id:
            return False
        if event.id is not None:
            self.last_event_id = event.id
        return True

    async def get(self) -> TransparencyEvent | None:
        """Next event, or ``None`` once the channel is closed and drained."""
        while True:
            if self._backlog:
                event = self._backlog.popleft()
                if self._accept(event):
                    return event
                continue
            if self.lagging and self._queue.empty():
                self._catch_up()
                if not self._backlog and self.closed:
                    return None
                continue
            if self.closed and self._queue.empty():
                return None
            item = await self._queue.get()
            if item is None:
                if self.lagging:
                    continue
                return None
            if self._accept(item):
                return item

    def __aiter__(self) -> EventSubscription:
        return self

    async def __anext__(self) -> TransparencyEvent:
        event = await self.get()
        if event is None:
            raise StopAsyncIteration
        return event

    def unsubscribe(self) -> None:
        self._channel.unsubscribe(self)


class EventChannel:
    """Fans committed transparency events out to in-process observers."""

    def __init__(self, store: CoordinationStore | None = None, maxsize: int = 1000) -> None:
        self.store = store
        self.maxsize = maxsize
        self._subscribers: list[EventSubscription] = []

    def attach(self, store: CoordinationStore) -> None:
        self.store = store
        store.listener = self.publish

    def subscribe(self, last_event_id: int = 0) -> EventSubscription:
        subscription = EventSubscription(self, self.maxsize, last_event_id)
        self._subscribers.append(subscription)
        return subscription

    def unsubscribe(self, subscription: EventSubscription) -> None:
        if subscription in self._subscribers:
            self._subscribers.remove(subscription)
        subscription._close()

    def publish(self, event: TransparencyEvent) -> None:
        for subscription in list(self._subscribers):
            subscription._offer(event)

    def close(self) -> None:
        for subscription in list(self._subscribers):
            subscription._close()
        self._subscribers.clear()


def store_hook(store: CoordinationStore, source: str) -> Callable[[dict[str, Any]], None]:
    """Adapt a component ``event_hook`` payload into a persisted transparency event."""

    def _record(payload: dict[str, Any]) -> None:
        store.record_event(
            TransparencyEvent(
                type=str(payload.get("type", "event")),
                message=str(payload.get("message", "")),
                source=str(payload.get("source", source)),
                level=payload.get("level", "info"),
                session_id=payload.get("session_id"),
                agent_id=payload.get("agent_id"),
                task_id=payload.get("task_id"),
                tool_name=payload.get("tool_name"),
                duration=payload.get("duration"),
                success=payload.get("success"),
                error=payload.get("error"),
                metadata=dict(payload.get("metadata") or {}),
            )
        )

    return _record
