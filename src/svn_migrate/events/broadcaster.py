"""Lifecycle and progress event fan-out.

Subscribers each own a bounded ``asyncio.Queue``. Emitting never blocks:
an event that does not fit in a subscriber's queue is dropped for that
subscriber only.
"""

import asyncio
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from loguru import logger
from pydantic import BaseModel, Field

_CLOSED = object()


class EventType(str, Enum):
    """Kinds of migration events."""

    REGISTERED = 'registered'
    STARTED = 'started'
    SYNCING = 'syncing'
    RESUMED = 'resumed'
    PROGRESS = 'progress'
    COMPLETED = 'completed'
    FAILED = 'failed'
    CANCELLED = 'cancelled'
    LOG = 'log'
    DELETED = 'deleted'


class MigrationEvent(BaseModel):
    """One event delivered to observers."""

    type: EventType = Field(..., description='Event type')
    record_id: str = Field(..., description='Migration record ID')
    payload: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=datetime.now)


class Subscription:
    """Queue of events for one observer.

    Usage:
        async with broadcaster.subscribe(record_id) as events:
            async for event in events:
                ...
    """

    def __init__(
        self,
        broadcaster: 'EventBroadcaster',
        record_id: Optional[str] = None,
        maxsize: int = 100,
    ):
        self.record_id = record_id
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self.dropped = 0
        self.closed = False
        self._broadcaster = broadcaster

    def matches(self, event: MigrationEvent) -> bool:
        return self.record_id is None or self.record_id == event.record_id

    def offer(self, event: MigrationEvent) -> bool:
        """Enqueue without waiting; False if the event was dropped."""
        if self.closed:
            return False
        try:
            self.queue.put_nowait(event)
        except asyncio.QueueFull:
            self.dropped += 1
            return False
        return True

    async def get(self, timeout: Optional[float] = None) -> MigrationEvent:
        if timeout is None:
            return await self.queue.get()
        return await asyncio.wait_for(self.queue.get(), timeout=timeout)

    def close(self) -> None:
        if self.closed:
            return
        self._broadcaster.unsubscribe(self)
        try:
            self.queue.put_nowait(_CLOSED)
        except asyncio.QueueFull:
            pass

    def __aiter__(self):
        return self

    async def __anext__(self) -> MigrationEvent:
        if self.closed and self.queue.empty():
            raise StopAsyncIteration
        event = await self.queue.get()
        if event is _CLOSED:
            raise StopAsyncIteration
        return event

    async def __aenter__(self) -> 'Subscription':
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> bool:
        self.close()
        return False


class EventBroadcaster:
    """Publish/subscribe hub between the engine and its observers.

    Example:
        >>> broadcaster = EventBroadcaster()
        >>> sub = broadcaster.subscribe()
        >>> broadcaster.emit(EventType.STARTED, 'abc', {})
        >>> sub.queue.qsize()
        1
    """

    def __init__(self, default_maxsize: int = 100):
        self.default_maxsize = default_maxsize
        self._subscriptions: List[Subscription] = []
        self._stats = {'events_emitted': 0, 'events_delivered': 0, 'events_dropped': 0}
        self.logger = logger.bind(component='EventBroadcaster')

    @property
    def stats(self) -> Dict[str, int]:
        return dict(self._stats)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)

    def subscribe(
        self, record_id: Optional[str] = None, maxsize: Optional[int] = None
    ) -> Subscription:
        """Register an observer for one record, or all records if ``record_id`` is None."""
        subscription = Subscription(
            self, record_id=record_id, maxsize=maxsize or self.default_maxsize
        )
        self._subscriptions.append(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)
        subscription.closed = True

    def emit(
        self,
        event_type: EventType,
        record_id: str,
        payload: Optional[Dict[str, Any]] = None,
    ) -> MigrationEvent:
        """Deliver an event to every matching subscriber without blocking."""
        event = MigrationEvent(
            type=EventType(event_type), record_id=record_id, payload=payload or {}
        )
        self._stats['events_emitted'] += 1

        for subscription in list(self._subscriptions):
            if not subscription.matches(event):
                continue
            if subscription.offer(event):
                self._stats['events_delivered'] += 1
            else:
                self._stats['events_dropped'] += 1

        if event.type != EventType.PROGRESS and event.type != EventType.LOG:
            self.logger.debug(f'Event {event.type.value} for {record_id}')
        return event

    def close(self) -> None:
        """Detach every subscriber."""
        for subscription in list(self._subscriptions):
            subscription.close()
