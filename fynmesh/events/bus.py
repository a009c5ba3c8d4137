"""Event transport: publish -> bounded queue -> single dispatch loop -> subscribers.
Handlers run one event at a time, in publication order."""

import asyncio
import itertools
import logging
import time
from collections import defaultdict
from typing import Any, Awaitable, Callable

from fynmesh.events.models import Event

logger = logging.getLogger(__name__)

EventHandler = Callable[[Event], Awaitable[None]]


class EventBus:
    """In-process event bus. One dispatch loop consumes the queue and awaits each handler."""

    def __init__(self, max_queue: int = 1024) -> None:
        self._queue: asyncio.Queue[Event] = asyncio.Queue(maxsize=max_queue)
        self._subscribers: dict[str, list[tuple[EventHandler, str]]] = defaultdict(list)
        self._ids = itertools.count(1)
        self._dispatch_task: asyncio.Task[None] | None = None
        self._stopped = False

    @property
    def running(self) -> bool:
        return self._dispatch_task is not None and not self._dispatch_task.done()

    def _make_event(
        self,
        topic: str,
        source: str,
        payload: dict[str, Any],
        correlation_id: str | None,
    ) -> Event:
        return Event(
            id=next(self._ids),
            topic=topic,
            source=source,
            payload=payload,
            created_at=time.time(),
            correlation_id=correlation_id,
        )

    async def publish(
        self,
        topic: str,
        source: str,
        payload: dict[str, Any],
        correlation_id: str | None = None,
    ) -> int:
        """Queue event for delivery. Returns event id. Waits only if the queue is full."""
        event = self._make_event(topic, source, payload, correlation_id)
        await self._queue.put(event)
        return event.id

    def publish_nowait(
        self,
        topic: str,
        source: str,
        payload: dict[str, Any],
        correlation_id: str | None = None,
    ) -> int | None:
        """Queue from synchronous code (timer callbacks). Returns None when the queue is full."""
        event = self._make_event(topic, source, payload, correlation_id)
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            logger.error("EventBus queue full, dropped %s from %s", topic, source)
            return None
        return event.id

    def subscribe(self, topic: str, handler: EventHandler, subscriber_id: str) -> None:
        """Register handler in memory. Handlers for a topic run in subscription order."""
        self._subscribers[topic].append((handler, subscriber_id))

    def unsubscribe(self, topic: str, handler: EventHandler) -> None:
        self._subscribers[topic] = [
            (h, sid) for h, sid in self._subscribers.get(topic, []) if h is not handler
        ]

    async def start(self) -> None:
        """Start the dispatch loop. Idempotent."""
        if self.running:
            return
        self._stopped = False
        self._dispatch_task = asyncio.create_task(self._dispatch_loop())
        logger.debug("EventBus dispatch loop started")

    async def stop(self) -> None:
        """Cancel the dispatch loop. Events still queued stay queued for a later start()."""
        self._stopped = True
        if self._dispatch_task:
            self._dispatch_task.cancel()
            try:
                await self._dispatch_task
            except asyncio.CancelledError:
                pass
            self._dispatch_task = None
        logger.debug("EventBus stopped")

    async def drain(self) -> None:
        """Wait until every queued event has been delivered.

        Must not be awaited from inside a handler: the loop would wait on itself.
        """
        if not self.running:
            return
        await self._queue.join()

    def pending(self) -> int:
        return self._queue.qsize()

    async def _dispatch_loop(self) -> None:
        """Main loop: take the next event, deliver it, mark it done."""
        while not self._stopped:
            event = await self._queue.get()
            try:
                await self._deliver(event)
            finally:
                self._queue.task_done()

    async def _deliver(self, event: Event) -> None:
        """Deliver event to every handler. A failing handler does not stop the others."""
        for handler, subscriber_id in list(self._subscribers.get(event.topic, [])):
            try:
                await handler(event)
            except Exception as e:
                logger.exception(
                    "EventBus handler %s failed for event %s/%s: %s",
                    subscriber_id,
                    event.topic,
                    event.id,
                    e,
                )
