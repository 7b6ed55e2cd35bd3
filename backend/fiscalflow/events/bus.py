"""
EventBus — in-process publish/subscribe fabric.

Producers and consumers only share event names.  Every publish schedules
one asyncio task per subscribed handler, so a slow or failing handler
never blocks the publisher or the other handlers.  Handler exceptions
are logged and isolated.

Usage::

    bus = EventBus()
    bus.subscribe(EventName.TASK_START, stage.on_task_start)
    bus.publish(EventName.TASK_START, TaskStartEvent(job_id="j1", task_name="extraction"))
    await bus.drain()
"""

from __future__ import annotations

import asyncio
from collections import defaultdict
from typing import Any, Awaitable, Callable

from fiscalflow.core.logging import get_logger
from fiscalflow.events.models import BusMessage, coerce_message

Handler = Callable[[BusMessage], Awaitable[None]]


class EventBus:
    """
    Typed publish/subscribe bus with a bounded lifecycle.

    Delivery is at-least-once to the handlers subscribed at publish time.
    Handlers of one event name start in subscription order.  No ordering
    is promised across event names.
    """

    def __init__(self, name: str = "default") -> None:
        self.name = name
        self._subscribers: dict[str, list[Handler]] = defaultdict(list)
        self._tasks: set[asyncio.Task] = set()
        self._closed = False
        self.logger = get_logger("events.bus").bind(bus=name)

    # ─── Subscription ──────────────────────────────────

    def subscribe(self, event_name: str, handler: Handler) -> None:
        """Register ``handler`` for ``event_name``.  Registering twice is a no-op."""
        handlers = self._subscribers[event_name]
        if handler in handlers:
            return
        handlers.append(handler)
        self.logger.debug(
            "Handler subscribed",
            event_name=event_name,
            handler=getattr(handler, "__qualname__", repr(handler)),
        )

    def unsubscribe(self, event_name: str, handler: Handler) -> None:
        handlers = self._subscribers.get(event_name, [])
        if handler in handlers:
            handlers.remove(handler)

    def subscribers(self, event_name: str) -> list[Handler]:
        return list(self._subscribers.get(event_name, []))

    # ─── Publishing ────────────────────────────────────

    def publish(self, event_name: str, message: BusMessage | dict[str, Any]) -> None:
        """
        Fire-and-forget delivery of ``message`` to every subscriber.

        Must be called from within a running event loop.  Returns
        immediately; handlers run as independent tasks.
        """
        if self._closed:
            self.logger.warning("Publish on closed bus dropped", event_name=event_name)
            return

        message = coerce_message(event_name, message)
        handlers = self.subscribers(event_name)

        self.logger.debug(
            "Event published",
            event_name=event_name,
            job_id=message.job_id,
            handlers=len(handlers),
        )

        loop = asyncio.get_running_loop()
        for handler in handlers:
            task = loop.create_task(self._dispatch(event_name, handler, message))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

    async def _dispatch(self, event_name: str, handler: Handler, message: BusMessage) -> None:
        try:
            await handler(message)
        except Exception as exc:
            self.logger.exception(
                "Event handler failed",
                event_name=event_name,
                job_id=message.job_id,
                handler=getattr(handler, "__qualname__", repr(handler)),
                error=str(exc),
            )

    # ─── Lifecycle ─────────────────────────────────────

    @property
    def pending(self) -> int:
        """Number of handler tasks still running."""
        return len(self._tasks)

    async def drain(self, timeout: float | None = None) -> None:
        """
        Wait until no handler task is outstanding.

        Handlers that publish further events keep the bus busy, so this
        returns only once the whole cascade has settled.

        Raises:
            TimeoutError: If the bus is still busy after ``timeout`` seconds.
        """
        async def _wait_idle() -> None:
            while self._tasks:
                await asyncio.gather(*list(self._tasks), return_exceptions=True)

        await asyncio.wait_for(_wait_idle(), timeout=timeout)

    async def close(self) -> None:
        """Stop accepting publishes and cancel outstanding handler tasks."""
        self._closed = True
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._subscribers.clear()
        self.logger.info("Event bus closed", cancelled=len(tasks))
