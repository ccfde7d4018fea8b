"""
Publish/subscribe registry used by every component to expose events.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Callable
from typing import Any

logger = logging.getLogger(__name__)

EventHandler = Callable[[Any, Any], Any]


class Subscription:
    """Handle returned by EventBus.subscribe."""

    def __init__(self, bus: EventBus, topic: Any, handler: EventHandler):
        self._bus = bus
        self.topic = topic
        self.handler = handler
        self.active = True

    def unsubscribe(self) -> None:
        """Stop delivering events to this handler. Safe to call twice."""
        if self.active:
            self._bus._remove(self)
            self.active = False

    def __enter__(self) -> Subscription:
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.unsubscribe()


class EventBus:
    """
    Topic -> ordered handler list.

    Handlers are called as handler(topic, payload) in subscription order.
    A handler raising never prevents delivery to the handlers after it.
    Coroutine handlers are scheduled on the running loop.
    """

    def __init__(self, name: str = "events"):
        self.name = name
        self._handlers: dict[Any, list[Subscription]] = {}
        self._pending: set[asyncio.Task[Any]] = set()

    def subscribe(self, topic: Any, handler: EventHandler) -> Subscription:
        """Register a handler for a topic."""
        subscription = Subscription(self, topic, handler)
        self._handlers.setdefault(topic, []).append(subscription)
        return subscription

    def _remove(self, subscription: Subscription) -> None:
        handlers = self._handlers.get(subscription.topic)
        if handlers and subscription in handlers:
            handlers.remove(subscription)
            if not handlers:
                del self._handlers[subscription.topic]

    def has_subscribers(self, topic: Any) -> bool:
        return bool(self._handlers.get(topic))

    def listener_count(self, topic: Any) -> int:
        return len(self._handlers.get(topic, []))

    def publish(self, topic: Any, payload: Any = None) -> int:
        """Deliver an event. Returns the number of handlers invoked."""
        # Copy so handlers may unsubscribe while we iterate
        subscriptions = list(self._handlers.get(topic, []))
        delivered = 0
        for subscription in subscriptions:
            if not subscription.active:
                continue
            try:
                result = subscription.handler(topic, payload)
                if inspect.isawaitable(result):
                    self._track(result, topic)
                delivered += 1
            except Exception:
                logger.exception("%s: handler for %s failed", self.name, topic)
        return delivered

    def _track(self, awaitable: Any, topic: Any) -> None:
        task = asyncio.ensure_future(awaitable)
        self._pending.add(task)

        def _done(t: asyncio.Task[Any]) -> None:
            self._pending.discard(t)
            if not t.cancelled() and t.exception() is not None:
                logger.error("%s: async handler for %s failed: %r", self.name, topic, t.exception())

        task.add_done_callback(_done)

    def clear(self) -> None:
        """Drop every subscription."""
        for subscriptions in list(self._handlers.values()):
            for subscription in subscriptions:
                subscription.active = False
        self._handlers.clear()
