"""Typed callback channels between subsystems.

Each subsystem owns the channels it publishes on (healing publishes fixes,
the test orchestrator publishes suite progress, the deployment state machine
publishes deployment progress). There is no global bus.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from typing import Generic, TypeVar

import structlog

log = structlog.get_logger()

E = TypeVar("E")

Subscriber = Callable[[E], Awaitable[None]]


class EventChannel(Generic[E]):
    """An ordered list of async subscribers for one event type.

    Subscribers run in subscription order. A subscriber that raises is
    logged and skipped; the publisher never sees its exception.

    Example:
        fixes: EventChannel[AppFixed] = EventChannel("app:fixed")
        unsubscribe = fixes.subscribe(on_fixed)
        await fixes.publish(AppFixed(app=app, error=error, fix=fix))
    """

    def __init__(self, name: str) -> None:
        self.name = name
        self._subscribers: list[Subscriber[E]] = []

    def subscribe(self, callback: Subscriber[E]) -> Callable[[], None]:
        """Register ``callback`` and return a function that removes it."""
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    async def publish(self, event: E) -> None:
        for callback in list(self._subscribers):
            try:
                await callback(event)
            except Exception:
                log.exception(
                    "event_subscriber_failed",
                    channel=self.name,
                    subscriber=getattr(callback, "__qualname__", repr(callback)),
                )
