"""
Events — publish-on-mutate notifications for whatever is rendering.

The store and the controller each own an EventBus. A UI (the web page, the
terminal REPL, a test) subscribes once and re-renders when told something
changed, instead of the core knowing about any particular UI.

Subscribers are plain callables:
    def on_event(event: str, payload: dict) -> None

Subscribing to "*" receives every event. If a subscriber raises, it's
logged and skipped.
"""

import logging
from dataclasses import dataclass, field
from typing import Callable

logger = logging.getLogger(__name__)

Subscriber = Callable[[str, dict], None]

WILDCARD = "*"


@dataclass(eq=False)
class Subscription:
    """Handle returned by subscribe(); call cancel() to stop receiving."""
    bus: "EventBus"
    event: str
    callback: Subscriber
    active: bool = field(default=True)

    def cancel(self):
        if self.active:
            self.bus.unsubscribe(self)
            self.active = False


class EventBus:
    """Synchronous fan-out of named events to subscribers."""

    def __init__(self, name: str = ""):
        self.name = name
        self._subs: list[Subscription] = []

    def subscribe(self, callback: Subscriber, event: str = WILDCARD) -> Subscription:
        sub = Subscription(bus=self, event=event, callback=callback)
        self._subs.append(sub)
        return sub

    def unsubscribe(self, sub: Subscription):
        try:
            self._subs.remove(sub)
        except ValueError:
            pass

    def publish(self, event: str, payload: dict | None = None):
        """Deliver an event to matching subscribers in subscription order."""
        payload = payload or {}
        for sub in list(self._subs):
            if sub.event not in (WILDCARD, event):
                continue
            try:
                sub.callback(event, payload)
            except Exception as e:
                logger.error("Subscriber for '%s' on %s failed: %s", event, self.name or "bus", e)

    @property
    def count(self) -> int:
        return len(self._subs)
