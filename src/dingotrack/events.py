"""Event channel between the calendar client and the timer service.

The calendar client publishes ``UserChanged`` when an account signs in or
out; the application subscribes the timer service so its user scope follows
the signed-in account.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Event:
    """Base class for published events."""

    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc), kw_only=True)


@dataclass(frozen=True)
class UserChanged(Event):
    """The signed-in user changed.

    Attributes:
        user_id: New user scope, or None after sign-out.
    """

    user_id: str | None


EventHandler = Callable[[Event], None]


class EventBus:
    """Synchronous publish/subscribe channel."""

    def __init__(self) -> None:
        self._handlers: list[EventHandler] = []

    def subscribe(self, handler: EventHandler) -> None:
        """Add an event handler."""
        if handler not in self._handlers:
            self._handlers.append(handler)

    def unsubscribe(self, handler: EventHandler) -> None:
        """Remove an event handler."""
        if handler in self._handlers:
            self._handlers.remove(handler)

    def publish(self, event: Event) -> None:
        """Deliver an event to all handlers.

        A failing handler is logged and does not stop delivery.
        """
        for handler in list(self._handlers):
            try:
                handler(event)
            except Exception as e:
                logger.exception(f"Event handler error for {type(event).__name__}: {e}")
