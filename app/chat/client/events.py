"""
Typed publish/subscribe for client-side chat events.

Server frames are published under the EventKind matching their "type";
the connection manager adds two local kinds (CONNECTION_STATE and
RECONNECTED).

Usage:
    bus = EventBus()

    with bus.subscribe(EventKind.NEW_MESSAGE, on_message):
        ...

    subscription = bus.subscribe(EventKind.USER_TYPING, on_typing)
    subscription.unsubscribe()
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from enum import Enum
from typing import Any

logger = logging.getLogger(__name__)

Handler = Callable[[dict[str, Any]], Any]


class EventKind(str, Enum):
    """Event kinds, valued by their wire "type"."""

    JOINED_CONVERSATION = "joined_conversation"
    LEFT_CONVERSATION = "left_conversation"
    NEW_MESSAGE = "new_message"
    MESSAGE_ACK = "message_ack"
    USER_TYPING = "user_typing"
    USER_STOPPED_TYPING = "user_stopped_typing"
    CONVERSATION_UPDATED = "conversation_updated"
    READ_UPDATED = "read_updated"
    ERROR = "error"

    # Local only
    CONNECTION_STATE = "connection_state"
    RECONNECTED = "reconnected"

    @classmethod
    def from_frame(cls, frame: dict[str, Any]) -> EventKind | None:
        try:
            return cls(frame.get("type"))
        except ValueError:
            return None


class Subscription:
    """Handle for one handler registration. Also a context manager."""

    def __init__(self, bus: EventBus, kind: EventKind, handler: Handler):
        self._bus = bus
        self.kind = kind
        self.handler = handler
        self.active = True

    def unsubscribe(self) -> None:
        """Remove the handler. Safe to call more than once."""
        if self.active:
            self._bus._remove(self)
            self.active = False

    def __enter__(self) -> Subscription:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.unsubscribe()


class EventBus:
    """
    Dispatches events to subscribers of their kind, in subscription order.

    A failing handler is logged and does not stop delivery to the others.
    """

    def __init__(self):
        self._subscriptions: dict[EventKind, list[Subscription]] = {}

    def subscribe(self, kind: EventKind, handler: Handler) -> Subscription:
        subscription = Subscription(self, kind, handler)
        self._subscriptions.setdefault(kind, []).append(subscription)
        return subscription

    def publish(self, kind: EventKind, payload: dict[str, Any]) -> int:
        """Deliver payload to every subscriber of kind. Returns the count."""
        delivered = 0
        for subscription in list(self._subscriptions.get(kind, ())):
            try:
                subscription.handler(payload)
            except Exception:
                logger.exception(f"Handler for {kind.value} failed")
                continue
            delivered += 1
        return delivered

    def subscriber_count(self, kind: EventKind) -> int:
        return len(self._subscriptions.get(kind, ()))

    def _remove(self, subscription: Subscription) -> None:
        subscriptions = self._subscriptions.get(subscription.kind, [])
        if subscription in subscriptions:
            subscriptions.remove(subscription)
