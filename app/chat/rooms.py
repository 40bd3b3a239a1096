"""
Room routing on top of the Channels channel layer.

A room is a channel layer group. Two kinds exist:
    user_{user_id}: personal room, every connection of that user
    conversation_{conversation_id}: live events for one conversation

RoomRouter keeps its own record of which rooms each connection joined so a
disconnect can leave all of them, and so the consumer can check membership
before relaying typing signals. The record is process-local; the channel
layer (Redis in deployment) is what actually reaches other workers.

Broadcast payload shape (channel layer message):
    {
        "type": "room.event",
        "event": "new_message",
        "payload": {...},
        "exclude_user_id": 7 | None,
    }

ChatConsumer.room_event turns that into the client frame
{"type": event, **payload}, skipping it on connections of exclude_user_id.

Usage:
    from chat.rooms import router

    await router.join(self.channel_name, conversation_id)
    await router.broadcast(conversation_id, "new_message", {"message": data})
"""

from __future__ import annotations

import logging
import threading
from typing import Any

from channels.layers import DEFAULT_CHANNEL_LAYER, get_channel_layer

from chat.constants import DELIVERY_CONFIG
from chat.exceptions import DeliveryChannelUnavailable

logger = logging.getLogger(__name__)


def conversation_room(conversation_id) -> str:
    return f"{DELIVERY_CONFIG.CONVERSATION_ROOM_PREFIX}{conversation_id}"


def user_room(user_id) -> str:
    return f"{DELIVERY_CONFIG.USER_ROOM_PREFIX}{user_id}"


class RoomRouter:
    """
    Tracks room membership per connection and fans events out to rooms.

    Membership changes are applied under a lock and never await while
    holding it. Joining is idempotent; leaving a room that was never joined
    is a no-op.
    """

    def __init__(self, alias: str = DEFAULT_CHANNEL_LAYER):
        self.alias = alias
        self._memberships: dict[str, set[str]] = {}
        self._lock = threading.Lock()

    @property
    def channel_layer(self):
        return get_channel_layer(self.alias)

    # =========================================================================
    # Membership
    # =========================================================================

    async def join(self, channel_name: str, conversation_id) -> None:
        await self._join_room(channel_name, conversation_room(conversation_id))

    async def join_personal(self, channel_name: str, user_id) -> None:
        await self._join_room(channel_name, user_room(user_id))

    async def leave(self, channel_name: str, conversation_id) -> bool:
        """
        Leave a conversation room. Returns False if it was not joined.

        Membership is kept when the layer refuses the discard, so it keeps
        matching what the layer still delivers.
        """
        room = conversation_room(conversation_id)
        if not self.is_member(channel_name, conversation_id):
            return False

        await self._discard(channel_name, room)
        with self._lock:
            rooms = self._memberships.get(channel_name)
            if rooms is not None:
                rooms.discard(room)
                if not rooms:
                    del self._memberships[channel_name]
        logger.debug(f"{channel_name} left {room}")
        return True

    async def leave_all(self, channel_name: str) -> set[str]:
        """Leave every room the connection joined. Returns the rooms left."""
        with self._lock:
            rooms = self._memberships.pop(channel_name, set())

        for room in rooms:
            try:
                await self._discard(channel_name, room)
            except DeliveryChannelUnavailable as exc:
                # Group membership expires on its own in the channel layer
                logger.warning(f"Failed to discard {channel_name} from {room}: {exc}")
        return rooms

    def is_member(self, channel_name: str, conversation_id) -> bool:
        with self._lock:
            return conversation_room(conversation_id) in self._memberships.get(
                channel_name, ()
            )

    def rooms_for(self, channel_name: str) -> set[str]:
        with self._lock:
            return set(self._memberships.get(channel_name, ()))

    # =========================================================================
    # Fan-out
    # =========================================================================

    async def broadcast(
        self,
        conversation_id,
        event: str,
        payload: dict[str, Any],
        exclude_user_id=None,
    ) -> None:
        """
        Deliver an event to every connection in a conversation room.

        The sender's own connections receive it too unless exclude_user_id
        is given.

        Raises:
            DeliveryChannelUnavailable: Channel layer missing or send failed
        """
        await self._send(
            conversation_room(conversation_id), event, payload, exclude_user_id
        )

    async def notify_user(self, user_id, event: str, payload: dict[str, Any]) -> None:
        """
        Deliver an event to every connection of one user.

        Raises:
            DeliveryChannelUnavailable: Channel layer missing or send failed
        """
        await self._send(user_room(user_id), event, payload, None)

    # =========================================================================
    # Channel layer access
    # =========================================================================

    async def _join_room(self, channel_name: str, room: str) -> None:
        layer = self._require_layer(room)
        try:
            await layer.group_add(room, channel_name)
        except Exception as exc:
            raise DeliveryChannelUnavailable(
                f"Could not join {room}",
                details={"room": room},
            ) from exc

        with self._lock:
            self._memberships.setdefault(channel_name, set()).add(room)
        logger.debug(f"{channel_name} joined {room}")

    async def _discard(self, channel_name: str, room: str) -> None:
        layer = self._require_layer(room)
        try:
            await layer.group_discard(room, channel_name)
        except Exception as exc:
            raise DeliveryChannelUnavailable(
                f"Could not leave {room}",
                details={"room": room},
            ) from exc

    async def _send(
        self, room: str, event: str, payload: dict[str, Any], exclude_user_id
    ) -> None:
        layer = self._require_layer(room)
        try:
            await layer.group_send(
                room,
                {
                    "type": DELIVERY_CONFIG.ROOM_EVENT_TYPE,
                    "event": event,
                    "payload": payload,
                    "exclude_user_id": exclude_user_id,
                },
            )
        except Exception as exc:
            raise DeliveryChannelUnavailable(
                f"Could not deliver {event} to {room}",
                details={"room": room, "event": event},
            ) from exc

    def _require_layer(self, room: str):
        layer = self.channel_layer
        if layer is None:
            raise DeliveryChannelUnavailable(
                "No channel layer configured",
                details={"room": room},
            )
        return layer


router = RoomRouter()
