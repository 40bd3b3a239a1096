"""
Ephemeral signals: presence and typing.

Neither is persisted. Presence lives in the default cache with a TTL;
typing indicators are room broadcasts that are dropped if nobody listens.

Classes:
    PresenceService: Cache-backed online markers
    TypingSignaler: user_typing / user_stopped_typing broadcasts
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from django.core.cache import cache

from core.services import BaseService

from chat.constants import PRESENCE_CONFIG, chat_setting
from chat.rooms import RoomRouter, router

if TYPE_CHECKING:
    from collections.abc import Iterable

logger = logging.getLogger(__name__)


class PresenceService(BaseService):
    """
    Cache-backed online markers.

    Each user has a counter of open socket connections stored in the
    default cache (Redis in deployment) with a TTL, so connections of a
    crashed worker age out instead of pinning users online forever.

    Key format:
        presence:user:{user_id} -> int connection count
    """

    @staticmethod
    def _key(user_id) -> str:
        return f"{PRESENCE_CONFIG.KEY_PREFIX_USER_PRESENCE}:{user_id}"

    @classmethod
    def mark_online(cls, user_id) -> int:
        """Register one open connection for the user; returns the new count."""
        key = cls._key(user_id)
        ttl = chat_setting("PRESENCE_TTL_SECONDS")
        cache.add(key, 0, timeout=ttl)
        try:
            count = cache.incr(key)
        except ValueError:
            # Expired between add() and incr()
            cache.set(key, 1, timeout=ttl)
            count = 1
        cache.touch(key, timeout=ttl)
        cls.get_logger().debug(f"User {user_id} online ({count} connections)")
        return count or 0

    @classmethod
    def mark_offline(cls, user_id) -> int:
        """Drop one open connection for the user; returns the remaining count."""
        key = cls._key(user_id)
        try:
            count = cache.decr(key)
        except ValueError:
            return 0
        if not count or count <= 0:
            cache.delete(key)
            cls.get_logger().debug(f"User {user_id} offline")
            return 0
        return count

    @classmethod
    def is_online(cls, user_id) -> bool:
        return (cache.get(cls._key(user_id)) or 0) > 0

    @classmethod
    def online_user_ids(cls, user_ids: Iterable) -> set:
        """Return the subset of user_ids with at least one open connection."""
        user_ids = list(user_ids)
        values = cache.get_many([cls._key(uid) for uid in user_ids])
        return {uid for uid in user_ids if (values.get(cls._key(uid)) or 0) > 0}


class TypingSignaler:
    """
    Broadcasts typing indicators to a conversation room.

    The originator is excluded, so a user's own connections never see
    their typing state echoed back.

    Payload:
        {"user_id": int, "conversation_id": int}
    """

    def __init__(self, room_router: RoomRouter = router):
        self.router = room_router

    async def start_typing(self, conversation_id, user_id) -> None:
        await self._signal("user_typing", conversation_id, user_id)

    async def stop_typing(self, conversation_id, user_id) -> None:
        await self._signal("user_stopped_typing", conversation_id, user_id)

    async def _signal(self, event: str, conversation_id, user_id) -> None:
        await self.router.broadcast(
            conversation_id,
            event,
            {"user_id": user_id, "conversation_id": conversation_id},
            exclude_user_id=user_id,
        )


typing_signaler = TypingSignaler()
