"""
Per-conversation client session.

ConversationSession keeps one conversation's Timeline in step with the
server:
    - send: optimistic Pending entry tagged with a client temp id,
      replaced on confirm, removed (and SendFailed raised) on failure;
      never retried
    - new_message broadcasts: merged by id; the sender's own echo resolves
      its pending entry through the temp id
    - RECONNECTED: pages re-fetched from the newest back to the newest
      message already shown, so a long outage leaves no hole
    - load_more: older page by (created_at, id) cursor; a failed fetch
      leaves the timeline untouched
    - delete_message: removed locally once the server accepts it
    - typing: start/stop frames out, typing users in, expiring after
      typing_timeout without a refresh
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections.abc import Callable
from datetime import datetime, timezone
from typing import Any

from core.exceptions import BaseApplicationError

from chat.client.api import ChatApi, ChatApiError
from chat.client.connection import ConnectionManager, ConnectionState, ConnectionUnavailable
from chat.client.events import EventBus, EventKind, Subscription
from chat.client.timeline import CLIENT_TEMP_ID_KEY, ChatMessage, Pending, Timeline

logger = logging.getLogger(__name__)


class SendFailed(BaseApplicationError):
    """
    A send was rejected or could not reach the server.

    The optimistic entry has already been removed. details["temp_id"]
    names it.
    """

    default_error_code: str = "SEND_FAILED"


class ConversationSession:
    """
    Args:
        conversation_id: Conversation shown by this session
        local_user_id: The signed-in user
        api: ChatApi for history and sends
        connection: The session-wide ConnectionManager
        bus: EventBus the connection publishes on
        page_size: History page size
        typing_timeout: Seconds before a silent typist is dropped
        clock: Monotonic clock, replaceable in tests
    """

    def __init__(
        self,
        conversation_id: int,
        local_user_id: int,
        api: ChatApi,
        connection: ConnectionManager,
        bus: EventBus,
        *,
        page_size: int = 50,
        typing_timeout: float = 5.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.conversation_id = conversation_id
        self.local_user_id = local_user_id
        self.api = api
        self.connection = connection
        self.bus = bus
        self.page_size = page_size
        self.typing_timeout = typing_timeout
        self._clock = clock

        self.timeline = Timeline()
        self.has_more = True
        self._typing: dict[int, float] = {}
        self._subscriptions: list[Subscription] = []
        self._reconcile_task: asyncio.Task | None = None

    @property
    def typing_users(self) -> frozenset[int]:
        now = self._clock()
        self._typing = {uid: until for uid, until in self._typing.items() if until > now}
        return frozenset(self._typing)

    @property
    def reconcile_task(self) -> asyncio.Task | None:
        return self._reconcile_task

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def open(self) -> None:
        """Subscribe, join the room and load the newest page."""
        handlers = {
            EventKind.NEW_MESSAGE: self._on_new_message,
            EventKind.USER_TYPING: self._on_typing,
            EventKind.USER_STOPPED_TYPING: self._on_stopped_typing,
            EventKind.RECONNECTED: self._on_reconnected,
        }
        self._subscriptions = [self.bus.subscribe(k, h) for k, h in handlers.items()]

        await self.connection.join(self.conversation_id)

        page = await self.api.fetch_page(self.conversation_id, limit=self.page_size)
        self.timeline.merge_page(page.messages)
        self.has_more = page.has_more

    async def close(self) -> None:
        for subscription in self._subscriptions:
            subscription.unsubscribe()
        self._subscriptions = []

        if self._reconcile_task is not None and not self._reconcile_task.done():
            self._reconcile_task.cancel()
        await self.connection.leave(self.conversation_id)

    # =========================================================================
    # Commands
    # =========================================================================

    async def send(
        self,
        content: str,
        message_type: str = "text",
        metadata: dict[str, Any] | None = None,
    ) -> ChatMessage:
        """
        Send with an optimistic local echo.

        Raises:
            SendFailed: The server rejected the message or was unreachable
        """
        temp_id = uuid.uuid4().hex
        tagged = {**(metadata or {}), CLIENT_TEMP_ID_KEY: temp_id}
        pending = Pending(
            temp_id=temp_id,
            conversation_id=self.conversation_id,
            sender_id=self.local_user_id,
            content=content,
            created_at=datetime.now(timezone.utc),
            message_type=message_type,
            metadata=tagged,
        )
        self.timeline.add_pending(pending)

        try:
            message = await self.api.send_message(
                self.conversation_id,
                content,
                message_type=message_type,
                metadata=tagged,
            )
        except ChatApiError as exc:
            self.timeline.fail(temp_id)
            raise SendFailed(
                exc.message,
                error_code=exc.error_code,
                details={"temp_id": temp_id, **exc.details},
            ) from exc

        self.timeline.confirm(temp_id, message)
        return message

    async def delete_message(self, message_id: int) -> None:
        """
        Delete one of the user's messages.

        Raises:
            ChatApiError: The server refused (FORBIDDEN, MESSAGE_NOT_FOUND)
                or was unreachable; the message stays in the timeline
        """
        await self.api.delete_message(message_id)
        self.timeline.remove(message_id)

    async def load_more(self) -> int:
        """
        Fetch the page before the oldest loaded message.

        Returns:
            Number of messages added

        Raises:
            ChatApiError: The fetch failed; nothing was changed
        """
        oldest = self.timeline.oldest
        if not self.has_more or oldest is None:
            return 0

        page = await self.api.fetch_page(
            self.conversation_id,
            limit=self.page_size,
            before=oldest.created_at,
            before_id=oldest.id,
        )
        self.has_more = page.has_more
        return self.timeline.merge_page(page.messages)

    async def mark_read(self) -> None:
        await self.api.mark_read(self.conversation_id)

    async def reconcile(self) -> int:
        """
        Fetch what was missed while disconnected.

        Pages back from the newest message until a page reaches the newest
        message already shown, or history ends. Pages are merged only once
        the walk is complete, so a failed fetch changes nothing.

        Returns:
            Number of messages added

        Raises:
            ChatApiError: A page fetch failed
        """
        newest = self.timeline.newest
        fetched: list[ChatMessage] = []
        before = before_id = None
        reached_start = False

        while True:
            page = await self.api.fetch_page(
                self.conversation_id,
                limit=self.page_size,
                before=before,
                before_id=before_id,
            )
            fetched.extend(page.messages)
            if not page.has_more:
                reached_start = True
                break
            if newest is None or not page.messages:
                break
            oldest = page.messages[0]
            if oldest.sort_key <= newest.sort_key:
                break
            before, before_id = oldest.created_at, oldest.id

        added = self.timeline.merge_page(fetched)
        if reached_start:
            self.has_more = False
        elif newest is None:
            self.has_more = True
        logger.info(
            f"Reconciled conversation {self.conversation_id}: {added} new messages"
        )
        return added

    async def start_typing(self) -> bool:
        """Tell the room the user is typing. Returns False while offline."""
        return await self._send_typing("typing_start")

    async def stop_typing(self) -> bool:
        return await self._send_typing("typing_stop")

    async def _send_typing(self, frame_type: str) -> bool:
        if self.connection.state != ConnectionState.CONNECTED:
            return False
        try:
            await self.connection.send(
                {"type": frame_type, "conversation_id": self.conversation_id}
            )
        except ConnectionUnavailable as exc:
            # Typing is advisory; the next keystroke sends again
            logger.debug(f"Dropped {frame_type} for {self.conversation_id}: {exc}")
            return False
        return True

    # =========================================================================
    # Event handlers
    # =========================================================================

    def _on_new_message(self, payload: dict[str, Any]) -> None:
        message = ChatMessage.from_payload(payload["message"])
        if message.conversation_id != self.conversation_id:
            return
        self.timeline.apply_broadcast(message)

    def _on_typing(self, payload: dict[str, Any]) -> None:
        if payload.get("conversation_id") != self.conversation_id:
            return
        user_id = payload.get("user_id")
        if user_id == self.local_user_id:
            return
        self._typing[user_id] = self._clock() + self.typing_timeout

    def _on_stopped_typing(self, payload: dict[str, Any]) -> None:
        if payload.get("conversation_id") != self.conversation_id:
            return
        self._typing.pop(payload.get("user_id"), None)

    def _on_reconnected(self, payload: dict[str, Any]) -> None:
        if self.conversation_id not in payload.get("rooms", ()):
            return
        self._reconcile_task = asyncio.get_running_loop().create_task(
            self._reconcile_quietly()
        )

    async def _reconcile_quietly(self) -> None:
        try:
            await self.reconcile()
        except ChatApiError as exc:
            # Retried on the next reconnect or explicit reconcile()
            logger.warning(
                f"Reconcile of conversation {self.conversation_id} failed: {exc}"
            )
