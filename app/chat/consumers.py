"""
WebSocket consumers for the chat application.

This module implements the WebSocket consumer for real-time chat: one
socket per user session, multiplexing every conversation the user opens.

Consumers:
    ChatConsumer: Session socket at ws/chat/

Authentication:
    Users are authenticated via JWT token passed as query parameter or
    subprotocol. JWTAuthMiddleware attaches the user to self.scope["user"].
    Anonymous connections are closed with code 4001.

Rooms:
    On connect the socket joins the personal room user_{id}. Conversation
    rooms conversation_{id} are joined and left with frames. On disconnect
    every room is left.

Message Types (from client):
    - join_conversation: {"conversation_id"}
    - leave_conversation: {"conversation_id"}
    - typing_start / typing_stop: {"conversation_id"} (after join)
    - send_message: {"conversation_id", "content", "message_type",
      "metadata", "temp_id"}
    - mark_read: {"conversation_id"}

Message Types (to client):
    - joined_conversation / left_conversation: {"conversation_id"}
    - message_ack: {"temp_id", "message"}
    - new_message: {"message"}
    - user_typing / user_stopped_typing: {"user_id", "conversation_id"}
    - conversation_updated: {"conversation_id", "last_message", "unread_count"}
    - read_updated: {"conversation_id", "unread_count", "last_read_at"}
    - error: {"error", "error_code", ...}
"""

from __future__ import annotations

import logging

from asgiref.sync import sync_to_async
from channels.db import database_sync_to_async
from channels.generic.websocket import AsyncJsonWebsocketConsumer

from chat.constants import CLOSE_CODES
from chat.delivery import DeliveryService
from chat.exceptions import DeliveryChannelUnavailable
from chat.rooms import router
from chat.serializers import MessageCreateSerializer, MessageSerializer
from chat.services import ConversationService, ReadCursorService
from chat.signaling import PresenceService, typing_signaler

logger = logging.getLogger(__name__)


class ChatConsumer(AsyncJsonWebsocketConsumer):
    """
    WebSocket consumer for real-time chat functionality.

    Handles:
        - Connection authentication
        - Joining/leaving conversation rooms
        - Sending messages through DeliveryService
        - Typing indicators
        - Read cursors

    Attributes:
        user: Authenticated user (after connect)
    """

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.user = None
        self.handlers = {
            "join_conversation": self._handle_join,
            "leave_conversation": self._handle_leave,
            "typing_start": self._handle_typing_start,
            "typing_stop": self._handle_typing_stop,
            "send_message": self._handle_send_message,
            "mark_read": self._handle_mark_read,
        }

    async def connect(self):
        """
        Handle WebSocket connection.

        Rejects anonymous users, then joins the personal room and marks
        the user online.
        """
        user = self.scope.get("user")

        if not user or not user.is_authenticated:
            logger.warning("Rejected unauthenticated chat socket")
            await self.close(code=CLOSE_CODES.UNAUTHENTICATED)
            return

        self.user = user

        subprotocols = self.scope.get("subprotocols", [])
        await self.accept(subprotocol="jwt" if "jwt" in subprotocols else None)

        await router.join_personal(self.channel_name, user.id)
        await sync_to_async(PresenceService.mark_online)(user.id)
        logger.info(f"User {user.id} connected to chat socket")

    async def disconnect(self, close_code):
        """Leave every room and drop the presence marker."""
        if self.user is None:
            return

        rooms = await router.leave_all(self.channel_name)
        await sync_to_async(PresenceService.mark_offline)(self.user.id)
        logger.info(
            f"User {self.user.id} disconnected (code {close_code}), left {len(rooms)} rooms"
        )

    async def receive_json(self, content, **kwargs):
        """
        Dispatch an incoming frame on its "type".

        Args:
            content: Parsed JSON message from client
        """
        if not isinstance(content, dict):
            await self._send_error("Frames must be JSON objects", "INVALID_FRAME")
            return

        frame_type = content.get("type")
        handler = self.handlers.get(frame_type)
        if handler is None:
            await self._send_error(f"Unknown message type: {frame_type}", "UNKNOWN_TYPE")
            return

        await handler(content)

    # =========================================================================
    # Inbound handlers
    # =========================================================================

    async def _handle_join(self, content):
        conversation_id = await self._conversation_id(content)
        if conversation_id is None:
            return

        result = await database_sync_to_async(
            ConversationService.get_participant_conversation
        )(conversation_id, self.user)
        if not result:
            logger.warning(
                f"User {self.user.id} refused join to conversation {conversation_id}: "
                f"{result.error_code}"
            )
            await self._send_error(
                result.error, result.error_code, conversation_id=conversation_id
            )
            return

        await router.join(self.channel_name, conversation_id)
        await self.send_json(
            {"type": "joined_conversation", "conversation_id": conversation_id}
        )

    async def _handle_leave(self, content):
        conversation_id = await self._conversation_id(content)
        if conversation_id is None:
            return

        await router.leave(self.channel_name, conversation_id)
        await self.send_json(
            {"type": "left_conversation", "conversation_id": conversation_id}
        )

    async def _handle_typing_start(self, content):
        await self._handle_typing(content, typing_signaler.start_typing)

    async def _handle_typing_stop(self, content):
        await self._handle_typing(content, typing_signaler.stop_typing)

    async def _handle_typing(self, content, signal):
        conversation_id = await self._conversation_id(content)
        if conversation_id is None:
            return

        if not router.is_member(self.channel_name, conversation_id):
            await self._send_error(
                "Join the conversation before sending typing signals",
                "NOT_JOINED",
                conversation_id=conversation_id,
            )
            return

        try:
            await signal(conversation_id, self.user.id)
        except DeliveryChannelUnavailable as exc:
            logger.warning(f"Typing signal dropped for conversation {conversation_id}: {exc}")

    async def _handle_send_message(self, content):
        conversation_id = await self._conversation_id(content)
        if conversation_id is None:
            return

        temp_id = content.get("temp_id")
        serializer = MessageCreateSerializer(data=content)
        if not serializer.is_valid():
            await self._send_error(
                "Invalid message",
                "VALIDATION_ERROR",
                conversation_id=conversation_id,
                temp_id=temp_id,
                errors=serializer.errors,
            )
            return

        result = await self._deliver(conversation_id, serializer.validated_data)
        if not result["success"]:
            await self._send_error(
                result["error"],
                result["error_code"],
                conversation_id=conversation_id,
                temp_id=temp_id,
            )
            return

        await self.send_json(
            {"type": "message_ack", "temp_id": temp_id, "message": result["message"]}
        )

    async def _handle_mark_read(self, content):
        conversation_id = await self._conversation_id(content)
        if conversation_id is None:
            return

        result = await self._mark_read(conversation_id)
        if not result.success:
            await self._send_error(
                result.error, result.error_code, conversation_id=conversation_id
            )

    # =========================================================================
    # Channel layer events
    # =========================================================================

    async def room_event(self, event):
        """
        Handle room.event messages from RoomRouter.

        Forwards {"type": event, **payload}, except to connections of the
        excluded user.
        """
        exclude_user_id = event.get("exclude_user_id")
        if exclude_user_id is not None and self.user and exclude_user_id == self.user.id:
            return

        await self.send_json({"type": event["event"], **event["payload"]})

    # =========================================================================
    # Helpers
    # =========================================================================

    async def _conversation_id(self, content) -> int | None:
        try:
            return int(content.get("conversation_id"))
        except (TypeError, ValueError):
            await self._send_error("conversation_id is required", "INVALID_FRAME")
            return None

    async def _send_error(self, error: str, error_code: str | None, **extra):
        await self.send_json(
            {"type": "error", "error": error, "error_code": error_code, **extra}
        )

    @database_sync_to_async
    def _deliver(self, conversation_id: int, data: dict) -> dict:
        """Send through DeliveryService and serialize the stored message."""
        result = DeliveryService.send(
            conversation_id,
            self.user,
            data["content"],
            message_type=data["message_type"],
            metadata=data.get("metadata"),
        )
        if not result.success:
            return {
                "success": False,
                "error": result.error,
                "error_code": result.error_code,
            }
        return {
            "success": True,
            "message": dict(MessageSerializer(result.data.message).data),
        }

    @database_sync_to_async
    def _mark_read(self, conversation_id: int):
        result = ReadCursorService.mark_read(conversation_id, self.user)
        if result.success:
            DeliveryService.announce_read(result.data)
        return result
