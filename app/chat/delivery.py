"""
Delivery coordinator: persist first, then fan out.

DeliveryService.send is the single write path for new messages, used by
both the REST view and the socket consumer:

    RECEIVED -> PERSISTED -> FANNED_OUT -> ACKNOWLEDGED
                    \\_________________________/
                      (fan-out failed)

A message is broadcast only after MessageService.append_message has
committed it. If the commit fails nothing is broadcast and the caller gets
the failure. If the broadcast fails the message is still durable; the
failure is logged, recorded on the receipt and handed to the
rebroadcast_message task, and the caller still gets a success.

Usage:
    from chat.delivery import DeliveryService

    result = DeliveryService.send(conversation_id, request.user, "hello")
    if result:
        message = result.data.message
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING

from asgiref.sync import async_to_sync

from core.exceptions import ConflictError
from core.services import BaseService, ServiceResult

from chat.constants import chat_setting
from chat.exceptions import DeliveryChannelUnavailable
from chat.models import Message, MessageType, Participant
from chat.rooms import router
from chat.serializers import MessageSerializer
from chat.services import MessageService
from chat.tasks import rebroadcast_message

if TYPE_CHECKING:
    from authentication.models import User

logger = logging.getLogger(__name__)


class DeliveryState(Enum):
    """Lifecycle of one outbound message on the server."""

    RECEIVED = "received"
    PERSISTED = "persisted"
    FANNED_OUT = "fanned_out"
    ACKNOWLEDGED = "acknowledged"


_ALLOWED_TRANSITIONS: dict[DeliveryState, frozenset[DeliveryState]] = {
    DeliveryState.RECEIVED: frozenset({DeliveryState.PERSISTED}),
    DeliveryState.PERSISTED: frozenset(
        {DeliveryState.FANNED_OUT, DeliveryState.ACKNOWLEDGED}
    ),
    DeliveryState.FANNED_OUT: frozenset({DeliveryState.ACKNOWLEDGED}),
    DeliveryState.ACKNOWLEDGED: frozenset(),
}


@dataclass
class DeliveryReceipt:
    """
    Outcome of DeliveryService.send.

    Attributes:
        message: The persisted message (None until PERSISTED)
        state: Current delivery state
        history: Every state passed through, in order
        fanout_error: Why the live broadcast failed, if it did
    """

    message: Message | None = None
    state: DeliveryState = DeliveryState.RECEIVED
    history: list[DeliveryState] = field(
        default_factory=lambda: [DeliveryState.RECEIVED]
    )
    fanout_error: str | None = None

    @property
    def fanned_out(self) -> bool:
        return DeliveryState.FANNED_OUT in self.history

    def advance(self, target: DeliveryState) -> None:
        """
        Move to the target state.

        Raises:
            ConflictError: target is not reachable from the current state
        """
        if target not in _ALLOWED_TRANSITIONS[self.state]:
            raise ConflictError(
                f"Cannot move delivery from {self.state.value} to {target.value}",
                error_code="INVALID_STATE_TRANSITION",
                details={"current": self.state.value, "target": target.value},
            )
        self.state = target
        self.history.append(target)


class DeliveryService(BaseService):
    """
    Coordinates persistence and live fan-out of chat events.

    Methods:
        send: Persist a message, then broadcast it
        fan_out: Broadcast an already persisted message
        announce_read: Tell the reader's other connections about a read
    """

    @classmethod
    def send(
        cls,
        conversation_id: int,
        sender: User,
        content: str,
        message_type: str = MessageType.TEXT,
        metadata: dict | None = None,
    ) -> ServiceResult[DeliveryReceipt]:
        """
        Persist a message and broadcast it to the conversation room.

        Live events:
            new_message -> conversation room, sender included
                {"message": {...}}
            conversation_updated -> personal room of every other participant
                {"conversation_id", "last_message", "unread_count"}

        Returns:
            ServiceResult with DeliveryReceipt (state ACKNOWLEDGED)

        Error codes:
            Same as MessageService.append_message. A fan-out failure is
            never reported as an error.
        """
        receipt = DeliveryReceipt()

        result = MessageService.append_message(
            conversation_id,
            sender,
            content,
            message_type=message_type,
            metadata=metadata,
        )
        if not result:
            return ServiceResult.failure(result.error, error_code=result.error_code)

        receipt.message = result.data
        receipt.advance(DeliveryState.PERSISTED)

        try:
            cls.fan_out(receipt.message)
        except DeliveryChannelUnavailable as exc:
            receipt.fanout_error = str(exc)
            cls.get_logger().warning(
                f"Fan-out failed for message {receipt.message.id} "
                f"in conversation {conversation_id}: {exc}"
            )
            cls._schedule_rebroadcast(receipt.message.id)
        else:
            receipt.advance(DeliveryState.FANNED_OUT)

        receipt.advance(DeliveryState.ACKNOWLEDGED)
        return ServiceResult.success(receipt)

    @classmethod
    def fan_out(cls, message: Message) -> None:
        """
        Broadcast a persisted message.

        Raises:
            DeliveryChannelUnavailable: Channel layer rejected a send
        """
        data = dict(MessageSerializer(message).data)

        async_to_sync(router.broadcast)(
            message.conversation_id,
            "new_message",
            {"message": data},
        )

        recipients = (
            Participant.objects.filter(conversation_id=message.conversation_id)
            .exclude(user_id=message.sender_id)
            .values_list("user_id", "unread_count")
        )
        for user_id, unread_count in recipients:
            async_to_sync(router.notify_user)(
                user_id,
                "conversation_updated",
                {
                    "conversation_id": message.conversation_id,
                    "last_message": data,
                    "unread_count": unread_count,
                },
            )

        cls.get_logger().debug(
            f"Fanned out message {message.id} to conversation {message.conversation_id}"
        )

    @classmethod
    def announce_read(cls, participant: Participant) -> None:
        """
        Send read_updated to the reader's personal room.

        Failures are logged and dropped: the next conversation list
        fetch carries the same state.
        """
        payload = {
            "conversation_id": participant.conversation_id,
            "unread_count": participant.unread_count,
            "last_read_at": (
                participant.last_read_at.isoformat() if participant.last_read_at else None
            ),
        }
        try:
            async_to_sync(router.notify_user)(participant.user_id, "read_updated", payload)
        except DeliveryChannelUnavailable as exc:
            cls.get_logger().warning(
                f"read_updated not delivered to user {participant.user_id}: {exc}"
            )

    @classmethod
    def _schedule_rebroadcast(cls, message_id: int) -> None:
        if not chat_setting("FANOUT_RETRY_ENABLED"):
            return
        try:
            rebroadcast_message.delay(message_id)
        except Exception as exc:
            # Broker down too; the message is still served by history fetches
            cls.get_logger().error(
                f"Could not enqueue rebroadcast for message {message_id}: {exc}"
            )
