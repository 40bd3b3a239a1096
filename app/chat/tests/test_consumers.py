"""
Tests for ChatConsumer over the in-memory channel layer.

This module tests:
- Authentication on connect (anonymous sockets close with 4001)
- join_conversation access checks
- send_message: ack to the sender, new_message to the room,
  conversation_updated to other participants
- Typing signals skip the originator
- mark_read emits read_updated to the reader
- Presence follows connect/disconnect

Sockets run through JWTAuthMiddleware and the real URL routing, so the
whole server side of the socket path is exercised.
"""

import pytest
from asgiref.sync import sync_to_async
from channels.routing import URLRouter
from channels.testing import WebsocketCommunicator
from rest_framework_simplejwt.tokens import AccessToken

from chat.middleware import JWTAuthMiddleware
from chat.models import Message
from chat.routing import websocket_urlpatterns
from chat.signaling import PresenceService

pytestmark = [pytest.mark.asyncio, pytest.mark.django_db(transaction=True)]

RECEIVE_TIMEOUT = 3


def make_communicator(user=None, token=None, subprotocols=None):
    application = JWTAuthMiddleware(URLRouter(websocket_urlpatterns))
    path = "/ws/chat/"
    if user is not None:
        token = str(AccessToken.for_user(user))
    if token is not None and subprotocols is None:
        path = f"{path}?token={token}"
    return WebsocketCommunicator(application, path, subprotocols=subprotocols)


async def connect(user):
    communicator = make_communicator(user)
    connected, _ = await communicator.connect()
    assert connected
    return communicator


async def receive_frames(communicator, count):
    """Receive `count` frames keyed by type (arrival order may vary)."""
    frames = {}
    for _ in range(count):
        frame = await communicator.receive_json_from(timeout=RECEIVE_TIMEOUT)
        frames[frame["type"]] = frame
    return frames


async def join(communicator, conversation_id):
    await communicator.send_json_to(
        {"type": "join_conversation", "conversation_id": conversation_id}
    )
    frame = await communicator.receive_json_from(timeout=RECEIVE_TIMEOUT)
    assert frame == {"type": "joined_conversation", "conversation_id": conversation_id}


# =============================================================================
# TestChatConsumerConnect
# =============================================================================


class TestChatConsumerConnect:
    async def test_anonymous_socket_is_closed_with_4001(self):
        """
        Why it matters: Sockets without a user must never join rooms.
        """
        communicator = make_communicator()

        connected, code = await communicator.connect()

        assert connected is False
        assert code == 4001

    async def test_invalid_token_is_closed_with_4001(self):
        communicator = make_communicator(token="not-a-jwt")

        connected, code = await communicator.connect()

        assert connected is False
        assert code == 4001

    async def test_subprotocol_token_is_accepted(self, alice):
        """
        Browsers cannot set headers on sockets, so the token may ride in
        Sec-WebSocket-Protocol.

        Why it matters: The server must echo the jwt subprotocol back.
        """
        token = str(AccessToken.for_user(alice))
        communicator = make_communicator(token=token, subprotocols=["jwt", token])

        connected, subprotocol = await communicator.connect()

        assert connected is True
        assert subprotocol == "jwt"
        await communicator.disconnect()

    async def test_presence_follows_connection(self, alice):
        """
        Why it matters: Presence is what other users see as "online".
        """
        communicator = await connect(alice)
        assert await sync_to_async(PresenceService.is_online)(alice.id) is True

        await communicator.disconnect()

        assert await sync_to_async(PresenceService.is_online)(alice.id) is False


# =============================================================================
# TestChatConsumerJoin
# =============================================================================


class TestChatConsumerJoin:
    async def test_participant_can_join(self, direct_conversation, alice):
        communicator = await connect(alice)

        await join(communicator, direct_conversation.id)

        await communicator.disconnect()

    async def test_outsider_join_is_refused(self, direct_conversation, outsider):
        """
        Why it matters: Room membership is what gates live events.
        """
        communicator = await connect(outsider)

        await communicator.send_json_to(
            {"type": "join_conversation", "conversation_id": direct_conversation.id}
        )
        frame = await communicator.receive_json_from(timeout=RECEIVE_TIMEOUT)

        assert frame["type"] == "error"
        assert frame["error_code"] == "NOT_PARTICIPANT"
        assert frame["conversation_id"] == direct_conversation.id
        await communicator.disconnect()

    async def test_missing_conversation_id(self, alice):
        communicator = await connect(alice)

        await communicator.send_json_to({"type": "join_conversation"})
        frame = await communicator.receive_json_from(timeout=RECEIVE_TIMEOUT)

        assert frame["error_code"] == "INVALID_FRAME"
        await communicator.disconnect()

    async def test_unknown_frame_type(self, alice):
        communicator = await connect(alice)

        await communicator.send_json_to({"type": "shout"})
        frame = await communicator.receive_json_from(timeout=RECEIVE_TIMEOUT)

        assert frame["error_code"] == "UNKNOWN_TYPE"
        await communicator.disconnect()

    async def test_leave_conversation(self, direct_conversation, alice):
        communicator = await connect(alice)
        await join(communicator, direct_conversation.id)

        await communicator.send_json_to(
            {"type": "leave_conversation", "conversation_id": direct_conversation.id}
        )
        frame = await communicator.receive_json_from(timeout=RECEIVE_TIMEOUT)

        assert frame == {
            "type": "left_conversation",
            "conversation_id": direct_conversation.id,
        }
        await communicator.disconnect()


# =============================================================================
# TestChatConsumerSendMessage
# =============================================================================


class TestChatConsumerSendMessage:
    """
    Tests for the send_message frame.

    Verifies:
    - The sender gets message_ack carrying its temp_id
    - Room members get new_message (the sender included)
    - Other participants get conversation_updated in their personal room
    """

    async def test_send_reaches_sender_and_recipient(
        self, direct_conversation, alice, bob
    ):
        """
        Why it matters: This is the core live delivery path.
        """
        alice_socket = await connect(alice)
        bob_socket = await connect(bob)
        await join(alice_socket, direct_conversation.id)
        await join(bob_socket, direct_conversation.id)

        await alice_socket.send_json_to(
            {
                "type": "send_message",
                "conversation_id": direct_conversation.id,
                "content": "hello bob",
                "temp_id": "tmp-1",
            }
        )

        alice_frames = await receive_frames(alice_socket, 2)
        bob_frames = await receive_frames(bob_socket, 2)

        ack = alice_frames["message_ack"]
        assert ack["temp_id"] == "tmp-1"
        assert ack["message"]["content"] == "hello bob"
        assert alice_frames["new_message"]["message"]["id"] == ack["message"]["id"]

        assert bob_frames["new_message"]["message"]["id"] == ack["message"]["id"]
        updated = bob_frames["conversation_updated"]
        assert updated["conversation_id"] == direct_conversation.id
        assert updated["unread_count"] == 1

        assert await alice_socket.receive_nothing()
        await alice_socket.disconnect()
        await bob_socket.disconnect()

    async def test_send_is_persisted(self, direct_conversation, alice):
        communicator = await connect(alice)

        await communicator.send_json_to(
            {
                "type": "send_message",
                "conversation_id": direct_conversation.id,
                "content": "stored",
            }
        )
        frame = await communicator.receive_json_from(timeout=RECEIVE_TIMEOUT)

        assert frame["type"] == "message_ack"
        assert await sync_to_async(
            Message.objects.filter(pk=frame["message"]["id"], content="stored").exists
        )()
        await communicator.disconnect()

    async def test_empty_message_error_carries_temp_id(self, direct_conversation, alice):
        """
        Why it matters: The client removes exactly the failed optimistic entry.
        """
        communicator = await connect(alice)

        await communicator.send_json_to(
            {
                "type": "send_message",
                "conversation_id": direct_conversation.id,
                "content": "  ",
                "temp_id": "tmp-9",
            }
        )
        frame = await communicator.receive_json_from(timeout=RECEIVE_TIMEOUT)

        assert frame["type"] == "error"
        assert frame["error_code"] == "EMPTY_CONTENT"
        assert frame["temp_id"] == "tmp-9"
        await communicator.disconnect()

    async def test_outsider_send_is_refused(self, direct_conversation, outsider):
        communicator = await connect(outsider)

        await communicator.send_json_to(
            {
                "type": "send_message",
                "conversation_id": direct_conversation.id,
                "content": "let me in",
            }
        )
        frame = await communicator.receive_json_from(timeout=RECEIVE_TIMEOUT)

        assert frame["error_code"] == "NOT_PARTICIPANT"
        assert await sync_to_async(Message.objects.count)() == 0
        await communicator.disconnect()

    async def test_invalid_message_type(self, direct_conversation, alice):
        communicator = await connect(alice)

        await communicator.send_json_to(
            {
                "type": "send_message",
                "conversation_id": direct_conversation.id,
                "content": "hi",
                "message_type": "hologram",
            }
        )
        frame = await communicator.receive_json_from(timeout=RECEIVE_TIMEOUT)

        assert frame["error_code"] == "VALIDATION_ERROR"
        assert "message_type" in frame["errors"]
        await communicator.disconnect()


# =============================================================================
# TestChatConsumerTyping
# =============================================================================


class TestChatConsumerTyping:
    async def test_typing_reaches_others_but_not_originator(
        self, direct_conversation, alice, bob
    ):
        """
        Why it matters: Users never see their own typing indicator.
        """
        alice_socket = await connect(alice)
        bob_socket = await connect(bob)
        await join(alice_socket, direct_conversation.id)
        await join(bob_socket, direct_conversation.id)

        await alice_socket.send_json_to(
            {"type": "typing_start", "conversation_id": direct_conversation.id}
        )

        frame = await bob_socket.receive_json_from(timeout=RECEIVE_TIMEOUT)
        assert frame == {
            "type": "user_typing",
            "user_id": alice.id,
            "conversation_id": direct_conversation.id,
        }
        assert await alice_socket.receive_nothing()

        await alice_socket.send_json_to(
            {"type": "typing_stop", "conversation_id": direct_conversation.id}
        )
        frame = await bob_socket.receive_json_from(timeout=RECEIVE_TIMEOUT)
        assert frame["type"] == "user_stopped_typing"

        await alice_socket.disconnect()
        await bob_socket.disconnect()

    async def test_typing_requires_join(self, direct_conversation, alice):
        communicator = await connect(alice)

        await communicator.send_json_to(
            {"type": "typing_start", "conversation_id": direct_conversation.id}
        )
        frame = await communicator.receive_json_from(timeout=RECEIVE_TIMEOUT)

        assert frame["error_code"] == "NOT_JOINED"
        await communicator.disconnect()


# =============================================================================
# TestChatConsumerMarkRead
# =============================================================================


class TestChatConsumerMarkRead:
    async def test_mark_read_announces_to_reader(self, direct_conversation, alice, bob):
        """
        Why it matters: The reader's other sockets clear the badge.
        """
        await sync_to_async(
            lambda: direct_conversation.participants.filter(user=bob).update(unread_count=3)
        )()
        communicator = await connect(bob)

        await communicator.send_json_to(
            {"type": "mark_read", "conversation_id": direct_conversation.id}
        )
        frame = await communicator.receive_json_from(timeout=RECEIVE_TIMEOUT)

        assert frame["type"] == "read_updated"
        assert frame["conversation_id"] == direct_conversation.id
        assert frame["unread_count"] == 0
        assert frame["last_read_at"] is not None
        await communicator.disconnect()

    async def test_outsider_mark_read_is_refused(self, direct_conversation, outsider):
        communicator = await connect(outsider)

        await communicator.send_json_to(
            {"type": "mark_read", "conversation_id": direct_conversation.id}
        )
        frame = await communicator.receive_json_from(timeout=RECEIVE_TIMEOUT)

        assert frame["error_code"] == "NOT_PARTICIPANT"
        await communicator.disconnect()
