"""
Tests for the client ConversationSession.

This module tests:
- Optimistic send: confirm by temp id, remove and raise on failure
- Self-echo dedup when the broadcast beats the ack
- History paging with load_more
- Reconcile after reconnect
- Typing users with expiry

FakeChatApi (chat.tests.fakes) plays the server. The ConnectionManager is
real but never connected, so joins are only recorded.
"""

import pytest

from chat.client.api import ChatApiError
from chat.client.connection import ConnectionManager
from chat.client.events import EventBus, EventKind
from chat.client.session import ConversationSession, SendFailed
from chat.client.timeline import Pending
from chat.tests.fakes import FakeChatApi, TransportFactory, message_payload

pytestmark = pytest.mark.asyncio

CONVERSATION_ID = 10
LOCAL_USER = 1
OTHER_USER = 2


class FakeClock:
    def __init__(self):
        self.now = 100.0

    def __call__(self):
        return self.now


@pytest.fixture
def bus():
    return EventBus()


@pytest.fixture
def api():
    return FakeChatApi(conversation_id=CONVERSATION_ID, local_user_id=LOCAL_USER)


@pytest.fixture
def connection(bus):
    return ConnectionManager(TransportFactory(), bus)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def session(api, connection, bus, clock):
    return ConversationSession(
        CONVERSATION_ID,
        LOCAL_USER,
        api,
        connection,
        bus,
        page_size=2,
        typing_timeout=5.0,
        clock=clock,
    )


def publish_message(bus, message):
    bus.publish(
        EventKind.NEW_MESSAGE,
        {"type": "new_message", "message": message_payload(message)},
    )


# =============================================================================
# TestSessionOpen
# =============================================================================


class TestSessionOpen:
    async def test_open_joins_and_loads_newest_page(self, session, api, connection):
        for i in range(3):
            api.add_message(OTHER_USER, f"m{i}")

        await session.open()

        assert connection.open_rooms == frozenset({CONVERSATION_ID})
        assert [m.content for m in session.timeline.messages] == ["m1", "m2"]
        assert session.has_more is True

    async def test_close_unsubscribes_and_leaves(self, session, bus, connection):
        await session.open()

        await session.close()

        assert bus.subscriber_count(EventKind.NEW_MESSAGE) == 0
        assert connection.open_rooms == frozenset()


# =============================================================================
# TestSessionSend
# =============================================================================


class TestSessionSend:
    """
    Tests for ConversationSession.send().

    Why it matters: The user sees their message instantly, and exactly
    once, whatever order the ack and the broadcast arrive in.
    """

    async def test_pending_entry_visible_during_request(self, session, api):
        await session.open()
        seen_during_send = []
        api.on_send = lambda message: seen_during_send.extend(session.timeline.pending)

        message = await session.send("hello")

        [pending] = seen_during_send
        assert pending.content == "hello"
        assert session.timeline.pending == []
        assert session.timeline.messages == [message]

    async def test_failed_send_removes_entry_and_raises(self, session, api):
        """
        Why it matters: No ghost bubble, and the caller can offer a retry.
        """
        await session.open()
        api.send_error = ChatApiError(
            "You are not a participant in this conversation",
            error_code="NOT_PARTICIPANT",
            details={"status": 403},
        )

        with pytest.raises(SendFailed) as exc_info:
            await session.send("hello")

        assert exc_info.value.error_code == "NOT_PARTICIPANT"
        assert exc_info.value.details["temp_id"]
        assert len(session.timeline) == 0

    async def test_failed_send_is_not_retried(self, session, api):
        await session.open()
        api.send_error = ChatApiError("down", error_code="NETWORK_ERROR")

        with pytest.raises(SendFailed):
            await session.send("hello")

        assert len(api.sent) == 1

    async def test_broadcast_before_ack_is_shown_once(self, session, api, bus):
        """
        The sender's own new_message arrives while the send is in flight.

        Why it matters: This is the double-bubble race.
        """
        await session.open()
        api.on_send = lambda message: publish_message(bus, message)

        message = await session.send("hello")

        assert session.timeline.messages == [message]
        assert session.timeline.pending == []

    async def test_broadcast_after_ack_is_ignored(self, session, bus):
        await session.open()

        message = await session.send("hello")
        publish_message(bus, message)

        assert session.timeline.messages == [message]

    async def test_send_carries_temp_id_in_metadata(self, session, api):
        await session.open()
        seen_during_send = []
        api.on_send = lambda message: seen_during_send.extend(session.timeline.pending)

        message = await session.send("hello", metadata={"reply_to": 3})

        [pending] = seen_during_send
        assert message.metadata == {"reply_to": 3, "client_temp_id": pending.temp_id}

    async def test_same_text_from_other_device_during_send_is_kept(self, session, api, bus):
        """
        The user's other device sends the same text while this send is in
        flight, and its broadcast arrives before this ack.

        Why it matters: Identical content is still a separate message and
        must not be swallowed as a self-echo.
        """
        await session.open()

        def other_device_sends(message):
            publish_message(bus, api.add_message(LOCAL_USER, "ok"))

        api.on_send = other_device_sends

        await session.send("ok")

        assert [m.id for m in session.timeline.messages] == [m.id for m in api.messages]
        assert len(session.timeline.messages) == 2
        assert session.timeline.pending == []


# =============================================================================
# TestSessionBroadcasts
# =============================================================================


class TestSessionBroadcasts:
    async def test_message_from_other_user_is_added(self, session, api, bus):
        await session.open()

        publish_message(bus, api.add_message(OTHER_USER, "hey"))

        assert [m.content for m in session.timeline.messages] == ["hey"]

    async def test_message_for_other_conversation_is_ignored(self, session, api, bus):
        await session.open()

        publish_message(bus, api.add_message(OTHER_USER, "elsewhere", conversation_id=99))

        assert len(session.timeline) == 0


# =============================================================================
# TestSessionLoadMore
# =============================================================================


class TestSessionLoadMore:
    async def test_walks_back_to_the_first_message(self, session, api):
        """
        Why it matters: Scrolling up must reach the start of history with
        nothing skipped or repeated.
        """
        for i in range(5):
            api.add_message(OTHER_USER, f"m{i}")
        await session.open()

        assert await session.load_more() == 2
        assert session.has_more is True
        assert await session.load_more() == 1
        assert session.has_more is False
        assert await session.load_more() == 0

        assert [m.content for m in session.timeline.messages] == [
            "m0",
            "m1",
            "m2",
            "m3",
            "m4",
        ]

    async def test_failed_fetch_leaves_timeline_untouched(self, session, api):
        for i in range(3):
            api.add_message(OTHER_USER, f"m{i}")
        await session.open()
        before = session.timeline.messages
        api.fetch_error = ChatApiError("down", error_code="NETWORK_ERROR")

        with pytest.raises(ChatApiError):
            await session.load_more()

        assert session.timeline.messages == before
        assert session.has_more is True

    async def test_mark_read_calls_api(self, session, api):
        await session.mark_read()

        assert api.read_calls == [CONVERSATION_ID]


# =============================================================================
# TestSessionReconcile
# =============================================================================


class TestSessionReconcile:
    """
    Tests for the reconnect path.

    Why it matters: Messages sent while the socket was down must appear
    without a manual refresh.
    """

    async def test_reconnect_fetches_missed_messages(self, session, api, bus):
        await session.open()
        missed = api.add_message(OTHER_USER, "while you were away")

        bus.publish(EventKind.RECONNECTED, {"rooms": [CONVERSATION_ID]})
        await session.reconcile_task

        assert session.timeline.messages == [missed]

    async def test_reconnect_for_other_rooms_is_ignored(self, session, bus):
        await session.open()

        bus.publish(EventKind.RECONNECTED, {"rooms": [99]})

        assert session.reconcile_task is None

    async def test_reconcile_drops_pending_whose_ack_was_lost(self, session, api):
        await session.open()
        session.timeline.add_pending(
            Pending(
                temp_id="t1",
                conversation_id=CONVERSATION_ID,
                sender_id=LOCAL_USER,
                content="did it land?",
                created_at=api.add_message(
                    LOCAL_USER, "did it land?", metadata={"client_temp_id": "t1"}
                ).created_at,
            )
        )

        added = await session.reconcile()

        assert added == 1
        assert session.timeline.pending == []
        assert [m.content for m in session.timeline.messages] == ["did it land?"]

    async def test_reconnect_after_long_outage_leaves_no_gap(self, session, api, bus):
        """
        More than a page of messages was missed.

        Why it matters: Scrolling only ever pages back from the oldest
        message, so a hole above the old newest message would never fill.
        """
        for i in range(2):
            api.add_message(OTHER_USER, f"before {i}")
        await session.open()
        for i in range(5):
            api.add_message(OTHER_USER, f"missed {i}")

        bus.publish(EventKind.RECONNECTED, {"rooms": [CONVERSATION_ID]})
        await session.reconcile_task

        assert [m.id for m in session.timeline.messages] == [m.id for m in api.messages]
        assert await session.load_more() == 0

    async def test_reconcile_stops_at_newest_known_message(self, session, api):
        for i in range(4):
            api.add_message(OTHER_USER, f"old {i}")
        await session.open()
        for i in range(3):
            api.add_message(OTHER_USER, f"missed {i}")
        calls = []
        fetch_page = api.fetch_page

        async def counting_fetch(*args, **kwargs):
            calls.append(kwargs.get("before_id"))
            return await fetch_page(*args, **kwargs)

        api.fetch_page = counting_fetch

        added = await session.reconcile()

        assert added == 3
        assert calls == [None, 6]
        assert session.has_more is True

    async def test_failed_page_during_reconcile_changes_nothing(self, session, api):
        """
        Why it matters: A half-merged walk would move the newest message
        and hide the remaining gap from the next reconcile.
        """
        for i in range(2):
            api.add_message(OTHER_USER, f"before {i}")
        await session.open()
        for i in range(5):
            api.add_message(OTHER_USER, f"missed {i}")
        before = session.timeline.messages
        fetch_page = api.fetch_page

        async def fail_second_page(*args, **kwargs):
            if kwargs.get("before") is not None:
                raise ChatApiError("down", error_code="NETWORK_ERROR")
            return await fetch_page(*args, **kwargs)

        api.fetch_page = fail_second_page

        with pytest.raises(ChatApiError):
            await session.reconcile()

        assert session.timeline.messages == before

    async def test_failed_reconcile_is_logged_not_raised(self, session, api, bus):
        await session.open()
        api.fetch_error = ChatApiError("down", error_code="NETWORK_ERROR")

        bus.publish(EventKind.RECONNECTED, {"rooms": [CONVERSATION_ID]})
        await session.reconcile_task

        assert session.reconcile_task.exception() is None


# =============================================================================
# TestSessionDelete
# =============================================================================


class TestSessionDelete:
    async def test_deleted_message_leaves_timeline(self, session, api):
        await session.open()
        message = await session.send("oops")

        await session.delete_message(message.id)

        assert session.timeline.messages == []
        assert message not in api.messages

    async def test_refused_delete_keeps_message(self, session, api):
        api.add_message(OTHER_USER, "not yours")
        await session.open()
        api.delete_error = ChatApiError(
            "You can only delete your own messages",
            error_code="FORBIDDEN",
            details={"status": 403},
        )

        with pytest.raises(ChatApiError) as exc_info:
            await session.delete_message(1)

        assert exc_info.value.error_code == "FORBIDDEN"
        assert [m.id for m in session.timeline.messages] == [1]


# =============================================================================
# TestSessionTyping
# =============================================================================


class TestSessionTyping:
    async def test_start_and_stop_send_frames(self, session, connection):
        await connection.connect()

        assert await session.start_typing() is True
        assert await session.stop_typing() is True

        assert connection.transport_factory.created[0].sent == [
            {"type": "typing_start", "conversation_id": CONVERSATION_ID},
            {"type": "typing_stop", "conversation_id": CONVERSATION_ID},
        ]
        await connection.close()

    async def test_typing_while_offline_is_dropped(self, session):
        """
        Why it matters: Typing is advisory and must never break the input box.
        """
        assert await session.start_typing() is False

    def _typing(self, bus, user_id, conversation_id=CONVERSATION_ID):
        bus.publish(
            EventKind.USER_TYPING,
            {"type": "user_typing", "user_id": user_id, "conversation_id": conversation_id},
        )

    async def test_typing_user_expires_without_refresh(self, session, bus, clock):
        """
        Why it matters: A lost typing_stop must not leave "typing..." forever.
        """
        await session.open()

        self._typing(bus, OTHER_USER)
        assert session.typing_users == frozenset({OTHER_USER})

        clock.now += 4
        self._typing(bus, OTHER_USER)
        clock.now += 4
        assert session.typing_users == frozenset({OTHER_USER})

        clock.now += 2
        assert session.typing_users == frozenset()

    async def test_stopped_typing_removes_user(self, session, bus):
        await session.open()
        self._typing(bus, OTHER_USER)

        bus.publish(
            EventKind.USER_STOPPED_TYPING,
            {"user_id": OTHER_USER, "conversation_id": CONVERSATION_ID},
        )

        assert session.typing_users == frozenset()

    async def test_own_and_foreign_typing_ignored(self, session, bus):
        await session.open()

        self._typing(bus, LOCAL_USER)
        self._typing(bus, OTHER_USER, conversation_id=99)

        assert session.typing_users == frozenset()
