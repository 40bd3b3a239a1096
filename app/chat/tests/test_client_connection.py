"""
Tests for the client ConnectionManager.

This module tests:
- State machine transitions and CONNECTION_STATE events
- Room tracking and rejoin after reconnect
- Exponential backoff with a cap, and giving up after max_attempts
- Frame republishing on the EventBus

FakeTransport (chat.tests.fakes) stands in for the socket; sleep is replaced so
backoff delays are recorded instead of waited.
"""

import asyncio

import pytest

from core.exceptions import ConflictError

from chat.client.connection import ConnectionManager, ConnectionState, ConnectionUnavailable
from chat.client.events import EventBus, EventKind
from chat.client.transport import TransportClosed
from chat.tests.fakes import FakeTransport, TransportFactory

pytestmark = pytest.mark.asyncio

WAIT_TIMEOUT = 2


class Recorder:
    """Collects payloads of one event kind and lets tests await them."""

    def __init__(self, bus, kind):
        self.payloads = []
        self._event = asyncio.Event()
        bus.subscribe(kind, self._on_event)

    def _on_event(self, payload):
        self.payloads.append(payload)
        self._event.set()

    async def wait(self):
        await asyncio.wait_for(self._event.wait(), WAIT_TIMEOUT)
        self._event.clear()
        return self.payloads[-1]


@pytest.fixture
def bus():
    return EventBus()


@pytest.fixture
def delays():
    return []


@pytest.fixture
def make_manager(bus, delays):
    async def fake_sleep(delay):
        delays.append(delay)
        await asyncio.sleep(0)

    def factory(*transports, **kwargs):
        transport_factory = TransportFactory(*transports)
        manager = ConnectionManager(transport_factory, bus, sleep=fake_sleep, **kwargs)
        manager.factory = transport_factory
        return manager

    return factory


# =============================================================================
# TestConnectionLifecycle
# =============================================================================


class TestConnectionLifecycle:
    async def test_connect_publishes_state_changes(self, bus, make_manager):
        states = Recorder(bus, EventKind.CONNECTION_STATE)
        manager = make_manager()

        await manager.connect()

        assert manager.state is ConnectionState.CONNECTED
        assert [p["state"] for p in states.payloads] == ["connecting", "connected"]
        await manager.close()

    async def test_failed_first_connect_returns_to_disconnected(self, make_manager):
        """
        Why it matters: The caller decides whether to try again.
        """
        manager = make_manager(FakeTransport(fail_open=True))

        with pytest.raises(TransportClosed):
            await manager.connect()

        assert manager.state is ConnectionState.DISCONNECTED

    async def test_close_is_terminal(self, make_manager):
        manager = make_manager()
        await manager.connect()
        transport = manager.factory.created[0]

        await manager.close()

        assert manager.state is ConnectionState.CLOSED
        assert transport.closed is True
        assert manager.reader is None
        with pytest.raises(ConflictError) as exc_info:
            await manager.connect()
        assert exc_info.value.error_code == "INVALID_STATE_TRANSITION"

    async def test_send_while_disconnected_raises(self, make_manager):
        manager = make_manager()

        with pytest.raises(ConnectionUnavailable):
            await manager.send({"type": "typing_start", "conversation_id": 1})


# =============================================================================
# TestConnectionRooms
# =============================================================================


class TestConnectionRooms:
    async def test_join_before_connect_is_sent_on_connect(self, make_manager):
        manager = make_manager()

        await manager.join(5)
        await manager.connect()

        assert manager.factory.created[0].sent == [
            {"type": "join_conversation", "conversation_id": 5}
        ]
        await manager.close()

    async def test_leave_forgets_room(self, make_manager):
        manager = make_manager()
        await manager.connect()
        await manager.join(5)

        await manager.leave(5)

        assert manager.open_rooms == frozenset()
        assert manager.factory.created[0].sent[-1] == {
            "type": "leave_conversation",
            "conversation_id": 5,
        }
        await manager.close()


# =============================================================================
# TestConnectionFrames
# =============================================================================


class TestConnectionFrames:
    async def test_server_frames_are_published(self, bus, make_manager):
        messages = Recorder(bus, EventKind.NEW_MESSAGE)
        manager = make_manager()
        await manager.connect()

        manager.factory.created[0].push({"type": "new_message", "message": {"id": 1}})

        assert await messages.wait() == {"type": "new_message", "message": {"id": 1}}
        await manager.close()

    async def test_unknown_frames_are_skipped(self, bus, make_manager):
        messages = Recorder(bus, EventKind.NEW_MESSAGE)
        manager = make_manager()
        await manager.connect()
        transport = manager.factory.created[0]

        transport.push({"type": "mystery"})
        transport.push({"type": "new_message", "message": {"id": 2}})

        assert (await messages.wait())["message"] == {"id": 2}
        assert len(messages.payloads) == 1
        await manager.close()


# =============================================================================
# TestConnectionReconnect
# =============================================================================


class TestConnectionReconnect:
    """
    Tests for automatic reconnect.

    Why it matters: After a network blip, open conversations must keep
    receiving events without the user doing anything.
    """

    async def test_reconnect_rejoins_open_rooms(self, bus, make_manager):
        reconnected = Recorder(bus, EventKind.RECONNECTED)
        manager = make_manager()
        await manager.connect()
        await manager.join(5)
        await manager.join(3)

        manager.factory.created[0].drop()

        assert await reconnected.wait() == {"rooms": [3, 5]}
        assert manager.state is ConnectionState.CONNECTED
        second = manager.factory.created[1]
        assert second.sent == [
            {"type": "join_conversation", "conversation_id": 3},
            {"type": "join_conversation", "conversation_id": 5},
        ]
        await manager.close()

    async def test_backoff_doubles_up_to_cap(self, bus, delays, make_manager):
        reconnected = Recorder(bus, EventKind.RECONNECTED)
        manager = make_manager(
            FakeTransport(),
            FakeTransport(fail_open=True),
            FakeTransport(fail_open=True),
            FakeTransport(fail_open=True),
            FakeTransport(),
            initial_backoff=1.0,
            max_backoff=3.0,
        )
        await manager.connect()

        manager.factory.created[0].drop()
        await reconnected.wait()

        assert delays == [1.0, 2.0, 3.0, 3.0]
        await manager.close()

    async def test_gives_up_after_max_attempts(self, bus, make_manager):
        states = Recorder(bus, EventKind.CONNECTION_STATE)
        manager = make_manager(
            FakeTransport(),
            FakeTransport(fail_open=True),
            FakeTransport(fail_open=True),
            max_attempts=2,
        )
        await manager.connect()

        manager.factory.created[0].drop()
        await asyncio.wait_for(manager.reader, WAIT_TIMEOUT)

        assert manager.state is ConnectionState.CLOSED
        assert [p["state"] for p in states.payloads][-2:] == ["reconnecting", "closed"]

    async def test_close_during_backoff_stops_reconnecting(self, bus, make_manager):
        manager = make_manager(FakeTransport(), FakeTransport(fail_open=True))
        await manager.connect()
        reader = manager.reader

        manager.factory.created[0].drop()
        await asyncio.sleep(0)
        await manager.close()

        assert manager.state is ConnectionState.CLOSED
        assert reader.done()
