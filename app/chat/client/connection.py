"""
Connection manager for the chat client.

One ConnectionManager per user session. It owns the socket, remembers
which conversations are open, and republishes server frames on the
EventBus. Components that need live events get the manager (and bus)
passed to them; there is no module-level socket.

States:
    DISCONNECTED -> CONNECTING -> CONNECTED -> RECONNECTING -> CONNECTED ...
    any state -> CLOSED (terminal)

When the socket drops, the manager reconnects with exponential backoff,
rejoins every open conversation and publishes RECONNECTED with the list
of rejoined rooms.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from enum import Enum
from typing import Any

from core.exceptions import ConflictError, ExternalServiceError

from chat.client.events import EventBus, EventKind
from chat.client.transport import Transport

logger = logging.getLogger(__name__)


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    CLOSED = "closed"


_ALLOWED_TRANSITIONS: dict[ConnectionState, frozenset[ConnectionState]] = {
    ConnectionState.DISCONNECTED: frozenset(
        {ConnectionState.CONNECTING, ConnectionState.CLOSED}
    ),
    ConnectionState.CONNECTING: frozenset(
        {ConnectionState.CONNECTED, ConnectionState.DISCONNECTED, ConnectionState.CLOSED}
    ),
    ConnectionState.CONNECTED: frozenset(
        {ConnectionState.RECONNECTING, ConnectionState.CLOSED}
    ),
    ConnectionState.RECONNECTING: frozenset(
        {ConnectionState.CONNECTED, ConnectionState.CLOSED}
    ),
    ConnectionState.CLOSED: frozenset(),
}


class ConnectionUnavailable(ExternalServiceError):
    """A frame could not be sent because the socket is not connected."""

    default_error_code: str = "CONNECTION_UNAVAILABLE"


class ConnectionManager:
    """
    Explicit-state socket lifecycle with room tracking.

    Args:
        transport_factory: Builds a fresh Transport for every attempt
        bus: EventBus receiving server frames and local state events
        initial_backoff: First reconnect delay in seconds
        max_backoff: Upper bound for the reconnect delay
        max_attempts: Give up (CLOSED) after this many failed reconnects;
            None retries forever
        sleep: Awaitable delay, replaceable in tests
    """

    def __init__(
        self,
        transport_factory: Callable[[], Transport],
        bus: EventBus,
        *,
        initial_backoff: float = 0.5,
        max_backoff: float = 30.0,
        max_attempts: int | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.transport_factory = transport_factory
        self.bus = bus
        self.initial_backoff = initial_backoff
        self.max_backoff = max_backoff
        self.max_attempts = max_attempts
        self._sleep = sleep

        self._state = ConnectionState.DISCONNECTED
        self._transport: Transport | None = None
        self._rooms: set[int] = set()
        self._reader: asyncio.Task | None = None

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def open_rooms(self) -> frozenset[int]:
        return frozenset(self._rooms)

    @property
    def reader(self) -> asyncio.Task | None:
        return self._reader

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def connect(self) -> None:
        """
        Open the socket and start reading.

        Raises:
            ConflictError: Not in DISCONNECTED state
            ExternalServiceError: The first connection attempt failed
        """
        self._transition(ConnectionState.CONNECTING)
        transport = self.transport_factory()
        try:
            await transport.open()
        except ExternalServiceError:
            self._transition(ConnectionState.DISCONNECTED)
            raise

        self._transport = transport
        self._transition(ConnectionState.CONNECTED)
        await self._rejoin_rooms()
        self._reader = asyncio.get_running_loop().create_task(self._run())

    async def close(self) -> None:
        """Close for good. Further connects are refused."""
        if self._state == ConnectionState.CLOSED:
            return
        self._transition(ConnectionState.CLOSED)

        reader, self._reader = self._reader, None
        if reader is not None and reader is not asyncio.current_task():
            reader.cancel()
            try:
                await reader
            except asyncio.CancelledError:
                pass

        await self._close_transport()

    # =========================================================================
    # Rooms and frames
    # =========================================================================

    async def join(self, conversation_id: int) -> None:
        """Open a conversation; joined now if connected, else on connect."""
        self._rooms.add(conversation_id)
        if self._state == ConnectionState.CONNECTED:
            await self.send({"type": "join_conversation", "conversation_id": conversation_id})

    async def leave(self, conversation_id: int) -> None:
        if conversation_id not in self._rooms:
            return
        self._rooms.discard(conversation_id)
        if self._state == ConnectionState.CONNECTED:
            await self.send({"type": "leave_conversation", "conversation_id": conversation_id})

    async def send(self, frame: dict[str, Any]) -> None:
        """
        Raises:
            ConnectionUnavailable: Not connected, or the transport failed
        """
        if self._state != ConnectionState.CONNECTED or self._transport is None:
            raise ConnectionUnavailable(
                f"Cannot send while {self._state.value}",
                details={"state": self._state.value},
            )
        try:
            await self._transport.send(frame)
        except ExternalServiceError as exc:
            raise ConnectionUnavailable(exc.message, details=exc.details) from exc

    # =========================================================================
    # Internals
    # =========================================================================

    async def _run(self) -> None:
        while True:
            await self._read_until_closed()
            if self._state == ConnectionState.CLOSED:
                return
            if not await self._reconnect():
                return

    async def _read_until_closed(self) -> None:
        transport = self._transport
        while transport is not None:
            frame = await transport.receive()
            if frame is None:
                return
            kind = EventKind.from_frame(frame)
            if kind is None:
                logger.debug(f"Ignoring frame of unknown type {frame.get('type')!r}")
                continue
            self.bus.publish(kind, frame)

    async def _reconnect(self) -> bool:
        """Back off until a new socket is open. False if giving up."""
        self._transition(ConnectionState.RECONNECTING)
        await self._close_transport()

        delay = self.initial_backoff
        attempts = 0
        while self._state == ConnectionState.RECONNECTING:
            await self._sleep(delay)
            if self._state != ConnectionState.RECONNECTING:
                return False

            transport = self.transport_factory()
            try:
                await transport.open()
            except ExternalServiceError as exc:
                attempts += 1
                logger.warning(f"Reconnect attempt {attempts} failed: {exc}")
                if self.max_attempts is not None and attempts >= self.max_attempts:
                    self._transition(ConnectionState.CLOSED)
                    return False
                delay = min(delay * 2, self.max_backoff)
                continue

            self._transport = transport
            self._transition(ConnectionState.CONNECTED)
            try:
                rooms = await self._rejoin_rooms()
            except ConnectionUnavailable as exc:
                # Dropped again; the reader sees the closed socket and retries
                logger.warning(f"Rejoin after reconnect failed: {exc}")
                return True
            self.bus.publish(EventKind.RECONNECTED, {"rooms": rooms})
            logger.info(f"Reconnected after {attempts} failed attempts")
            return True
        return False

    async def _rejoin_rooms(self) -> list[int]:
        rooms = sorted(self._rooms)
        for conversation_id in rooms:
            await self.send({"type": "join_conversation", "conversation_id": conversation_id})
        return rooms

    async def _close_transport(self) -> None:
        transport, self._transport = self._transport, None
        if transport is not None:
            await transport.close()

    def _transition(self, target: ConnectionState) -> None:
        if target not in _ALLOWED_TRANSITIONS[self._state]:
            raise ConflictError(
                f"Cannot move connection from {self._state.value} to {target.value}",
                error_code="INVALID_STATE_TRANSITION",
                details={"current": self._state.value, "target": target.value},
            )
        self._state = target
        self.bus.publish(EventKind.CONNECTION_STATE, {"state": target.value})
