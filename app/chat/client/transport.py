"""
Socket transport for the chat client.

Transport is the seam between ConnectionManager and the network. The
aiohttp implementation talks to ws/chat/ with the access token in the
query string; tests substitute an in-memory transport.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Protocol

import aiohttp

from core.exceptions import ExternalServiceError

logger = logging.getLogger(__name__)


class TransportClosed(ExternalServiceError):
    """The socket is not open."""

    default_error_code: str = "TRANSPORT_CLOSED"


class Transport(Protocol):
    async def open(self) -> None: ...

    async def send(self, frame: dict[str, Any]) -> None: ...

    async def receive(self) -> dict[str, Any] | None:
        """Next JSON frame, or None once the socket is closed."""
        ...

    async def close(self) -> None: ...


class WebSocketTransport:
    """
    aiohttp WebSocket transport.

    Args:
        url: Socket URL, e.g. ws://host/ws/chat/
        token: JWT access token
        session: Shared ClientSession; one is created (and owned) if omitted
        heartbeat: Ping interval in seconds
    """

    def __init__(
        self,
        url: str,
        token: str,
        session: aiohttp.ClientSession | None = None,
        heartbeat: float = 20.0,
    ):
        self.url = url
        self.token = token
        self.heartbeat = heartbeat
        self._session = session
        self._owns_session = session is None
        self._ws: aiohttp.ClientWebSocketResponse | None = None

    async def open(self) -> None:
        if self._session is None:
            self._session = aiohttp.ClientSession()
        try:
            self._ws = await self._session.ws_connect(
                self.url,
                params={"token": self.token},
                heartbeat=self.heartbeat,
            )
        except aiohttp.ClientError as exc:
            raise TransportClosed(
                f"Could not connect to {self.url}",
                details={"reason": str(exc)},
            ) from exc

    async def send(self, frame: dict[str, Any]) -> None:
        if self._ws is None or self._ws.closed:
            raise TransportClosed("Socket is not open")
        try:
            await self._ws.send_json(frame)
        except (aiohttp.ClientError, ConnectionResetError) as exc:
            raise TransportClosed("Send failed", details={"reason": str(exc)}) from exc

    async def receive(self) -> dict[str, Any] | None:
        if self._ws is None:
            return None
        while True:
            msg = await self._ws.receive()
            if msg.type == aiohttp.WSMsgType.TEXT:
                try:
                    frame = json.loads(msg.data)
                except json.JSONDecodeError:
                    logger.warning("Dropping non-JSON frame")
                    continue
                if isinstance(frame, dict):
                    return frame
            elif msg.type in (
                aiohttp.WSMsgType.CLOSE,
                aiohttp.WSMsgType.CLOSING,
                aiohttp.WSMsgType.CLOSED,
                aiohttp.WSMsgType.ERROR,
            ):
                return None

    async def close(self) -> None:
        if self._ws is not None and not self._ws.closed:
            await self._ws.close()
        self._ws = None
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None
