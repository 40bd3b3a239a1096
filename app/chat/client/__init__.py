"""
Asyncio chat client.

Keeps a local, ordered view of conversations in step with the server:
optimistic sends, broadcast merging without self-echo duplicates, and
room rejoin plus history reconcile after a reconnect.

Usage:
    bus = EventBus()
    connection = ConnectionManager(
        lambda: WebSocketTransport("ws://host/ws/chat/", token), bus
    )
    api = HttpChatApi("http://host", token)

    await connection.connect()
    session = ConversationSession(conversation_id, user_id, api, connection, bus)
    await session.open()
    await session.send("hello")
"""

from chat.client.api import ChatApi, ChatApiError, HistoryPage, HttpChatApi
from chat.client.connection import (
    ConnectionManager,
    ConnectionState,
    ConnectionUnavailable,
)
from chat.client.events import EventBus, EventKind, Subscription
from chat.client.session import ConversationSession, SendFailed
from chat.client.timeline import ChatMessage, Confirmed, Pending, Timeline
from chat.client.transport import Transport, TransportClosed, WebSocketTransport

__all__ = [
    "ChatApi",
    "ChatApiError",
    "ChatMessage",
    "Confirmed",
    "ConnectionManager",
    "ConnectionState",
    "ConnectionUnavailable",
    "ConversationSession",
    "EventBus",
    "EventKind",
    "HistoryPage",
    "HttpChatApi",
    "Pending",
    "SendFailed",
    "Subscription",
    "Timeline",
    "Transport",
    "TransportClosed",
    "WebSocketTransport",
]
