"""
WebSocket URL routing for chat.

One socket per user session; conversations are joined over the socket
with join_conversation frames rather than by URL.
"""

from django.urls import path

from chat.consumers import ChatConsumer

websocket_urlpatterns = [
    path("ws/chat/", ChatConsumer.as_asgi()),
]
