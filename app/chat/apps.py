"""
Chat application configuration.

This app provides the conversation delivery system with:
- Direct (1:1) and group conversations
- A durable, cursor-paged message ledger
- Live fan-out over Channels rooms
- Read cursors and unread counts
"""

from django.apps import AppConfig


class ChatConfig(AppConfig):
    """Configuration for the chat application."""

    default_auto_field = "django.db.models.BigAutoField"
    name = "chat"
    verbose_name = "Chat"
