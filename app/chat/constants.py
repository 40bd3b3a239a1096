"""
Constants and configuration for the chat module.

This module centralizes configuration values for:
- Message paging and content limits
- Live delivery (fan-out retries, socket close codes)
- Presence tracking

Defaults live on the Final classes below. Deployments override them through
the CHAT dict in Django settings; read tunables with chat_setting() so the
override is honored at call time.

Import example:
    from chat.constants import MESSAGE_CONFIG, chat_setting

    limit = chat_setting("PAGE_SIZE_DEFAULT")
"""

from typing import Any, Final

from django.conf import settings


# =============================================================================
# Message Configuration
# =============================================================================


class MESSAGE_CONFIG:
    """Configuration for message operations."""

    MAX_CONTENT_LENGTH: Final[int] = 10000  # Characters

    PAGE_SIZE_DEFAULT: Final[int] = 50
    PAGE_SIZE_MAX: Final[int] = 100


# =============================================================================
# Delivery Configuration
# =============================================================================


class DELIVERY_CONFIG:
    """Configuration for live fan-out."""

    # Hand failed fan-outs to chat.tasks.rebroadcast_message
    FANOUT_RETRY_ENABLED: Final[bool] = True
    FANOUT_MAX_RETRIES: Final[int] = 3

    # Room name prefixes (channel layer group names allow only [a-zA-Z0-9_.-])
    USER_ROOM_PREFIX: Final[str] = "user_"
    CONVERSATION_ROOM_PREFIX: Final[str] = "conversation_"

    # Channel layer message type dispatched to ChatConsumer.room_event
    ROOM_EVENT_TYPE: Final[str] = "room.event"


class CLOSE_CODES:
    """WebSocket close codes used by ChatConsumer."""

    UNAUTHENTICATED: Final[int] = 4001


# =============================================================================
# Presence Configuration
# =============================================================================


class PRESENCE_CONFIG:
    """Configuration for presence tracking."""

    # How long an online marker survives without a refresh
    PRESENCE_TTL_SECONDS: Final[int] = 300

    KEY_PREFIX_USER_PRESENCE: Final[str] = "presence:user"


_DEFAULTS: Final[dict[str, Any]] = {
    "PAGE_SIZE_DEFAULT": MESSAGE_CONFIG.PAGE_SIZE_DEFAULT,
    "PAGE_SIZE_MAX": MESSAGE_CONFIG.PAGE_SIZE_MAX,
    "PRESENCE_TTL_SECONDS": PRESENCE_CONFIG.PRESENCE_TTL_SECONDS,
    "FANOUT_RETRY_ENABLED": DELIVERY_CONFIG.FANOUT_RETRY_ENABLED,
    "FANOUT_MAX_RETRIES": DELIVERY_CONFIG.FANOUT_MAX_RETRIES,
}


def chat_setting(name: str) -> Any:
    """Return settings.CHAT[name], falling back to the module default."""
    if name not in _DEFAULTS:
        raise KeyError(f"Unknown chat setting: {name}")
    return getattr(settings, "CHAT", {}).get(name, _DEFAULTS[name])
