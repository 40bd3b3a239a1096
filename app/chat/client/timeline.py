"""
Local message timeline with optimistic entries.

Each entry is either Pending (sent locally, not yet confirmed, keyed by a
client temp id) or Confirmed (a server message, keyed by id). Confirmed
entries are ordered by (created_at, id); pending entries follow in the
order they were added.

A send carries its temp id to the server in metadata["client_temp_id"],
so the stored message names the pending entry it confirms. Content is
never used for matching: two sends of the same text are two messages.

Merge rules:
    confirm(temp_id, message): the pending entry is replaced by the
        server message
    fail(temp_id): the pending entry is removed
    apply_broadcast(message): recorded by id; a pending entry named by
        the message's client temp id is resolved by it
    merge_page(messages): recorded by id, fetched copies win; pending
        entries named by any fetched message are resolved
    remove(message_id): a deleted message leaves the timeline
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Union

from core.exceptions import ConflictError

CLIENT_TEMP_ID_KEY = "client_temp_id"


def parse_timestamp(value: str) -> datetime:
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


@dataclass(frozen=True)
class ChatMessage:
    """A server-confirmed message."""

    id: int
    conversation_id: int
    sender_id: int
    content: str
    created_at: datetime
    message_type: str = "text"
    metadata: dict[str, Any] = field(default_factory=dict, compare=False)

    @classmethod
    def from_payload(cls, data: dict[str, Any]) -> ChatMessage:
        """Build from a MessageSerializer payload (REST or socket)."""
        return cls(
            id=int(data["id"]),
            conversation_id=int(data["conversation_id"]),
            sender_id=int(data["sender_id"]),
            content=data.get("content", ""),
            created_at=parse_timestamp(data["created_at"]),
            message_type=data.get("message_type", "text"),
            metadata=data.get("metadata") or {},
        )

    @property
    def sort_key(self) -> tuple[datetime, int]:
        return (self.created_at, self.id)

    @property
    def client_temp_id(self) -> str | None:
        return self.metadata.get(CLIENT_TEMP_ID_KEY)


@dataclass(frozen=True)
class Pending:
    """An optimistic local echo awaiting confirmation."""

    temp_id: str
    conversation_id: int
    sender_id: int
    content: str
    created_at: datetime
    message_type: str = "text"
    metadata: dict[str, Any] = field(default_factory=dict, compare=False)

    def matches(self, message: ChatMessage) -> bool:
        return (
            message.conversation_id == self.conversation_id
            and message.client_temp_id == self.temp_id
        )


@dataclass(frozen=True)
class Confirmed:
    message: ChatMessage


Entry = Union[Pending, Confirmed]


class Timeline:
    def __init__(self):
        self._confirmed: dict[int, ChatMessage] = {}
        self._pending: dict[str, Pending] = {}

    def __len__(self) -> int:
        return len(self._confirmed) + len(self._pending)

    def __contains__(self, message_id: int) -> bool:
        return message_id in self._confirmed

    @property
    def entries(self) -> list[Entry]:
        return [Confirmed(m) for m in self.messages] + list(self._pending.values())

    @property
    def messages(self) -> list[ChatMessage]:
        """Confirmed messages, oldest first."""
        return sorted(self._confirmed.values(), key=lambda m: m.sort_key)

    @property
    def pending(self) -> list[Pending]:
        return list(self._pending.values())

    @property
    def oldest(self) -> ChatMessage | None:
        if not self._confirmed:
            return None
        return min(self._confirmed.values(), key=lambda m: m.sort_key)

    @property
    def newest(self) -> ChatMessage | None:
        if not self._confirmed:
            return None
        return max(self._confirmed.values(), key=lambda m: m.sort_key)

    def add_pending(self, pending: Pending) -> None:
        if pending.temp_id in self._pending:
            raise ConflictError(
                f"Pending entry {pending.temp_id} already exists",
                error_code="DUPLICATE_TEMP_ID",
            )
        self._pending[pending.temp_id] = pending

    def confirm(self, temp_id: str, message: ChatMessage) -> None:
        self._pending.pop(temp_id, None)
        self._confirmed[message.id] = message

    def fail(self, temp_id: str) -> Pending | None:
        return self._pending.pop(temp_id, None)

    def remove(self, message_id: int) -> ChatMessage | None:
        return self._confirmed.pop(message_id, None)

    def apply_broadcast(self, message: ChatMessage) -> bool:
        """Apply a live new_message. Returns True if its id was new."""
        self._resolve_pending(message)
        if message.id in self._confirmed:
            return False
        self._confirmed[message.id] = message
        return True

    def merge_page(self, messages: list[ChatMessage]) -> int:
        """Merge fetched messages by id. Returns how many were new."""
        added = 0
        for message in messages:
            if message.id not in self._confirmed:
                added += 1
            self._confirmed[message.id] = message
            self._resolve_pending(message)
        return added

    def _resolve_pending(self, message: ChatMessage) -> None:
        temp_id = message.client_temp_id
        pending = self._pending.get(temp_id) if temp_id else None
        if pending is not None and pending.matches(message):
            del self._pending[temp_id]
