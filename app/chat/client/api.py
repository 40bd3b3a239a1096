"""
HTTP side of the chat client.

ChatApi is what ConversationSession depends on; HttpChatApi implements it
against /api/v1/chat/ with aiohttp.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Protocol

import aiohttp

from core.exceptions import ExternalServiceError

from chat.client.timeline import ChatMessage, parse_timestamp

logger = logging.getLogger(__name__)


class ChatApiError(ExternalServiceError):
    """
    A chat API call failed.

    error_code carries the server's error_code when there is one
    (NOT_PARTICIPANT, EMPTY_CONTENT, ...), NETWORK_ERROR otherwise.
    details["status"] holds the HTTP status when a response arrived.
    """

    default_error_code: str = "CHAT_API_ERROR"

    @property
    def status(self) -> int | None:
        return self.details.get("status")


@dataclass
class ConversationPreview:
    """One entry of the conversation list."""

    id: int
    conversation_type: str
    title: str
    unread_count: int
    is_pinned: bool
    last_message_at: datetime | None = None
    last_message: ChatMessage | None = None

    @classmethod
    def from_payload(cls, data: dict[str, Any]) -> ConversationPreview:
        last_message = data.get("last_message")
        return cls(
            id=int(data["id"]),
            conversation_type=data.get("type", "direct"),
            title=data.get("title") or "",
            unread_count=int(data.get("unread_count", 0)),
            is_pinned=bool(data.get("is_pinned", False)),
            last_message_at=(
                parse_timestamp(data["last_message_at"])
                if data.get("last_message_at")
                else None
            ),
            last_message=ChatMessage.from_payload(last_message) if last_message else None,
        )


@dataclass
class HistoryPage:
    """A page of history, oldest first."""

    messages: list[ChatMessage]
    has_more: bool
    next_before: datetime | None = None
    next_before_id: int | None = None


class ChatApi(Protocol):
    async def fetch_page(
        self,
        conversation_id: int,
        limit: int | None = None,
        before: datetime | None = None,
        before_id: int | None = None,
    ) -> HistoryPage: ...

    async def send_message(
        self,
        conversation_id: int,
        content: str,
        message_type: str = "text",
        metadata: dict[str, Any] | None = None,
    ) -> ChatMessage: ...

    async def mark_read(self, conversation_id: int) -> None: ...

    async def delete_message(self, message_id: int) -> None: ...

    async def list_conversations(self) -> list[ConversationPreview]: ...

    async def toggle_pin(self, conversation_id: int) -> bool: ...


class HttpChatApi:
    """
    aiohttp implementation of ChatApi.

    Args:
        base_url: Server root, e.g. http://localhost:8000
        token: JWT access token
        session: Shared ClientSession; one is created (and owned) if omitted
    """

    prefix = "/api/v1/chat"

    def __init__(
        self,
        base_url: str,
        token: str,
        session: aiohttp.ClientSession | None = None,
        timeout: float = 10.0,
    ):
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.timeout = aiohttp.ClientTimeout(total=timeout)
        self._session = session
        self._owns_session = session is None

    async def fetch_page(
        self,
        conversation_id: int,
        limit: int | None = None,
        before: datetime | None = None,
        before_id: int | None = None,
    ) -> HistoryPage:
        params: dict[str, Any] = {}
        if limit is not None:
            params["limit"] = limit
        if before is not None:
            params["before"] = before.isoformat()
            if before_id is not None:
                params["before_id"] = before_id

        data = await self._request(
            "GET", f"/conversations/{conversation_id}/messages/", params=params
        )
        return HistoryPage(
            messages=[ChatMessage.from_payload(m) for m in data["messages"]],
            has_more=bool(data["has_more"]),
            next_before=(
                parse_timestamp(data["next_before"]) if data.get("next_before") else None
            ),
            next_before_id=data.get("next_before_id"),
        )

    async def send_message(
        self,
        conversation_id: int,
        content: str,
        message_type: str = "text",
        metadata: dict[str, Any] | None = None,
    ) -> ChatMessage:
        data = await self._request(
            "POST",
            f"/conversations/{conversation_id}/messages/",
            json={
                "content": content,
                "message_type": message_type,
                "metadata": metadata or {},
            },
        )
        return ChatMessage.from_payload(data)

    async def mark_read(self, conversation_id: int) -> None:
        await self._request("POST", f"/conversations/{conversation_id}/read/")

    async def delete_message(self, message_id: int) -> None:
        await self._request("DELETE", f"/messages/{message_id}/")

    async def list_conversations(self) -> list[ConversationPreview]:
        """Conversations of the caller, most recent activity first."""
        data = await self._request("GET", "/conversations/")
        return [ConversationPreview.from_payload(entry) for entry in data]

    async def toggle_pin(self, conversation_id: int) -> bool:
        """Flip the caller's pin. Returns the new is_pinned."""
        data = await self._request("POST", f"/conversations/{conversation_id}/pin/")
        return bool(data["is_pinned"])

    async def close(self) -> None:
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None

    async def _request(self, method: str, path: str, **kwargs) -> Any:
        if self._session is None:
            self._session = aiohttp.ClientSession()

        url = f"{self.base_url}{self.prefix}{path}"
        headers = {"Authorization": f"Bearer {self.token}"}
        try:
            async with self._session.request(
                method, url, headers=headers, timeout=self.timeout, **kwargs
            ) as response:
                if response.status == 204:
                    return None
                body = await response.json(content_type=None)
                if response.status >= 400:
                    body = body if isinstance(body, dict) else {}
                    raise ChatApiError(
                        body.get("error") or f"{method} {path} failed",
                        error_code=body.get("error_code"),
                        details={"status": response.status},
                    )
                return body
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            logger.warning(f"{method} {url} failed: {exc}")
            raise ChatApiError(
                f"{method} {path} failed",
                error_code="NETWORK_ERROR",
                details={"reason": str(exc)},
            ) from exc
