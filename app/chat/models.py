"""
Chat models: conversations, participants and messages.

Models:
    Conversation: A durable thread (direct or group) scoped by a context
    DirectConversationPair: Uniqueness guard for direct conversations
    Participant: A user's membership, read cursor, unread counter and pin flag
    Message: An entry in a conversation's ledger

Ordering:
    Messages are ordered by (created_at, id). created_at is assigned when the
    row is inserted inside the append transaction; id breaks ties.

Write paths:
    - Conversation.last_message_at only moves forward, on message append
    - Participant.unread_count is incremented on append (everyone but the
      sender) and reset by the participant's own read action
    - Participant.is_pinned and last_read_at are written only by their owner
"""

from __future__ import annotations

import random
from typing import TYPE_CHECKING

from django.conf import settings
from django.db import models

from core.model_mixins import SoftDeleteMixin
from core.models import BaseModel

if TYPE_CHECKING:
    from authentication.models import User


DEFAULT_CONTEXT = "general"

AVATAR_COLORS = (
    "#F97316",
    "#0EA5E9",
    "#22C55E",
    "#A855F7",
    "#EF4444",
    "#EAB308",
    "#14B8A6",
    "#EC4899",
)


def pick_avatar_color() -> str:
    return random.choice(AVATAR_COLORS)


class ConversationType(models.TextChoices):
    """Type of conversation."""

    DIRECT = "direct", "Direct Message"
    GROUP = "group", "Group Chat"


class ParticipantRole(models.TextChoices):
    """Role of a participant in a conversation."""

    ADMIN = "admin", "Admin"
    MEMBER = "member", "Member"


class MessageType(models.TextChoices):
    """
    Type of message.

    Delivery treats every type the same; the type and metadata are
    rendering hints for clients.
    """

    TEXT = "text", "Text"
    IMAGE = "image", "Image"
    FILE = "file", "File"
    SYSTEM = "system", "System"


class Conversation(BaseModel):
    """
    A chat thread between a fixed set of participants.

    Fields:
        conversation_type: direct (exactly two users) or group
        context: Free-form namespace; direct conversations are unique per
            (user pair, context)
        title: Display title, used for groups
        last_message_at: Timestamp of the newest message, never moves back
        avatar_color: Display hint assigned at creation
        created_by: User who created the conversation, if any

    Conversations are never hard-deleted by the chat services.
    """

    conversation_type = models.CharField(
        max_length=10,
        choices=ConversationType.choices,
        db_index=True,
        help_text="Type of conversation (direct or group)",
    )
    context = models.CharField(
        max_length=64,
        default=DEFAULT_CONTEXT,
        help_text="Namespace the conversation belongs to",
    )
    title = models.CharField(
        max_length=100,
        blank=True,
        help_text="Display title (groups)",
    )
    last_message_at = models.DateTimeField(
        null=True,
        blank=True,
        db_index=True,
        help_text="Timestamp of the most recent message",
    )
    avatar_color = models.CharField(
        max_length=7,
        default=pick_avatar_color,
        help_text="Hex color used for the conversation avatar",
    )
    created_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="created_conversations",
        help_text="User who created this conversation",
    )

    class Meta:
        verbose_name = "conversation"
        verbose_name_plural = "conversations"
        ordering = ["-last_message_at", "-created_at"]

    def __str__(self) -> str:
        if self.conversation_type == ConversationType.DIRECT:
            return f"Direct conversation {self.pk} ({self.context})"
        return f"Group: {self.title or self.pk}"

    @property
    def room_name(self) -> str:
        """Channel layer group for live events in this conversation."""
        return f"conversation_{self.pk}"

    def get_participant(self, user: User) -> Participant | None:
        """Return the user's Participant row, or None."""
        return self.participants.filter(user=user).first()


class DirectConversationPair(models.Model):
    """
    Uniqueness guard for direct conversations.

    One row per direct conversation with the two user ids stored in
    canonical order (lower id first). The unique constraint on
    (user_lower, user_higher, context) makes concurrent creation of the
    same direct conversation fail for all but one writer.
    """

    conversation = models.OneToOneField(
        Conversation,
        on_delete=models.CASCADE,
        primary_key=True,
        related_name="direct_pair",
    )
    user_lower = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name="+",
    )
    user_higher = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name="+",
    )
    context = models.CharField(max_length=64, default=DEFAULT_CONTEXT)

    class Meta:
        verbose_name = "direct conversation pair"
        verbose_name_plural = "direct conversation pairs"
        constraints = [
            models.UniqueConstraint(
                fields=["user_lower", "user_higher", "context"],
                name="unique_direct_pair_per_context",
            ),
            models.CheckConstraint(
                condition=models.Q(user_lower__lt=models.F("user_higher")),
                name="direct_pair_canonical_order",
            ),
        ]

    def __str__(self) -> str:
        return f"{self.user_lower_id} <-> {self.user_higher_id} ({self.context})"


class Participant(BaseModel):
    """
    A user's membership in a conversation.

    Fields:
        conversation: The conversation
        user: The member
        role: admin or member
        is_pinned: Per-user UI flag, no effect on delivery
        last_read_at: Read cursor, only ever advanced
        unread_count: Messages from others since the last read
    """

    conversation = models.ForeignKey(
        Conversation,
        on_delete=models.CASCADE,
        related_name="participants",
    )
    user = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name="chat_participations",
    )
    role = models.CharField(
        max_length=10,
        choices=ParticipantRole.choices,
        default=ParticipantRole.MEMBER,
    )
    is_pinned = models.BooleanField(default=False)
    last_read_at = models.DateTimeField(
        null=True,
        blank=True,
        help_text="When the user last read this conversation",
    )
    unread_count = models.PositiveIntegerField(
        default=0,
        help_text="Messages from other participants since last read",
    )

    class Meta:
        verbose_name = "participant"
        verbose_name_plural = "participants"
        ordering = ["created_at", "id"]
        constraints = [
            models.UniqueConstraint(
                fields=["conversation", "user"],
                name="unique_participant_per_conversation",
            ),
        ]

    def __str__(self) -> str:
        return f"User {self.user_id} in conversation {self.conversation_id}"


class Message(SoftDeleteMixin, BaseModel):
    """
    A message in a conversation.

    Fields:
        conversation: Owning conversation (messages go with it)
        sender: Author, a participant at send time
        content: Message body
        message_type: Rendering hint (text, image, file, system)
        metadata: Opaque client payload (attachment refs, dimensions, ...)

    Soft-deleted messages keep their (created_at, id) slot so pagination
    cursors around them stay valid.
    """

    conversation = models.ForeignKey(
        Conversation,
        on_delete=models.CASCADE,
        related_name="messages",
    )
    sender = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.PROTECT,
        related_name="chat_messages",
    )
    content = models.TextField(blank=True)
    message_type = models.CharField(
        max_length=20,
        choices=MessageType.choices,
        default=MessageType.TEXT,
    )
    metadata = models.JSONField(default=dict, blank=True)

    class Meta:
        verbose_name = "message"
        verbose_name_plural = "messages"
        ordering = ["created_at", "id"]
        indexes = [
            models.Index(
                fields=["conversation", "created_at", "id"],
                name="chat_msg_conv_created_idx",
            ),
        ]

    def __str__(self) -> str:
        preview = self.content[:50] + "..." if len(self.content) > 50 else self.content
        return f"Message {self.pk}: {preview}"
