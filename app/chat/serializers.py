"""
Serializers for chat API and socket payloads.

This module provides serializers for the chat system:
- Message serializers (read, create, page query)
- Conversation serializers (summary, create)
- Participant state (pin flag, read cursor)

Serializer Hierarchy:
    MessageSerializer: Message with sender details
    MessageCreateSerializer: Send new message (REST body or socket frame)
    MessagePageQuerySerializer: limit / before / before_id query params

    ConversationSummarySerializer: Conversation list entry
    ConversationSerializer: Conversation with participants
    ConversationCreateSerializer: Direct/group conversation creation

    ParticipantStateSerializer: Caller's pin flag and read cursor

Design Decisions:
    - Read and write serializers are separate
    - MessageSerializer output is broadcast over the channel layer, so it
      contains only JSON-safe values
    - Request validation lives here; business rules live in chat.services
"""

from __future__ import annotations

from django.contrib.auth import get_user_model
from rest_framework import serializers

from authentication.serializers import UserSerializer
from chat.constants import MESSAGE_CONFIG
from chat.models import (
    DEFAULT_CONTEXT,
    Conversation,
    ConversationType,
    Message,
    MessageType,
    Participant,
)

User = get_user_model()


# =============================================================================
# Message Serializers
# =============================================================================


class MessageSerializer(serializers.ModelSerializer):
    """
    Full message serializer.

    Used for REST pages and for the new_message live event.
    """

    sender = UserSerializer(read_only=True)

    class Meta:
        model = Message
        fields = [
            "id",
            "conversation_id",
            "sender_id",
            "sender",
            "content",
            "message_type",
            "metadata",
            "created_at",
        ]
        read_only_fields = fields


class MessageCreateSerializer(serializers.Serializer):
    """
    Serializer for sending messages.

    temp_id is a client-chosen correlation id. It is never stored; the
    socket echoes it back in message_ack.
    """

    content = serializers.CharField(
        max_length=MESSAGE_CONFIG.MAX_CONTENT_LENGTH,
        required=False,
        allow_blank=True,
        default="",
        help_text="Message content (max 10,000 characters)",
    )
    message_type = serializers.ChoiceField(
        choices=MessageType.choices,
        default=MessageType.TEXT,
    )
    metadata = serializers.JSONField(required=False, default=dict)
    temp_id = serializers.CharField(
        max_length=64,
        required=False,
        allow_blank=True,
        help_text="Client correlation id echoed in the acknowledgement",
    )

    def validate_metadata(self, value):
        if value is None:
            return {}
        if not isinstance(value, dict):
            raise serializers.ValidationError("Metadata must be an object")
        return value


class MessagePageQuerySerializer(serializers.Serializer):
    """Query parameters for paging message history."""

    limit = serializers.IntegerField(required=False)
    before = serializers.DateTimeField(required=False)
    before_id = serializers.IntegerField(required=False)

    def validate(self, attrs: dict) -> dict:
        if "before_id" in attrs and "before" not in attrs:
            raise serializers.ValidationError(
                {"before_id": "before_id requires before"}
            )
        return attrs


# =============================================================================
# Conversation Serializers
# =============================================================================


class ConversationSerializer(serializers.ModelSerializer):
    """Conversation with its participants."""

    type = serializers.CharField(source="conversation_type", read_only=True)
    participants = serializers.SerializerMethodField()

    class Meta:
        model = Conversation
        fields = [
            "id",
            "type",
            "context",
            "title",
            "avatar_color",
            "last_message_at",
            "created_at",
            "participants",
        ]
        read_only_fields = fields

    def get_participants(self, obj: Conversation) -> list[dict]:
        return UserSerializer(
            [p.user for p in obj.participants.all()],
            many=True,
        ).data


class ConversationSummarySerializer(serializers.Serializer):
    """
    Conversation list entry.

    Serializes chat.services.ConversationSummary: the conversation plus the
    caller's last visible message, unread counter and pin flag.
    """

    conversation = ConversationSerializer(read_only=True)
    last_message = MessageSerializer(read_only=True, allow_null=True)
    unread_count = serializers.IntegerField(read_only=True)
    is_pinned = serializers.BooleanField(read_only=True)

    def to_representation(self, instance) -> dict:
        data = super().to_representation(instance)
        # Flatten conversation fields into the entry
        return {**data.pop("conversation"), **data}


class ConversationCreateSerializer(serializers.Serializer):
    """
    Serializer for creating conversations.

    The caller is always a participant and is added implicitly:
    - direct: participant_ids names the one other user
    - group: participant_ids names the other members, title is required
    """

    participant_ids = serializers.ListField(
        child=serializers.IntegerField(),
        min_length=1,
        help_text="User IDs to include besides the caller",
    )
    type = serializers.ChoiceField(
        choices=ConversationType.choices,
        default=ConversationType.DIRECT,
    )
    context = serializers.CharField(max_length=64, default=DEFAULT_CONTEXT)
    title = serializers.CharField(
        max_length=100,
        required=False,
        allow_blank=True,
        default="",
        help_text="Title for group conversations (ignored for direct)",
    )

    def validate_participant_ids(self, value: list[int]) -> list[int]:
        """Ensure all participant IDs are active users."""
        existing = set(
            User.objects.filter(id__in=value, is_active=True).values_list("id", flat=True)
        )
        invalid = [uid for uid in value if uid not in existing]
        if invalid:
            raise serializers.ValidationError(f"Users not found or inactive: {invalid}")
        return value

    def validate(self, attrs: dict) -> dict:
        attrs["participants"] = list(User.objects.filter(id__in=attrs["participant_ids"]))
        return attrs


# =============================================================================
# Participant Serializers
# =============================================================================


class ParticipantStateSerializer(serializers.ModelSerializer):
    """The caller's own state in a conversation."""

    class Meta:
        model = Participant
        fields = [
            "conversation_id",
            "is_pinned",
            "unread_count",
            "last_read_at",
        ]
        read_only_fields = fields
