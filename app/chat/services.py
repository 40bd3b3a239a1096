"""
Chat system service layer.

This module provides the business logic for the chat system: the durable
conversation store and the per-participant read cursors.

Services:
    ConversationService: Direct/group creation, listing, pinning
    MessageService: Append, soft delete, paging
    ReadCursorService: Read cursors and unread counters

Design Principles:
    - Services are stateless (use class methods)
    - Expected failures return ServiceResult.failure() with an error code
    - Unexpected failures raise exceptions
    - Message append and its counter updates share one transaction
    - Live delivery is NOT done here, see chat.delivery

Error codes:
    NOT_PARTICIPANT: Caller is not a member of the conversation
    CONVERSATION_NOT_FOUND: No conversation with that id
    MESSAGE_NOT_FOUND: No visible message with that id
    FORBIDDEN: Caller may not modify the message
    EMPTY_CONTENT: Text message without content
    CONTENT_TOO_LONG: Content exceeds MESSAGE_CONFIG.MAX_CONTENT_LENGTH
    INVALID_PARTICIPANTS: Participant set does not fit the conversation type
    TITLE_REQUIRED: Group without a title

Usage:
    from chat.services import ConversationService, MessageService

    result = ConversationService.find_or_create_direct([alice, bob])
    conversation = result.data

    result = MessageService.append_message(conversation.id, alice, "hi")
    if not result:
        logger.info(result.error_code)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING

from django.db import IntegrityError
from django.db.models import F, OuterRef, Q, Subquery
from django.utils import timezone

from core.services import BaseService, ServiceResult

from chat.constants import MESSAGE_CONFIG, chat_setting
from chat.models import (
    DEFAULT_CONTEXT,
    Conversation,
    ConversationType,
    DirectConversationPair,
    Message,
    MessageType,
    Participant,
    ParticipantRole,
)

if TYPE_CHECKING:
    from collections.abc import Iterable

    from authentication.models import User

logger = logging.getLogger(__name__)


@dataclass
class ConversationSummary:
    """One row of a user's conversation list."""

    conversation: Conversation
    last_message: Message | None
    unread_count: int
    is_pinned: bool


@dataclass
class MessagePage:
    """
    A page of messages, newest first.

    next_before / next_before_id form the cursor for the following (older)
    page: the (created_at, id) of the oldest message returned.
    """

    messages: list[Message]
    has_more: bool
    next_before: datetime | None = None
    next_before_id: int | None = None


def _unique_users(users: Iterable[User]) -> list[User]:
    seen = set()
    result = []
    for user in users:
        if user.pk not in seen:
            seen.add(user.pk)
            result.append(user)
    return result


class ConversationService(BaseService):
    """
    Service for conversation lifecycle operations.

    Methods:
        find_or_create_direct: Idempotent direct conversation for a user pair
        create_group: Create a new group conversation
        list_for_user: Conversation list with last message and unread count
        toggle_pin: Flip the caller's pin flag
    """

    @classmethod
    def find_or_create_direct(
        cls,
        participants: Iterable[User],
        context: str = DEFAULT_CONTEXT,
        creator: User | None = None,
    ) -> ServiceResult[Conversation]:
        """
        Return the direct conversation for a user pair, creating it if needed.

        Direct conversations are unique per (user pair, context). Lookup
        uses the canonical (lower id, higher id) ordering stored on
        DirectConversationPair.

        Concurrency:
            Two callers can both miss the lookup and race to create. The
            unique constraint on DirectConversationPair lets exactly one
            insert commit; the loser gets IntegrityError, which is treated
            as "already exists" and answered by re-reading the winner's row.

        Args:
            participants: Exactly two distinct users
            context: Namespace for the conversation (default "general")
            creator: Optional user that gets the admin role

        Returns:
            ServiceResult with Conversation (existing or new)

        Error codes:
            INVALID_PARTICIPANTS: Not exactly two distinct users, or creator
                is not one of them
        """
        users = _unique_users(participants)
        if len(users) != 2:
            return ServiceResult.failure(
                "A direct conversation needs exactly two different users",
                error_code="INVALID_PARTICIPANTS",
            )
        if creator is not None and creator.pk not in {u.pk for u in users}:
            return ServiceResult.failure(
                "The creator must be one of the participants",
                error_code="INVALID_PARTICIPANTS",
            )

        user_lower, user_higher = sorted(users, key=lambda u: u.pk)

        existing = cls._find_direct(user_lower, user_higher, context)
        if existing is not None:
            cls.get_logger().debug(
                f"Found existing direct conversation {existing.id} "
                f"between users {user_lower.id} and {user_higher.id}"
            )
            return ServiceResult.success(existing)

        try:
            conversation = cls._create_direct(user_lower, user_higher, context, creator)
        except IntegrityError:
            conversation = cls._find_direct(user_lower, user_higher, context)
            if conversation is None:
                raise
            cls.get_logger().info(
                f"Concurrent create for users {user_lower.id}/{user_higher.id} "
                f"converged on conversation {conversation.id}"
            )
        return ServiceResult.success(conversation)

    @classmethod
    def _find_direct(
        cls, user_lower: User, user_higher: User, context: str
    ) -> Conversation | None:
        pair = (
            DirectConversationPair.objects.select_related("conversation")
            .filter(user_lower=user_lower, user_higher=user_higher, context=context)
            .first()
        )
        return pair.conversation if pair else None

    @classmethod
    def _create_direct(
        cls,
        user_lower: User,
        user_higher: User,
        context: str,
        creator: User | None,
    ) -> Conversation:
        """
        Insert a direct conversation with its pair guard and participants.

        Raises:
            IntegrityError: Another writer already created this pair
        """
        with cls.atomic():
            conversation = Conversation.objects.create(
                conversation_type=ConversationType.DIRECT,
                context=context,
                created_by=creator,
            )
            DirectConversationPair.objects.create(
                conversation=conversation,
                user_lower=user_lower,
                user_higher=user_higher,
                context=context,
            )
            Participant.objects.bulk_create(
                [
                    Participant(
                        conversation=conversation,
                        user=user,
                        role=(
                            ParticipantRole.ADMIN
                            if creator is not None and user.pk == creator.pk
                            else ParticipantRole.MEMBER
                        ),
                    )
                    for user in (user_lower, user_higher)
                ]
            )

        cls.get_logger().info(
            f"Created direct conversation {conversation.id} "
            f"between users {user_lower.id} and {user_higher.id} ({context})"
        )
        return conversation

    @classmethod
    def create_group(
        cls,
        creator: User,
        participants: Iterable[User],
        title: str,
        context: str = DEFAULT_CONTEXT,
    ) -> ServiceResult[Conversation]:
        """
        Create a new group conversation.

        Groups are never deduplicated. The creator becomes admin; everyone
        else joins as member. Repeated users collapse into one Participant.

        Args:
            creator: User creating the group (becomes admin)
            participants: Other members (creator may be included)
            title: Required group title
            context: Namespace for the conversation

        Returns:
            ServiceResult with new Conversation

        Error codes:
            TITLE_REQUIRED: Group title cannot be empty
            INVALID_PARTICIPANTS: No member besides the creator
        """
        title = title.strip() if title else ""
        if not title:
            return ServiceResult.failure(
                "Group title is required",
                error_code="TITLE_REQUIRED",
            )

        members = [u for u in _unique_users(participants) if u.pk != creator.pk]
        if not members:
            return ServiceResult.failure(
                "A group needs at least one other participant",
                error_code="INVALID_PARTICIPANTS",
            )

        with cls.atomic():
            conversation = Conversation.objects.create(
                conversation_type=ConversationType.GROUP,
                context=context,
                title=title,
                created_by=creator,
            )
            Participant.objects.bulk_create(
                [Participant(conversation=conversation, user=creator, role=ParticipantRole.ADMIN)]
                + [
                    Participant(conversation=conversation, user=member, role=ParticipantRole.MEMBER)
                    for member in members
                ]
            )

        cls.get_logger().info(
            f"Created group conversation {conversation.id} "
            f"titled '{title}' with {1 + len(members)} participants"
        )
        return ServiceResult.success(conversation)

    @classmethod
    def list_for_user(cls, user: User) -> list[ConversationSummary]:
        """
        List the user's conversations, most recently active first.

        Each entry carries the newest non-deleted message, the user's own
        stored unread counter and pin flag. Conversations without messages
        sort after active ones, newest first.
        """
        latest_message_id = (
            Message.objects.filter(conversation=OuterRef("conversation"), is_deleted=False)
            .order_by("-created_at", "-id")
            .values("id")[:1]
        )
        participations = list(
            Participant.objects.filter(user=user)
            .select_related("conversation")
            .prefetch_related("conversation__participants__user")
            .annotate(last_message_id=Subquery(latest_message_id))
            .order_by(
                F("conversation__last_message_at").desc(nulls_last=True),
                "-conversation__created_at",
                "-conversation_id",
            )
        )

        message_ids = [p.last_message_id for p in participations if p.last_message_id]
        messages = Message.objects.select_related("sender").in_bulk(message_ids)

        return [
            ConversationSummary(
                conversation=p.conversation,
                last_message=messages.get(p.last_message_id),
                unread_count=p.unread_count,
                is_pinned=p.is_pinned,
            )
            for p in participations
        ]

    @classmethod
    def get_participant_conversation(
        cls, conversation_id: int, user: User
    ) -> ServiceResult[Conversation]:
        """
        Load a conversation the user participates in.

        Error codes:
            CONVERSATION_NOT_FOUND: No conversation with that id
            NOT_PARTICIPANT: User is not in the conversation
        """
        conversation = Conversation.objects.filter(pk=conversation_id).first()
        if conversation is None:
            return ServiceResult.failure(
                "Conversation not found",
                error_code="CONVERSATION_NOT_FOUND",
            )
        if not conversation.participants.filter(user=user).exists():
            return ServiceResult.failure(
                "You are not a participant in this conversation",
                error_code="NOT_PARTICIPANT",
            )
        return ServiceResult.success(conversation)

    @classmethod
    def toggle_pin(cls, conversation_id: int, user: User) -> ServiceResult[Participant]:
        """
        Flip the caller's pin flag for a conversation.

        Only the caller's own Participant row is written.

        Returns:
            ServiceResult with the updated Participant

        Error codes:
            CONVERSATION_NOT_FOUND: No conversation with that id
            NOT_PARTICIPANT: User is not in the conversation
        """
        if not Conversation.objects.filter(pk=conversation_id).exists():
            return ServiceResult.failure(
                "Conversation not found",
                error_code="CONVERSATION_NOT_FOUND",
            )

        with cls.atomic():
            participant = (
                Participant.objects.select_for_update()
                .filter(conversation_id=conversation_id, user=user)
                .first()
            )
            if participant is None:
                return ServiceResult.failure(
                    "You are not a participant in this conversation",
                    error_code="NOT_PARTICIPANT",
                )
            participant.is_pinned = not participant.is_pinned
            participant.save(update_fields=["is_pinned", "updated_at"])

        cls.get_logger().debug(
            f"User {user.id} set pinned={participant.is_pinned} "
            f"on conversation {conversation_id}"
        )
        return ServiceResult.success(participant)


class MessageService(BaseService):
    """
    Service for message operations.

    Methods:
        append_message: Persist a message with its counter side effects
        soft_delete_message: Hide a message (sender only)
        fetch_page: Cursor-paged history, newest first
        get_messages: Participant-checked page fetch that advances the cursor
    """

    @classmethod
    def append_message(
        cls,
        conversation_id: int,
        sender: User,
        content: str,
        message_type: str = MessageType.TEXT,
        metadata: dict | None = None,
    ) -> ServiceResult[Message]:
        """
        Persist a message and apply its side effects in one transaction.

        Inside a single transaction:
            1. Lock the conversation row (serializes appends per conversation)
            2. Verify the sender participates
            3. Insert the message (created_at assigned here)
            4. Advance last_message_at (never backwards)
            5. Increment unread_count for every participant but the sender

        Because created_at is assigned while the lock is held, commit order
        and timestamp order agree within a conversation.

        Args:
            conversation_id: Target conversation
            sender: Author, must be a participant
            content: Message text
            message_type: Rendering hint (text, image, file, system)
            metadata: Opaque client payload

        Returns:
            ServiceResult with the persisted Message

        Error codes:
            EMPTY_CONTENT: Text message with blank content
            CONTENT_TOO_LONG: Content exceeds the configured maximum
            CONVERSATION_NOT_FOUND: No conversation with that id
            NOT_PARTICIPANT: Sender is not in the conversation
        """
        content = content.strip() if content else ""
        if message_type == MessageType.TEXT and not content:
            return ServiceResult.failure(
                "Message content cannot be empty",
                error_code="EMPTY_CONTENT",
            )
        if len(content) > MESSAGE_CONFIG.MAX_CONTENT_LENGTH:
            return ServiceResult.failure(
                f"Message content exceeds {MESSAGE_CONFIG.MAX_CONTENT_LENGTH} characters",
                error_code="CONTENT_TOO_LONG",
            )

        with cls.atomic():
            conversation = (
                Conversation.objects.select_for_update().filter(pk=conversation_id).first()
            )
            if conversation is None:
                return ServiceResult.failure(
                    "Conversation not found",
                    error_code="CONVERSATION_NOT_FOUND",
                )

            if not Participant.objects.filter(
                conversation=conversation, user=sender
            ).exists():
                return ServiceResult.failure(
                    "You are not a participant in this conversation",
                    error_code="NOT_PARTICIPANT",
                )

            message = Message.objects.create(
                conversation=conversation,
                sender=sender,
                content=content,
                message_type=message_type,
                metadata=metadata or {},
            )

            if (
                conversation.last_message_at is None
                or message.created_at > conversation.last_message_at
            ):
                conversation.last_message_at = message.created_at
                conversation.save(update_fields=["last_message_at", "updated_at"])

            Participant.objects.filter(conversation=conversation).exclude(
                user=sender
            ).update(
                unread_count=F("unread_count") + 1,
                updated_at=message.created_at,
            )

        cls.get_logger().debug(
            f"User {sender.id} appended message {message.id} "
            f"to conversation {conversation.id}"
        )
        return ServiceResult.success(message)

    @classmethod
    def soft_delete_message(cls, message_id: int, user: User) -> ServiceResult[Message]:
        """
        Soft delete a message.

        Only the original sender can delete. The row keeps its
        (created_at, id) slot, so surrounding pages are unaffected.

        Error codes:
            MESSAGE_NOT_FOUND: No visible message with that id
            FORBIDDEN: Caller is not the sender
        """
        message = Message.objects.filter(pk=message_id, is_deleted=False).first()
        if message is None:
            return ServiceResult.failure(
                "Message not found",
                error_code="MESSAGE_NOT_FOUND",
            )

        if message.sender_id != user.pk:
            return ServiceResult.failure(
                "You can only delete your own messages",
                error_code="FORBIDDEN",
            )

        message.soft_delete()

        cls.get_logger().debug(f"User {user.id} deleted message {message_id}")
        return ServiceResult.success(message)

    @classmethod
    def fetch_page(
        cls,
        conversation_id: int,
        limit: int | None = None,
        before: datetime | None = None,
        before_id: int | None = None,
    ) -> MessagePage:
        """
        Fetch up to `limit` visible messages older than the cursor.

        Ordering is (created_at, id) descending. The cursor is the
        (created_at, id) of the oldest message of the previous page:
        rows strictly before it are returned, so messages sharing a
        timestamp are neither repeated nor skipped. When only `before`
        is given the cursor is created_at < before.

        Args:
            conversation_id: Conversation to read
            limit: Page size, clamped to [1, PAGE_SIZE_MAX]
            before: Cursor timestamp (omit for the newest page)
            before_id: Cursor id tie-breaker

        Returns:
            MessagePage with messages newest first
        """
        page_size_max = chat_setting("PAGE_SIZE_MAX")
        limit = limit or chat_setting("PAGE_SIZE_DEFAULT")
        limit = max(1, min(limit, page_size_max))

        queryset = Message.objects.filter(
            conversation_id=conversation_id,
            is_deleted=False,
        ).select_related("sender")

        if before is not None:
            if before_id is not None:
                queryset = queryset.filter(
                    Q(created_at__lt=before) | Q(created_at=before, id__lt=before_id)
                )
            else:
                queryset = queryset.filter(created_at__lt=before)

        rows = list(queryset.order_by("-created_at", "-id")[: limit + 1])
        has_more = len(rows) > limit
        rows = rows[:limit]

        page = MessagePage(messages=rows, has_more=has_more)
        if rows:
            page.next_before = rows[-1].created_at
            page.next_before_id = rows[-1].id
        return page

    @classmethod
    def get_messages(
        cls,
        conversation_id: int,
        user: User,
        limit: int | None = None,
        before: datetime | None = None,
        before_id: int | None = None,
    ) -> ServiceResult[MessagePage]:
        """
        Participant-checked page fetch that marks the conversation read.

        Error codes:
            CONVERSATION_NOT_FOUND: No conversation with that id
            NOT_PARTICIPANT: User is not in the conversation
        """
        access = ConversationService.get_participant_conversation(conversation_id, user)
        if not access:
            return ServiceResult.failure(access.error, error_code=access.error_code)

        page = cls.fetch_page(conversation_id, limit=limit, before=before, before_id=before_id)
        ReadCursorService.mark_read(conversation_id, user)
        return ServiceResult.success(page)


class ReadCursorService(BaseService):
    """
    Service for per-participant read cursors.

    Methods:
        mark_read: Advance last_read_at and clear the unread counter
        unread_count_for: Stored unread counter
    """

    @classmethod
    def mark_read(cls, conversation_id: int, user: User) -> ServiceResult[Participant]:
        """
        Mark a conversation read for the user.

        Sets last_read_at to now (never earlier than its current value)
        and unread_count to 0. Idempotent.

        Error codes:
            CONVERSATION_NOT_FOUND: No conversation with that id
            NOT_PARTICIPANT: User is not in the conversation
        """
        if not Conversation.objects.filter(pk=conversation_id).exists():
            return ServiceResult.failure(
                "Conversation not found",
                error_code="CONVERSATION_NOT_FOUND",
            )

        with cls.atomic():
            participant = (
                Participant.objects.select_for_update()
                .filter(conversation_id=conversation_id, user=user)
                .first()
            )
            if participant is None:
                return ServiceResult.failure(
                    "You are not a participant in this conversation",
                    error_code="NOT_PARTICIPANT",
                )

            now = timezone.now()
            if participant.last_read_at is None or now > participant.last_read_at:
                participant.last_read_at = now
            participant.unread_count = 0
            participant.save(update_fields=["last_read_at", "unread_count", "updated_at"])

        cls.get_logger().debug(
            f"User {user.id} marked conversation {conversation_id} as read"
        )
        return ServiceResult.success(participant)

    @classmethod
    def unread_count_for(cls, conversation_id: int, user: User) -> int:
        """Return the stored unread counter (0 if not a participant)."""
        count = (
            Participant.objects.filter(conversation_id=conversation_id, user=user)
            .values_list("unread_count", flat=True)
            .first()
        )
        return count or 0
