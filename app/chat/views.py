"""
ViewSets for chat API.

This module provides REST API endpoints for the chat system:
- ConversationViewSet: Conversation list/create and per-conversation actions
- MessageViewSet: Message deletion
- UserPresenceView: Online lookup

URL Structure:
    /api/v1/chat/conversations/                  GET, POST
    /api/v1/chat/conversations/{id}/pin/         POST
    /api/v1/chat/conversations/{id}/read/        POST
    /api/v1/chat/conversations/{id}/messages/    GET, POST
    /api/v1/chat/messages/{id}/                  DELETE
    /api/v1/chat/presence/{user_id}/             GET

Design Decisions:
    - Views handle transport only; all rules live in the service layer
    - Service failures map to HTTP status by error code:
      NOT_PARTICIPANT / FORBIDDEN -> 403, *_NOT_FOUND -> 404, others -> 400
    - New messages go through DeliveryService so REST sends are broadcast
      exactly like socket sends
"""

from __future__ import annotations

from drf_spectacular.types import OpenApiTypes
from drf_spectacular.utils import (
    OpenApiParameter,
    OpenApiResponse,
    extend_schema,
    extend_schema_view,
)
from rest_framework import serializers, status, viewsets
from rest_framework.decorators import action
from rest_framework.permissions import IsAuthenticated
from rest_framework.response import Response
from rest_framework.views import APIView

from core.services import ServiceResult

from chat.delivery import DeliveryService
from chat.models import ConversationType
from chat.serializers import (
    ConversationCreateSerializer,
    ConversationSerializer,
    ConversationSummarySerializer,
    MessageCreateSerializer,
    MessagePageQuerySerializer,
    MessageSerializer,
    ParticipantStateSerializer,
)
from chat.services import (
    ConversationService,
    MessageService,
    ReadCursorService,
)
from chat.signaling import PresenceService

FORBIDDEN_ERROR_CODES = frozenset({"NOT_PARTICIPANT", "FORBIDDEN"})


def error_status(error_code: str | None) -> int:
    """Map a service error code to an HTTP status."""
    if error_code in FORBIDDEN_ERROR_CODES:
        return status.HTTP_403_FORBIDDEN
    if error_code and error_code.endswith("_NOT_FOUND"):
        return status.HTTP_404_NOT_FOUND
    return status.HTTP_400_BAD_REQUEST


def error_response(result: ServiceResult) -> Response:
    return Response(
        {"error": result.error, "error_code": result.error_code},
        status=error_status(result.error_code),
    )


@extend_schema_view(
    list=extend_schema(
        operation_id="list_conversations",
        summary="List conversations",
        responses=ConversationSummarySerializer(many=True),
        tags=["Chat - Conversations"],
    ),
    create=extend_schema(
        operation_id="create_conversation",
        summary="Create conversation",
        request=ConversationCreateSerializer,
        responses={
            200: ConversationSerializer,
            201: ConversationSerializer,
        },
        tags=["Chat - Conversations"],
    ),
)
class ConversationViewSet(viewsets.GenericViewSet):
    """
    ViewSet for conversation operations.

    list:
        Get all conversations for the current user, most recent first,
        with last message, unread count and pin flag.

    create:
        Create a conversation. The caller is added implicitly.
        For direct: returns the existing conversation if there is one (200),
        creates it otherwise.
        For group: always creates a new group (201).

    pin / read / messages:
        Per-conversation actions for the caller.
    """

    permission_classes = [IsAuthenticated]
    serializer_class = ConversationSerializer
    lookup_value_regex = r"\d+"

    def list(self, request):
        summaries = ConversationService.list_for_user(request.user)
        return Response(ConversationSummarySerializer(summaries, many=True).data)

    def create(self, request):
        serializer = ConversationCreateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data

        others = [u for u in data["participants"] if u.pk != request.user.pk]

        if data["type"] == ConversationType.DIRECT:
            if len(others) != 1:
                return Response(
                    {
                        "error": "Direct conversations require exactly one other participant",
                        "error_code": "INVALID_PARTICIPANTS",
                    },
                    status=status.HTTP_400_BAD_REQUEST,
                )
            result = ConversationService.find_or_create_direct(
                [request.user, others[0]],
                context=data["context"],
                creator=request.user,
            )
            success_status = status.HTTP_200_OK
        else:
            result = ConversationService.create_group(
                creator=request.user,
                participants=others,
                title=data["title"],
                context=data["context"],
            )
            success_status = status.HTTP_201_CREATED

        if not result.success:
            return error_response(result)

        return Response(ConversationSerializer(result.data).data, status=success_status)

    @extend_schema(
        operation_id="toggle_conversation_pin",
        summary="Pin or unpin conversation",
        request=None,
        responses=ParticipantStateSerializer,
        tags=["Chat - Conversations"],
    )
    @action(detail=True, methods=["post"])
    def pin(self, request, pk=None):
        result = ConversationService.toggle_pin(pk, request.user)
        if not result.success:
            return error_response(result)
        return Response(ParticipantStateSerializer(result.data).data)

    @extend_schema(
        operation_id="mark_conversation_read",
        summary="Mark conversation as read",
        request=None,
        responses=ParticipantStateSerializer,
        tags=["Chat - Conversations"],
    )
    @action(detail=True, methods=["post"])
    def read(self, request, pk=None):
        result = ReadCursorService.mark_read(pk, request.user)
        if not result.success:
            return error_response(result)

        DeliveryService.announce_read(result.data)
        return Response(ParticipantStateSerializer(result.data).data)

    @extend_schema(
        methods=["GET"],
        operation_id="list_messages",
        summary="Get message history",
        description=(
            "Newest page first; messages inside a page are oldest first. "
            "Pass next_before and next_before_id back as before/before_id "
            "for the next (older) page. Marks the conversation read."
        ),
        parameters=[
            OpenApiParameter("limit", OpenApiTypes.INT, description="Page size"),
            OpenApiParameter("before", OpenApiTypes.DATETIME, description="Cursor timestamp"),
            OpenApiParameter("before_id", OpenApiTypes.INT, description="Cursor message id"),
        ],
        responses=OpenApiTypes.OBJECT,
        tags=["Chat - Messages"],
    )
    @extend_schema(
        methods=["POST"],
        operation_id="send_message",
        summary="Send message",
        request=MessageCreateSerializer,
        responses={201: MessageSerializer},
        tags=["Chat - Messages"],
    )
    @action(detail=True, methods=["get", "post"])
    def messages(self, request, pk=None):
        if request.method == "POST":
            return self._send_message(request, pk)
        return self._list_messages(request, pk)

    def _list_messages(self, request, pk):
        query = MessagePageQuerySerializer(data=request.query_params)
        query.is_valid(raise_exception=True)

        result = MessageService.get_messages(pk, request.user, **query.validated_data)
        if not result.success:
            return error_response(result)

        page = result.data
        cursor_field = serializers.DateTimeField()
        return Response(
            {
                "messages": MessageSerializer(list(reversed(page.messages)), many=True).data,
                "has_more": page.has_more,
                "next_before": (
                    cursor_field.to_representation(page.next_before)
                    if page.next_before
                    else None
                ),
                "next_before_id": page.next_before_id,
            }
        )

    def _send_message(self, request, pk):
        serializer = MessageCreateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data

        result = DeliveryService.send(
            pk,
            request.user,
            data["content"],
            message_type=data["message_type"],
            metadata=data.get("metadata"),
        )
        if not result.success:
            return error_response(result)

        return Response(
            MessageSerializer(result.data.message).data,
            status=status.HTTP_201_CREATED,
        )


@extend_schema_view(
    destroy=extend_schema(
        operation_id="delete_message",
        summary="Delete message",
        responses={204: OpenApiResponse(description="Message deleted")},
        tags=["Chat - Messages"],
    ),
)
class MessageViewSet(viewsets.GenericViewSet):
    """
    destroy:
        Soft delete a message. Only the sender can delete.
    """

    permission_classes = [IsAuthenticated]
    serializer_class = MessageSerializer
    lookup_value_regex = r"\d+"

    def destroy(self, request, pk=None):
        result = MessageService.soft_delete_message(pk, request.user)
        if not result.success:
            return error_response(result)
        return Response(status=status.HTTP_204_NO_CONTENT)


class UserPresenceView(APIView):
    """Whether a user has at least one open chat socket."""

    permission_classes = [IsAuthenticated]

    @extend_schema(
        operation_id="get_user_presence",
        summary="Get user presence",
        responses=OpenApiTypes.OBJECT,
        tags=["Chat - Presence"],
    )
    def get(self, request, user_id):
        return Response(
            {"user_id": user_id, "is_online": PresenceService.is_online(user_id)}
        )
