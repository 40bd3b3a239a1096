"""
URL configuration for chat API.

URL Structure:
    Conversations:
        /conversations/                  GET, POST
        /conversations/{id}/pin/         POST
        /conversations/{id}/read/        POST
        /conversations/{id}/messages/    GET, POST

    Messages:
        /messages/{id}/                  DELETE

    Presence:
        /presence/{user_id}/             GET

All URLs are prefixed with /api/v1/chat/ in the main URL configuration.
"""

from django.urls import include, path
from rest_framework.routers import DefaultRouter

from chat.views import ConversationViewSet, MessageViewSet, UserPresenceView

router = DefaultRouter()
router.register(r"conversations", ConversationViewSet, basename="conversation")
router.register(r"messages", MessageViewSet, basename="message")

app_name = "chat"

urlpatterns = [
    path("", include(router.urls)),
    path("presence/<int:user_id>/", UserPresenceView.as_view(), name="presence-user"),
]
