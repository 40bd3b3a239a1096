"""
URL configuration for the conversation delivery service.

URL Structure:
    /                                        - ReDoc API documentation
    /schema/                                 - OpenAPI schema (YAML)
    /admin/                                  - Django admin interface
    /health/                                 - Health check (database, cache, channel layer)
    /api/v1/chat/                            - Chat endpoints
        conversations/                       - List/create conversations
        conversations/{id}/pin/              - Toggle pin for the caller
        conversations/{id}/read/             - Advance the caller's read cursor
        conversations/{id}/messages/         - Page/send messages
        messages/{id}/                       - Soft delete a message
        presence/{user_id}/                  - Online status

WebSocket routes live in chat.routing and are mounted by config.asgi.
"""

from django.contrib import admin
from django.urls import include, path
from drf_spectacular.views import SpectacularAPIView, SpectacularRedocView

from core.views import health_check

# =============================================================================
# API v1 Routes
# =============================================================================
api_v1_patterns = [
    path("chat/", include("chat.urls")),
]

urlpatterns = [
    # Documentation
    path("", SpectacularRedocView.as_view(url_name="schema"), name="redoc"),
    path("schema/", SpectacularAPIView.as_view(), name="schema"),
    # Admin
    path("admin/", admin.site.urls),
    # Health check (Docker, Kubernetes, load balancers)
    path("health/", health_check, name="health_check"),
    # API v1
    path("api/v1/", include(api_v1_patterns)),
]

admin.site.site_header = "Conversation Delivery Admin"
admin.site.site_title = "Conversation Delivery"
