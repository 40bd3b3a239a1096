"""
Test configuration and fixtures for authentication tests.

Provides users and API clients authenticated with simplejwt access tokens,
the same credential the chat REST API and websocket middleware accept.

Usage:
    def test_example(authenticated_client):
        response = authenticated_client.get('/api/v1/chat/conversations/')
        assert response.status_code == 200
"""

import pytest
from rest_framework.test import APIClient
from rest_framework_simplejwt.tokens import AccessToken

from authentication.tests.factories import UserFactory


# =============================================================================
# User Fixtures
# =============================================================================


@pytest.fixture
def user(db):
    """Create a regular active user."""
    return UserFactory()


@pytest.fixture
def inactive_user(db):
    """Create a deactivated user."""
    return UserFactory(is_active=False)


# =============================================================================
# Client Fixtures
# =============================================================================


@pytest.fixture
def api_client():
    """Unauthenticated DRF test client."""
    return APIClient()


@pytest.fixture
def authenticated_client(user):
    """DRF test client carrying a Bearer access token for `user`."""
    client = APIClient()
    client.credentials(HTTP_AUTHORIZATION=f"Bearer {AccessToken.for_user(user)}")
    return client
