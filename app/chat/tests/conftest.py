"""
Test configuration and fixtures for chat tests.

This module provides:
- Users A, B, C (alice, bob, carol) and an outsider
- A direct conversation (alice/bob) and a group (alice/bob/carol) built
  through the service layer so counters are real
- API clients authenticated with simplejwt access tokens
- A patched rebroadcast task

Usage:
    def test_example(direct_conversation, alice_client):
        response = alice_client.get('/api/v1/chat/conversations/')
        assert response.status_code == 200
"""

from unittest.mock import patch

import pytest
from rest_framework.test import APIClient
from rest_framework_simplejwt.tokens import AccessToken

from authentication.tests.factories import UserFactory
from chat.services import ConversationService


# =============================================================================
# User Fixtures
# =============================================================================


@pytest.fixture
def alice(db):
    return UserFactory(display_name="Alice")


@pytest.fixture
def bob(db):
    return UserFactory(display_name="Bob")


@pytest.fixture
def carol(db):
    return UserFactory(display_name="Carol")


@pytest.fixture
def outsider(db):
    """A user who is not a participant in any test conversation."""
    return UserFactory(display_name="Olivia")


# =============================================================================
# Conversation Fixtures
# =============================================================================


@pytest.fixture
def direct_conversation(alice, bob):
    """Direct conversation between alice and bob, created by alice."""
    return ConversationService.find_or_create_direct([alice, bob], creator=alice).data


@pytest.fixture
def group_conversation(alice, bob, carol):
    """Group of alice (admin), bob and carol."""
    return ConversationService.create_group(alice, [bob, carol], "Weekend run").data


# =============================================================================
# Client Fixtures
# =============================================================================


def _client_for(user) -> APIClient:
    client = APIClient()
    client.credentials(HTTP_AUTHORIZATION=f"Bearer {AccessToken.for_user(user)}")
    return client


@pytest.fixture
def alice_client(alice):
    return _client_for(alice)


@pytest.fixture
def bob_client(bob):
    return _client_for(bob)


@pytest.fixture
def outsider_client(outsider):
    return _client_for(outsider)


# =============================================================================
# Delivery Fixtures
# =============================================================================


@pytest.fixture
def rebroadcast_task():
    """Patch the retry task so fan-out failures never reach a broker."""
    with patch("chat.delivery.rebroadcast_message") as task:
        yield task
