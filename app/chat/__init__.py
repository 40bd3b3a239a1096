"""
Chat app for real-time conversation delivery.

This app handles:
- Conversations (direct and group)
- Message sending and history
- WebSocket live updates (messages, typing, read state)
- Read cursors and unread counters

Related apps:
    - authentication: User model for participants

WebSocket Support:
    Uses Django Channels for real-time communication.
    See consumers.py for WebSocket handlers.
    See rooms.py for room fan-out.

Client:
    chat.client is a standalone asyncio client that reconciles optimistic
    sends with server broadcasts. It does not import Django.

Usage:
    from chat.services import ConversationService
    from chat.delivery import DeliveryService

    conversation = ConversationService.find_or_create_direct([user, other_user]).data
    receipt = DeliveryService.send(conversation.id, user, "Hello!").data
"""
