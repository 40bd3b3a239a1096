"""
Authentication application.

Provides the user identity that chat participants and senders point at.
Token issuance is handled outside this service; requests arrive with a
simplejwt access token that DRF (REST) and chat.middleware (websocket)
verify.

Key components:
    - User model: Email-based custom user
    - UserSerializer: Public user representation embedded in chat payloads
"""
