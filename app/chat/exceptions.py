"""
Chat-specific exceptions.

Expected failures of chat operations (not a participant, not found,
forbidden) are ServiceResult failures, see chat.services. Only failures
that must unwind through async transport code are exceptions.
"""

from core.exceptions import ExternalServiceError


class DeliveryChannelUnavailable(ExternalServiceError):
    """
    Live fan-out failed after the message was persisted.

    Raised by chat.rooms.RoomRouter when the channel layer rejects a send.
    The delivery coordinator logs it and carries on: the message is durable
    and will be served by the next page fetch.
    """

    default_error_code: str = "DELIVERY_CHANNEL_UNAVAILABLE"
