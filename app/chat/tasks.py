"""
Celery tasks for chat app.

This module defines async tasks for:
- Re-broadcasting messages whose live fan-out failed

Related files:
    - delivery.py: DeliveryService (schedules rebroadcast_message)
    - rooms.py: RoomRouter

Usage:
    from chat.tasks import rebroadcast_message

    rebroadcast_message.delay(message_id)
"""

import logging

from celery import Task, shared_task

from chat.constants import chat_setting
from chat.exceptions import DeliveryChannelUnavailable

logger = logging.getLogger(__name__)


class RebroadcastTask(Task):
    """Logs the final failure once retries are exhausted."""

    def on_failure(self, exc, task_id, args, kwargs, einfo):
        message_id = args[0] if args else kwargs.get("message_id")
        logger.error(
            f"Gave up rebroadcasting message {message_id} after "
            f"{self.request.retries} retries: {exc}",
            exc_info=exc,
        )


@shared_task(
    base=RebroadcastTask,
    bind=True,
    autoretry_for=(DeliveryChannelUnavailable,),
    retry_backoff=True,
    retry_backoff_max=60,
    retry_kwargs={"max_retries": chat_setting("FANOUT_MAX_RETRIES")},
)
def rebroadcast_message(self, message_id: int) -> bool:
    """
    Retry the live fan-out of a persisted message.

    Retries with backoff while the channel layer stays unavailable, up to
    FANOUT_MAX_RETRIES. Deleted or missing messages are skipped.

    Args:
        message_id: ID of the message

    Returns:
        True if the message was broadcast
    """
    from chat.delivery import DeliveryService
    from chat.models import Message

    message = (
        Message.objects.select_related("sender")
        .filter(id=message_id, is_deleted=False)
        .first()
    )
    if message is None:
        logger.info(f"Skipping rebroadcast of missing or deleted message {message_id}")
        return False

    DeliveryService.fan_out(message)
    logger.info(
        f"Rebroadcast message {message_id} (attempt {self.request.retries + 1})"
    )
    return True
