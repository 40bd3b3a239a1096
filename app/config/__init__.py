# =============================================================================
# Project configuration package
# =============================================================================
# Settings, URL routing, the ASGI entry point (HTTP + websocket) and the
# Celery app used for fan-out retries.
#
# Importing the Celery app here registers chat.tasks with the worker.
# =============================================================================

from config.celery import app as celery_app

__all__ = ("celery_app",)
