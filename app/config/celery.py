"""
Celery configuration for the conversation delivery service.

The only background work is best-effort redelivery of live fan-out
(see chat.tasks). Messages are already durable when a task is queued,
so tasks carry a message id and re-read state from the database.

Broker and result backend come from CELERY_BROKER_URL and
CELERY_RESULT_BACKEND. Tasks are auto-discovered from installed apps.

Usage:
    celery -A config worker -l info
"""

import os

from celery import Celery

os.environ.setdefault("DJANGO_SETTINGS_MODULE", "config.settings")

app = Celery("config")

# All Celery settings are prefixed with CELERY_ in settings.py
app.config_from_object("django.conf:settings", namespace="CELERY")

app.autodiscover_tasks()
