"""
Celery configuration for the settlement service.

Celery runs the work that must not block a request or a settlement commit:
- Buyer/seller notifications, enqueued after each committed settlement step
- The reconciliation sweep over open partial-commit records (every 15 minutes)
- The stalled-deadline sweep (hourly)

Redis is both broker and result backend. Periodic tasks are stored by
django-celery-beat (DatabaseScheduler) and seeded by a settlement migration.

Usage:
    celery -A config worker -l info
    celery -A config beat -l info

For more information, see:
https://docs.celeryq.dev/en/stable/django/first-steps-with-django.html
"""

import logging
import os

from celery import Celery
from celery.signals import task_failure

# Set the default Django settings module for the Celery worker
os.environ.setdefault("DJANGO_SETTINGS_MODULE", "config.settings")

app = Celery("config")

# All Celery settings are prefixed with CELERY_ in settings.py
app.config_from_object("django.conf:settings", namespace="CELERY")

# Looks for tasks.py in each installed app
app.autodiscover_tasks()

logger = logging.getLogger(__name__)


@task_failure.connect
def log_task_failure(sender=None, task_id=None, exception=None, **kwargs):
    """Log every task failure with its task name and id."""
    logger.error(
        "Celery task failed",
        extra={
            "task_name": getattr(sender, "name", None),
            "task_id": task_id,
            "error": str(exception),
        },
    )
