"""
Celery configuration for the Django application.

Celery runs the escrow background work:
- Payment initiation and gateway event processing (webhook callbacks)
- Periodic deadline sweeps and payout dispatch (django-celery-beat)
- SMS delivery of notifications and delivery codes

This configuration uses Redis as both the message broker and result backend.
Tasks are auto-discovered from all installed Django apps; the escrow workers
are re-exported from escrow.tasks so autodiscovery finds them.

Usage:
    from escrow.tasks import process_gateway_event

    process_gateway_event.delay(str(record.id))

For more information, see:
https://docs.celeryq.dev/en/stable/django/first-steps-with-django.html
"""

import os

from celery import Celery

# Set the default Django settings module for the Celery worker
os.environ.setdefault("DJANGO_SETTINGS_MODULE", "config.settings")

# Create Celery application instance
app = Celery("config")

# Load configuration from Django settings
# All Celery settings should be prefixed with CELERY_ in settings.py
app.config_from_object("django.conf:settings", namespace="CELERY")

# Celery will look for a tasks.py module in each installed app
app.autodiscover_tasks()
