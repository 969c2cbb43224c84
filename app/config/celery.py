"""
Celery configuration for the payment orchestration engine.

Celery runs everything that must not block a web request or that runs on a
schedule:
- Webhook event processing (queued by the webhook intake views)
- Retry of failed and stuck webhook events
- Scheduled reconciliation against the processors
- Trial expiry checks and idempotency ledger pruning

This configuration uses Redis as both the message broker and result backend.
Tasks are auto-discovered from all installed Django apps; periodic schedules
live in CELERY_BEAT_SCHEDULE and the django-celery-beat tables.

Usage:
    # Run a worker and the beat scheduler
    celery -A config worker -l info
    celery -A config beat -l info

    # Queue a task from code
    from payments.tasks import process_webhook_event
    process_webhook_event.delay("stripe:evt_123")

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

# Auto-discover tasks from all registered Django apps
# Celery looks for a tasks.py module in each installed app; payments.tasks
# imports the worker modules so their tasks register too.
app.autodiscover_tasks()
