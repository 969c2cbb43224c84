"""
Webhook intake for processor events.

Deliveries are verified, reserved idempotently in the ledger and processed
asynchronously via Celery through the normalized event handlers.

Usage:
    # In urls.py
    from payments.webhooks.views import paystack_webhook, stripe_webhook

    urlpatterns = [
        path("webhooks/stripe/", stripe_webhook, name="stripe_webhook"),
        path("webhooks/paystack/", paystack_webhook, name="paystack_webhook"),
    ]
"""

from payments.webhooks.handlers import dispatch_event, register_handler
from payments.webhooks.views import paystack_webhook, stripe_webhook

__all__ = [
    "dispatch_event",
    "paystack_webhook",
    "register_handler",
    "stripe_webhook",
]
