"""
Django signal handlers for the payments app.

Connects django-fsm's ``post_transition`` for the payment entities to the
transition notification pipeline in ``payments.notifications``.

Related files:
    - notifications.py: Notification type, signals, channel-layer publishing
    - apps.py: Signal registration

Usage:
    Receivers are connected when the app is ready. See apps.py.
"""

from __future__ import annotations

import logging

from django_fsm.signals import post_transition

from payments.notifications import TransitionNotification, schedule_transition

logger = logging.getLogger(__name__)

# Model label -> entity_type used in notifications and channel groups
ENTITY_TYPES = {
    "Booking": "booking",
    "PaymentTransaction": "transaction",
    "Refund": "refund",
    "Subscription": "subscription",
}


def on_post_transition(sender, instance, name, source, target, **kwargs) -> None:
    """
    Queue a notification for a transition of a payment entity.

    Runs inside the caller's transaction; the notification is published only
    if that transaction commits.
    """
    entity_type = ENTITY_TYPES.get(sender.__name__)
    if entity_type is None:
        return

    schedule_transition(
        TransitionNotification(
            entity_type=entity_type,
            entity_id=str(instance.pk),
            transition=name,
            source=str(source),
            target=str(target),
        )
    )


def connect_transition_receivers() -> None:
    from payments.models import Booking, PaymentTransaction, Refund, Subscription

    for model in (Booking, PaymentTransaction, Refund, Subscription):
        post_transition.connect(
            on_post_transition,
            sender=model,
            dispatch_uid=f"payments.transition.{model.__name__}",
        )
    logger.debug("Connected payment transition receivers")
