"""
Transition notifications.

Every committed state transition of a booking, transaction, refund or
subscription is published twice:

- ``state_transitioned`` Django signal for in-process consumers
- a channel-layer message to the ``payments.events`` group and to the
  entity's own group (``payments.<entity_type>.<entity_id>``)

Publishing happens after the surrounding database transaction commits, so
consumers never see a transition that was rolled back.

Subscription reminders use the same path: ``trial_ending_soon`` ahead of a
trial's end and ``trial_charge_required`` when the trial-end charge needs
the provider.

Usage:
    from payments.notifications import state_transitioned

    @receiver(state_transitioned)
    def on_transition(sender, notification, **kwargs):
        if notification.entity_type == "booking" and notification.target == "FULLY_PAID":
            ...

    # Websocket consumer
    await self.channel_layer.group_add(entity_group("booking", booking_id), self.channel_name)
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from typing import TYPE_CHECKING, Any

from asgiref.sync import async_to_sync
from channels.layers import get_channel_layer
from django.db import transaction
from django.dispatch import Signal

if TYPE_CHECKING:
    from payments.models import PaymentTransaction, Subscription

logger = logging.getLogger(__name__)

EVENTS_GROUP = "payments.events"

# Sent with notification=TransitionNotification
state_transitioned = Signal()

# Sent with subscription=..., transaction=... when a trial-end charge needs
# the provider to act (hosted checkout or authentication)
trial_charge_required = Signal()

# Sent with subscription=..., days_left=... ahead of a trial's end
trial_ending_soon = Signal()


@dataclass(frozen=True)
class TransitionNotification:
    """
    A committed state change.

    Attributes:
        entity_type: booking, transaction, refund or subscription
        entity_id: Primary key as string
        transition: Name of the transition method
        source: State before
        target: State after
    """

    entity_type: str
    entity_id: str
    transition: str
    source: str
    target: str

    def to_dict(self) -> dict[str, str]:
        return asdict(self)


def entity_group(entity_type: str, entity_id: Any) -> str:
    return f"payments.{entity_type}.{entity_id}"


def publish_transition(notification: TransitionNotification) -> None:
    """Send a committed transition to signal receivers and the channel layer."""
    state_transitioned.send(sender=TransitionNotification, notification=notification)
    _group_send(
        [EVENTS_GROUP, entity_group(notification.entity_type, notification.entity_id)],
        {"type": "payment.transition", **notification.to_dict()},
    )
    logger.debug(
        "Published transition",
        extra=notification.to_dict(),
    )


def schedule_transition(notification: TransitionNotification) -> None:
    """Publish ``notification`` once the current transaction commits."""
    transaction.on_commit(lambda: publish_transition(notification))


def notify_trial_charge_required(
    subscription: Subscription,
    payment_transaction: PaymentTransaction,
) -> None:
    """
    Tell the provider their trial ended and the plan charge needs them.

    The message carries the processor continuation token (client secret or
    hosted checkout URL) so the client can complete the payment.
    """

    def publish() -> None:
        trial_charge_required.send(
            sender=type(subscription),
            subscription=subscription,
            transaction=payment_transaction,
        )
        _group_send(
            [entity_group("subscription", subscription.pk)],
            {
                "type": "payment.trial_charge_required",
                "subscription_id": str(subscription.pk),
                "transaction_id": str(payment_transaction.pk),
                "amount_cents": payment_transaction.amount_cents,
                "currency": payment_transaction.currency,
                "client_action_token": payment_transaction.client_action_token,
            },
        )

    transaction.on_commit(publish)
    logger.info(
        "Trial charge notification scheduled",
        extra={
            "subscription_id": str(subscription.pk),
            "transaction_id": str(payment_transaction.pk),
        },
    )


def notify_trial_ending_soon(subscription: Subscription, days_left: int) -> None:
    """Warn the provider that their trial ends in ``days_left`` days."""

    def publish() -> None:
        trial_ending_soon.send(
            sender=type(subscription),
            subscription=subscription,
            days_left=days_left,
        )
        _group_send(
            [entity_group("subscription", subscription.pk)],
            {
                "type": "payment.trial_ending_soon",
                "subscription_id": str(subscription.pk),
                "days_left": days_left,
                "trial_end": subscription.trial_end.isoformat(),
                "amount_cents": subscription.price_cents,
                "currency": subscription.currency,
            },
        )

    transaction.on_commit(publish)
    logger.info(
        "Trial ending notification scheduled",
        extra={"subscription_id": str(subscription.pk), "days_left": days_left},
    )


def _group_send(groups: list[str], message: dict[str, Any]) -> None:
    channel_layer = get_channel_layer()
    if channel_layer is None:
        return
    for group in groups:
        try:
            async_to_sync(channel_layer.group_send)(group, message)
        except Exception:
            logger.exception(
                "Failed to publish to channel layer",
                extra={"group": group, "message_type": message.get("type")},
            )
