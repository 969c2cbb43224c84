"""
Tests for transition notifications.

Transitions are published after commit, so every test that expects a
message runs the transition under ``django_capture_on_commit_callbacks``.
The test settings use the in-memory channel layer.
"""

import asyncio
from unittest.mock import MagicMock, patch

import pytest
from asgiref.sync import async_to_sync
from channels.layers import get_channel_layer
from django.db import transaction

from payments.notifications import (
    EVENTS_GROUP,
    TransitionNotification,
    entity_group,
    notify_trial_ending_soon,
    publish_transition,
    state_transitioned,
)
from payments.services import PaymentStateMachine, TrialManager
from payments.state_machines import BookingPaymentStatus, SubscriptionStatus
from payments.tests.factories import PaymentTransactionFactory


@pytest.fixture
def transitions():
    received = []

    def receiver(sender, notification, **kwargs):
        received.append(notification)

    state_transitioned.connect(receiver)
    yield received
    state_transitioned.disconnect(receiver)


def subscribe(group):
    layer = get_channel_layer()
    channel = async_to_sync(layer.new_channel)()
    async_to_sync(layer.group_add)(group, channel)
    return layer, channel


def receive(layer, channel):
    async def _receive():
        return await asyncio.wait_for(layer.receive(channel), timeout=1)

    return async_to_sync(_receive)()


@pytest.mark.django_db
class TestTransitionSignal:
    def test_booking_and_transaction_transitions_are_published(
        self, booking, transitions, django_capture_on_commit_callbacks
    ):
        txn = PaymentTransactionFactory(booking=booking)

        with django_capture_on_commit_callbacks(execute=True):
            PaymentStateMachine.apply_charge(txn, 2000, "USD")

        by_type = {n.entity_type: n for n in transitions}
        assert by_type["booking"].entity_id == str(booking.pk)
        assert by_type["booking"].source == BookingPaymentStatus.AWAITING_DEPOSIT
        assert by_type["booking"].target == BookingPaymentStatus.DEPOSIT_PAID
        assert by_type["transaction"].entity_id == str(txn.pk)

    def test_nothing_is_published_before_commit(self, booking, transitions):
        txn = PaymentTransactionFactory(booking=booking)

        PaymentStateMachine.apply_charge(txn, 2000, "USD")

        assert transitions == []

    def test_rolled_back_transition_is_not_published(
        self, trialing_subscription, transitions, django_capture_on_commit_callbacks
    ):
        with django_capture_on_commit_callbacks(execute=True):
            with pytest.raises(RuntimeError):
                with transaction.atomic():
                    TrialManager.cancel(trialing_subscription, "requested_by_owner")
                    raise RuntimeError("abort")

        assert transitions == []

    def test_subscription_cancel(
        self, trialing_subscription, transitions, django_capture_on_commit_callbacks
    ):
        with django_capture_on_commit_callbacks(execute=True):
            TrialManager.cancel(trialing_subscription, "requested_by_owner")

        (notification,) = transitions
        assert notification.entity_type == "subscription"
        assert notification.transition == "cancel"
        assert notification.target == SubscriptionStatus.CANCELED


@pytest.mark.django_db
class TestChannelLayer:
    def test_entity_group_receives_transition(self, booking, django_capture_on_commit_callbacks):
        layer, channel = subscribe(entity_group("booking", booking.pk))
        txn = PaymentTransactionFactory(booking=booking)

        with django_capture_on_commit_callbacks(execute=True):
            PaymentStateMachine.apply_charge(txn, 2000, "USD")

        message = receive(layer, channel)
        assert message["type"] == "payment.transition"
        assert message["entity_id"] == str(booking.pk)
        assert message["target"] == BookingPaymentStatus.DEPOSIT_PAID

    def test_events_group_receives_everything(self):
        layer, channel = subscribe(EVENTS_GROUP)
        notification = TransitionNotification(
            entity_type="refund",
            entity_id="abc",
            transition="mark_succeeded",
            source="PROCESSING",
            target="SUCCEEDED",
        )

        publish_transition(notification)

        assert receive(layer, channel) == {"type": "payment.transition", **notification.to_dict()}

    def test_trial_ending_soon_reaches_the_subscription_group(
        self, trialing_subscription, django_capture_on_commit_callbacks
    ):
        layer, channel = subscribe(entity_group("subscription", trialing_subscription.pk))

        with django_capture_on_commit_callbacks(execute=True):
            notify_trial_ending_soon(trialing_subscription, 3)

        assert receive(layer, channel) == {
            "type": "payment.trial_ending_soon",
            "subscription_id": str(trialing_subscription.pk),
            "days_left": 3,
            "trial_end": trialing_subscription.trial_end.isoformat(),
            "amount_cents": trialing_subscription.price_cents,
            "currency": trialing_subscription.currency,
        }

    def test_channel_layer_failure_is_logged_not_raised(self, transitions):
        layer = MagicMock()
        layer.group_send.side_effect = ConnectionError("redis down")
        notification = TransitionNotification("booking", "abc", "mark_paid_in_full", "a", "b")

        with patch("payments.notifications.get_channel_layer", return_value=layer):
            publish_transition(notification)

        assert transitions == [notification]
