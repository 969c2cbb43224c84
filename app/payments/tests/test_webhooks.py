"""
Tests for the webhook endpoints.

The in-memory adapter accepts an ``X-Fake-Signature: fake-signature`` header
and NormalizedEvent dicts as payload. Celery runs eagerly under test
settings, so an accepted event is applied before the response returns.
"""

import hashlib
import hmac
import json
import time
from unittest.mock import patch

import pytest
from django.db import DatabaseError
from django.test import RequestFactory
from django.urls import reverse

from payments.exceptions import AuthenticityFailureError
from payments.ledger import OutcomeStatus, ledger
from payments.models import Booking, PaymentTransaction
from payments.reason_codes import ReasonCode
from payments.state_machines import (
    BookingPaymentStatus,
    IdempotencyStatus,
    NormalizedEventType,
    TransactionStatus,
)
from payments.tests.factories import PaymentTransactionFactory
from payments.tests.fakes import FAKE_SIGNATURE
from payments.webhooks.views import authenticate_delivery

STRIPE_WEBHOOK_SECRET = "whsec_webhooks"


def post_event(client, data, signature=FAKE_SIGNATURE, url_name="payments:stripe_webhook"):
    body = data if isinstance(data, str) else json.dumps(data)
    return client.post(
        reverse(url_name),
        data=body,
        content_type="application/json",
        HTTP_X_FAKE_SIGNATURE=signature,
    )


def succeeded_event(txn, event_id="evt_100"):
    return {
        "type": NormalizedEventType.CHARGE_SUCCEEDED,
        "entity_ref": txn.processor_reference,
        "amount_cents": txn.amount_cents,
        "currency": txn.currency,
        "processor_event_id": event_id,
    }


@pytest.mark.django_db
class TestStripeWebhookIntake:
    def test_accepts_and_applies_event(self, client, fake_adapter, booking):
        txn = PaymentTransactionFactory(booking=booking)

        response = post_event(client, succeeded_event(txn))

        assert response.status_code == 200
        assert response.content == b"Accepted"
        record = ledger.get("stripe:evt_100")
        assert record.status == IdempotencyStatus.COMPLETED
        assert record.outcome["status"] == OutcomeStatus.APPLIED
        assert PaymentTransaction.objects.get(pk=txn.pk).status == TransactionStatus.VERIFIED
        booking = Booking.objects.get(pk=booking.pk)
        assert booking.payment_status == BookingPaymentStatus.DEPOSIT_PAID

    def test_duplicate_delivery_is_acknowledged_once(self, client, fake_adapter, booking):
        txn = PaymentTransactionFactory(booking=booking)
        post_event(client, succeeded_event(txn))

        response = post_event(client, succeeded_event(txn))

        assert response.status_code == 200
        assert response.content == b"Already received"
        assert Booking.objects.get(pk=booking.pk).amount_paid_cents == 2000

    def test_invalid_signature(self, client, fake_adapter, booking):
        txn = PaymentTransactionFactory(booking=booking)

        response = post_event(client, succeeded_event(txn), signature="forged")

        assert response.status_code == 400
        assert response.content == b"Invalid signature"
        assert ledger.get("stripe:evt_100") is None
        assert PaymentTransaction.objects.get(pk=txn.pk).status == TransactionStatus.INITIATED

    def test_unauthenticated_delivery_raises_authenticity_failure(self, fake_adapter):
        request = RequestFactory().post(
            "/webhooks/stripe/",
            data="{}",
            content_type="application/json",
            HTTP_X_FAKE_SIGNATURE="forged",
            REMOTE_ADDR="203.0.113.9",
        )

        with pytest.raises(AuthenticityFailureError) as exc_info:
            authenticate_delivery(fake_adapter, request.body, request, "stripe")

        assert exc_info.value.error_code == ReasonCode.AUTHENTICITY_FAILURE
        assert exc_info.value.details == {"processor": "stripe", "remote_addr": "203.0.113.9"}

    def test_malformed_payload(self, client, fake_adapter):
        response = post_event(client, "{not json")

        assert response.status_code == 400
        assert response.content == b"Invalid event"

    def test_irrelevant_event_is_ignored(self, client, fake_adapter):
        response = post_event(client, {"ignore": True})

        assert response.status_code == 200
        assert response.content == b"Ignored"

    def test_get_is_not_allowed(self, client, fake_adapter):
        response = client.get(reverse("payments:stripe_webhook"))

        assert response.status_code == 405

    def test_ledger_unavailable_asks_for_redelivery(self, client, fake_adapter, booking):
        txn = PaymentTransactionFactory(booking=booking)

        with patch(
            "payments.webhooks.views.EventProcessor.reserve",
            side_effect=DatabaseError("connection lost"),
        ):
            response = post_event(client, succeeded_event(txn))

        assert response.status_code == 500

    def test_queue_failure_leaves_record_reserved(self, client, fake_adapter, booking):
        txn = PaymentTransactionFactory(booking=booking)

        with patch(
            "payments.tasks.process_webhook_event.delay",
            side_effect=ConnectionError("broker down"),
        ):
            response = post_event(client, succeeded_event(txn))

        assert response.status_code == 200
        assert ledger.get("stripe:evt_100").status == IdempotencyStatus.RESERVED
        assert PaymentTransaction.objects.get(pk=txn.pk).status == TransactionStatus.INITIATED

    def test_failure_then_late_success_keeps_verified(self, client, fake_adapter, booking):
        txn = PaymentTransactionFactory(booking=booking)
        post_event(client, succeeded_event(txn, event_id="evt_ok"))
        failed = {
            **succeeded_event(txn, event_id="evt_fail"),
            "type": NormalizedEventType.CHARGE_FAILED,
        }

        response = post_event(client, failed)

        assert response.status_code == 200
        assert ledger.get("stripe:evt_fail").outcome["status"] == OutcomeStatus.IGNORED
        assert PaymentTransaction.objects.get(pk=txn.pk).status == TransactionStatus.VERIFIED


@pytest.mark.django_db
class TestPaystackWebhookIntake:
    def test_routes_to_paystack_adapter(self, client, fake_paystack, paystack_booking):
        txn = PaymentTransactionFactory(booking=paystack_booking, processor_reference="ref-gh-1")

        response = post_event(
            client,
            succeeded_event(txn, event_id="charge.success:ref-gh-1"),
            url_name="payments:paystack_webhook",
        )

        assert response.status_code == 200
        record = ledger.get("paystack:charge.success:ref-gh-1")
        assert record.processor == "paystack"
        assert record.outcome["status"] == OutcomeStatus.APPLIED

    def test_stripe_signature_is_not_accepted_for_paystack(self, client, fake_paystack):
        response = post_event(
            client,
            {"ignore": True},
            signature="forged",
            url_name="payments:paystack_webhook",
        )

        assert response.status_code == 400


@pytest.mark.django_db
class TestStripeDeclinedAttempt:
    """Signed Stripe payloads through the real adapter."""

    @pytest.fixture(autouse=True)
    def stripe_secrets(self, settings):
        settings.STRIPE_SECRET_KEY = "sk_test_stripe"
        settings.STRIPE_WEBHOOK_SECRET = STRIPE_WEBHOOK_SECRET

    def post_stripe(self, client, event_type, obj, event_id):
        body = json.dumps(
            {"id": event_id, "object": "event", "type": event_type, "data": {"object": obj}}
        )
        timestamp = int(time.time())
        digest = hmac.new(
            STRIPE_WEBHOOK_SECRET.encode(),
            f"{timestamp}.{body}".encode(),
            hashlib.sha256,
        ).hexdigest()
        return client.post(
            reverse("payments:stripe_webhook"),
            data=body,
            content_type="application/json",
            HTTP_STRIPE_SIGNATURE=f"t={timestamp},v1={digest}",
        )

    def test_decline_then_retry_on_same_intent_applies(self, client, booking):
        txn = PaymentTransactionFactory(booking=booking)
        intent = {
            "id": txn.processor_reference,
            "amount": 2000,
            "currency": "usd",
            "metadata": {},
        }

        declined = self.post_stripe(
            client,
            "payment_intent.payment_failed",
            {
                **intent,
                "status": "requires_payment_method",
                "last_payment_error": {"message": "Your card was declined."},
            },
            event_id="evt_declined",
        )

        assert declined.status_code == 200
        assert ledger.get("stripe:evt_declined") is None
        assert PaymentTransaction.objects.get(pk=txn.pk).status == TransactionStatus.INITIATED

        succeeded = self.post_stripe(
            client,
            "payment_intent.succeeded",
            {**intent, "status": "succeeded", "amount_received": 2000, "payment_method": "pm_new"},
            event_id="evt_succeeded",
        )

        assert succeeded.status_code == 200
        assert ledger.get("stripe:evt_succeeded").outcome["status"] == OutcomeStatus.APPLIED
        txn = PaymentTransaction.objects.get(pk=txn.pk)
        assert txn.status == TransactionStatus.VERIFIED
        assert txn.needs_review is False
        booking = Booking.objects.get(pk=booking.pk)
        assert booking.payment_status == BookingPaymentStatus.DEPOSIT_PAID
        assert booking.amount_paid_cents == 2000

    def test_canceled_intent_fails_the_transaction(self, client, booking):
        txn = PaymentTransactionFactory(booking=booking)

        response = self.post_stripe(
            client,
            "payment_intent.canceled",
            {
                "id": txn.processor_reference,
                "amount": 2000,
                "currency": "usd",
                "status": "canceled",
                "cancellation_reason": "abandoned",
            },
            event_id="evt_canceled",
        )

        assert response.status_code == 200
        assert PaymentTransaction.objects.get(pk=txn.pk).status == TransactionStatus.FAILED
        assert Booking.objects.get(pk=booking.pk).payment_status == (
            BookingPaymentStatus.AWAITING_DEPOSIT
        )

    def test_unsigned_delivery_is_rejected(self, client, booking):
        response = client.post(
            reverse("payments:stripe_webhook"),
            data=json.dumps({"id": "evt_x", "type": "payment_intent.succeeded"}),
            content_type="application/json",
        )

        assert response.status_code == 400
        assert ledger.get("stripe:evt_x") is None
