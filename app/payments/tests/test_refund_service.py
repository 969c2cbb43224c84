"""
Tests for RefundService.

These tests cover:
1. Validation against captured minus committed refunds
2. Slicing a request across charges, newest first
3. Idempotent replays by request key
4. Processor answers and errors per slice
5. Terminal refund transitions and the booking refund transition
6. Re-submission of pending refunds and the cancellation policy
"""

from datetime import timedelta

import pytest
from django.utils import timezone

from payments.adapters import STATUS_SUCCEEDED, IdempotencyKeyGenerator
from payments.exceptions import (
    AlreadyRefundedError,
    InvalidRequestError,
    InvalidStateTransitionError,
    ProcessorUnavailableError,
)
from payments.models import Booking, Refund
from payments.reason_codes import ReasonCode
from payments.services import RefundService
from payments.services.refund_service import CANCELLED_BY_CLIENT, CANCELLED_BY_PROVIDER
from payments.state_machines import (
    BookingPaymentStatus,
    PaymentStage,
    RefundState,
)
from payments.tests.factories import (
    BookingFactory,
    PaymentTransactionFactory,
    RefundFactory,
)


def stored(booking) -> Booking:
    return Booking.objects.get(pk=booking.pk)


@pytest.fixture
def split_paid_booking(db, user):
    """Fully paid in two charges: 20.00 deposit, then 80.00 balance."""
    now = timezone.now()
    booking = BookingFactory(
        client=user,
        payment_status=BookingPaymentStatus.FULLY_PAID,
        amount_paid_cents=10000,
        deposit_paid_at=now - timedelta(days=2),
        fully_paid_at=now,
    )
    PaymentTransactionFactory(
        booking=booking,
        stage=PaymentStage.DEPOSIT,
        amount_cents=2000,
        verified=True,
        verified_at=now - timedelta(days=2),
    )
    PaymentTransactionFactory(
        booking=booking,
        stage=PaymentStage.BALANCE,
        amount_cents=8000,
        verified=True,
        verified_at=now,
    )
    return booking


# =============================================================================
# Validation
# =============================================================================


@pytest.mark.django_db
class TestRefundValidation:
    def test_nothing_captured(self, booking, fake_adapter):
        result = RefundService.request_refund(booking, 1000, "Changed mind", "refund-1")

        assert result.error_code == ReasonCode.NO_CAPTURED_PAYMENT
        assert Refund.objects.count() == 0

    @pytest.mark.parametrize("amount", [0, -100])
    def test_amount_must_be_positive(self, fully_paid_booking, fake_adapter, amount):
        result = RefundService.request_refund(fully_paid_booking, amount, "", "refund-1")

        assert result.error_code == ReasonCode.INVALID_REQUEST

    def test_key_is_required(self, fully_paid_booking, fake_adapter):
        result = RefundService.request_refund(fully_paid_booking, 1000, "", "")

        assert result.error_code == ReasonCode.INVALID_REQUEST

    def test_cannot_exceed_captured(self, deposit_paid_booking, fake_adapter):
        result = RefundService.request_refund(deposit_paid_booking, 2001, "", "refund-1")

        assert result.error_code == ReasonCode.AMOUNT_MISMATCH
        assert result.details == {"requested_cents": 2001, "refundable_cents": 2000}
        assert fake_adapter.count("initiate_refund") == 0

    def test_in_flight_refunds_count_as_committed(self, fully_paid_booking, fake_adapter):
        first = RefundService.request_refund(fully_paid_booking, 4000, "", "refund-1")
        assert first.data.refunds[0].state == RefundState.PROCESSING

        second = RefundService.request_refund(fully_paid_booking, 7000, "", "refund-2")

        assert second.error_code == ReasonCode.AMOUNT_MISMATCH
        assert second.details["refundable_cents"] == 6000

    def test_failed_refunds_free_their_amount(self, fully_paid_booking, fake_adapter):
        fake_adapter.fail_with("initiate_refund", InvalidRequestError("Refund window closed"))
        RefundService.request_refund(fully_paid_booking, 10000, "", "refund-1")

        retry = RefundService.request_refund(fully_paid_booking, 10000, "", "refund-2")

        assert retry.success
        assert retry.data.total_cents == 10000


# =============================================================================
# Slicing and replay
# =============================================================================


@pytest.mark.django_db
class TestRefundSlicing:
    def test_single_charge_refund(self, fully_paid_booking, fake_adapter, user):
        result = RefundService.request_refund(
            fully_paid_booking, 4000, "Client cancelled", "refund-1", requested_by=user
        )

        assert result.success
        (refund,) = result.data.refunds
        assert refund.amount_cents == 4000
        assert refund.currency == "USD"
        assert refund.requested_by == user
        assert refund.request_key == "refund-1"
        assert refund.processor_refund_ref == "fake_re_1"

        _, call = fake_adapter.calls[0]
        assert call["idempotency_key"] == IdempotencyKeyGenerator.generate(
            "refund", "refund-1", refund.payment_transaction_id
        )
        assert call["metadata"]["refund_id"] == str(refund.pk)

    def test_newest_charge_is_refunded_first(self, split_paid_booking, fake_adapter):
        result = RefundService.request_refund(split_paid_booking, 9000, "", "refund-1")

        slices = [(r.payment_transaction.stage, r.amount_cents) for r in result.data.refunds]
        assert slices == [(PaymentStage.BALANCE, 8000), (PaymentStage.DEPOSIT, 1000)]
        assert result.data.total_cents == 9000
        assert fake_adapter.count("initiate_refund") == 2

    def test_slices_skip_charges_already_refunded(self, split_paid_booking, fake_adapter):
        RefundService.request_refund(split_paid_booking, 8000, "", "refund-1")

        result = RefundService.request_refund(split_paid_booking, 2000, "", "refund-2")

        (refund,) = result.data.refunds
        assert refund.payment_transaction.stage == PaymentStage.DEPOSIT

    def test_replay_returns_original_refunds(self, fully_paid_booking, fake_adapter):
        first = RefundService.request_refund(fully_paid_booking, 4000, "", "refund-1")
        second = RefundService.request_refund(fully_paid_booking, 4000, "", "refund-1")

        assert second.data.replayed is True
        assert [r.pk for r in second.data.refunds] == [r.pk for r in first.data.refunds]
        assert Refund.objects.count() == 1
        assert fake_adapter.count("initiate_refund") == 1

    def test_key_cannot_move_to_another_booking(self, fully_paid_booking, fake_adapter, user):
        RefundService.request_refund(fully_paid_booking, 4000, "", "refund-1")
        other = BookingFactory(
            client=user,
            payment_status=BookingPaymentStatus.FULLY_PAID,
            amount_paid_cents=10000,
        )

        result = RefundService.request_refund(other, 4000, "", "refund-1")

        assert result.error_code == ReasonCode.INVALID_REQUEST

    def test_request_bumps_booking_version(self, fully_paid_booking, fake_adapter):
        before = stored(fully_paid_booking).version

        RefundService.request_refund(fully_paid_booking, 1000, "", "refund-1")

        assert stored(fully_paid_booking).version > before


# =============================================================================
# Processor answers
# =============================================================================


@pytest.mark.django_db
class TestRefundSubmission:
    def test_immediate_full_refund(self, fully_paid_booking, fake_adapter):
        fake_adapter.refund_status = STATUS_SUCCEEDED

        result = RefundService.request_refund(fully_paid_booking, 10000, "", "refund-1")

        assert result.data.refunds[0].state == RefundState.SUCCEEDED
        booking = stored(fully_paid_booking)
        assert booking.payment_status == BookingPaymentStatus.REFUNDED
        assert booking.amount_refunded_cents == 10000

    def test_immediate_partial_refund(self, fully_paid_booking, fake_adapter):
        fake_adapter.refund_status = STATUS_SUCCEEDED

        RefundService.request_refund(fully_paid_booking, 4000, "", "refund-1")

        booking = stored(fully_paid_booking)
        assert booking.payment_status == BookingPaymentStatus.PARTIALLY_REFUNDED
        assert booking.refundable_cents == 6000

    def test_already_refunded_counts_as_success(self, fully_paid_booking, fake_adapter):
        fake_adapter.fail_with("initiate_refund", AlreadyRefundedError("Charge already refunded"))

        result = RefundService.request_refund(fully_paid_booking, 10000, "", "refund-1")

        assert result.data.refunds[0].state == RefundState.SUCCEEDED
        assert stored(fully_paid_booking).payment_status == BookingPaymentStatus.REFUNDED

    def test_rejected_refund_keeps_reason(self, fully_paid_booking, fake_adapter):
        fake_adapter.fail_with("initiate_refund", InvalidRequestError("Refund window closed"))

        result = RefundService.request_refund(fully_paid_booking, 4000, "", "refund-1")

        refund = result.data.refunds[0]
        assert refund.state == RefundState.FAILED
        assert refund.failure_reason == "Refund window closed"
        assert stored(fully_paid_booking).payment_status == BookingPaymentStatus.FULLY_PAID

    def test_unavailable_processor_leaves_refund_pending(self, settings, fully_paid_booking, fake_adapter):
        settings.PROCESSOR_MAX_ATTEMPTS = 1
        fake_adapter.fail_with("initiate_refund", ProcessorUnavailableError("down"))

        result = RefundService.request_refund(fully_paid_booking, 4000, "", "refund-1")

        refund = result.data.refunds[0]
        assert refund.state == RefundState.PENDING
        assert refund.processor_refund_ref is None


# =============================================================================
# Terminal transitions
# =============================================================================


@pytest.mark.django_db
class TestRefundTransitions:
    def test_mark_succeeded_from_pending(self):
        refund = RefundFactory(amount_cents=10000)

        succeeded = RefundService.mark_succeeded(refund, processor_refund_ref="re_late")

        assert succeeded.state == RefundState.SUCCEEDED
        assert succeeded.processor_refund_ref == "re_late"
        assert stored(refund.booking).payment_status == BookingPaymentStatus.REFUNDED

    def test_mark_succeeded_is_idempotent(self):
        refund = RefundFactory(amount_cents=4000)
        RefundService.mark_succeeded(refund)

        again = RefundService.mark_succeeded(refund)

        assert again.state == RefundState.SUCCEEDED
        assert stored(refund.booking).amount_refunded_cents == 4000

    def test_failed_refund_cannot_succeed(self):
        refund = RefundFactory()
        RefundService.mark_failed(refund, "Account closed")

        with pytest.raises(InvalidStateTransitionError):
            RefundService.mark_succeeded(refund)

        assert Refund.objects.get(pk=refund.pk).failure_reason == "Account closed"

    def test_succeeded_refund_cannot_fail(self):
        refund = RefundFactory()
        RefundService.mark_succeeded(refund)

        with pytest.raises(InvalidStateTransitionError):
            RefundService.mark_failed(refund, "late failure")


# =============================================================================
# Reconciliation support
# =============================================================================


@pytest.mark.django_db
class TestResumePending:
    def test_idempotent_processor_is_resubmitted(self, fake_adapter):
        refund = RefundFactory()

        result = RefundService.resume_pending(refund)

        assert result.success
        assert result.data.state == RefundState.PROCESSING
        _, call = fake_adapter.calls[0]
        assert call["idempotency_key"] == refund.idempotency_key

    def test_non_idempotent_processor_is_flagged(self, fake_paystack):
        booking = BookingFactory(
            paystack=True,
            payment_status=BookingPaymentStatus.FULLY_PAID,
            amount_paid_cents=10000,
        )
        charge = PaymentTransactionFactory(booking=booking, stage=PaymentStage.FULL, verified=True)
        refund = RefundFactory(booking=booking, payment_transaction=charge)

        result = RefundService.resume_pending(refund)

        assert result.error_code == ReasonCode.NEEDS_REVIEW
        assert Refund.objects.get(pk=refund.pk).needs_review is True
        assert fake_paystack.count("initiate_refund") == 0

    def test_settled_refund_is_left_alone(self, fake_adapter):
        refund = RefundFactory(state=RefundState.SUCCEEDED)

        result = RefundService.resume_pending(refund)

        assert result.success
        assert fake_adapter.count("initiate_refund") == 0


@pytest.mark.django_db
class TestCancellationRefund:
    def test_provider_cancellation_refunds_everything(self, fully_paid_booking):
        assert RefundService.calculate_cancellation_refund(
            fully_paid_booking, CANCELLED_BY_PROVIDER
        ) == 10000

    def test_client_cancellation_before_confirmation(self, deposit_paid_booking):
        assert RefundService.calculate_cancellation_refund(
            deposit_paid_booking, CANCELLED_BY_CLIENT
        ) == 2000

    def test_client_cancellation_after_confirmation(self, user):
        booking = BookingFactory(
            client=user,
            payment_status=BookingPaymentStatus.FULLY_PAID,
            amount_paid_cents=10000,
            confirmed_at=timezone.now(),
        )

        assert RefundService.calculate_cancellation_refund(booking, CANCELLED_BY_CLIENT) == 0
        assert RefundService.calculate_cancellation_refund(booking, CANCELLED_BY_PROVIDER) == 10000

    def test_unknown_party(self, fully_paid_booking):
        with pytest.raises(ValueError):
            RefundService.calculate_cancellation_refund(fully_paid_booking, "platform")
