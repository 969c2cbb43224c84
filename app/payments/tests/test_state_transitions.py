"""
Tests for booking payment transitions driven by verified processor results.

PaymentStateMachine applies charges and refunds as version compare-and-set
writes; BookingService creates the financial record a booking starts from.
"""

from unittest.mock import patch

import pytest

from payments.exceptions import (
    AmountMismatchError,
    InvalidStateTransitionError,
    StaleRecordError,
    TransitionConflictError,
)
from payments.locks import save_with_version_check
from payments.models import Booking, PaymentTransaction
from payments.reason_codes import ReasonCode
from payments.services import BookingService, PaymentStateMachine
from payments.state_machines import (
    BookingPaymentStatus,
    PaymentStage,
    Processor,
    RefundState,
    TransactionStatus,
)
from payments.tests.factories import (
    BookingFactory,
    PaymentTransactionFactory,
    RefundFactory,
)


# =============================================================================
# BookingService
# =============================================================================


@pytest.mark.django_db
class TestCreateBooking:
    def test_region_fixes_currency_and_processor(self, user):
        result = BookingService.create_booking(
            region_code="NG",
            deposit_amount_cents=500000,
            total_amount_cents=2000000,
            customer_ref="client@example.com",
            client=user,
        )

        assert result.success
        booking = result.data
        assert booking.region_code == "NG"
        assert booking.currency == "NGN"
        assert booking.processor == Processor.PAYSTACK
        assert booking.payment_status == BookingPaymentStatus.AWAITING_DEPOSIT
        assert booking.client == user

    @pytest.mark.parametrize(
        "deposit,total",
        [(0, 10000), (20000, 10000), (2000, 0), (-1, 10000)],
    )
    def test_invalid_amounts(self, deposit, total):
        result = BookingService.create_booking(
            region_code="US",
            deposit_amount_cents=deposit,
            total_amount_cents=total,
            customer_ref="client@example.com",
        )

        assert not result.success
        assert result.error_code == ReasonCode.INVALID_REQUEST
        assert Booking.objects.count() == 0

    def test_customer_reference_is_required(self):
        result = BookingService.create_booking("US", 2000, 10000, customer_ref="")

        assert result.error_code == ReasonCode.INVALID_REQUEST

    def test_confirm_keeps_first_timestamp(self, booking):
        confirmed = BookingService.confirm_booking(booking)
        first = confirmed.confirmed_at

        again = BookingService.confirm_booking(booking)

        assert first is not None
        assert again.confirmed_at == first
        assert Booking.objects.get(pk=booking.pk).is_confirmed


# =============================================================================
# Charges
# =============================================================================


@pytest.mark.django_db
class TestApplyCharge:
    def test_deposit_then_balance(self, booking):
        deposit = PaymentTransactionFactory(booking=booking, stage=PaymentStage.DEPOSIT)

        application = PaymentStateMachine.apply_charge(deposit, 2000, "USD", "pm_card")

        assert application.applied is True
        assert application.booking.payment_status == BookingPaymentStatus.DEPOSIT_PAID
        assert application.transaction.status == TransactionStatus.VERIFIED
        assert application.transaction.payment_method_ref == "pm_card"

        balance = PaymentTransactionFactory(
            booking=booking, stage=PaymentStage.BALANCE, amount_cents=8000
        )
        application = PaymentStateMachine.apply_charge(balance, 8000, "usd")

        booking = Booking.objects.get(pk=booking.pk)
        assert booking.payment_status == BookingPaymentStatus.FULLY_PAID
        assert booking.amount_paid_cents == 10000
        assert booking.balance_due_cents == 0

    def test_full_amount_pays_in_one_step(self, booking):
        txn = PaymentTransactionFactory(booking=booking, stage=PaymentStage.FULL)

        PaymentStateMachine.apply_charge(txn, 10000, "USD")

        booking = Booking.objects.get(pk=booking.pk)
        assert booking.payment_status == BookingPaymentStatus.FULLY_PAID
        assert booking.deposit_paid_at is not None

    def test_total_is_checked_before_deposit(self, user):
        booking = BookingFactory(client=user, deposit_amount_cents=10000)
        txn = PaymentTransactionFactory(booking=booking, stage=PaymentStage.DEPOSIT)

        PaymentStateMachine.apply_charge(txn, 10000, "USD")

        booking = Booking.objects.get(pk=booking.pk)
        assert booking.payment_status == BookingPaymentStatus.FULLY_PAID

    def test_replayed_charge_is_a_no_op(self, booking):
        txn = PaymentTransactionFactory(booking=booking)
        PaymentStateMachine.apply_charge(txn, 2000, "USD")

        application = PaymentStateMachine.apply_charge(txn, 2000, "USD")

        assert application.applied is False
        booking = Booking.objects.get(pk=booking.pk)
        assert booking.amount_paid_cents == 2000

    def test_wrong_amount_is_rejected(self, booking):
        txn = PaymentTransactionFactory(booking=booking)

        with pytest.raises(AmountMismatchError) as exc_info:
            PaymentStateMachine.apply_charge(txn, 1999, "USD")

        assert exc_info.value.details["deposit_amount_cents"] == 2000
        booking = Booking.objects.get(pk=booking.pk)
        assert booking.payment_status == BookingPaymentStatus.AWAITING_DEPOSIT
        assert PaymentTransaction.objects.get(pk=txn.pk).status == TransactionStatus.INITIATED

    def test_wrong_balance_is_rejected(self, deposit_paid_booking):
        txn = PaymentTransactionFactory(
            booking=deposit_paid_booking, stage=PaymentStage.BALANCE, amount_cents=5000
        )

        with pytest.raises(AmountMismatchError):
            PaymentStateMachine.apply_charge(txn, 5000, "USD")

    @pytest.mark.parametrize("stage", [PaymentStage.DEPOSIT, PaymentStage.FULL])
    def test_deposit_paid_booking_only_takes_the_balance_stage(self, user, stage):
        booking = BookingFactory(
            client=user,
            deposit_amount_cents=5000,
            payment_status=BookingPaymentStatus.DEPOSIT_PAID,
            amount_paid_cents=5000,
        )
        PaymentTransactionFactory(booking=booking, stage=PaymentStage.DEPOSIT, verified=True)
        txn = PaymentTransactionFactory(booking=booking, stage=stage, amount_cents=5000)

        with pytest.raises(InvalidStateTransitionError) as exc_info:
            PaymentStateMachine.apply_charge(txn, 5000, "USD")

        assert exc_info.value.details["stage"] == stage
        booking = Booking.objects.get(pk=booking.pk)
        assert booking.payment_status == BookingPaymentStatus.DEPOSIT_PAID
        assert PaymentTransaction.objects.get(pk=txn.pk).status == TransactionStatus.INITIATED

    def test_deposit_amount_on_another_stage_is_a_mismatch(self, booking):
        txn = PaymentTransactionFactory(
            booking=booking, stage=PaymentStage.BALANCE, amount_cents=2000
        )

        with pytest.raises(AmountMismatchError):
            PaymentStateMachine.apply_charge(txn, 2000, "USD")

        booking = Booking.objects.get(pk=booking.pk)
        assert booking.payment_status == BookingPaymentStatus.AWAITING_DEPOSIT

    def test_currency_mismatch(self, booking):
        txn = PaymentTransactionFactory(booking=booking)

        with pytest.raises(AmountMismatchError) as exc_info:
            PaymentStateMachine.apply_charge(txn, 2000, "EUR")

        assert exc_info.value.error_code == ReasonCode.CURRENCY_MISMATCH

    def test_fully_paid_booking_rejects_more_charges(self, fully_paid_booking):
        txn = PaymentTransactionFactory(
            booking=fully_paid_booking, stage=PaymentStage.BALANCE, amount_cents=100
        )

        with pytest.raises(InvalidStateTransitionError):
            PaymentStateMachine.apply_charge(txn, 100, "USD")

    def test_failed_transaction_cannot_be_verified(self, booking):
        txn = PaymentTransactionFactory(booking=booking, status=TransactionStatus.FAILED)

        with pytest.raises(InvalidStateTransitionError):
            PaymentStateMachine.apply_charge(txn, 2000, "USD")

    def test_conflict_is_retried_once(self, booking):
        txn = PaymentTransactionFactory(booking=booking)
        calls = []

        def flaky_save(instance, expected, fields):
            calls.append(instance)
            if len(calls) == 1:
                raise StaleRecordError("stale")
            return save_with_version_check(instance, expected, fields)

        with patch("payments.services.payment_state_machine.save_with_version_check", flaky_save):
            application = PaymentStateMachine.apply_charge(txn, 2000, "USD")

        assert application.booking.payment_status == BookingPaymentStatus.DEPOSIT_PAID

    def test_persistent_conflict_surfaces(self, booking):
        txn = PaymentTransactionFactory(booking=booking)

        with patch(
            "payments.services.payment_state_machine.save_with_version_check",
            side_effect=StaleRecordError("stale"),
        ):
            with pytest.raises(TransitionConflictError):
                PaymentStateMachine.apply_charge(txn, 2000, "USD")

        booking = Booking.objects.get(pk=booking.pk)
        assert booking.payment_status == BookingPaymentStatus.AWAITING_DEPOSIT


@pytest.mark.django_db
class TestInterleavedCharges:
    """
    Two different transactions racing for the same booking.

    The loser reads the booking before the winner commits and writes after
    it, so its first compare-and-set finds a newer version.
    """

    def apply_with_stale_reads(self, loser, *snapshots):
        """Apply ``loser``, serving ``snapshots`` to its first booking reads."""
        real_get = Booking.objects.get
        pending = list(snapshots)

        def get(*args, **kwargs):
            if pending:
                return pending.pop(0)
            return real_get(*args, **kwargs)

        with patch.object(Booking.objects, "get", side_effect=get):
            return PaymentStateMachine.apply_charge(loser, loser.amount_cents, "USD")

    @pytest.mark.parametrize("winner_stage", [PaymentStage.DEPOSIT, PaymentStage.FULL])
    def test_exactly_one_of_two_transactions_applies(self, booking, winner_stage):
        deposit = PaymentTransactionFactory(booking=booking, stage=PaymentStage.DEPOSIT)
        full = PaymentTransactionFactory(booking=booking, stage=PaymentStage.FULL)
        winner, loser = (deposit, full) if winner_stage == PaymentStage.DEPOSIT else (full, deposit)
        stale = Booking.objects.get(pk=booking.pk)
        start_version = stale.version

        won = PaymentStateMachine.apply_charge(winner, winner.amount_cents, "USD")
        with pytest.raises(InvalidStateTransitionError):
            self.apply_with_stale_reads(loser, stale)

        assert won.applied is True
        assert PaymentTransaction.objects.get(pk=winner.pk).status == TransactionStatus.VERIFIED
        assert PaymentTransaction.objects.get(pk=loser.pk).status == TransactionStatus.INITIATED
        booking = Booking.objects.get(pk=booking.pk)
        assert booking.amount_paid_cents == winner.amount_cents
        assert booking.version == start_version + 1

    def test_loser_that_keeps_losing_surfaces_a_conflict(self, booking):
        deposit = PaymentTransactionFactory(booking=booking, stage=PaymentStage.DEPOSIT)
        full = PaymentTransactionFactory(booking=booking, stage=PaymentStage.FULL)
        stale_reads = [Booking.objects.get(pk=booking.pk) for _ in range(2)]
        PaymentStateMachine.apply_charge(deposit, 2000, "USD")

        with pytest.raises(TransitionConflictError):
            self.apply_with_stale_reads(full, *stale_reads)

        booking = Booking.objects.get(pk=booking.pk)
        assert booking.payment_status == BookingPaymentStatus.DEPOSIT_PAID
        assert booking.amount_paid_cents == 2000
        assert PaymentTransaction.objects.get(pk=full.pk).status == TransactionStatus.INITIATED


@pytest.mark.django_db
class TestFailTransaction:
    def test_initiated_transaction_fails(self, booking):
        txn = PaymentTransactionFactory(booking=booking)

        failed = PaymentStateMachine.fail_transaction(
            txn, ReasonCode.PAYMENT_DECLINED, "Card declined"
        )

        assert failed.status == TransactionStatus.FAILED
        assert failed.failure_reason_code == ReasonCode.PAYMENT_DECLINED

    def test_late_failure_never_overrides_verified(self, booking):
        txn = PaymentTransactionFactory(booking=booking, verified=True)

        result = PaymentStateMachine.fail_transaction(txn, ReasonCode.PAYMENT_DECLINED)

        assert result.status == TransactionStatus.VERIFIED


# =============================================================================
# Refunds
# =============================================================================


@pytest.mark.django_db
class TestApplyRefund:
    def test_partial_then_full(self, fully_paid_booking):
        txn = fully_paid_booking.transactions.get()
        RefundFactory(
            booking=fully_paid_booking,
            payment_transaction=txn,
            amount_cents=4000,
            state=RefundState.SUCCEEDED,
        )

        booking = PaymentStateMachine.apply_refund(fully_paid_booking.pk)
        assert booking.payment_status == BookingPaymentStatus.PARTIALLY_REFUNDED
        assert booking.amount_refunded_cents == 4000

        RefundFactory(
            booking=fully_paid_booking,
            payment_transaction=txn,
            amount_cents=6000,
            state=RefundState.SUCCEEDED,
        )

        booking = PaymentStateMachine.apply_refund(fully_paid_booking.pk)
        assert booking.payment_status == BookingPaymentStatus.REFUNDED
        assert booking.refunded_at is not None

    def test_pending_refunds_are_not_counted(self, fully_paid_booking):
        RefundFactory(
            booking=fully_paid_booking,
            payment_transaction=fully_paid_booking.transactions.get(),
            amount_cents=4000,
        )

        booking = PaymentStateMachine.apply_refund(fully_paid_booking.pk)

        assert booking.payment_status == BookingPaymentStatus.FULLY_PAID

    def test_reapplying_is_idempotent(self, fully_paid_booking):
        RefundFactory(
            booking=fully_paid_booking,
            payment_transaction=fully_paid_booking.transactions.get(),
            amount_cents=4000,
            state=RefundState.SUCCEEDED,
        )
        first = PaymentStateMachine.apply_refund(fully_paid_booking.pk)

        second = PaymentStateMachine.apply_refund(fully_paid_booking.pk)

        assert second.version == first.version
        assert second.amount_refunded_cents == 4000

    def test_deposit_only_booking_refunds_against_captured(self, deposit_paid_booking):
        RefundFactory(
            booking=deposit_paid_booking,
            payment_transaction=deposit_paid_booking.transactions.get(),
            amount_cents=2000,
            state=RefundState.SUCCEEDED,
        )

        booking = PaymentStateMachine.apply_refund(deposit_paid_booking.pk)

        assert booking.payment_status == BookingPaymentStatus.REFUNDED

    def test_refunds_beyond_captured_are_rejected(self, deposit_paid_booking):
        RefundFactory(
            booking=deposit_paid_booking,
            payment_transaction=deposit_paid_booking.transactions.get(),
            amount_cents=2500,
            state=RefundState.SUCCEEDED,
        )

        with pytest.raises(AmountMismatchError):
            PaymentStateMachine.apply_refund(deposit_paid_booking.pk)

        deposit_paid_booking = Booking.objects.get(pk=deposit_paid_booking.pk)
        assert deposit_paid_booking.payment_status == BookingPaymentStatus.DEPOSIT_PAID
