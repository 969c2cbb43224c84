"""
Tests for payment models.

Covers the django-fsm transitions of every payment entity, the database
constraints that back the business invariants, and TrialPolicy resolution.
"""

import pytest
from django.core.exceptions import ValidationError
from django.db import IntegrityError, transaction
from django_fsm import TransitionNotAllowed

from payments.models import Booking, IdempotencyRecord, PaymentTransaction, TrialPolicy
from payments.state_machines import (
    BookingPaymentStatus,
    IdempotencyKind,
    IdempotencyStatus,
    PaymentStage,
    RefundState,
    SubscriptionStatus,
    SubscriptionTier,
    TransactionStatus,
)
from payments.tests.factories import (
    BookingFactory,
    PaymentTransactionFactory,
    RefundFactory,
    SubscriptionFactory,
    TrialPolicyFactory,
)


# =============================================================================
# Booking
# =============================================================================


@pytest.mark.django_db
class TestBooking:
    def test_new_booking_awaits_deposit(self):
        booking = BookingFactory()

        assert booking.payment_status == BookingPaymentStatus.AWAITING_DEPOSIT
        assert booking.amount_paid_cents == 0
        assert booking.balance_due_cents == 10000
        assert booking.refundable_cents == 0
        assert booking.is_confirmed is False

    def test_currency_is_upper_cased(self):
        booking = BookingFactory(currency="usd")

        assert Booking.objects.get(pk=booking.pk).currency == "USD"

    def test_currency_cannot_change_after_creation(self):
        booking = Booking.objects.get(pk=BookingFactory().pk)
        booking.currency = "EUR"

        with pytest.raises(ValidationError):
            booking.save()

    def test_deposit_then_balance(self):
        booking = BookingFactory()

        booking.mark_deposit_paid(2000)
        booking.save()
        assert booking.payment_status == BookingPaymentStatus.DEPOSIT_PAID
        assert booking.balance_due_cents == 8000

        booking.mark_fully_paid(8000)
        booking.save()
        assert booking.payment_status == BookingPaymentStatus.FULLY_PAID
        assert booking.amount_paid_cents == 10000
        assert booking.deposit_paid_at is not None
        assert booking.fully_paid_at is not None

    def test_paid_in_full_skips_deposit_state(self):
        booking = BookingFactory()

        booking.mark_paid_in_full(10000)

        assert booking.payment_status == BookingPaymentStatus.FULLY_PAID
        assert booking.deposit_paid_at == booking.fully_paid_at

    def test_balance_cannot_be_paid_before_deposit(self):
        booking = BookingFactory()

        with pytest.raises(TransitionNotAllowed):
            booking.mark_fully_paid(8000)

    def test_refund_transitions(self):
        booking = BookingFactory(
            payment_status=BookingPaymentStatus.FULLY_PAID,
            amount_paid_cents=10000,
        )

        booking.mark_partially_refunded(4000)
        assert booking.payment_status == BookingPaymentStatus.PARTIALLY_REFUNDED
        assert booking.refundable_cents == 6000

        booking.mark_refunded(10000)
        assert booking.payment_status == BookingPaymentStatus.REFUNDED
        assert booking.refunded_at is not None

    def test_refunded_is_terminal(self):
        booking = BookingFactory(
            payment_status=BookingPaymentStatus.REFUNDED,
            amount_paid_cents=10000,
            amount_refunded_cents=10000,
        )

        with pytest.raises(TransitionNotAllowed):
            booking.mark_partially_refunded(5000)

    def test_status_field_is_protected(self):
        booking = BookingFactory()

        with pytest.raises(AttributeError):
            booking.payment_status = BookingPaymentStatus.FULLY_PAID

    def test_deposit_must_not_exceed_total(self):
        with pytest.raises(IntegrityError), transaction.atomic():
            BookingFactory(deposit_amount_cents=20000, total_amount_cents=10000)

    def test_refunds_cannot_exceed_paid(self):
        with pytest.raises(IntegrityError), transaction.atomic():
            BookingFactory(
                payment_status=BookingPaymentStatus.FULLY_PAID,
                amount_paid_cents=10000,
                amount_refunded_cents=10001,
            )


# =============================================================================
# PaymentTransaction
# =============================================================================


@pytest.mark.django_db
class TestPaymentTransaction:
    def test_verify_records_payment_method(self):
        txn = PaymentTransactionFactory()

        txn.verify("pm_card_visa")

        assert txn.status == TransactionStatus.VERIFIED
        assert txn.verified_at is not None
        assert txn.payment_method_ref == "pm_card_visa"

    def test_fail_keeps_reason_code(self):
        txn = PaymentTransactionFactory()

        txn.fail("PAYMENT_DECLINED", "Card declined")

        assert txn.status == TransactionStatus.FAILED
        assert txn.failure_reason_code == "PAYMENT_DECLINED"
        assert txn.failure_message == "Card declined"

    def test_terminal_states_do_not_transition(self):
        verified = PaymentTransactionFactory(verified=True)
        failed = PaymentTransactionFactory(status=TransactionStatus.FAILED)

        with pytest.raises(TransitionNotAllowed):
            verified.fail("PAYMENT_DECLINED")
        with pytest.raises(TransitionNotAllowed):
            failed.verify()

    def test_must_belong_to_exactly_one_owner(self):
        booking = BookingFactory()

        with pytest.raises(IntegrityError), transaction.atomic():
            PaymentTransaction.objects.create(
                processor=booking.processor,
                processor_reference="pi_orphan",
                idempotency_key="orphan",
                stage=PaymentStage.DEPOSIT,
                amount_cents=2000,
                currency="USD",
            )

    def test_one_verified_charge_per_stage(self):
        booking = BookingFactory()
        PaymentTransactionFactory(booking=booking, verified=True)

        with pytest.raises(IntegrityError), transaction.atomic():
            PaymentTransactionFactory(booking=booking, verified=True)

    def test_failed_attempts_may_repeat_a_stage(self):
        booking = BookingFactory()
        PaymentTransactionFactory(booking=booking, status=TransactionStatus.FAILED)
        PaymentTransactionFactory(booking=booking, status=TransactionStatus.FAILED)

        assert booking.transactions.count() == 2

    def test_processor_reference_is_unique_per_processor(self):
        PaymentTransactionFactory(processor_reference="pi_same")

        with pytest.raises(IntegrityError), transaction.atomic():
            PaymentTransactionFactory(processor_reference="pi_same")


# =============================================================================
# Refund
# =============================================================================


@pytest.mark.django_db
class TestRefund:
    def test_pending_to_succeeded(self):
        refund = RefundFactory()

        refund.start_processing("re_123")
        assert refund.state == RefundState.PROCESSING
        assert refund.processor_refund_ref == "re_123"

        refund.succeed()
        assert refund.state == RefundState.SUCCEEDED
        assert refund.is_terminal is True

    def test_failure_keeps_reason_and_is_terminal(self):
        refund = RefundFactory()

        refund.fail("Insufficient balance on merchant account")

        assert refund.state == RefundState.FAILED
        assert refund.failure_reason == "Insufficient balance on merchant account"
        with pytest.raises(TransitionNotAllowed):
            refund.start_processing()

    def test_pending_cannot_succeed_directly(self):
        refund = RefundFactory()

        with pytest.raises(TransitionNotAllowed):
            refund.succeed()


# =============================================================================
# Subscription
# =============================================================================


@pytest.mark.django_db
class TestSubscription:
    def test_activate_from_trial(self):
        subscription = SubscriptionFactory()

        subscription.activate("pm_saved")

        assert subscription.status == SubscriptionStatus.ACTIVE
        assert subscription.payment_method_ref == "pm_saved"
        assert subscription.activated_at is not None

    def test_past_due_only_from_trial(self):
        subscription = SubscriptionFactory()
        subscription.mark_past_due()
        assert subscription.status == SubscriptionStatus.PAST_DUE

        with pytest.raises(TransitionNotAllowed):
            subscription.mark_past_due()

        subscription.activate()
        assert subscription.status == SubscriptionStatus.ACTIVE

    def test_cancel_records_reason(self):
        subscription = SubscriptionFactory()

        subscription.cancel("payment_not_received")

        assert subscription.status == SubscriptionStatus.CANCELED
        assert subscription.cancel_reason == "payment_not_received"
        with pytest.raises(TransitionNotAllowed):
            subscription.activate()

    def test_cannot_trial_without_trial_enabled(self):
        with pytest.raises(IntegrityError), transaction.atomic():
            SubscriptionFactory(trial_enabled=False, trial_end=None)


# =============================================================================
# TrialPolicy
# =============================================================================


@pytest.mark.django_db
class TestTrialPolicyResolve:
    def test_defaults_come_from_settings(self, settings):
        settings.TRIAL_DURATION_DAYS = 60
        settings.TRIAL_GRACE_DAYS = 0
        settings.TRIAL_CANCEL_GRACE_DAYS = 7

        policy = TrialPolicy.resolve("NA", SubscriptionTier.SOLO)

        assert policy.trial_enabled is True
        assert policy.trial_duration_days == 60
        assert policy.grace_days == 0
        assert policy.cancel_grace_days == 7
        assert policy.source == "settings"

    def test_most_specific_row_wins(self):
        TrialPolicyFactory(tier=SubscriptionTier.SALON, trial_duration_days=30)
        TrialPolicyFactory(region_code="GH", trial_duration_days=45)
        exact = TrialPolicyFactory(
            region_code="GH", tier=SubscriptionTier.SALON, trial_enabled=False
        )

        policy = TrialPolicy.resolve("GH", SubscriptionTier.SALON)

        assert policy.trial_enabled is False
        assert policy.source == f"policy:{exact.pk}"

    def test_region_row_beats_tier_row(self):
        TrialPolicyFactory(tier=SubscriptionTier.SOLO, trial_duration_days=30)
        TrialPolicyFactory(region_code="NG", trial_duration_days=14)

        assert TrialPolicy.resolve("NG", SubscriptionTier.SOLO).trial_duration_days == 14
        assert TrialPolicy.resolve("EU", SubscriptionTier.SOLO).trial_duration_days == 30

    def test_duration_must_stay_within_a_year(self):
        with pytest.raises(IntegrityError), transaction.atomic():
            TrialPolicyFactory(region_code="EU", trial_duration_days=366)


# =============================================================================
# IdempotencyRecord
# =============================================================================


@pytest.mark.django_db
class TestIdempotencyRecord:
    def test_retry_after_failure_counts(self):
        record = IdempotencyRecord.objects.create(key="stripe:evt_1", kind=IdempotencyKind.WEBHOOK)

        record.start_processing()
        assert record.retry_count == 0

        record.fail("PaymentNotFoundError: not stored yet")
        record.start_processing()
        assert record.status == IdempotencyStatus.PROCESSING
        assert record.retry_count == 1

    def test_completed_is_terminal(self):
        record = IdempotencyRecord.objects.create(key="stripe:evt_2", kind=IdempotencyKind.WEBHOOK)
        record.complete({"status": "applied"})

        assert record.is_completed is True
        assert record.error_message is None
        with pytest.raises(TransitionNotAllowed):
            record.start_processing()
