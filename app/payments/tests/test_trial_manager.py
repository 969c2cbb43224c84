"""
Tests for TrialManager.

Covers subscription start (trial and no-trial plans), the scheduled trial
sweep (trial-end charge, activation, past due, cancellation) and the
event path that verifies subscription charges.
"""

from datetime import timedelta
from unittest.mock import patch

import pytest
from freezegun import freeze_time

from payments.adapters import STATUS_FAILED, STATUS_PENDING, STATUS_SUCCEEDED, set_adapter
from payments.exceptions import (
    AmountMismatchError,
    DeclinedError,
    InvalidStateTransitionError,
    ProcessorUnavailableError,
)
from payments.models import PaymentTransaction, Subscription
from payments.ledger import OutcomeStatus, ledger
from payments.notifications import trial_charge_required, trial_ending_soon
from payments.reason_codes import ReasonCode
from payments.services import TrialManager
from payments.services.trial_manager import (
    plan_price_cents,
    trial_end_charge_key,
    trial_warning_due,
    trial_warning_key,
)
from payments.state_machines import (
    PaymentStage,
    Processor,
    SubscriptionStatus,
    SubscriptionTier,
    TransactionStatus,
)
from payments.tests.factories import SubscriptionTransactionFactory, TrialPolicyFactory
from payments.tests.fakes import FakeAdapter


def stored(subscription) -> Subscription:
    return Subscription.objects.get(pk=subscription.pk)


def trial_charge(subscription) -> PaymentTransaction:
    return PaymentTransaction.objects.get(idempotency_key=trial_end_charge_key(subscription))


@pytest.fixture
def no_trial_policy(db):
    return TrialPolicyFactory(region_code="NA", trial_enabled=False)


# =============================================================================
# Starting a subscription
# =============================================================================


@pytest.mark.django_db
class TestStartSubscription:
    @freeze_time("2026-03-01 12:00:00")
    def test_trial_starts_without_payment(self, user, fake_adapter):
        result = TrialManager.start_subscription(
            owner=user,
            tier=SubscriptionTier.SOLO,
            region_code="US",
            customer_ref="provider@example.com",
        )

        assert result.success
        subscription = result.data
        assert subscription.status == SubscriptionStatus.TRIALING
        assert subscription.trial_enabled is True
        assert subscription.trial_duration_days == 60
        assert subscription.trial_end.isoformat() == "2026-04-30T12:00:00+00:00"
        assert subscription.price_cents == 1900
        assert subscription.currency == "USD"
        assert subscription.payment_method_ref is None
        assert fake_adapter.calls == []

    def test_region_selects_processor_and_price(self, user, fake_paystack):
        result = TrialManager.start_subscription(user, SubscriptionTier.SALON, "GH", "p@example.com")

        subscription = result.data
        assert subscription.processor == Processor.PAYSTACK
        assert subscription.currency == "GHS"
        assert subscription.price_cents == plan_price_cents("GHS", SubscriptionTier.SALON)

    def test_policy_sets_trial_length(self, user, fake_adapter):
        TrialPolicyFactory(region_code="EU", trial_duration_days=30)

        subscription = TrialManager.start_subscription(
            user, SubscriptionTier.SOLO, "DE", "p@example.com"
        ).data

        assert subscription.trial_duration_days == 30

    def test_unpriced_tier(self, user, fake_adapter):
        result = TrialManager.start_subscription(user, "enterprise", "US", "p@example.com")

        assert result.error_code == ReasonCode.INVALID_REQUEST

    def test_no_trial_requires_payment(self, user, fake_adapter, no_trial_policy):
        result = TrialManager.start_subscription(user, SubscriptionTier.SOLO, "US", "p@example.com")

        assert result.error_code == ReasonCode.PAYMENT_METHOD_REQUIRED
        assert Subscription.objects.count() == 0

    def test_no_trial_with_verified_payment(self, user, fake_adapter, no_trial_policy):
        fake_adapter.add_charge("pi_paid", 1900, "USD", payment_method_ref="pm_card")

        result = TrialManager.start_subscription(
            user, SubscriptionTier.SOLO, "US", "p@example.com", verification_ref="pi_paid"
        )

        subscription = result.data
        assert subscription.status == SubscriptionStatus.ACTIVE
        assert subscription.trial_enabled is False
        assert subscription.trial_end is None
        assert subscription.payment_method_ref == "pm_card"
        txn = subscription.transactions.get()
        assert txn.status == TransactionStatus.VERIFIED
        assert txn.stage == PaymentStage.SUBSCRIPTION
        assert txn.processor_reference == "pi_paid"

    @pytest.mark.parametrize(
        "status,currency",
        [(STATUS_PENDING, "USD"), (STATUS_FAILED, "USD"), (STATUS_SUCCEEDED, "EUR")],
    )
    def test_unverified_payment(self, user, fake_adapter, no_trial_policy, status, currency):
        fake_adapter.add_charge("pi_paid", 1900, currency, status=status)

        result = TrialManager.start_subscription(
            user, SubscriptionTier.SOLO, "US", "p@example.com", verification_ref="pi_paid"
        )

        assert result.error_code == ReasonCode.PAYMENT_METHOD_UNVERIFIED
        assert Subscription.objects.count() == 0

    def test_unknown_payment_reference(self, user, fake_adapter, no_trial_policy):
        result = TrialManager.start_subscription(
            user, SubscriptionTier.SOLO, "US", "p@example.com", verification_ref="pi_missing"
        )

        assert result.error_code == ReasonCode.PAYMENT_METHOD_UNVERIFIED

    def test_payment_cannot_start_two_subscriptions(self, user, fake_adapter, no_trial_policy):
        fake_adapter.add_charge("pi_paid", 1900, "USD")
        TrialManager.start_subscription(
            user, SubscriptionTier.SOLO, "US", "p@example.com", verification_ref="pi_paid"
        )

        again = TrialManager.start_subscription(
            user, SubscriptionTier.SOLO, "US", "p@example.com", verification_ref="pi_paid"
        )

        assert again.error_code == ReasonCode.INVALID_REQUEST
        assert Subscription.objects.count() == 1


# =============================================================================
# Trial sweep
# =============================================================================


@pytest.mark.django_db
class TestCheckTrials:
    def test_running_trials_are_left_alone(self, trialing_subscription, fake_adapter):
        result = TrialManager.check_trials()

        assert result.as_dict() == {
            "warnings_sent": 0,
            "charges_initiated": 0,
            "activated": 0,
            "past_due": 0,
            "canceled": 0,
            "errors": 0,
        }
        assert fake_adapter.calls == []

    def test_trial_end_charge_is_initiated_once(self, trialing_subscription, fake_adapter):
        with freeze_time(trialing_subscription.trial_end):
            first = TrialManager.check_trials()
            second = TrialManager.check_trials()

        assert first.charges_initiated == 1
        assert second.charges_initiated == 0
        assert fake_adapter.count("initiate_charge") == 1

        _, call = fake_adapter.calls[0]
        assert call["idempotency_key"] == f"subscription_{trialing_subscription.pk}_trial_end"
        assert call["amount_cents"] == 1900
        txn = trial_charge(trialing_subscription)
        assert txn.stage == PaymentStage.SUBSCRIPTION
        assert "submitted_at" in txn.metadata

    def test_successful_charge_activates(self, trialing_subscription):
        set_adapter(Processor.STRIPE, FakeAdapter(charge_status=STATUS_SUCCEEDED))

        with freeze_time(trialing_subscription.trial_end):
            result = TrialManager.check_trials()

        assert result.charges_initiated == 1
        assert result.activated == 1
        subscription = stored(trialing_subscription)
        assert subscription.status == SubscriptionStatus.ACTIVE
        assert subscription.activated_at is not None
        assert trial_charge(trialing_subscription).status == TransactionStatus.VERIFIED

    def test_pending_charge_notifies_provider(
        self, trialing_subscription, fake_adapter, django_capture_on_commit_callbacks
    ):
        received = []

        def receiver(sender, subscription, transaction, **kwargs):
            received.append((subscription.pk, transaction.client_action_token))

        trial_charge_required.connect(receiver)
        try:
            with django_capture_on_commit_callbacks(execute=True):
                with freeze_time(trialing_subscription.trial_end):
                    TrialManager.check_trials()
        finally:
            trial_charge_required.disconnect(receiver)

        txn = trial_charge(trialing_subscription)
        assert received == [(trialing_subscription.pk, txn.client_action_token)]

    def test_unpaid_trial_goes_past_due(self, trialing_subscription, fake_adapter):
        with freeze_time(trialing_subscription.trial_end):
            result = TrialManager.check_trials()

        assert result.past_due == 1
        subscription = stored(trialing_subscription)
        assert subscription.status == SubscriptionStatus.PAST_DUE
        assert subscription.past_due_at == subscription.trial_end

    def test_grace_days_delay_past_due(self, trialing_subscription, fake_adapter):
        TrialPolicyFactory(region_code="NA", grace_days=3)
        trial_end = trialing_subscription.trial_end

        with freeze_time(trial_end):
            TrialManager.check_trials()
        assert stored(trialing_subscription).status == SubscriptionStatus.TRIALING

        with freeze_time(trial_end + timedelta(days=3)):
            result = TrialManager.check_trials()

        assert result.past_due == 1
        assert fake_adapter.count("initiate_charge") == 1

    def test_past_due_is_canceled_after_cancel_grace(self, trialing_subscription, fake_adapter):
        trial_end = trialing_subscription.trial_end
        with freeze_time(trial_end):
            TrialManager.check_trials()

        with freeze_time(trial_end + timedelta(days=6)):
            assert TrialManager.check_trials().canceled == 0

        with freeze_time(trial_end + timedelta(days=7)):
            result = TrialManager.check_trials()

        assert result.canceled == 1
        subscription = stored(trialing_subscription)
        assert subscription.status == SubscriptionStatus.CANCELED
        assert subscription.cancel_reason == "payment_not_received"

    def test_late_payment_reactivates_past_due(self, trialing_subscription, fake_adapter):
        trial_end = trialing_subscription.trial_end
        with freeze_time(trial_end):
            TrialManager.check_trials()

        with freeze_time(trial_end + timedelta(days=2)):
            subscription = TrialManager.apply_charge(
                trial_charge(trialing_subscription), 1900, "USD", "pm_late"
            )

        assert subscription.status == SubscriptionStatus.ACTIVE
        assert subscription.payment_method_ref == "pm_late"

    def test_charge_deferred_by_outage_is_retried_while_past_due(
        self, trialing_subscription, fake_adapter
    ):
        fake_adapter.fail_with(
            "initiate_charge",
            *[ProcessorUnavailableError("down") for _ in range(3)],
        )
        trial_end = trialing_subscription.trial_end

        with freeze_time(trial_end):
            first = TrialManager.check_trials()

        assert first.charges_initiated == 0
        assert first.past_due == 1
        assert "submitted_at" not in trial_charge(trialing_subscription).metadata

        with freeze_time(trial_end + timedelta(days=1)):
            second = TrialManager.check_trials()

        assert second.charges_initiated == 1
        assert second.canceled == 0
        assert fake_adapter.count("initiate_charge") == 4
        assert "submitted_at" in trial_charge(trialing_subscription).metadata
        assert stored(trialing_subscription).status == SubscriptionStatus.PAST_DUE

    def test_declined_trial_charge(self, trialing_subscription, fake_adapter):
        fake_adapter.fail_with("initiate_charge", DeclinedError("Card declined"))

        with freeze_time(trialing_subscription.trial_end):
            result = TrialManager.check_trials()

        assert result.charges_initiated == 1
        assert result.past_due == 1
        assert trial_charge(trialing_subscription).status == TransactionStatus.FAILED

    def test_existing_verified_charge_activates_without_charging(
        self, trialing_subscription, fake_adapter
    ):
        trial_end = trialing_subscription.trial_end
        SubscriptionTransactionFactory(
            subscription=trialing_subscription,
            verified=True,
            verified_at=trial_end + timedelta(minutes=5),
        )

        with freeze_time(trial_end + timedelta(hours=1)):
            result = TrialManager.check_trials()

        assert result.activated == 1
        assert stored(trialing_subscription).status == SubscriptionStatus.ACTIVE
        assert fake_adapter.count("initiate_charge") == 0

    def test_one_failure_does_not_stop_the_sweep(self, trialing_subscription, fake_adapter):
        with patch.object(
            TrialManager, "_initiate_trial_end_charge", side_effect=RuntimeError("boom")
        ):
            with freeze_time(trialing_subscription.trial_end):
                result = TrialManager.check_trials()

        assert result.errors == 1
        assert stored(trialing_subscription).status == SubscriptionStatus.TRIALING


# =============================================================================
# Trial warnings
# =============================================================================


@pytest.mark.django_db
class TestTrialWarnings:
    @pytest.fixture
    def reminders(self):
        received = []

        def receiver(sender, subscription, days_left, **kwargs):
            received.append((subscription.pk, days_left))

        trial_ending_soon.connect(receiver)
        try:
            yield received
        finally:
            trial_ending_soon.disconnect(receiver)

    def sweep(self, django_capture_on_commit_callbacks, at):
        with django_capture_on_commit_callbacks(execute=True):
            with freeze_time(at):
                return TrialManager.check_trials()

    @pytest.mark.parametrize(
        "days_left,expected",
        [(60, None), (8, None), (7, 7), (5, 7), (3, 3), (2, 3), (1, 1), (0, 1)],
    )
    def test_warning_due(self, days_left, expected):
        assert trial_warning_due(days_left, [7, 3, 1]) == expected

    def test_each_warning_is_sent_once(
        self, trialing_subscription, fake_adapter, reminders, django_capture_on_commit_callbacks
    ):
        trial_end = trialing_subscription.trial_end

        first = self.sweep(django_capture_on_commit_callbacks, trial_end - timedelta(days=7))
        again = self.sweep(django_capture_on_commit_callbacks, trial_end - timedelta(days=6))
        self.sweep(django_capture_on_commit_callbacks, trial_end - timedelta(days=3))
        self.sweep(django_capture_on_commit_callbacks, trial_end - timedelta(hours=12))

        assert first.warnings_sent == 1
        assert again.warnings_sent == 0
        pk = trialing_subscription.pk
        assert reminders == [(pk, 7), (pk, 3), (pk, 1)]
        record = ledger.get(trial_warning_key(trialing_subscription, 3))
        assert record.outcome == {"status": OutcomeStatus.APPLIED, "days_left": 3}
        assert fake_adapter.calls == []
        assert stored(trialing_subscription).status == SubscriptionStatus.TRIALING

    def test_missed_sweeps_send_one_catch_up_warning(
        self, trialing_subscription, fake_adapter, reminders, django_capture_on_commit_callbacks
    ):
        trial_end = trialing_subscription.trial_end

        result = self.sweep(django_capture_on_commit_callbacks, trial_end - timedelta(days=2))

        assert result.warnings_sent == 1
        assert reminders == [(trialing_subscription.pk, 2)]
        assert ledger.get(trial_warning_key(trialing_subscription, 3)) is not None
        assert ledger.get(trial_warning_key(trialing_subscription, 7)) is None

    def test_active_subscriptions_are_not_warned(
        self, trialing_subscription, fake_adapter, reminders, django_capture_on_commit_callbacks
    ):
        trial_end = trialing_subscription.trial_end
        Subscription.objects.filter(pk=trialing_subscription.pk).update(
            status=SubscriptionStatus.ACTIVE
        )

        result = self.sweep(django_capture_on_commit_callbacks, trial_end - timedelta(days=1))

        assert result.warnings_sent == 0
        assert reminders == []

    def test_warnings_can_be_disabled(
        self,
        settings,
        trialing_subscription,
        fake_adapter,
        reminders,
        django_capture_on_commit_callbacks,
    ):
        settings.TRIAL_WARNING_DAYS = []

        result = self.sweep(
            django_capture_on_commit_callbacks,
            trialing_subscription.trial_end - timedelta(days=1),
        )

        assert result.warnings_sent == 0
        assert reminders == []


# =============================================================================
# Event path and cancellation
# =============================================================================


@pytest.mark.django_db
class TestApplyCharge:
    def test_charge_before_trial_end_keeps_trial_running(self, trialing_subscription):
        txn = SubscriptionTransactionFactory(subscription=trialing_subscription)

        subscription = TrialManager.apply_charge(txn, 1900, "USD")

        assert subscription.status == SubscriptionStatus.TRIALING
        assert PaymentTransaction.objects.get(pk=txn.pk).status == TransactionStatus.VERIFIED

    def test_wrong_amount(self, trialing_subscription):
        txn = SubscriptionTransactionFactory(subscription=trialing_subscription)

        with pytest.raises(AmountMismatchError):
            TrialManager.apply_charge(txn, 1000, "USD")

    def test_wrong_currency(self, trialing_subscription):
        txn = SubscriptionTransactionFactory(subscription=trialing_subscription)

        with pytest.raises(AmountMismatchError) as exc_info:
            TrialManager.apply_charge(txn, 1900, "EUR")

        assert exc_info.value.error_code == ReasonCode.CURRENCY_MISMATCH

    def test_failed_charge_cannot_be_verified(self, trialing_subscription):
        txn = SubscriptionTransactionFactory(
            subscription=trialing_subscription, status=TransactionStatus.FAILED
        )

        with pytest.raises(InvalidStateTransitionError):
            TrialManager.apply_charge(txn, 1900, "USD")


@pytest.mark.django_db
class TestCancel:
    def test_cancel_records_reason(self, trialing_subscription):
        result = TrialManager.cancel(trialing_subscription, "requested_by_owner")

        assert result.data.status == SubscriptionStatus.CANCELED
        assert result.data.cancel_reason == "requested_by_owner"

    def test_cancel_twice_is_a_no_op(self, trialing_subscription):
        first = TrialManager.cancel(trialing_subscription, "requested_by_owner").data

        second = TrialManager.cancel(first, "again")

        assert second.success
        assert stored(trialing_subscription).cancel_reason == "requested_by_owner"
