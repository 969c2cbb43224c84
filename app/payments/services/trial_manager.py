"""
Subscription trial manager.

Provider plans start with a free trial when the resolved TrialPolicy enables
one: no payment method is collected and no processor call is made. At trial
end the engine charges the plan price once (idempotency key
``subscription_<id>_trial_end``) and activates only when that charge is
verified. Without a verified charge the subscription goes past_due after the
grace period and is cancelled after the cancel grace period. Ahead of the
trial end the provider is warned once per TRIAL_WARNING_DAYS entry.

When the policy disables trials, a subscription starts active only against a
payment the processor reports as succeeded.

Usage:
    from payments.services import TrialManager

    result = TrialManager.start_subscription(
        owner=request.user,
        tier=SubscriptionTier.SOLO,
        region_code="GH",
        customer_ref="provider@example.com",
    )

    # celery-beat, daily
    sweep = TrialManager.check_trials()
"""

from __future__ import annotations

import math
from dataclasses import asdict, dataclass
from datetime import timedelta
from typing import TYPE_CHECKING

from django.conf import settings
from django.db import IntegrityError
from django.utils import timezone
from django_fsm import can_proceed

from core.services import BaseService, ServiceResult

from payments.adapters import (
    STATUS_FAILED,
    STATUS_SUCCEEDED,
    call_with_retry,
    get_adapter,
    resolve_region,
)
from payments.exceptions import (
    AmountMismatchError,
    DeclinedError,
    InvalidRequestError,
    InvalidStateTransitionError,
    ProcessorUnavailableError,
)
from payments.ledger import OutcomeStatus, build_outcome, ledger
from payments.locks import retry_on_conflict, save_with_version_check
from payments.models import PaymentTransaction, Subscription, TrialPolicy
from payments.notifications import notify_trial_charge_required, notify_trial_ending_soon
from payments.reason_codes import ReasonCode
from payments.services.payment_state_machine import PaymentStateMachine
from payments.state_machines import (
    IdempotencyKind,
    PaymentStage,
    SubscriptionStatus,
    TransactionStatus,
)

if TYPE_CHECKING:
    from datetime import datetime

    from django.contrib.auth.models import AbstractBaseUser


CANCEL_REASON_PAYMENT_NOT_RECEIVED = "payment_not_received"

_ACTIVATE_FIELDS = ["status", "activated_at", "payment_method_ref"]
_PAST_DUE_FIELDS = ["status", "past_due_at"]
_CANCEL_FIELDS = ["status", "canceled_at", "cancel_reason"]


def trial_end_charge_key(subscription: Subscription) -> str:
    return f"subscription_{subscription.pk}_trial_end"


def trial_warning_key(subscription: Subscription, warning_day: int) -> str:
    return f"subscription_{subscription.pk}_trial_warning_{warning_day}d"


def plan_price_cents(currency: str, tier: str) -> int:
    """
    Plan price from the fixed per-currency price list.

    Raises:
        KeyError: No price for this currency and tier
    """
    return settings.SUBSCRIPTION_TIER_PRICES[currency][tier]


def trial_warning_due(days_left: int, warning_days: list[int]) -> int | None:
    """
    The warning a trial ``days_left`` from its end is owed.

    Picks the nearest configured day at or above ``days_left`` so a missed
    sweep sends one catch-up warning instead of several.
    """
    eligible = [day for day in warning_days if day >= days_left]
    return min(eligible) if eligible else None


@dataclass
class TrialSweepResult:
    """Counters from one check_trials run."""

    warnings_sent: int = 0
    charges_initiated: int = 0
    activated: int = 0
    past_due: int = 0
    canceled: int = 0
    errors: int = 0

    def as_dict(self) -> dict[str, int]:
        return asdict(self)


class TrialManager(BaseService):
    """Subscription lifecycle around the free trial."""

    @classmethod
    def start_subscription(
        cls,
        owner: AbstractBaseUser,
        tier: str,
        region_code: str,
        customer_ref: str,
        verification_ref: str | None = None,
    ) -> ServiceResult[Subscription]:
        """
        Start a provider subscription.

        Args:
            owner: Provider account
            tier: SubscriptionTier value
            region_code: Region or ISO country code
            customer_ref: Processor customer reference or e-mail
            verification_ref: Processor transaction proving a payment, required
                when the resolved policy has trials disabled

        Returns:
            ServiceResult with the Subscription. Failure codes:
            INVALID_REQUEST, PAYMENT_METHOD_REQUIRED, PAYMENT_METHOD_UNVERIFIED,
            PROCESSOR_UNAVAILABLE
        """
        logger = cls.get_logger()
        region = resolve_region(region_code)
        try:
            price_cents = plan_price_cents(region.currency, tier)
        except KeyError:
            return ServiceResult.failure(
                f"No {tier} plan priced in {region.currency}",
                error_code=ReasonCode.INVALID_REQUEST,
            )

        policy = TrialPolicy.resolve(region.code, tier)
        base_fields = {
            "owner": owner,
            "tier": tier,
            "region_code": region.code,
            "processor": region.processor,
            "currency": region.currency,
            "price_cents": price_cents,
            "customer_ref": customer_ref,
            "trial_enabled": policy.trial_enabled,
        }

        if policy.trial_enabled:
            subscription = Subscription.objects.create(
                **base_fields,
                trial_duration_days=policy.trial_duration_days,
                trial_end=timezone.now() + timedelta(days=policy.trial_duration_days),
                status=SubscriptionStatus.TRIALING,
            )
            logger.info(
                "Subscription trial started",
                extra={
                    "subscription_id": str(subscription.pk),
                    "trial_end": subscription.trial_end.isoformat(),
                    "policy_source": policy.source,
                },
            )
            return ServiceResult.success(subscription)

        if not verification_ref:
            return ServiceResult.failure(
                "A verified payment is required for this plan",
                error_code=ReasonCode.PAYMENT_METHOD_REQUIRED,
            )

        adapter = get_adapter(region.processor)
        try:
            verification = call_with_retry(
                lambda: adapter.verify_transaction(verification_ref),
                label="verify_subscription_payment",
            )
        except ProcessorUnavailableError as e:
            return ServiceResult.from_exception(e)
        except InvalidRequestError:
            return ServiceResult.failure(
                "Payment could not be verified",
                error_code=ReasonCode.PAYMENT_METHOD_UNVERIFIED,
            )

        if (
            verification.status != STATUS_SUCCEEDED
            or verification.currency != region.currency
            or verification.amount_cents <= 0
        ):
            return ServiceResult.failure(
                "Payment could not be verified",
                error_code=ReasonCode.PAYMENT_METHOD_UNVERIFIED,
                details={"processor_status": verification.status},
            )

        now = timezone.now()
        try:
            with cls.atomic():
                subscription = Subscription.objects.create(
                    **base_fields,
                    status=SubscriptionStatus.ACTIVE,
                    activated_at=now,
                    payment_method_ref=verification.payment_method_ref,
                )
                PaymentTransaction.objects.create(
                    subscription=subscription,
                    processor=region.processor,
                    processor_reference=verification.reference,
                    idempotency_key=f"subscription_{subscription.pk}_activation",
                    stage=PaymentStage.SUBSCRIPTION,
                    amount_cents=verification.amount_cents,
                    currency=verification.currency,
                    status=TransactionStatus.VERIFIED,
                    verified_at=now,
                    payment_method_ref=verification.payment_method_ref,
                )
        except IntegrityError:
            return ServiceResult.failure(
                "Payment was already used to start a subscription",
                error_code=ReasonCode.INVALID_REQUEST,
            )

        logger.info(
            "Subscription started without trial",
            extra={
                "subscription_id": str(subscription.pk),
                "verification_ref": verification_ref,
            },
        )
        return ServiceResult.success(subscription)

    # =========================================================================
    # Scheduled sweep
    # =========================================================================

    @classmethod
    def check_trials(cls, now: datetime | None = None) -> TrialSweepResult:
        """
        Warn about ending trials, advance due trials and past-due subscriptions.

        For each trialing subscription whose trial has ended:
            - a verified charge at or after trial_end activates it
            - otherwise the trial-end charge is initiated once
            - past trial_end + grace_days without a verified charge it goes
              past_due
        Past-due subscriptions retry a trial-end charge that never reached the
        processor and are cancelled after cancel_grace_days.
        """
        now = now or timezone.now()
        result = TrialSweepResult()
        logger = cls.get_logger()

        past_due = Subscription.objects.filter(
            status=SubscriptionStatus.PAST_DUE,
        ).order_by("past_due_at")
        for subscription in past_due:
            try:
                cls._advance_past_due(subscription, now, result)
            except Exception:
                result.errors += 1
                logger.exception(
                    "Failed to advance past-due subscription",
                    extra={"subscription_id": str(subscription.pk)},
                )

        warning_days = settings.TRIAL_WARNING_DAYS
        if warning_days:
            ending = Subscription.objects.filter(
                status=SubscriptionStatus.TRIALING,
                trial_end__gt=now,
                trial_end__lte=now + timedelta(days=max(warning_days)),
            ).order_by("trial_end")
            for subscription in ending:
                try:
                    if cls._warn_trial_ending(subscription, now, warning_days):
                        result.warnings_sent += 1
                except Exception:
                    result.errors += 1
                    logger.exception(
                        "Failed to warn about trial end",
                        extra={"subscription_id": str(subscription.pk)},
                    )

        due = Subscription.objects.filter(
            status=SubscriptionStatus.TRIALING,
            trial_end__lte=now,
        ).order_by("trial_end")
        for subscription in due:
            try:
                cls._advance_trial(subscription, now, result)
            except Exception:
                result.errors += 1
                logger.exception(
                    "Failed to advance trial",
                    extra={"subscription_id": str(subscription.pk)},
                )

        logger.info("Trial sweep completed", extra=result.as_dict())
        return result

    @classmethod
    def _warn_trial_ending(
        cls,
        subscription: Subscription,
        now: datetime,
        warning_days: list[int],
    ) -> bool:
        """
        Send the trial-ending warning owed today, once per warning day.

        Returns:
            True if a warning was scheduled in this run
        """
        days_left = math.ceil((subscription.trial_end - now) / timedelta(days=1))
        warning = trial_warning_due(days_left, warning_days)
        if warning is None:
            return False

        with cls.atomic():
            reservation = ledger.reserve(
                key=trial_warning_key(subscription, warning),
                kind=IdempotencyKind.OUTBOUND,
                processor=subscription.processor,
                event_type="trial.ending_soon",
            )
            if not reservation.created:
                return False
            notify_trial_ending_soon(subscription, days_left)
            ledger.complete(
                reservation.record,
                build_outcome(OutcomeStatus.APPLIED, days_left=days_left),
            )
        return True

    @classmethod
    def _advance_trial(
        cls,
        subscription: Subscription,
        now: datetime,
        result: TrialSweepResult,
    ) -> None:
        if cls._has_due_verified_charge(subscription):
            cls.on_charge_verified(subscription)
            result.activated += 1
            return

        if cls._initiate_trial_end_charge(subscription):
            result.charges_initiated += 1

        current = Subscription.objects.get(pk=subscription.pk)
        if current.status == SubscriptionStatus.ACTIVE:
            result.activated += 1
            return

        policy = TrialPolicy.resolve(current.region_code, current.tier)
        if now >= current.trial_end + timedelta(days=policy.grace_days):
            cls._transition(current, "mark_past_due", _PAST_DUE_FIELDS)
            result.past_due += 1
            cls.get_logger().info(
                "Subscription past due",
                extra={"subscription_id": str(current.pk)},
            )

    @classmethod
    def _advance_past_due(
        cls,
        subscription: Subscription,
        now: datetime,
        result: TrialSweepResult,
    ) -> None:
        if cls._has_due_verified_charge(subscription):
            cls.on_charge_verified(subscription)
            result.activated += 1
            return

        # A charge deferred by a processor outage is still owed
        if cls._initiate_trial_end_charge(subscription):
            result.charges_initiated += 1
            subscription = Subscription.objects.get(pk=subscription.pk)
            if subscription.status == SubscriptionStatus.ACTIVE:
                result.activated += 1
                return

        policy = TrialPolicy.resolve(subscription.region_code, subscription.tier)
        past_due_since = subscription.past_due_at or subscription.trial_end
        if now >= past_due_since + timedelta(days=policy.cancel_grace_days):
            cls._transition(
                subscription,
                "cancel",
                _CANCEL_FIELDS,
                CANCEL_REASON_PAYMENT_NOT_RECEIVED,
            )
            result.canceled += 1
            cls.get_logger().info(
                "Subscription canceled, payment not received",
                extra={"subscription_id": str(subscription.pk)},
            )

    @staticmethod
    def _has_due_verified_charge(subscription: Subscription) -> bool:
        charges = subscription.transactions.filter(status=TransactionStatus.VERIFIED)
        if subscription.trial_end is not None:
            charges = charges.filter(verified_at__gte=subscription.trial_end)
        return charges.exists()

    @classmethod
    def _initiate_trial_end_charge(cls, subscription: Subscription) -> bool:
        """
        Initiate the trial-end charge unless it was already submitted.

        Returns:
            True if the processor was called in this run
        """
        logger = cls.get_logger()
        key = trial_end_charge_key(subscription)
        adapter = get_adapter(subscription.processor)
        txn, _ = PaymentTransaction.objects.get_or_create(
            idempotency_key=key,
            defaults={
                "subscription": subscription,
                "processor": subscription.processor,
                "processor_reference": adapter.preassigned_reference(key),
                "stage": PaymentStage.SUBSCRIPTION,
                "amount_cents": subscription.price_cents,
                "currency": subscription.currency,
            },
        )
        if txn.status != TransactionStatus.INITIATED or txn.metadata.get("submitted_at"):
            return False

        log_context = {
            "subscription_id": str(subscription.pk),
            "transaction_id": str(txn.pk),
            "processor": subscription.processor,
        }
        try:
            charge = call_with_retry(
                lambda: adapter.initiate_charge(
                    amount_cents=txn.amount_cents,
                    currency=txn.currency,
                    customer_ref=subscription.customer_ref,
                    idempotency_key=key,
                    metadata={
                        "subscription_id": str(subscription.pk),
                        "transaction_id": str(txn.pk),
                        "charge_type": "trial_end",
                    },
                    payment_method_ref=subscription.payment_method_ref,
                ),
                label="trial_end_charge",
            )
        except (DeclinedError, InvalidRequestError) as e:
            PaymentStateMachine.fail_transaction(txn, e.error_code, e.message)
            logger.warning(
                "Trial-end charge rejected",
                extra={**log_context, "error_code": e.error_code},
            )
            return True
        except ProcessorUnavailableError as e:
            logger.warning(
                "Trial-end charge deferred, processor unavailable",
                extra={**log_context, "error_code": e.error_code},
            )
            return False

        expected = txn.version
        txn.processor_reference = charge.transaction_ref
        txn.client_action_token = charge.client_action_token
        txn.metadata = {**txn.metadata, "submitted_at": timezone.now().isoformat()}
        save_with_version_check(
            txn, expected, ["processor_reference", "client_action_token", "metadata"]
        )
        logger.info("Trial-end charge initiated", extra=log_context)

        if charge.status == STATUS_SUCCEEDED:
            cls.apply_charge(txn, txn.amount_cents, txn.currency)
        elif charge.status == STATUS_FAILED:
            PaymentStateMachine.fail_transaction(
                txn, ReasonCode.PAYMENT_DECLINED, charge.failure_reason or ""
            )
        else:
            notify_trial_charge_required(subscription, txn)
        return True

    # =========================================================================
    # Event path
    # =========================================================================

    @classmethod
    def apply_charge(
        cls,
        transaction: PaymentTransaction,
        amount_cents: int,
        currency: str,
        payment_method_ref: str | None = None,
    ) -> Subscription:
        """
        Verify a subscription charge and activate the subscription if due.

        Raises:
            AmountMismatchError: Amount or currency differs from the charge
            InvalidStateTransitionError: The charge had already failed
        """
        transaction_id = transaction.pk

        def attempt() -> PaymentTransaction:
            with cls.atomic():
                txn = PaymentTransaction.objects.get(pk=transaction_id)
                if txn.status == TransactionStatus.VERIFIED:
                    return txn
                if txn.status == TransactionStatus.FAILED:
                    raise InvalidStateTransitionError(
                        "Transaction already failed; a success report needs review",
                        details={"transaction_id": str(txn.pk)},
                    )
                if amount_cents != txn.amount_cents or currency.upper() != txn.currency:
                    raise AmountMismatchError(
                        "Subscription charge does not match the plan price",
                        error_code=(
                            ReasonCode.CURRENCY_MISMATCH
                            if currency.upper() != txn.currency
                            else ReasonCode.AMOUNT_MISMATCH
                        ),
                        details={
                            "transaction_id": str(txn.pk),
                            "amount_cents": amount_cents,
                            "expected_cents": txn.amount_cents,
                        },
                    )
                expected = txn.version
                txn.verify(payment_method_ref)
                return save_with_version_check(
                    txn, expected, ["status", "verified_at", "payment_method_ref"]
                )

        txn = retry_on_conflict(attempt, label=f"transaction:{transaction_id}")
        return cls.on_charge_verified(txn.subscription)

    @classmethod
    def on_charge_verified(cls, subscription: Subscription) -> Subscription:
        """
        Activate a trialing or past-due subscription whose trial has ended.

        Charges verified before trial_end leave the trial running; the sweep
        activates it once the trial is over.
        """
        subscription_id = subscription.pk

        def attempt() -> Subscription:
            with cls.atomic():
                current = Subscription.objects.get(pk=subscription_id)
                if current.status not in (SubscriptionStatus.TRIALING, SubscriptionStatus.PAST_DUE):
                    return current
                if current.trial_end is not None and timezone.now() < current.trial_end:
                    return current

                latest = (
                    current.transactions.filter(status=TransactionStatus.VERIFIED)
                    .order_by("-verified_at")
                    .first()
                )
                if latest is None:
                    return current

                expected = current.version
                current.activate(latest.payment_method_ref)
                save_with_version_check(current, expected, _ACTIVATE_FIELDS)
                cls.get_logger().info(
                    "Subscription activated",
                    extra={
                        "subscription_id": str(current.pk),
                        "transaction_id": str(latest.pk),
                    },
                )
                return current

        return retry_on_conflict(attempt, label=f"subscription:{subscription_id}")

    # =========================================================================
    # Cancellation
    # =========================================================================

    @classmethod
    def cancel(cls, subscription: Subscription, reason: str) -> ServiceResult[Subscription]:
        """Cancel a subscription explicitly. Cancelling twice is a no-op."""
        if subscription.status == SubscriptionStatus.CANCELED:
            return ServiceResult.success(subscription)
        canceled = cls._transition(subscription, "cancel", _CANCEL_FIELDS, reason or "canceled")
        cls.get_logger().info(
            "Subscription canceled",
            extra={"subscription_id": str(canceled.pk), "reason": canceled.cancel_reason},
        )
        return ServiceResult.success(canceled)

    @classmethod
    def _transition(
        cls,
        subscription: Subscription,
        method: str,
        fields: list[str],
        *args: str,
    ) -> Subscription:
        subscription_id = subscription.pk

        def attempt() -> Subscription:
            with cls.atomic():
                current = Subscription.objects.get(pk=subscription_id)
                transition_method = getattr(current, method)
                if not can_proceed(transition_method):
                    return current
                expected = current.version
                transition_method(*args)
                return save_with_version_check(current, expected, fields)

        return retry_on_conflict(attempt, label=f"subscription:{subscription_id}")
