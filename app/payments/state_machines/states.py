"""
State enums for payment models.

This module defines all state enums used by payment models with django-fsm.
These are Django TextChoices for database storage and admin integration.

State Machines Overview:

Booking payment status:
    AWAITING_DEPOSIT → DEPOSIT_PAID → FULLY_PAID
    AWAITING_DEPOSIT → FULLY_PAID (full amount reported before the deposit)
    DEPOSIT_PAID/FULLY_PAID/PARTIALLY_REFUNDED → PARTIALLY_REFUNDED | REFUNDED

PaymentTransaction status:
    initiated → verified
    initiated → failed

Refund states:
    PENDING → PROCESSING → SUCCEEDED
    PENDING/PROCESSING → FAILED

Subscription status:
    trialing → active
    trialing → past_due → active | canceled
    active → canceled

Idempotency record status:
    reserved → processing → completed
    reserved/processing → failed → processing (retry)
"""

from django.db import models


class Processor(models.TextChoices):
    """
    Payment processors the engine can route to.

    STRIPE is the global card-network processor; PAYSTACK is the regional
    card + mobile-money processor.
    """

    STRIPE = "stripe", "Stripe"
    PAYSTACK = "paystack", "Paystack"


class BookingPaymentStatus(models.TextChoices):
    """
    Payment status of a Booking.

    Terminal with respect to forward progress: PARTIALLY_REFUNDED, REFUNDED.
    A refunded booking never re-enters FULLY_PAID.
    """

    AWAITING_DEPOSIT = "AWAITING_DEPOSIT", "Awaiting Deposit"
    DEPOSIT_PAID = "DEPOSIT_PAID", "Deposit Paid"
    FULLY_PAID = "FULLY_PAID", "Fully Paid"
    PARTIALLY_REFUNDED = "PARTIALLY_REFUNDED", "Partially Refunded"
    REFUNDED = "REFUNDED", "Refunded"


class PaymentStage(models.TextChoices):
    """Which part of the price a PaymentTransaction collects."""

    DEPOSIT = "deposit", "Deposit"
    BALANCE = "balance", "Balance"
    FULL = "full", "Full Amount"
    SUBSCRIPTION = "subscription", "Subscription"


class TransactionStatus(models.TextChoices):
    """
    Status of a processor-side charge attempt.

    Terminal states: VERIFIED, FAILED
    """

    INITIATED = "initiated", "Initiated"
    VERIFIED = "verified", "Verified"
    FAILED = "failed", "Failed"


class RefundState(models.TextChoices):
    """
    States for the Refund model lifecycle.

    PENDING is set before the processor is called, PROCESSING once the
    processor accepted the request.

    Terminal states: SUCCEEDED, FAILED
    """

    PENDING = "PENDING", "Pending"
    PROCESSING = "PROCESSING", "Processing"
    SUCCEEDED = "SUCCEEDED", "Succeeded"
    FAILED = "FAILED", "Failed"


class SubscriptionStatus(models.TextChoices):
    """
    States for the Subscription lifecycle.

    Terminal state: CANCELED
    """

    TRIALING = "trialing", "Trialing"
    ACTIVE = "active", "Active"
    PAST_DUE = "past_due", "Past Due"
    CANCELED = "canceled", "Canceled"


class SubscriptionTier(models.TextChoices):
    """Subscription plans offered to service providers."""

    SOLO = "solo", "Solo"
    SALON = "salon", "Salon"


class IdempotencyKind(models.TextChoices):
    """Where an idempotency key came from."""

    WEBHOOK = "webhook", "Inbound Webhook"
    OUTBOUND = "outbound", "Outbound Request"
    RECONCILE = "reconcile", "Reconciliation / Confirm"


class IdempotencyStatus(models.TextChoices):
    """
    Processing status of an idempotency record.

    COMPLETED records carry their outcome snapshot and are never reprocessed.
    """

    RESERVED = "reserved", "Reserved"
    PROCESSING = "processing", "Processing"
    COMPLETED = "completed", "Completed"
    FAILED = "failed", "Failed"


class NormalizedEventType(models.TextChoices):
    """Processor-agnostic event vocabulary produced by adapters."""

    CHARGE_SUCCEEDED = "charge.succeeded", "Charge Succeeded"
    CHARGE_FAILED = "charge.failed", "Charge Failed"
    REFUND_SUCCEEDED = "refund.succeeded", "Refund Succeeded"
    REFUND_FAILED = "refund.failed", "Refund Failed"


class ReconciliationRunStatus(models.TextChoices):
    """Status of a reconciliation sweep."""

    RUNNING = "running", "Running"
    COMPLETED = "completed", "Completed"
    FAILED = "failed", "Failed"
