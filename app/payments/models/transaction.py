"""
PaymentTransaction model: one processor-side charge attempt.

A transaction is created exactly once per idempotency key by ChargeService
and belongs either to a Booking (deposit/balance/full stages) or to a
Subscription (trial-end and activation charges).

Usage:
    from payments.models import PaymentTransaction
    from payments.state_machines import PaymentStage, TransactionStatus

    txn = PaymentTransaction.objects.create(
        booking=booking,
        processor=booking.processor,
        idempotency_key="booking_123_deposit",
        stage=PaymentStage.DEPOSIT,
        amount_cents=2000,
        currency="USD",
    )

    # After the processor reports success
    txn.verify()
"""

from __future__ import annotations

from django.db import models
from django.utils import timezone

from django_fsm import FSMField, transition

from core.model_mixins import UUIDPrimaryKeyMixin, VersionedModelMixin
from core.models import BaseModel

from payments.state_machines import PaymentStage, Processor, TransactionStatus


class PaymentTransaction(UUIDPrimaryKeyMixin, VersionedModelMixin, BaseModel):
    """
    A single charge attempt against a processor.

    State Flow:
        INITIATED -> VERIFIED
        INITIATED -> FAILED

    Fields:
        booking / subscription: Owning entity (exactly one is set)
        processor: Processor the charge was sent to
        processor_reference: Processor's transaction id (PaymentIntent id,
            Paystack reference); unique per processor
        idempotency_key: Caller-supplied key, one transaction per key
        stage: Which part of the price this charge collects
        amount_cents / currency: Expected charge
        status: Current FSM state
        client_action_token: Continuation token for the client (Stripe
            client_secret, Paystack authorization URL)
        failure_reason_code / failure_message: Stable code + processor text
        needs_review: Set when an event for this charge could not be applied
    """

    # ==========================================================================
    # Owner
    # ==========================================================================

    booking = models.ForeignKey(
        "payments.Booking",
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name="transactions",
    )

    subscription = models.ForeignKey(
        "payments.Subscription",
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name="transactions",
    )

    # ==========================================================================
    # Processor
    # ==========================================================================

    processor = models.CharField(
        max_length=20,
        choices=Processor.choices,
    )

    processor_reference = models.CharField(
        max_length=255,
        null=True,
        blank=True,
        db_index=True,
        help_text="Processor transaction reference",
    )

    idempotency_key = models.CharField(
        max_length=255,
        unique=True,
        help_text="Caller idempotency key (one transaction per key)",
    )

    client_action_token = models.TextField(
        null=True,
        blank=True,
        help_text="Token or URL the client uses to complete the charge",
    )

    # ==========================================================================
    # Amount & Stage
    # ==========================================================================

    stage = models.CharField(
        max_length=20,
        choices=PaymentStage.choices,
    )

    amount_cents = models.PositiveBigIntegerField(
        help_text="Expected charge amount in smallest currency unit",
    )

    currency = models.CharField(max_length=3)

    # ==========================================================================
    # State
    # ==========================================================================

    status = FSMField(
        default=TransactionStatus.INITIATED,
        choices=TransactionStatus.choices,
        db_index=True,
        protected=True,
    )

    verified_at = models.DateTimeField(null=True, blank=True)
    failed_at = models.DateTimeField(null=True, blank=True)

    failure_reason_code = models.CharField(max_length=50, null=True, blank=True)
    failure_message = models.TextField(null=True, blank=True)

    payment_method_ref = models.CharField(
        max_length=255,
        null=True,
        blank=True,
        help_text="Reusable payment method reported on verification",
    )

    needs_review = models.BooleanField(
        default=False,
        db_index=True,
        help_text="An event for this charge could not be applied automatically",
    )

    metadata = models.JSONField(default=dict, blank=True)

    # ==========================================================================
    # Meta & Methods
    # ==========================================================================

    class Meta:
        ordering = ["-created_at"]
        verbose_name = "Payment Transaction"
        verbose_name_plural = "Payment Transactions"
        indexes = [
            models.Index(
                fields=["status", "created_at"],
                name="payments_pa_status_8a3c10_idx",
            ),
            models.Index(
                fields=["booking", "status"],
                name="payments_pa_booking_5d2e94_idx",
            ),
        ]
        constraints = [
            models.CheckConstraint(
                condition=(
                    models.Q(booking__isnull=False, subscription__isnull=True)
                    | models.Q(booking__isnull=True, subscription__isnull=False)
                ),
                name="transaction_single_owner",
            ),
            models.CheckConstraint(
                condition=models.Q(amount_cents__gt=0),
                name="transaction_amount_positive",
            ),
            models.UniqueConstraint(
                fields=["processor", "processor_reference"],
                name="transaction_unique_processor_reference",
            ),
            models.UniqueConstraint(
                fields=["booking", "stage"],
                condition=models.Q(status=TransactionStatus.VERIFIED),
                name="transaction_one_verified_per_stage",
            ),
        ]

    def __str__(self) -> str:
        return (
            f"PaymentTransaction({self.id}, {self.stage}, {self.status}, "
            f"{self.amount_cents} {self.currency})"
        )

    @property
    def owner_type(self) -> str:
        return "booking" if self.booking_id else "subscription"

    @transition(
        field=status,
        source=TransactionStatus.INITIATED,
        target=TransactionStatus.VERIFIED,
    )
    def verify(self, payment_method_ref: str | None = None) -> None:
        """Mark the charge verified by the processor."""
        self.verified_at = timezone.now()
        if payment_method_ref:
            self.payment_method_ref = payment_method_ref

    @transition(
        field=status,
        source=TransactionStatus.INITIATED,
        target=TransactionStatus.FAILED,
    )
    def fail(self, reason_code: str, message: str = "") -> None:
        """Mark the charge failed with a stable reason code."""
        self.failed_at = timezone.now()
        self.failure_reason_code = reason_code
        self.failure_message = message or None
