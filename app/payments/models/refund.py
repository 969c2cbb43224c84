"""
Refund model for tracking money returned to a booking's client.

A Refund is always tied to the verified PaymentTransaction it returns money
from. A booking paid in two charges (deposit + balance) can therefore carry
several refunds, one per charge slice.

Usage:
    from payments.services import RefundService

    result = RefundService.request_refund(
        booking=booking,
        amount_cents=4000,
        reason="Client cancelled",
        idempotency_key="refund_booking_123_1",
    )

    # State transitions using django-fsm (RefundService drives these)
    refund.start_processing("re_123")  # PENDING -> PROCESSING
    refund.succeed()  # PROCESSING -> SUCCEEDED
"""

from __future__ import annotations

from django.conf import settings
from django.db import models
from django.utils import timezone

from django_fsm import FSMField, transition

from core.model_mixins import UUIDPrimaryKeyMixin, VersionedModelMixin
from core.models import BaseModel

from payments.state_machines import RefundState

IN_FLIGHT_REFUND_STATES = [RefundState.PENDING, RefundState.PROCESSING]


class Refund(UUIDPrimaryKeyMixin, VersionedModelMixin, BaseModel):
    """
    Represents money returned to a client.

    State Flow:
        PENDING -> PROCESSING -> SUCCEEDED
        PENDING -> FAILED (processor rejected the request)
        PROCESSING -> FAILED (processor reported failure)

    FAILED and SUCCEEDED are terminal: a retry is a new Refund.

    Fields:
        booking: Booking being refunded
        payment_transaction: Verified charge the money comes back from
        amount_cents / currency: Refund amount
        state: Current FSM state
        reason: Requester-facing reason
        failure_reason: Processor/engine reason when FAILED
        processor_refund_ref: Processor refund id (re_xxx, Paystack refund id)
        idempotency_key: Key sent to the processor
        needs_review: Could not be completed automatically
    """

    # ==========================================================================
    # Relationships
    # ==========================================================================

    booking = models.ForeignKey(
        "payments.Booking",
        on_delete=models.PROTECT,
        related_name="refunds",
        help_text="Booking being refunded",
    )

    payment_transaction = models.ForeignKey(
        "payments.PaymentTransaction",
        on_delete=models.PROTECT,
        related_name="refunds",
        help_text="Verified charge being refunded",
    )

    requested_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="requested_refunds",
    )

    # ==========================================================================
    # Amount & Currency
    # ==========================================================================

    amount_cents = models.PositiveBigIntegerField(
        help_text="Refund amount in smallest currency unit",
    )

    currency = models.CharField(max_length=3)

    reason = models.CharField(
        max_length=255,
        null=True,
        blank=True,
        help_text="Reason for the refund (visible to the requester)",
    )

    # ==========================================================================
    # State
    # ==========================================================================

    state = FSMField(
        default=RefundState.PENDING,
        choices=RefundState.choices,
        db_index=True,
        protected=True,
        help_text="Current state of the refund (managed by FSM)",
    )

    processor_refund_ref = models.CharField(
        max_length=255,
        null=True,
        blank=True,
        unique=True,
        help_text="Processor refund identifier",
    )

    idempotency_key = models.CharField(
        max_length=255,
        unique=True,
        help_text="Idempotency key sent with the processor refund request",
    )

    request_key = models.CharField(
        max_length=255,
        db_index=True,
        help_text="Caller key of the refund request this slice belongs to",
    )

    processing_at = models.DateTimeField(null=True, blank=True)
    succeeded_at = models.DateTimeField(null=True, blank=True)
    failed_at = models.DateTimeField(null=True, blank=True)

    failure_reason = models.TextField(
        null=True,
        blank=True,
        help_text="Reason the refund failed",
    )

    needs_review = models.BooleanField(default=False, db_index=True)

    metadata = models.JSONField(default=dict, blank=True)

    # ==========================================================================
    # Meta & Methods
    # ==========================================================================

    class Meta:
        ordering = ["-created_at"]
        verbose_name = "Refund"
        verbose_name_plural = "Refunds"
        indexes = [
            models.Index(
                fields=["booking", "state"],
                name="payments_re_booking_0f4b72_idx",
            ),
            models.Index(
                fields=["state", "created_at"],
                name="payments_re_state_6c91ad_idx",
            ),
        ]
        constraints = [
            models.CheckConstraint(
                condition=models.Q(amount_cents__gt=0),
                name="refund_amount_positive",
            ),
        ]

    def __str__(self) -> str:
        amount_display = f"{self.amount_cents / 100:.2f} {self.currency}"
        return f"Refund({self.id}, {self.state}, {amount_display})"

    @property
    def is_terminal(self) -> bool:
        return self.state in (RefundState.SUCCEEDED, RefundState.FAILED)

    # ==========================================================================
    # State Transitions
    # ==========================================================================

    @transition(
        field=state,
        source=RefundState.PENDING,
        target=RefundState.PROCESSING,
    )
    def start_processing(self, processor_refund_ref: str | None = None) -> None:
        """The processor accepted the refund request."""
        self.processing_at = timezone.now()
        if processor_refund_ref:
            self.processor_refund_ref = processor_refund_ref

    @transition(
        field=state,
        source=RefundState.PROCESSING,
        target=RefundState.SUCCEEDED,
    )
    def succeed(self) -> None:
        self.succeeded_at = timezone.now()

    @transition(
        field=state,
        source=[RefundState.PENDING, RefundState.PROCESSING],
        target=RefundState.FAILED,
    )
    def fail(self, reason: str) -> None:
        self.failed_at = timezone.now()
        self.failure_reason = reason
