"""
Booking model: the application-side record of what a client owes.

Booking calendar and availability are owned elsewhere; this model only keeps
the financial state of a booking consistent with its processor.

Usage:
    from payments.services import BookingService

    result = BookingService.create_booking(
        region_code="NG",
        deposit_amount_cents=500_000,
        total_amount_cents=2_000_000,
        customer_ref="customer@example.com",
    )
    booking = result.data

    # Transitions are applied by PaymentStateMachine, never directly
    booking.mark_deposit_paid(500_000)
"""

from __future__ import annotations

from django.conf import settings
from django.core.exceptions import ValidationError
from django.db import models
from django.utils import timezone

from django_fsm import FSMField, transition

from core.model_mixins import UUIDPrimaryKeyMixin, VersionedModelMixin
from core.models import BaseModel

from payments.state_machines import BookingPaymentStatus, Processor

_REFUNDABLE_SOURCES = [
    BookingPaymentStatus.DEPOSIT_PAID,
    BookingPaymentStatus.FULLY_PAID,
    BookingPaymentStatus.PARTIALLY_REFUNDED,
]


class Booking(UUIDPrimaryKeyMixin, VersionedModelMixin, BaseModel):
    """
    A client's booking with a service provider, as far as money is concerned.

    State Flow:
        AWAITING_DEPOSIT -> DEPOSIT_PAID -> FULLY_PAID
        AWAITING_DEPOSIT -> FULLY_PAID (full amount in one charge)
        DEPOSIT_PAID / FULLY_PAID / PARTIALLY_REFUNDED
            -> PARTIALLY_REFUNDED | REFUNDED

    Fields:
        region_code: Region the booking was created in (NA, EU, GH, NG)
        currency: ISO 4217 code, upper-case, fixed at creation
        processor: Processor chosen from the region at creation
        deposit_amount_cents: Deposit due first
        total_amount_cents: Full price of the booking
        amount_paid_cents: Verified charges applied so far
        amount_refunded_cents: Succeeded refunds applied so far
        payment_status: Current FSM state
        confirmed_at: When the provider confirmed the appointment
        version: Optimistic locking version

    Note:
        Bookings are never deleted. Foreign keys into this table PROTECT.
    """

    # ==========================================================================
    # Routing
    # ==========================================================================

    region_code = models.CharField(
        max_length=8,
        help_text="Region code used to route payments (NA, EU, GH, NG)",
    )

    currency = models.CharField(
        max_length=3,
        help_text="ISO 4217 currency code (upper-case), fixed at creation",
    )

    processor = models.CharField(
        max_length=20,
        choices=Processor.choices,
        help_text="Processor chosen at creation, never recomputed",
    )

    customer_ref = models.CharField(
        max_length=255,
        help_text="Customer identifier passed to the processor (email or id)",
    )

    client = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name="bookings",
        help_text="Client account that made the booking",
    )

    # ==========================================================================
    # Amounts (smallest currency unit)
    # ==========================================================================

    deposit_amount_cents = models.PositiveBigIntegerField(
        help_text="Deposit amount in smallest currency unit",
    )

    total_amount_cents = models.PositiveBigIntegerField(
        help_text="Total amount in smallest currency unit",
    )

    amount_paid_cents = models.PositiveBigIntegerField(
        default=0,
        help_text="Sum of verified charges applied to this booking",
    )

    amount_refunded_cents = models.PositiveBigIntegerField(
        default=0,
        help_text="Sum of succeeded refunds applied to this booking",
    )

    # ==========================================================================
    # State
    # ==========================================================================

    payment_status = FSMField(
        default=BookingPaymentStatus.AWAITING_DEPOSIT,
        choices=BookingPaymentStatus.choices,
        db_index=True,
        protected=True,
        help_text="Payment status (managed by FSM)",
    )

    confirmed_at = models.DateTimeField(
        null=True,
        blank=True,
        help_text="When the provider confirmed the appointment",
    )

    deposit_paid_at = models.DateTimeField(null=True, blank=True)
    fully_paid_at = models.DateTimeField(null=True, blank=True)
    refunded_at = models.DateTimeField(null=True, blank=True)

    metadata = models.JSONField(
        default=dict,
        blank=True,
        help_text="Arbitrary JSON metadata for extensibility",
    )

    # ==========================================================================
    # Meta & Methods
    # ==========================================================================

    class Meta:
        ordering = ["-created_at"]
        verbose_name = "Booking"
        verbose_name_plural = "Bookings"
        indexes = [
            models.Index(
                fields=["processor", "payment_status"],
                name="payments_bo_process_1c2e5a_idx",
            ),
        ]
        constraints = [
            models.CheckConstraint(
                condition=models.Q(total_amount_cents__gt=0),
                name="booking_total_positive",
            ),
            models.CheckConstraint(
                condition=models.Q(deposit_amount_cents__gt=0)
                & models.Q(deposit_amount_cents__lte=models.F("total_amount_cents")),
                name="booking_deposit_within_total",
            ),
            models.CheckConstraint(
                condition=models.Q(
                    amount_refunded_cents__lte=models.F("amount_paid_cents")
                ),
                name="booking_refunds_within_paid",
            ),
        ]

    def __str__(self) -> str:
        amount_display = f"{self.total_amount_cents / 100:.2f} {self.currency}"
        return f"Booking({self.id}, {self.payment_status}, {amount_display})"

    @classmethod
    def from_db(cls, db, field_names, values):
        instance = super().from_db(db, field_names, values)
        if "currency" in field_names:
            instance._loaded_currency = values[field_names.index("currency")]
        return instance

    def save(self, *args, **kwargs):
        """Normalize currency and refuse to change it after creation."""
        if self.currency:
            self.currency = self.currency.upper()
        loaded = getattr(self, "_loaded_currency", None)
        if loaded is not None and self.currency != loaded:
            raise ValidationError(
                {"currency": f"Currency is fixed at creation ({loaded})."}
            )
        super().save(*args, **kwargs)
        self._loaded_currency = self.currency

    # ==========================================================================
    # Derived amounts
    # ==========================================================================

    @property
    def balance_due_cents(self) -> int:
        return max(self.total_amount_cents - self.amount_paid_cents, 0)

    @property
    def refundable_cents(self) -> int:
        return max(self.amount_paid_cents - self.amount_refunded_cents, 0)

    @property
    def is_confirmed(self) -> bool:
        return self.confirmed_at is not None

    # ==========================================================================
    # State Transitions
    # ==========================================================================

    @transition(
        field=payment_status,
        source=BookingPaymentStatus.AWAITING_DEPOSIT,
        target=BookingPaymentStatus.DEPOSIT_PAID,
    )
    def mark_deposit_paid(self, amount_cents: int) -> None:
        """Record the deposit charge."""
        self.amount_paid_cents = amount_cents
        self.deposit_paid_at = timezone.now()

    @transition(
        field=payment_status,
        source=BookingPaymentStatus.DEPOSIT_PAID,
        target=BookingPaymentStatus.FULLY_PAID,
    )
    def mark_fully_paid(self, amount_cents: int) -> None:
        """Record the balance charge after the deposit."""
        self.amount_paid_cents = self.amount_paid_cents + amount_cents
        self.fully_paid_at = timezone.now()

    @transition(
        field=payment_status,
        source=BookingPaymentStatus.AWAITING_DEPOSIT,
        target=BookingPaymentStatus.FULLY_PAID,
    )
    def mark_paid_in_full(self, amount_cents: int) -> None:
        """Record a single charge covering the whole total."""
        now = timezone.now()
        self.amount_paid_cents = amount_cents
        self.deposit_paid_at = now
        self.fully_paid_at = now

    @transition(
        field=payment_status,
        source=_REFUNDABLE_SOURCES,
        target=BookingPaymentStatus.PARTIALLY_REFUNDED,
    )
    def mark_partially_refunded(self, refunded_cents: int) -> None:
        self.amount_refunded_cents = refunded_cents

    @transition(
        field=payment_status,
        source=_REFUNDABLE_SOURCES,
        target=BookingPaymentStatus.REFUNDED,
    )
    def mark_refunded(self, refunded_cents: int) -> None:
        self.amount_refunded_cents = refunded_cents
        self.refunded_at = timezone.now()
