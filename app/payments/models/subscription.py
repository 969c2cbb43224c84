"""
Subscription model for service-provider plans with optional free trials.

A trial subscription is created without contacting a processor. It becomes
active only after a verified charge at or after ``trial_end``; see
``payments.services.trial_manager.TrialManager``.

Usage:
    from payments.services import TrialManager

    result = TrialManager.start_subscription(
        owner=user,
        tier=SubscriptionTier.SOLO,
        region_code="GH",
        customer_ref=user.email,
    )
    subscription = result.data  # status == "trialing"
"""

from __future__ import annotations

from django.conf import settings
from django.db import models
from django.utils import timezone

from django_fsm import FSMField, transition

from core.model_mixins import UUIDPrimaryKeyMixin, VersionedModelMixin
from core.models import BaseModel

from payments.state_machines import Processor, SubscriptionStatus, SubscriptionTier


class Subscription(UUIDPrimaryKeyMixin, VersionedModelMixin, BaseModel):
    """
    A provider's plan subscription.

    State Flow:
        TRIALING -> ACTIVE (verified charge at or after trial_end)
        TRIALING -> PAST_DUE (no verified charge by trial_end + grace)
        PAST_DUE -> ACTIVE (late verified charge)
        PAST_DUE -> CANCELED (cancel grace elapsed)
        any non-canceled -> CANCELED (explicit cancellation)

    Fields:
        owner: Provider account paying for the plan
        tier: Plan tier
        region_code / processor / currency: Fixed at creation
        price_cents: Plan price from the fixed per-currency table
        trial_enabled / trial_duration_days / trial_end: Trial settings
            copied from the TrialPolicy at creation
        payment_method_ref: Reusable payment method once collected
        version: Optimistic locking version
    """

    # ==========================================================================
    # Owner & Plan
    # ==========================================================================

    owner = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.PROTECT,
        related_name="plan_subscriptions",
    )

    tier = models.CharField(
        max_length=20,
        choices=SubscriptionTier.choices,
    )

    region_code = models.CharField(max_length=8)

    processor = models.CharField(
        max_length=20,
        choices=Processor.choices,
    )

    currency = models.CharField(max_length=3)

    price_cents = models.PositiveBigIntegerField(
        help_text="Plan price in smallest currency unit",
    )

    customer_ref = models.CharField(max_length=255)

    payment_method_ref = models.CharField(
        max_length=255,
        null=True,
        blank=True,
        help_text="Processor-saved payment method, once collected",
    )

    # ==========================================================================
    # Trial
    # ==========================================================================

    trial_enabled = models.BooleanField()

    trial_duration_days = models.PositiveIntegerField(null=True, blank=True)

    trial_end = models.DateTimeField(
        null=True,
        blank=True,
        db_index=True,
    )

    # ==========================================================================
    # State
    # ==========================================================================

    status = FSMField(
        default=SubscriptionStatus.TRIALING,
        choices=SubscriptionStatus.choices,
        db_index=True,
        protected=True,
    )

    activated_at = models.DateTimeField(null=True, blank=True)
    past_due_at = models.DateTimeField(null=True, blank=True)
    canceled_at = models.DateTimeField(null=True, blank=True)

    cancel_reason = models.CharField(max_length=100, null=True, blank=True)

    metadata = models.JSONField(default=dict, blank=True)

    # ==========================================================================
    # Meta & Methods
    # ==========================================================================

    class Meta:
        ordering = ["-created_at"]
        verbose_name = "Subscription"
        verbose_name_plural = "Subscriptions"
        indexes = [
            models.Index(
                fields=["status", "trial_end"],
                name="payments_su_status_4b7d21_idx",
            ),
            models.Index(
                fields=["owner", "status"],
                name="payments_su_owner_i_9e0f63_idx",
            ),
        ]
        constraints = [
            models.CheckConstraint(
                condition=~models.Q(
                    trial_enabled=False, status=SubscriptionStatus.TRIALING
                ),
                name="subscription_no_trialing_without_trial",
            ),
            models.CheckConstraint(
                condition=models.Q(price_cents__gt=0),
                name="subscription_price_positive",
            ),
        ]

    def __str__(self) -> str:
        amount_display = f"{self.price_cents / 100:.2f} {self.currency}"
        return f"Subscription({self.id}, {self.tier}, {self.status}, {amount_display})"

    @property
    def is_trial_over(self) -> bool:
        return self.trial_end is not None and timezone.now() >= self.trial_end

    # ==========================================================================
    # State Transitions (django-fsm)
    # ==========================================================================

    @transition(
        field=status,
        source=[SubscriptionStatus.TRIALING, SubscriptionStatus.PAST_DUE],
        target=SubscriptionStatus.ACTIVE,
    )
    def activate(self, payment_method_ref: str | None = None) -> None:
        """Start the paid plan after a verified charge."""
        self.activated_at = timezone.now()
        if payment_method_ref:
            self.payment_method_ref = payment_method_ref

    @transition(
        field=status,
        source=SubscriptionStatus.TRIALING,
        target=SubscriptionStatus.PAST_DUE,
    )
    def mark_past_due(self) -> None:
        """The trial ended without a verified charge."""
        self.past_due_at = timezone.now()

    @transition(
        field=status,
        source=[
            SubscriptionStatus.TRIALING,
            SubscriptionStatus.ACTIVE,
            SubscriptionStatus.PAST_DUE,
        ],
        target=SubscriptionStatus.CANCELED,
    )
    def cancel(self, reason: str) -> None:
        self.canceled_at = timezone.now()
        self.cancel_reason = reason
