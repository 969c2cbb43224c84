"""
DRF serializers for the payments API.

This module provides serializers for:
- Booking payment status with its transactions and refunds
- Charge initiation and the client continuation token
- Refund requests and refund status (with the follow-up SLA when failed)
- Subscription start, status and cancellation

Serializer Hierarchy:
    BookingSerializer: Payment status, amounts, transactions, refunds
    PaymentTransactionSerializer: One charge attempt
    RefundSerializer: One refund slice

    BookingCreateSerializer / ChargeCreateSerializer / RefundCreateSerializer /
    SubscriptionCreateSerializer / SubscriptionCancelSerializer: Request bodies

Design Decisions:
    - Read and write serializers are separate
    - Monetary amounts are integer minor units (cents) everywhere
    - Processor secrets and raw responses are never serialized
"""

from __future__ import annotations

from django.conf import settings
from rest_framework import serializers

from payments.models import Booking, PaymentTransaction, Refund, Subscription
from payments.reason_codes import customer_message
from payments.services.refund_service import CANCELLED_BY_CLIENT, CANCELLED_BY_PROVIDER
from payments.state_machines import PaymentStage, RefundState, SubscriptionTier


# =============================================================================
# Read Serializers
# =============================================================================


class PaymentTransactionSerializer(serializers.ModelSerializer):
    """
    Charge attempt serializer.

    ``failure_message`` is the customer-facing text for the stored reason
    code, not the processor's raw message.
    """

    failure_message = serializers.SerializerMethodField()

    class Meta:
        model = PaymentTransaction
        fields = [
            "id",
            "booking",
            "subscription",
            "processor",
            "processor_reference",
            "stage",
            "amount_cents",
            "currency",
            "status",
            "client_action_token",
            "failure_reason_code",
            "failure_message",
            "verified_at",
            "failed_at",
            "created_at",
        ]
        read_only_fields = fields

    def get_failure_message(self, obj: PaymentTransaction) -> str | None:
        if not obj.failure_reason_code:
            return None
        return customer_message(obj.failure_reason_code)


class RefundSerializer(serializers.ModelSerializer):
    """
    Refund slice serializer.

    Failed refunds carry the stored failure reason and the number of hours
    within which support follows up.
    """

    follow_up_sla_hours = serializers.SerializerMethodField()

    class Meta:
        model = Refund
        fields = [
            "id",
            "booking",
            "payment_transaction",
            "amount_cents",
            "currency",
            "reason",
            "state",
            "failure_reason",
            "follow_up_sla_hours",
            "processing_at",
            "succeeded_at",
            "failed_at",
            "created_at",
        ]
        read_only_fields = fields

    def get_follow_up_sla_hours(self, obj: Refund) -> int | None:
        if obj.state != RefundState.FAILED:
            return None
        return settings.REFUND_FOLLOW_UP_SLA_HOURS


class BookingSerializer(serializers.ModelSerializer):
    """Booking payment status with amounts, charges and refunds."""

    balance_due_cents = serializers.IntegerField(read_only=True)
    refundable_cents = serializers.IntegerField(read_only=True)
    transactions = PaymentTransactionSerializer(many=True, read_only=True)
    refunds = RefundSerializer(many=True, read_only=True)

    class Meta:
        model = Booking
        fields = [
            "id",
            "region_code",
            "currency",
            "processor",
            "payment_status",
            "deposit_amount_cents",
            "total_amount_cents",
            "amount_paid_cents",
            "amount_refunded_cents",
            "balance_due_cents",
            "refundable_cents",
            "confirmed_at",
            "deposit_paid_at",
            "fully_paid_at",
            "refunded_at",
            "transactions",
            "refunds",
            "created_at",
        ]
        read_only_fields = fields


class SubscriptionSerializer(serializers.ModelSerializer):
    """Subscription status including the trial window."""

    class Meta:
        model = Subscription
        fields = [
            "id",
            "tier",
            "region_code",
            "processor",
            "currency",
            "price_cents",
            "trial_enabled",
            "trial_duration_days",
            "trial_end",
            "status",
            "activated_at",
            "past_due_at",
            "canceled_at",
            "cancel_reason",
            "created_at",
        ]
        read_only_fields = fields


# =============================================================================
# Request Serializers
# =============================================================================


class BookingCreateSerializer(serializers.Serializer):
    """Request body for registering a booking's financial record."""

    region_code = serializers.CharField(max_length=8)
    deposit_amount_cents = serializers.IntegerField(min_value=1)
    total_amount_cents = serializers.IntegerField(min_value=1)
    customer_ref = serializers.CharField(max_length=255)
    metadata = serializers.JSONField(required=False, default=dict)

    def validate(self, attrs: dict) -> dict:
        if attrs["deposit_amount_cents"] > attrs["total_amount_cents"]:
            raise serializers.ValidationError(
                {"deposit_amount_cents": "Deposit cannot exceed the total"}
            )
        return attrs


class ChargeCreateSerializer(serializers.Serializer):
    """Request body for initiating a booking charge."""

    stage = serializers.ChoiceField(
        choices=[PaymentStage.DEPOSIT, PaymentStage.BALANCE, PaymentStage.FULL],
    )
    idempotency_key = serializers.CharField(max_length=255)


class ChargeInitiationSerializer(serializers.Serializer):
    """Response body for a charge initiation."""

    transaction = PaymentTransactionSerializer(read_only=True)
    client_action_token = serializers.CharField(read_only=True, allow_null=True)
    replayed = serializers.BooleanField(read_only=True)


class RefundCreateSerializer(serializers.Serializer):
    """Request body for a refund request."""

    amount_cents = serializers.IntegerField(min_value=1)
    reason = serializers.CharField(max_length=255, required=False, allow_blank=True, default="")
    idempotency_key = serializers.CharField(max_length=255)


class BookingCancelSerializer(serializers.Serializer):
    """Request body for cancelling a booking and refunding per policy."""

    cancelled_by = serializers.ChoiceField(choices=[CANCELLED_BY_PROVIDER, CANCELLED_BY_CLIENT])
    idempotency_key = serializers.CharField(max_length=255)


class RefundRequestResultSerializer(serializers.Serializer):
    """Response body for a refund request: the slices it created."""

    refunds = RefundSerializer(many=True, read_only=True)
    total_cents = serializers.IntegerField(read_only=True)
    replayed = serializers.BooleanField(read_only=True)


class SubscriptionCreateSerializer(serializers.Serializer):
    """
    Request body for starting a subscription.

    ``verification_ref`` is the processor reference of a completed payment;
    it is required when the region's trial is disabled.
    """

    tier = serializers.ChoiceField(choices=SubscriptionTier.choices)
    region_code = serializers.CharField(max_length=8)
    customer_ref = serializers.CharField(max_length=255)
    verification_ref = serializers.CharField(
        max_length=255,
        required=False,
        allow_blank=True,
        allow_null=True,
    )


class SubscriptionCancelSerializer(serializers.Serializer):
    reason = serializers.CharField(max_length=100, required=False, default="requested_by_owner")


class ErrorSerializer(serializers.Serializer):
    """Failure body returned by every payments endpoint."""

    error = serializers.CharField()
    error_code = serializers.CharField()
