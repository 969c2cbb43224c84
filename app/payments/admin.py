"""
Payment admin configuration.

This file imports the idempotency ledger admin and registers payment domain
models with the Django admin. State fields are read-only here: transitions
go through the service layer.
"""

from django.contrib import admin
from django.utils import timezone

from payments.ledger.admin import IdempotencyRecordAdmin
from payments.models import (
    Booking,
    DiscrepancyResolution,
    PaymentTransaction,
    ReconciliationDiscrepancy,
    ReconciliationRun,
    Refund,
    Subscription,
    TrialPolicy,
)

__all__ = [
    "BookingAdmin",
    "IdempotencyRecordAdmin",
    "PaymentTransactionAdmin",
    "ReconciliationDiscrepancyAdmin",
    "ReconciliationRunAdmin",
    "RefundAdmin",
    "SubscriptionAdmin",
    "TrialPolicyAdmin",
]


def format_amount(amount_cents: int, currency: str) -> str:
    return f"{amount_cents / 100:.2f} {currency.upper()}"


class PaymentTransactionInline(admin.TabularInline):
    """Charge attempts of a booking."""

    model = PaymentTransaction
    fk_name = "booking"
    extra = 0
    fields = ["id", "stage", "amount_cents", "status", "processor_reference", "needs_review"]
    readonly_fields = fields
    can_delete = False
    show_change_link = True

    def has_add_permission(self, request, obj=None) -> bool:
        return False


class RefundInline(admin.TabularInline):
    """Refund slices of a booking."""

    model = Refund
    extra = 0
    fields = ["id", "payment_transaction", "amount_cents", "state", "needs_review"]
    readonly_fields = fields
    can_delete = False
    show_change_link = True

    def has_add_permission(self, request, obj=None) -> bool:
        return False


@admin.register(Booking)
class BookingAdmin(admin.ModelAdmin):
    """
    Admin configuration for Booking.

    Provides visibility into payment status, amounts and the charges and
    refunds behind them.
    """

    list_display = [
        "id",
        "client",
        "region_code",
        "total_display",
        "payment_status",
        "amount_paid_cents",
        "amount_refunded_cents",
        "created_at",
    ]
    list_filter = ["payment_status", "processor", "region_code", "created_at"]
    search_fields = ["id", "customer_ref", "client__email"]
    readonly_fields = [
        "id",
        "payment_status",
        "amount_paid_cents",
        "amount_refunded_cents",
        "confirmed_at",
        "deposit_paid_at",
        "fully_paid_at",
        "refunded_at",
        "version",
        "created_at",
        "updated_at",
    ]
    date_hierarchy = "created_at"
    ordering = ["-created_at"]
    inlines = [PaymentTransactionInline, RefundInline]

    fieldsets = (
        (None, {"fields": ("id", "client", "customer_ref", "payment_status")}),
        ("Region", {"fields": ("region_code", "processor", "currency")}),
        (
            "Amounts",
            {
                "fields": (
                    "deposit_amount_cents",
                    "total_amount_cents",
                    "amount_paid_cents",
                    "amount_refunded_cents",
                ),
            },
        ),
        (
            "Status Timestamps",
            {"fields": ("confirmed_at", "deposit_paid_at", "fully_paid_at", "refunded_at")},
        ),
        ("Metadata", {"fields": ("metadata", "version"), "classes": ("collapse",)}),
        ("Timestamps", {"fields": ("created_at", "updated_at")}),
    )

    @admin.display(description="Total")
    def total_display(self, obj: Booking) -> str:
        return format_amount(obj.total_amount_cents, obj.currency)

    def has_delete_permission(self, request, obj=None) -> bool:
        """Disable delete for bookings (audit trail)."""
        return False


@admin.register(PaymentTransaction)
class PaymentTransactionAdmin(admin.ModelAdmin):
    """
    Admin configuration for PaymentTransaction.

    ``needs_review`` rows are charges whose processor report could not be
    applied automatically.
    """

    list_display = [
        "id",
        "processor",
        "processor_reference",
        "stage",
        "amount_display",
        "status",
        "needs_review",
        "created_at",
    ]
    list_filter = ["status", "processor", "stage", "needs_review", "created_at"]
    search_fields = ["id", "processor_reference", "idempotency_key", "booking__id"]
    readonly_fields = [
        "id",
        "booking",
        "subscription",
        "processor",
        "processor_reference",
        "idempotency_key",
        "client_action_token",
        "stage",
        "amount_cents",
        "currency",
        "status",
        "verified_at",
        "failed_at",
        "failure_reason_code",
        "failure_message",
        "payment_method_ref",
        "metadata",
        "version",
        "created_at",
        "updated_at",
    ]
    date_hierarchy = "created_at"
    ordering = ["-created_at"]
    actions = ["clear_review_flag"]

    @admin.display(description="Amount")
    def amount_display(self, obj: PaymentTransaction) -> str:
        return format_amount(obj.amount_cents, obj.currency)

    @admin.action(description="Clear the review flag (reconciliation resumes)")
    def clear_review_flag(self, request, queryset):
        count = queryset.filter(needs_review=True).update(
            needs_review=False,
            updated_at=timezone.now(),
        )
        self.message_user(request, f"Cleared the review flag on {count} transactions.")

    def has_delete_permission(self, request, obj=None) -> bool:
        return False


@admin.register(Refund)
class RefundAdmin(admin.ModelAdmin):
    """
    Admin configuration for Refund.

    Provides visibility into refund status and history.
    """

    list_display = [
        "id",
        "booking",
        "payment_transaction",
        "amount_display",
        "state",
        "needs_review",
        "created_at",
    ]
    list_filter = ["state", "needs_review", "currency", "created_at"]
    search_fields = [
        "id",
        "processor_refund_ref",
        "request_key",
        "booking__id",
    ]
    readonly_fields = [
        "id",
        "booking",
        "payment_transaction",
        "requested_by",
        "amount_cents",
        "currency",
        "state",
        "processor_refund_ref",
        "idempotency_key",
        "request_key",
        "processing_at",
        "succeeded_at",
        "failed_at",
        "failure_reason",
        "version",
        "created_at",
        "updated_at",
    ]
    date_hierarchy = "created_at"
    ordering = ["-created_at"]

    fieldsets = (
        (None, {"fields": ("id", "booking", "payment_transaction", "state", "needs_review")}),
        ("Amount", {"fields": ("amount_cents", "currency")}),
        (
            "Refund Details",
            {"fields": ("reason", "requested_by", "processor_refund_ref")},
        ),
        (
            "Idempotency",
            {"fields": ("request_key", "idempotency_key"), "classes": ("collapse",)},
        ),
        ("Status Timestamps", {"fields": ("processing_at", "succeeded_at", "failed_at")}),
        ("Failure Info", {"fields": ("failure_reason",), "classes": ("collapse",)}),
        ("Metadata", {"fields": ("metadata", "version"), "classes": ("collapse",)}),
        ("Timestamps", {"fields": ("created_at", "updated_at")}),
    )

    @admin.display(description="Amount")
    def amount_display(self, obj: Refund) -> str:
        return format_amount(obj.amount_cents, obj.currency)

    def has_delete_permission(self, request, obj=None) -> bool:
        """Disable delete for refunds (audit trail)."""
        return False


@admin.register(Subscription)
class SubscriptionAdmin(admin.ModelAdmin):
    """Admin configuration for provider subscriptions and their trials."""

    list_display = [
        "id",
        "owner",
        "tier",
        "region_code",
        "status",
        "trial_end",
        "created_at",
    ]
    list_filter = ["status", "tier", "processor", "trial_enabled"]
    search_fields = ["id", "customer_ref", "owner__email"]
    readonly_fields = [
        "id",
        "status",
        "processor",
        "currency",
        "price_cents",
        "trial_enabled",
        "trial_duration_days",
        "trial_end",
        "payment_method_ref",
        "activated_at",
        "past_due_at",
        "canceled_at",
        "cancel_reason",
        "version",
        "created_at",
        "updated_at",
    ]
    ordering = ["-created_at"]


@admin.register(TrialPolicy)
class TrialPolicyAdmin(admin.ModelAdmin):
    """
    Per-region / per-tier trial configuration.

    Blank region or tier rows act as wildcards; the most specific row wins.
    """

    list_display = [
        "region_code",
        "tier",
        "trial_enabled",
        "trial_duration_days",
        "grace_days",
        "cancel_grace_days",
    ]
    list_filter = ["trial_enabled", "tier"]
    ordering = ["region_code", "tier"]


class ReconciliationDiscrepancyInline(admin.TabularInline):
    """Inline display of discrepancies for a reconciliation run."""

    model = ReconciliationDiscrepancy
    extra = 0
    readonly_fields = [
        "id",
        "entity_type",
        "entity_id",
        "processor_reference",
        "discrepancy_type",
        "local_state",
        "processor_state",
        "resolution",
        "reviewed",
    ]
    can_delete = False
    show_change_link = True

    def has_add_permission(self, request, obj=None) -> bool:
        return False


@admin.register(ReconciliationRun)
class ReconciliationRunAdmin(admin.ModelAdmin):
    """
    Admin configuration for ReconciliationRun.

    Runs are created by the reconciliation service and should not be
    manually modified.
    """

    list_display = [
        "id",
        "started_at",
        "status",
        "duration_display",
        "transactions_checked",
        "refunds_checked",
        "events_applied",
        "duplicates_skipped",
        "flagged_for_review",
        "errors",
    ]
    list_filter = ["status", "started_at"]
    search_fields = ["id"]
    readonly_fields = [
        "id",
        "created_at",
        "updated_at",
        "started_at",
        "completed_at",
        "duration_display",
        "stale_after_minutes",
        "transactions_checked",
        "refunds_checked",
        "events_applied",
        "duplicates_skipped",
        "flagged_for_review",
        "errors",
        "status",
        "error_message",
    ]
    date_hierarchy = "started_at"
    ordering = ["-started_at"]
    inlines = [ReconciliationDiscrepancyInline]

    @admin.display(description="Duration")
    def duration_display(self, obj: ReconciliationRun) -> str:
        if obj.duration_seconds is not None:
            return f"{obj.duration_seconds:.1f}s"
        return "Running..."

    def has_delete_permission(self, request, obj=None) -> bool:
        """Disable delete for reconciliation runs (audit trail)."""
        return False

    def has_add_permission(self, request) -> bool:
        return False


@admin.register(ReconciliationDiscrepancy)
class ReconciliationDiscrepancyAdmin(admin.ModelAdmin):
    """
    Review queue for flagged discrepancies.

    Supports bulk marking as reviewed.
    """

    list_display = [
        "id",
        "run",
        "entity_type",
        "entity_id",
        "discrepancy_type",
        "local_state",
        "processor_state",
        "resolution",
        "reviewed",
        "created_at",
    ]
    list_filter = [
        "resolution",
        "reviewed",
        "entity_type",
        "discrepancy_type",
    ]
    search_fields = ["id", "entity_id", "processor_reference", "discrepancy_type"]
    readonly_fields = [
        "id",
        "created_at",
        "updated_at",
        "run",
        "entity_type",
        "entity_id",
        "processor_reference",
        "discrepancy_type",
        "local_state",
        "processor_state",
        "details",
        "resolution",
        "action_taken",
        "error_message",
    ]
    ordering = ["-created_at"]
    actions = ["mark_reviewed"]

    @admin.action(description="Mark selected discrepancies as reviewed")
    def mark_reviewed(self, request, queryset):
        count = queryset.filter(
            resolution=DiscrepancyResolution.FLAGGED_FOR_REVIEW,
            reviewed=False,
        ).update(
            reviewed=True,
            reviewed_at=timezone.now(),
        )
        self.message_user(request, f"Marked {count} discrepancies as reviewed.")

    def has_delete_permission(self, request, obj=None) -> bool:
        return False

    def has_add_permission(self, request) -> bool:
        return False
