"""
Django admin configuration for the idempotency ledger.

Records are read-only: keys and outcomes are written by the engine and
must never be edited by hand. Deletion is left to ``prune``.
"""

from django.contrib import admin

from .models import IdempotencyRecord


@admin.register(IdempotencyRecord)
class IdempotencyRecordAdmin(admin.ModelAdmin):
    """Read-only view of reserved keys and their outcomes."""

    list_display = [
        "key",
        "kind",
        "processor",
        "event_type",
        "status",
        "retry_count",
        "created_at",
        "completed_at",
    ]
    list_filter = ["kind", "processor", "status"]
    search_fields = ["key", "event_type"]
    ordering = ["-created_at"]
    readonly_fields = [
        "id",
        "key",
        "kind",
        "processor",
        "event_type",
        "status",
        "normalized_event",
        "payload",
        "outcome",
        "error_message",
        "retry_count",
        "created_at",
        "updated_at",
        "completed_at",
    ]

    def has_add_permission(self, request):
        return False

    def has_change_permission(self, request, obj=None):
        return False

    def has_delete_permission(self, request, obj=None):
        return False
