"""
Reconciliation models for auditing sweeps against processors.

- ReconciliationRun: one row per execution of the reconciliation sweep
- ReconciliationDiscrepancy: one row per record whose local state disagreed
  with its processor, and what the sweep did about it

Usage:
    from payments.models import ReconciliationRun, ReconciliationDiscrepancy

    run = ReconciliationRun.objects.create(
        started_at=timezone.now(),
        stale_after_minutes=30,
    )

    ReconciliationDiscrepancy.objects.create(
        run=run,
        entity_type="transaction",
        entity_id=txn.id,
        processor_reference=txn.processor_reference,
        discrepancy_type="processor_succeeded_local_initiated",
        local_state="initiated",
        processor_state="succeeded",
        resolution=DiscrepancyResolution.AUTO_HEALED,
    )
"""

from __future__ import annotations

from django.db import models

from core.model_mixins import UUIDPrimaryKeyMixin
from core.models import BaseModel

from payments.state_machines import ReconciliationRunStatus


class DiscrepancyResolution(models.TextChoices):
    """How a discrepancy was resolved."""

    AUTO_HEALED = "auto_healed", "Auto Healed"
    FLAGGED_FOR_REVIEW = "flagged_for_review", "Flagged for Review"
    FAILED_TO_HEAL = "failed_to_heal", "Failed to Heal"


class ReconciliationRun(UUIDPrimaryKeyMixin, BaseModel):
    """
    Audit record for one reconciliation sweep.

    Created when the sweep acquires its lock, updated with counters as
    records are verified, and closed as completed or failed.
    """

    started_at = models.DateTimeField()
    completed_at = models.DateTimeField(null=True, blank=True)

    stale_after_minutes = models.PositiveIntegerField(
        help_text="Records untouched for longer than this were checked",
    )

    transactions_checked = models.PositiveIntegerField(default=0)
    refunds_checked = models.PositiveIntegerField(default=0)
    events_applied = models.PositiveIntegerField(
        default=0,
        help_text="Terminal results fed through the event processor",
    )
    duplicates_skipped = models.PositiveIntegerField(
        default=0,
        help_text="Results already recorded in the idempotency ledger",
    )
    flagged_for_review = models.PositiveIntegerField(default=0)
    errors = models.PositiveIntegerField(default=0)

    status = models.CharField(
        max_length=20,
        choices=ReconciliationRunStatus.choices,
        default=ReconciliationRunStatus.RUNNING,
        db_index=True,
    )
    error_message = models.TextField(blank=True)

    class Meta:
        indexes = [
            models.Index(
                fields=["status", "started_at"],
                name="payments_re_status_3f0a7e_idx",
            ),
        ]
        ordering = ["-started_at"]

    def __str__(self) -> str:
        return f"ReconciliationRun({self.id}, {self.status}, {self.started_at})"

    @property
    def duration_seconds(self) -> float | None:
        if self.completed_at and self.started_at:
            return (self.completed_at - self.started_at).total_seconds()
        return None


class ReconciliationDiscrepancy(UUIDPrimaryKeyMixin, BaseModel):
    """
    A record whose local state differed from the processor's.

    Flagged discrepancies form the manual review queue (amount mismatches,
    PENDING refunds that cannot be safely re-submitted, verify errors).
    """

    run = models.ForeignKey(
        ReconciliationRun,
        on_delete=models.CASCADE,
        related_name="discrepancies",
    )

    entity_type = models.CharField(
        max_length=50,
        db_index=True,
        help_text="transaction or refund",
    )
    entity_id = models.UUIDField()
    processor_reference = models.CharField(max_length=255, blank=True)

    discrepancy_type = models.CharField(max_length=100, db_index=True)
    local_state = models.CharField(max_length=50)
    processor_state = models.CharField(max_length=50, blank=True)
    details = models.JSONField(default=dict, blank=True)

    resolution = models.CharField(
        max_length=20,
        choices=DiscrepancyResolution.choices,
        db_index=True,
    )
    action_taken = models.TextField(blank=True)
    error_message = models.TextField(blank=True)

    reviewed = models.BooleanField(default=False, db_index=True)
    reviewed_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        indexes = [
            models.Index(
                fields=["resolution", "reviewed"],
                name="payments_re_resolut_8d24b1_idx",
            ),
            models.Index(
                fields=["entity_type", "entity_id"],
                name="payments_re_entity__a6e3f2_idx",
            ),
        ]
        ordering = ["-created_at"]
        verbose_name_plural = "Reconciliation discrepancies"

    def __str__(self) -> str:
        return (
            f"Discrepancy({self.entity_type}:{self.entity_id}, {self.discrepancy_type})"
        )

    @property
    def needs_review(self) -> bool:
        return (
            self.resolution == DiscrepancyResolution.FLAGGED_FOR_REVIEW
            and not self.reviewed
        )


__all__ = [
    "DiscrepancyResolution",
    "ReconciliationDiscrepancy",
    "ReconciliationRun",
]
