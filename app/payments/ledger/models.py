"""
Idempotency ledger model.

One IdempotencyRecord per logical operation key. The unique ``key`` column
is the synchronization point between concurrent webhook deliveries,
reconciliation sweeps and client retries: whoever inserts the row first owns
the processing slot.

Key namespaces:
    <processor>:<processor event id>   inbound webhook deliveries
    <caller idempotency key>           outbound charge requests
    reconcile:<ref>:<status>           reconciliation results
    confirm:<ref>:<status>             client-driven confirmations

Usage:
    from payments.ledger import ledger

    reservation = ledger.reserve("stripe:evt_123", kind=IdempotencyKind.WEBHOOK)
    if not reservation.created:
        return  # duplicate delivery
"""

from __future__ import annotations

from django.db import models
from django.utils import timezone

from django_fsm import FSMField, transition

from core.model_mixins import UUIDPrimaryKeyMixin
from core.models import BaseModel

from payments.state_machines import IdempotencyKind, IdempotencyStatus, Processor


class IdempotencyRecord(UUIDPrimaryKeyMixin, BaseModel):
    """
    A reserved idempotency key and the outcome recorded against it.

    Processing Flow:
        RESERVED -> PROCESSING -> COMPLETED
        RESERVED / PROCESSING -> FAILED -> PROCESSING (retry)

    Fields:
        key: Namespaced idempotency key, unique, never overwritten
        kind: Where the key came from
        processor: Processor the key relates to (if any)
        event_type: Normalized event type or operation name
        normalized_event: Snapshot of the NormalizedEvent being processed
        payload: Raw processor payload, kept for audit and replay
        outcome: Result written once on completion
        retry_count: Processing attempts after the first
        created_at: First-seen timestamp

    Note:
        COMPLETED is terminal. A record is only removed by ``prune`` after
        the retention window.
    """

    key = models.CharField(
        max_length=255,
        unique=True,
        help_text="Namespaced idempotency key",
    )

    kind = models.CharField(
        max_length=20,
        choices=IdempotencyKind.choices,
        db_index=True,
    )

    processor = models.CharField(
        max_length=20,
        choices=Processor.choices,
        blank=True,
        default="",
    )

    event_type = models.CharField(
        max_length=100,
        blank=True,
        default="",
        db_index=True,
    )

    status = FSMField(
        default=IdempotencyStatus.RESERVED,
        choices=IdempotencyStatus.choices,
        db_index=True,
        protected=True,
    )

    normalized_event = models.JSONField(null=True, blank=True)

    payload = models.JSONField(null=True, blank=True)

    outcome = models.JSONField(null=True, blank=True)

    error_message = models.TextField(null=True, blank=True)

    retry_count = models.PositiveSmallIntegerField(default=0)

    completed_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        ordering = ["-created_at"]
        verbose_name = "Idempotency Record"
        verbose_name_plural = "Idempotency Records"
        indexes = [
            models.Index(
                fields=["status", "created_at"],
                name="payments_id_status_2e8f45_idx",
            ),
            models.Index(
                fields=["kind", "status"],
                name="payments_id_kind_7b3a09_idx",
            ),
            models.Index(
                fields=["status", "retry_count"],
                name="payments_id_status_c51d86_idx",
            ),
        ]

    def __str__(self) -> str:
        return f"IdempotencyRecord({self.key}, {self.status})"

    @property
    def is_completed(self) -> bool:
        return self.status == IdempotencyStatus.COMPLETED

    @property
    def is_in_progress(self) -> bool:
        return self.status in (IdempotencyStatus.RESERVED, IdempotencyStatus.PROCESSING)

    # ==========================================================================
    # State Transitions
    # ==========================================================================

    @transition(
        field=status,
        source=[IdempotencyStatus.RESERVED, IdempotencyStatus.FAILED],
        target=IdempotencyStatus.PROCESSING,
    )
    def start_processing(self) -> None:
        if self.error_message:
            self.retry_count += 1

    @transition(
        field=status,
        source=[IdempotencyStatus.RESERVED, IdempotencyStatus.PROCESSING],
        target=IdempotencyStatus.COMPLETED,
    )
    def complete(self, outcome: dict) -> None:
        self.outcome = outcome
        self.error_message = None
        self.completed_at = timezone.now()

    @transition(
        field=status,
        source=[
            IdempotencyStatus.RESERVED,
            IdempotencyStatus.PROCESSING,
            IdempotencyStatus.FAILED,
        ],
        target=IdempotencyStatus.FAILED,
    )
    def fail(self, error_message: str) -> None:
        self.error_message = error_message
