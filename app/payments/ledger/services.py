"""
Idempotency ledger service.

Every keyed operation in the engine (webhook deliveries, outbound charge
requests, reconciliation results, client confirmations) goes through this
service so that concurrent or repeated attempts collapse into one.

The reservation is a single INSERT guarded by the unique constraint on
``IdempotencyRecord.key``; the losing inserter reads the winner's record.
Status changes are compare-and-set UPDATEs filtered on the expected status,
so two workers can never both claim the same record.

Usage:
    from payments.ledger import ledger
    from payments.state_machines import IdempotencyKind

    reservation = ledger.reserve(
        "paystack:charge.success:4099260516:250000",
        kind=IdempotencyKind.WEBHOOK,
        processor="paystack",
        event_type="charge.succeeded",
        normalized_event=event.to_dict(),
    )
    if reservation.created:
        process_webhook_event.delay(reservation.record.key)
"""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import TYPE_CHECKING

from django.conf import settings
from django.db import IntegrityError, transaction
from django.utils import timezone

from payments.state_machines import IdempotencyStatus

from .exceptions import RecordNotFound
from .models import IdempotencyRecord
from .types import Reservation

if TYPE_CHECKING:
    from collections.abc import Iterable
    from typing import Any

logger = logging.getLogger(__name__)


class IdempotencyLedger:
    """
    Service class for idempotency ledger operations.

    All methods are static - no instance state is maintained.
    """

    @staticmethod
    def reserve(
        key: str,
        kind: str,
        processor: str = "",
        event_type: str = "",
        normalized_event: dict[str, Any] | None = None,
        payload: dict[str, Any] | None = None,
    ) -> Reservation:
        """
        Atomically reserve ``key``.

        Args:
            key: Namespaced idempotency key
            kind: IdempotencyKind of the caller
            processor: Processor the key relates to
            event_type: Normalized event type or operation name
            normalized_event: Snapshot of the event being reserved
            payload: Raw payload for audit and replay

        Returns:
            Reservation with ``created=True`` for exactly one caller per key

        Raises:
            ValueError: If key is empty
        """
        if not key:
            raise ValueError("idempotency key is required")

        try:
            # Savepoint so the IntegrityError does not poison an outer transaction
            with transaction.atomic():
                record = IdempotencyRecord.objects.create(
                    key=key,
                    kind=kind,
                    processor=processor or "",
                    event_type=event_type or "",
                    normalized_event=normalized_event,
                    payload=payload,
                )
        except IntegrityError:
            record = IdempotencyRecord.objects.get(key=key)
            logger.info(
                "Idempotency key already reserved",
                extra={"key": key, "status": record.status},
            )
            return Reservation(record=record, created=False)

        logger.debug("Idempotency key reserved", extra={"key": key, "kind": kind})
        return Reservation(record=record, created=True)

    @staticmethod
    def get(key: str) -> IdempotencyRecord | None:
        return IdempotencyRecord.objects.filter(key=key).first()

    @staticmethod
    def require(key: str) -> IdempotencyRecord:
        """
        Get the record for ``key``.

        Raises:
            RecordNotFound: If nothing holds the key
        """
        record = IdempotencyLedger.get(key)
        if record is None:
            raise RecordNotFound(
                f"No idempotency record for key {key}",
                details={"key": key},
            )
        return record

    @staticmethod
    def mark_processing(record: IdempotencyRecord) -> bool:
        """
        Claim ``record`` for processing.

        Returns:
            True if this caller claimed it, False if it is already being
            processed or has completed
        """
        if record.status not in (IdempotencyStatus.RESERVED, IdempotencyStatus.FAILED):
            return False

        source = record.status
        record.start_processing()
        claimed = IdempotencyRecord.objects.filter(pk=record.pk, status=source).update(
            status=record.status,
            retry_count=record.retry_count,
            updated_at=timezone.now(),
        )
        if not claimed:
            logger.info(
                "Idempotency record claimed elsewhere",
                extra={"key": record.key},
            )
        return bool(claimed)

    @staticmethod
    def complete(record: IdempotencyRecord, outcome: dict[str, Any]) -> bool:
        """
        Record the outcome and mark the key completed.

        The outcome is written once; completing an already completed record
        is a no-op that returns False.
        """
        if record.status == IdempotencyStatus.COMPLETED:
            return False

        record.complete(outcome)
        updated = (
            IdempotencyRecord.objects.filter(pk=record.pk)
            .exclude(status=IdempotencyStatus.COMPLETED)
            .update(
                status=record.status,
                outcome=record.outcome,
                error_message=None,
                completed_at=record.completed_at,
                updated_at=timezone.now(),
            )
        )
        logger.info(
            "Idempotency record completed",
            extra={"key": record.key, "outcome": outcome.get("status")},
        )
        return bool(updated)

    @staticmethod
    def fail(record: IdempotencyRecord, error: str) -> None:
        """Mark the record failed so a retry can claim it again."""
        if record.status == IdempotencyStatus.COMPLETED:
            return

        record.fail(error[:2000])
        IdempotencyRecord.objects.filter(pk=record.pk).exclude(
            status=IdempotencyStatus.COMPLETED
        ).update(
            status=record.status,
            error_message=record.error_message,
            updated_at=timezone.now(),
        )
        logger.warning(
            "Idempotency record failed",
            extra={"key": record.key, "retry_count": record.retry_count},
        )

    @staticmethod
    def retryable_failures(
        max_retries: int,
        limit: int = 100,
        kinds: Iterable[str] | None = None,
    ) -> list[IdempotencyRecord]:
        """Failed records still under the retry limit, oldest first."""
        records = IdempotencyRecord.objects.filter(
            status=IdempotencyStatus.FAILED,
            retry_count__lt=max_retries,
        )
        if kinds is not None:
            records = records.filter(kind__in=list(kinds))
        return list(records.order_by("created_at")[:limit])

    @staticmethod
    def stuck(
        older_than: timedelta,
        limit: int = 100,
        kinds: Iterable[str] | None = None,
    ) -> list[IdempotencyRecord]:
        """Records reserved or processing without progress for ``older_than``."""
        cutoff = timezone.now() - older_than
        records = IdempotencyRecord.objects.filter(
            status__in=[IdempotencyStatus.RESERVED, IdempotencyStatus.PROCESSING],
            updated_at__lt=cutoff,
        )
        if kinds is not None:
            records = records.filter(kind__in=list(kinds))
        return list(records.order_by("created_at")[:limit])

    @staticmethod
    def prune(retention_days: int | None = None) -> int:
        """
        Delete completed records older than the retention window.

        Returns:
            Number of records deleted
        """
        if retention_days is None:
            retention_days = settings.IDEMPOTENCY_RETENTION_DAYS
        cutoff = timezone.now() - timedelta(days=retention_days)
        deleted, _ = IdempotencyRecord.objects.filter(
            status=IdempotencyStatus.COMPLETED,
            created_at__lt=cutoff,
        ).delete()
        logger.info(
            "Pruned idempotency records",
            extra={"deleted": deleted, "retention_days": retention_days},
        )
        return deleted


# Singleton instance for convenience
# Usage: from payments.ledger import ledger
ledger = IdempotencyLedger()
