"""
Reconciliation service for settling records their webhooks never settled.

Webhooks get lost, arrive before the initiating call stored its reference,
or fail transiently past their retries. The sweep closes that gap: it asks
each record's own processor for the authoritative state and feeds terminal
results through the Event Processor, so a result that a webhook already
applied is skipped by the idempotency ledger instead of applied twice.

Selection:
    - PaymentTransactions: initiated, have a processor reference, not under
      review, untouched for ``stale_after_minutes``
    - Refunds: PENDING or PROCESSING, not under review, equally stale

Healing:
    - Terminal processor results are submitted under ``reconcile:<ref>:<status>``
    - PENDING refunds that never reached the processor are re-submitted when
      the processor deduplicates refunds, otherwise flagged for review
    - Everything the sweep could not settle is recorded as a
      ReconciliationDiscrepancy on the run

Usage:
    from payments.services import ReconciliationService

    result = ReconciliationService.run()
    if result.success:
        summary = result.data
        summary.events_applied, summary.flagged_for_review

    # On demand, for one transaction
    ReconciliationService.reconcile_single_transaction(transaction_id)
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

from django.conf import settings
from django.utils import timezone

from core.services import BaseService, ServiceResult

from payments.adapters import call_with_retry, get_adapter
from payments.exceptions import (
    InvalidRequestError,
    LockAcquisitionError,
    ReconciliationLockError,
)
from payments.ledger import OutcomeStatus
from payments.locks import DistributedLock
from payments.models import (
    IN_FLIGHT_REFUND_STATES,
    DiscrepancyResolution,
    PaymentTransaction,
    ReconciliationDiscrepancy,
    ReconciliationRun,
    Refund,
)
from payments.reason_codes import ReasonCode
from payments.services.event_processor import EventProcessor, event_from_verification
from payments.services.refund_service import RefundService
from payments.state_machines import (
    IdempotencyKind,
    RefundState,
    ReconciliationRunStatus,
    TransactionStatus,
)

if TYPE_CHECKING:
    from payments.services.event_processor import ProcessingResult


# =============================================================================
# Constants
# =============================================================================

RUN_LOCK_KEY = "reconciliation:run"
RUN_LOCK_TTL = 600  # 10 minutes, extended between batches

BATCH_SIZE = 50

ENTITY_TRANSACTION = "transaction"
ENTITY_REFUND = "refund"


# =============================================================================
# Data Types
# =============================================================================


@dataclass
class ReconciliationRunResult:
    """Counters of one reconciliation sweep."""

    run_id: uuid.UUID | None
    started_at: datetime
    completed_at: datetime | None = None
    transactions_checked: int = 0
    refunds_checked: int = 0
    events_applied: int = 0
    duplicates_skipped: int = 0
    flagged_for_review: int = 0
    errors: int = 0

    def as_run_fields(self) -> dict[str, int]:
        return {
            "transactions_checked": self.transactions_checked,
            "refunds_checked": self.refunds_checked,
            "events_applied": self.events_applied,
            "duplicates_skipped": self.duplicates_skipped,
            "flagged_for_review": self.flagged_for_review,
            "errors": self.errors,
        }


# =============================================================================
# Reconciliation Service
# =============================================================================


class ReconciliationService(BaseService):
    """
    Verify stale records with their processor and settle them.

    Concurrency Safety:
        - A global non-blocking run lock; a second concurrent run is refused
          with ReconciliationLockError and the caller skips
        - Entity writes go through the Event Processor and the state
          machines, which use the ledger and version compare-and-set
    """

    # =========================================================================
    # Public API
    # =========================================================================

    @classmethod
    def run(
        cls,
        stale_after_minutes: int | None = None,
        max_records: int | None = None,
    ) -> ServiceResult[ReconciliationRunResult]:
        """
        Run one reconciliation sweep.

        Args:
            stale_after_minutes: Only records untouched for longer are checked
                (default: RECONCILIATION_STALE_AFTER_MINUTES)
            max_records: Maximum records per entity type
                (default: RECONCILIATION_MAX_RECORDS)

        Returns:
            ServiceResult containing ReconciliationRunResult

        Raises:
            ReconciliationLockError: Another run is in progress
        """
        if stale_after_minutes is None:
            stale_after_minutes = settings.RECONCILIATION_STALE_AFTER_MINUTES
        if max_records is None:
            max_records = settings.RECONCILIATION_MAX_RECORDS

        lock = DistributedLock(RUN_LOCK_KEY, ttl=RUN_LOCK_TTL, blocking=False)
        try:
            lock.acquire()
        except LockAcquisitionError as e:
            cls.get_logger().info(
                "Another reconciliation run is in progress",
                extra={"lock_key": RUN_LOCK_KEY},
            )
            raise ReconciliationLockError(
                "Another reconciliation run is in progress",
                details={"lock_key": RUN_LOCK_KEY},
            ) from e

        try:
            return cls._run_with_lock(lock, stale_after_minutes, max_records)
        finally:
            lock.release()

    @classmethod
    def reconcile_single_transaction(
        cls,
        transaction_id: uuid.UUID | str,
    ) -> ServiceResult[ReconciliationRunResult]:
        """
        Verify one transaction now, regardless of staleness.

        Used by support tooling and the ``reconcile_single_transaction`` task.
        No ReconciliationRun row is written.
        """
        txn = PaymentTransaction.objects.filter(pk=transaction_id).first()
        if txn is None:
            return ServiceResult.failure(
                f"Transaction {transaction_id} not found",
                error_code=ReasonCode.NOT_FOUND,
            )
        if txn.status != TransactionStatus.INITIATED or not txn.processor_reference:
            return ServiceResult.failure(
                f"Transaction in {txn.status} has nothing to reconcile",
                error_code=ReasonCode.INVALID_STATE,
            )

        result = ReconciliationRunResult(run_id=None, started_at=timezone.now())
        result.transactions_checked = 1
        cls.reconcile_transaction(txn, run=None, result=result)
        result.completed_at = timezone.now()
        return ServiceResult.success(result)

    # =========================================================================
    # Internal: Run Orchestration
    # =========================================================================

    @classmethod
    def _run_with_lock(
        cls,
        lock: DistributedLock,
        stale_after_minutes: int,
        max_records: int,
    ) -> ServiceResult[ReconciliationRunResult]:
        logger = cls.get_logger()
        started_at = timezone.now()
        cutoff = started_at - timedelta(minutes=stale_after_minutes)

        run = ReconciliationRun.objects.create(
            started_at=started_at,
            stale_after_minutes=stale_after_minutes,
            status=ReconciliationRunStatus.RUNNING,
        )
        result = ReconciliationRunResult(run_id=run.id, started_at=started_at)
        logger.info(
            "Starting reconciliation run",
            extra={
                "run_id": str(run.id),
                "stale_after_minutes": stale_after_minutes,
                "max_records": max_records,
            },
        )

        try:
            transactions = list(
                PaymentTransaction.objects.filter(
                    status=TransactionStatus.INITIATED,
                    needs_review=False,
                    updated_at__lt=cutoff,
                )
                .exclude(processor_reference__isnull=True)
                .exclude(processor_reference="")
                .order_by("updated_at")[:max_records]
            )
            for index, txn in enumerate(transactions, start=1):
                result.transactions_checked += 1
                cls._guarded(
                    cls.reconcile_transaction, txn, run, result, ENTITY_TRANSACTION
                )
                if index % BATCH_SIZE == 0:
                    lock.extend()

            refunds = list(
                Refund.objects.select_related("payment_transaction")
                .filter(
                    state__in=IN_FLIGHT_REFUND_STATES,
                    needs_review=False,
                    updated_at__lt=cutoff,
                )
                .order_by("updated_at")[:max_records]
            )
            for index, refund in enumerate(refunds, start=1):
                result.refunds_checked += 1
                cls._guarded(cls.reconcile_refund, refund, run, result, ENTITY_REFUND)
                if index % BATCH_SIZE == 0:
                    lock.extend()
        except Exception as e:
            ReconciliationRun.objects.filter(pk=run.pk).update(
                status=ReconciliationRunStatus.FAILED,
                completed_at=timezone.now(),
                error_message=str(e),
                **result.as_run_fields(),
            )
            logger.error(
                "Reconciliation run failed",
                extra={"run_id": str(run.id), "error": str(e)},
                exc_info=True,
            )
            raise

        result.completed_at = timezone.now()
        ReconciliationRun.objects.filter(pk=run.pk).update(
            status=ReconciliationRunStatus.COMPLETED,
            completed_at=result.completed_at,
            **result.as_run_fields(),
        )
        logger.info(
            "Reconciliation run completed",
            extra={
                "run_id": str(run.id),
                **result.as_run_fields(),
                "duration_seconds": (result.completed_at - started_at).total_seconds(),
            },
        )
        return ServiceResult.success(result)

    @classmethod
    def _guarded(
        cls,
        reconcile,
        entity,
        run: ReconciliationRun,
        result: ReconciliationRunResult,
        entity_type: str,
    ) -> None:
        """Reconcile one record; a failure counts as an error, not a failed run."""
        try:
            reconcile(entity, run=run, result=result)
        except Exception as e:
            result.errors += 1
            cls.get_logger().warning(
                "Could not reconcile record",
                extra={
                    "run_id": str(run.id),
                    "entity_type": entity_type,
                    "entity_id": str(entity.pk),
                    "error": str(e),
                },
                exc_info=True,
            )
            cls._record_discrepancy(
                run,
                entity_type=entity_type,
                entity_id=entity.pk,
                processor_reference=cls._reference_of(entity),
                discrepancy_type="reconcile_error",
                local_state=cls._state_of(entity),
                resolution=DiscrepancyResolution.FAILED_TO_HEAL,
                error_message=f"{type(e).__name__}: {e}",
            )

    # =========================================================================
    # Internal: Per-record reconciliation
    # =========================================================================

    @classmethod
    def reconcile_transaction(
        cls,
        txn: PaymentTransaction,
        run: ReconciliationRun | None,
        result: ReconciliationRunResult,
    ) -> None:
        """
        Verify one initiated transaction and submit a terminal result.

        Raises:
            ProcessorUnavailableError: Processor still down after retries
        """
        adapter = get_adapter(txn.processor)
        reference = txn.processor_reference

        try:
            verification = call_with_retry(
                lambda: adapter.verify_transaction(reference),
                label="verify_transaction",
            )
        except InvalidRequestError as e:
            PaymentTransaction.objects.filter(pk=txn.pk).update(
                needs_review=True,
                updated_at=timezone.now(),
            )
            result.flagged_for_review += 1
            cls._record_discrepancy(
                run,
                entity_type=ENTITY_TRANSACTION,
                entity_id=txn.pk,
                processor_reference=reference,
                discrepancy_type="processor_rejected_verification",
                local_state=txn.status,
                resolution=DiscrepancyResolution.FLAGGED_FOR_REVIEW,
                error_message=e.message,
            )
            return

        if not verification.is_terminal:
            return

        event = event_from_verification(
            verification,
            processor=txn.processor,
            entity_ref=reference,
            source="reconcile",
            metadata={"transaction_id": str(txn.pk)},
        )
        processing = EventProcessor.submit(
            event,
            key=f"reconcile:{reference}:{verification.status}",
            kind=IdempotencyKind.RECONCILE,
        )
        cls._tally(
            run,
            result,
            processing,
            entity_type=ENTITY_TRANSACTION,
            entity_id=txn.pk,
            processor_reference=reference,
            local_state=txn.status,
            processor_state=verification.status,
        )

    @classmethod
    def reconcile_refund(
        cls,
        refund: Refund,
        run: ReconciliationRun | None,
        result: ReconciliationRunResult,
    ) -> None:
        """
        Settle one in-flight refund.

        PENDING refunds without a processor reference never reached the
        processor; they are re-submitted or flagged. Refunds with a reference
        are verified and terminal results submitted.
        """
        if not refund.processor_refund_ref:
            cls._resume_refund(refund, run, result)
            return

        adapter = get_adapter(refund.payment_transaction.processor)
        refund_ref = refund.processor_refund_ref
        verification = call_with_retry(
            lambda: adapter.verify_refund(refund_ref),
            label="verify_refund",
        )
        if not verification.is_terminal:
            return

        event = event_from_verification(
            verification,
            processor=adapter.processor,
            entity_ref=refund.payment_transaction.processor_reference,
            source="reconcile",
            refund=True,
            metadata={"refund_id": str(refund.pk)},
        )
        processing = EventProcessor.submit(
            event,
            key=f"reconcile:{refund_ref}:{verification.status}",
            kind=IdempotencyKind.RECONCILE,
        )
        cls._tally(
            run,
            result,
            processing,
            entity_type=ENTITY_REFUND,
            entity_id=refund.pk,
            processor_reference=refund_ref,
            local_state=refund.state,
            processor_state=verification.status,
        )

    @classmethod
    def _resume_refund(
        cls,
        refund: Refund,
        run: ReconciliationRun | None,
        result: ReconciliationRunResult,
    ) -> None:
        if refund.state == RefundState.PENDING:
            resumed = RefundService.resume_pending(refund)
        else:
            resumed = None

        if resumed is not None and resumed.success:
            if resumed.data.state != RefundState.PENDING:
                result.events_applied += 1
                cls._record_discrepancy(
                    run,
                    entity_type=ENTITY_REFUND,
                    entity_id=refund.pk,
                    processor_reference=resumed.data.processor_refund_ref or "",
                    discrepancy_type="pending_refund_resubmitted",
                    local_state=RefundState.PENDING,
                    processor_state=resumed.data.state,
                    resolution=DiscrepancyResolution.AUTO_HEALED,
                    action_taken="Re-submitted with the original idempotency key",
                )
            return

        # Processing without a reference, or a processor that would refund twice
        if resumed is None:
            Refund.objects.filter(pk=refund.pk).update(
                needs_review=True,
                updated_at=timezone.now(),
            )
        result.flagged_for_review += 1
        cls._record_discrepancy(
            run,
            entity_type=ENTITY_REFUND,
            entity_id=refund.pk,
            processor_reference="",
            discrepancy_type="refund_outcome_unknown",
            local_state=refund.state,
            resolution=DiscrepancyResolution.FLAGGED_FOR_REVIEW,
            error_message=resumed.error if resumed is not None else "",
        )

    @classmethod
    def _tally(
        cls,
        run: ReconciliationRun | None,
        result: ReconciliationRunResult,
        processing: ProcessingResult,
        entity_type: str,
        entity_id: uuid.UUID,
        processor_reference: str,
        local_state: str,
        processor_state: str,
    ) -> None:
        if processing.duplicate:
            result.duplicates_skipped += 1
            return

        result.events_applied += 1
        if processing.status == OutcomeStatus.NEEDS_REVIEW:
            result.flagged_for_review += 1
            resolution = DiscrepancyResolution.FLAGGED_FOR_REVIEW
        elif processing.status == OutcomeStatus.APPLIED:
            resolution = DiscrepancyResolution.AUTO_HEALED
        else:
            return

        cls._record_discrepancy(
            run,
            entity_type=entity_type,
            entity_id=entity_id,
            processor_reference=processor_reference,
            discrepancy_type=f"processor_{processor_state}_local_{local_state}",
            local_state=local_state,
            processor_state=processor_state,
            resolution=resolution,
            action_taken=f"Submitted {processing.key}",
            details={"outcome": processing.outcome},
        )

    @classmethod
    def _record_discrepancy(
        cls,
        run: ReconciliationRun | None,
        **fields,
    ) -> None:
        if run is None:
            return
        fields["error_message"] = fields.get("error_message") or ""
        ReconciliationDiscrepancy.objects.create(run=run, **fields)

    @staticmethod
    def _reference_of(entity) -> str:
        if isinstance(entity, Refund):
            return entity.processor_refund_ref or ""
        return entity.processor_reference or ""

    @staticmethod
    def _state_of(entity) -> str:
        if isinstance(entity, Refund):
            return entity.state
        return entity.status
