"""
Reconciliation worker for periodic settlement checks.

Tasks:
- run_scheduled_reconciliation: Periodic sweep over stale transactions and refunds
- reconcile_single_transaction: On-demand verification of one transaction

Usage:
    from payments.workers import run_scheduled_reconciliation

    run_scheduled_reconciliation.delay()
    reconcile_single_transaction.delay(str(transaction_id))

Celery Beat Schedule:
    CELERY_BEAT_SCHEDULE = {
        'reconciliation-sweep': {
            'task': 'payments.workers.reconciliation_worker.run_scheduled_reconciliation',
            'schedule': crontab(minute='*/15'),
        },
    }
"""

from __future__ import annotations

import logging
from uuid import UUID

from celery import shared_task

from payments.exceptions import ReconciliationLockError

logger = logging.getLogger(__name__)


# =============================================================================
# Periodic Task: Reconciliation Sweep
# =============================================================================


@shared_task(bind=True)
def run_scheduled_reconciliation(
    self,
    stale_after_minutes: int | None = None,
    max_records: int | None = None,
) -> dict:
    """
    Run one reconciliation sweep.

    If another sweep holds the run lock the task returns "skipped"
    immediately rather than waiting, so slow sweeps never pile up.

    Args:
        stale_after_minutes: Override RECONCILIATION_STALE_AFTER_MINUTES
        max_records: Override RECONCILIATION_MAX_RECORDS

    Returns:
        Dict with status ("completed", "skipped" or "failed") and the run
        counters
    """
    from payments.services import ReconciliationService

    try:
        result = ReconciliationService.run(
            stale_after_minutes=stale_after_minutes,
            max_records=max_records,
        )
    except ReconciliationLockError:
        logger.info(
            "Reconciliation run skipped, another run in progress",
            extra={"task_id": self.request.id},
        )
        return {
            "status": "skipped",
            "reason": "Another reconciliation run is in progress",
        }
    except Exception as e:
        logger.exception(
            "Unexpected error during reconciliation",
            extra={"error": str(e)},
        )
        return {
            "status": "failed",
            "error": str(e),
            "error_code": "UNEXPECTED_ERROR",
        }

    if not result.success:
        return {
            "status": "failed",
            "error": result.error,
            "error_code": result.error_code,
        }

    summary = result.data
    return {
        "status": "completed",
        "run_id": str(summary.run_id),
        **summary.as_run_fields(),
    }


# =============================================================================
# On-Demand Task: Single Transaction
# =============================================================================


@shared_task(bind=True)
def reconcile_single_transaction(self, transaction_id: str) -> dict:
    """
    Verify one initiated transaction with its processor now.

    Args:
        transaction_id: UUID of the PaymentTransaction

    Returns:
        Dict with status "ok", "not_found" or "failed" and the counters
    """
    from payments.reason_codes import ReasonCode
    from payments.services import ReconciliationService

    try:
        transaction_uuid = UUID(transaction_id)
    except ValueError:
        logger.error(
            "Invalid transaction_id format",
            extra={"transaction_id": transaction_id},
        )
        return {
            "status": "failed",
            "transaction_id": transaction_id,
            "error": "Invalid UUID format",
        }

    try:
        result = ReconciliationService.reconcile_single_transaction(transaction_uuid)
    except Exception as e:
        logger.exception(
            "Error reconciling transaction",
            extra={"transaction_id": transaction_id},
        )
        return {
            "status": "failed",
            "transaction_id": transaction_id,
            "error": str(e),
            "error_code": "UNEXPECTED_ERROR",
        }

    if not result.success:
        return {
            "status": "not_found" if result.error_code == ReasonCode.NOT_FOUND else "failed",
            "transaction_id": transaction_id,
            "error": result.error,
            "error_code": result.error_code,
        }

    return {
        "status": "ok",
        "transaction_id": transaction_id,
        **result.data.as_run_fields(),
    }


__all__ = [
    "reconcile_single_transaction",
    "run_scheduled_reconciliation",
]
