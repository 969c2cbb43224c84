"""
Workers for scheduled payment processing.

This module contains Celery tasks for background sweeps:
- ReconciliationWorker: Settles stale transactions and refunds
- TrialWorker: Charges, activates and cancels subscriptions at trial end

Usage:
    from payments.workers import (
        check_trial_subscriptions,
        reconcile_single_transaction,
        run_scheduled_reconciliation,
    )

    run_scheduled_reconciliation.delay()
    reconcile_single_transaction.delay(str(transaction_id))
    check_trial_subscriptions.delay()
"""

from payments.workers.reconciliation_worker import (
    reconcile_single_transaction,
    run_scheduled_reconciliation,
)
from payments.workers.trial_worker import check_trial_subscriptions

__all__ = [
    # Reconciliation Worker
    "reconcile_single_transaction",
    "run_scheduled_reconciliation",
    # Trial Worker
    "check_trial_subscriptions",
]
