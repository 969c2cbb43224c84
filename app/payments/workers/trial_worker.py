"""
Trial worker: the daily trial sweep.

Usage:
    from payments.workers import check_trial_subscriptions

    check_trial_subscriptions.delay()
"""

from __future__ import annotations

import logging

from celery import shared_task

from payments.exceptions import LockAcquisitionError
from payments.locks import DistributedLock

logger = logging.getLogger(__name__)

TRIAL_SWEEP_LOCK_KEY = "trials:check"
TRIAL_SWEEP_LOCK_TTL = 900


@shared_task(bind=True)
def check_trial_subscriptions(self) -> dict:
    """
    Advance subscriptions whose trial or grace window has ended.

    Trialing subscriptions past their trial end are charged (or activated
    if already paid); past-due subscriptions past their cancel grace are
    canceled. One sweep at a time; a concurrent invocation is skipped.

    Returns:
        Dict with status and the sweep counters
    """
    from payments.services import TrialManager

    try:
        with DistributedLock(TRIAL_SWEEP_LOCK_KEY, ttl=TRIAL_SWEEP_LOCK_TTL, blocking=False):
            summary = TrialManager.check_trials()
    except LockAcquisitionError:
        logger.info(
            "Trial sweep skipped, another sweep in progress",
            extra={"task_id": self.request.id},
        )
        return {"status": "skipped"}

    return {"status": "completed", **summary.as_dict()}


__all__ = ["check_trial_subscriptions"]
