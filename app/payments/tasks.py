"""
Celery tasks for payment processing.

This module provides async tasks for:
- Processing reserved webhook events through the Event Processor
- Retrying failed events and re-queuing stuck ones
- Pruning old idempotency records
- Reconciliation and trial sweeps (re-exported from payments.workers)

Usage:
    from payments.tasks import process_webhook_event

    # Queue a reserved webhook for async processing
    process_webhook_event.delay("stripe:evt_123")

    # Periodic maintenance (typically via celery-beat)
    from payments.tasks import retry_failed_webhooks
    retry_failed_webhooks.delay()
"""

from __future__ import annotations

import logging
from datetime import timedelta

from celery import shared_task
from django.db import DatabaseError

from payments.exceptions import (
    PaymentNotFoundError,
    ProcessorUnavailableError,
    TransitionConflictError,
)
from payments.ledger import RecordNotFound, ledger
from payments.state_machines import IdempotencyKind, IdempotencyStatus

logger = logging.getLogger(__name__)


# =============================================================================
# Constants
# =============================================================================

MAX_WEBHOOK_RETRIES = 5
STUCK_PROCESSING_THRESHOLD_MINUTES = 30

# Records whose normalized event can be re-dispatched; outbound charge
# records are retried by the caller re-using its idempotency key
REDISPATCHABLE_KINDS = [IdempotencyKind.WEBHOOK, IdempotencyKind.RECONCILE]

# Errors a later attempt can succeed past
TRANSIENT_ERRORS = (
    DatabaseError,
    PaymentNotFoundError,
    ProcessorUnavailableError,
    TransitionConflictError,
)


# =============================================================================
# Webhook Processing Tasks
# =============================================================================


@shared_task(
    bind=True,
    autoretry_for=TRANSIENT_ERRORS,
    retry_backoff=True,
    retry_backoff_max=300,
    retry_kwargs={"max_retries": MAX_WEBHOOK_RETRIES},
    acks_late=True,
)
def process_webhook_event(self, key: str) -> dict:
    """
    Process a reserved ledger record asynchronously.

    The webhook view reserves the record; this task claims it, dispatches
    the normalized event and stores the outcome. Business-terminal conflicts
    complete as needs_review and are not retried.

    Args:
        key: Ledger key, "<processor>:<processor_event_id>"

    Returns:
        Dict with the outcome status

    Raises:
        TRANSIENT_ERRORS: Re-raised to trigger the Celery retry
    """
    from payments.services import EventProcessor

    logger.info("Processing webhook event", extra={"key": key})

    try:
        result = EventProcessor.process_key(key)
    except RecordNotFound:
        logger.error("Idempotency record not found", extra={"key": key})
        return {"status": "not_found", "key": key}

    return {
        "status": result.status,
        "key": key,
        "duplicate": result.duplicate,
    }


@shared_task
def retry_failed_webhooks() -> dict:
    """
    Periodic task to re-queue failed events under the retry limit.

    This task should be scheduled via celery-beat, e.g., every 5 minutes.

    Returns:
        Dict with count of records queued for retry
    """
    records = ledger.retryable_failures(
        max_retries=MAX_WEBHOOK_RETRIES,
        kinds=REDISPATCHABLE_KINDS,
    )

    queued_count = 0
    for record in records:
        try:
            process_webhook_event.delay(record.key)
        except Exception as e:
            logger.error(
                "Failed to queue event for retry",
                extra={"key": record.key, "error": str(e)},
            )
            continue
        queued_count += 1
        logger.info(
            "Queued failed event for retry",
            extra={"key": record.key, "retry_count": record.retry_count},
        )

    if queued_count:
        logger.info("Queued failed events for retry", extra={"queued_count": queued_count})
    return {"queued_count": queued_count}


@shared_task
def requeue_stuck_webhooks() -> dict:
    """
    Periodic task to re-queue events that stopped making progress.

    Reserved records whose task was never published are queued again;
    processing records whose worker died are marked failed first so a new
    attempt can claim them.

    Returns:
        Dict with count of records re-queued
    """
    records = ledger.stuck(
        older_than=timedelta(minutes=STUCK_PROCESSING_THRESHOLD_MINUTES),
        kinds=REDISPATCHABLE_KINDS,
    )

    requeued_count = 0
    for record in records:
        if record.status == IdempotencyStatus.PROCESSING:
            ledger.fail(record, "Processing timed out, re-queued")
        process_webhook_event.delay(record.key)
        requeued_count += 1
        logger.warning(
            "Re-queued stuck event",
            extra={
                "key": record.key,
                "stuck_since": record.updated_at.isoformat(),
            },
        )

    return {"requeued_count": requeued_count}


@shared_task
def prune_idempotency_records(retention_days: int | None = None) -> dict:
    """
    Periodic task to delete completed ledger records past retention.

    Args:
        retention_days: Override IDEMPOTENCY_RETENTION_DAYS

    Returns:
        Dict with count of records deleted
    """
    deleted_count = ledger.prune(retention_days=retention_days)
    return {"deleted_count": deleted_count}


# =============================================================================
# Re-exported Worker Tasks
# =============================================================================
# Defined in payments.workers, re-exported so Celery autodiscover finds them.

from payments.workers import (  # noqa: E402, F401
    check_trial_subscriptions,
    reconcile_single_transaction,
    run_scheduled_reconciliation,
)
