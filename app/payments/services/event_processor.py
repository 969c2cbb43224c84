"""
Event Processor: the single entry point for normalized events.

Webhook intake, reconciliation and client confirmation all feed events
through here, so every path shares the same idempotency ledger semantics:

1. Reserve the event's key in the ledger (insert-if-absent)
2. Claim the record for processing (compare-and-set)
3. Dispatch to the registered handler inside a transaction together with
   recording the outcome
4. Business-terminal conflicts are completed as ``needs_review`` and the
   affected entity is flagged; transient errors mark the record failed and
   propagate so the caller (Celery) retries

Usage:
    from payments.services import EventProcessor

    # Webhook intake (reservation done by the view, processing by Celery)
    result = EventProcessor.process_key(ledger_key)

    # Reconciliation / confirm
    result = EventProcessor.submit(
        event,
        key=f"reconcile:{ref}:succeeded",
        kind=IdempotencyKind.RECONCILE,
    )
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from django.db import DatabaseError
from django.utils import timezone
from django_fsm import TransitionNotAllowed

from core.services import BaseService

from payments.adapters.base import STATUS_SUCCEEDED, NormalizedEvent
from payments.exceptions import (
    AmountMismatchError,
    InvalidStateTransitionError,
)
from payments.ledger import OutcomeStatus, build_outcome, ledger
from payments.models import PaymentTransaction, Refund
from payments.reason_codes import ReasonCode
from payments.state_machines import IdempotencyKind, NormalizedEventType

if TYPE_CHECKING:
    from payments.adapters.base import VerificationResult
    from payments.ledger import IdempotencyRecord


# Business-terminal: retrying cannot change the outcome
REVIEW_ERRORS = (AmountMismatchError, InvalidStateTransitionError, TransitionNotAllowed)


@dataclass
class ProcessingResult:
    """
    Outcome of feeding one event through the processor.

    Attributes:
        key: Ledger key of the event
        outcome: Outcome dict stored on the ledger record
        duplicate: True when the key had already been reserved and this call
            did not process it
    """

    key: str
    outcome: dict[str, Any] = field(default_factory=dict)
    duplicate: bool = False

    @property
    def status(self) -> str | None:
        return self.outcome.get("status")


def event_from_verification(
    verification: VerificationResult,
    processor: str,
    entity_ref: str,
    source: str,
    refund: bool = False,
    metadata: dict[str, Any] | None = None,
) -> NormalizedEvent:
    """
    Build a NormalizedEvent from a terminal adapter verification.

    Args:
        verification: Terminal result from verify_transaction / verify_refund
        processor: Processor identifier
        entity_ref: Processor transaction reference
        source: Prefix for the synthesized event id (confirm, reconcile)
        refund: True for refund verifications
        metadata: Extra metadata (refund_id for refunds)
    """
    succeeded = verification.status == STATUS_SUCCEEDED
    if refund:
        event_type = (
            NormalizedEventType.REFUND_SUCCEEDED if succeeded else NormalizedEventType.REFUND_FAILED
        )
    else:
        event_type = (
            NormalizedEventType.CHARGE_SUCCEEDED if succeeded else NormalizedEventType.CHARGE_FAILED
        )
    return NormalizedEvent(
        type=event_type,
        entity_ref=entity_ref,
        amount_cents=verification.amount_cents,
        currency=verification.currency,
        processor_event_id=f"{source}:{verification.reference}:{verification.status}",
        processor=processor,
        refund_ref=verification.reference if refund else None,
        failure_reason=verification.failure_reason,
        payment_method_ref=verification.payment_method_ref,
        metadata=metadata or {},
    )


class EventProcessor(BaseService):
    """Ledger-guarded dispatch of normalized events."""

    @classmethod
    def reserve(
        cls,
        event: NormalizedEvent,
        key: str | None = None,
        kind: str = IdempotencyKind.WEBHOOK,
        payload: dict[str, Any] | None = None,
    ):
        """Reserve the ledger slot for ``event`` without processing it."""
        return ledger.reserve(
            key=key or event.ledger_key,
            kind=kind,
            processor=event.processor,
            event_type=event.type,
            normalized_event=event.to_dict(),
            payload=payload,
        )

    @classmethod
    def submit(
        cls,
        event: NormalizedEvent,
        key: str | None = None,
        kind: str = IdempotencyKind.WEBHOOK,
        payload: dict[str, Any] | None = None,
    ) -> ProcessingResult:
        """
        Reserve and process ``event`` synchronously.

        Raises:
            Transient errors after marking the ledger record failed
        """
        reservation = cls.reserve(event, key=key, kind=kind, payload=payload)
        return cls.process(reservation.record)

    @classmethod
    def process_key(cls, key: str) -> ProcessingResult:
        """Process the reserved record for ``key`` (Celery entry point)."""
        return cls.process(ledger.require(key))

    @classmethod
    def process(cls, record: IdempotencyRecord) -> ProcessingResult:
        """
        Process a reserved ledger record.

        Completed records return their stored outcome as a duplicate; records
        claimed by another worker return as duplicates without an outcome.
        """
        from payments.webhooks.handlers import dispatch_event

        logger = cls.get_logger()
        log_context = {"key": record.key, "event_type": record.event_type}

        if record.is_completed:
            return ProcessingResult(key=record.key, outcome=record.outcome or {}, duplicate=True)

        if not ledger.mark_processing(record):
            logger.info("Event already being processed", extra=log_context)
            return ProcessingResult(
                key=record.key,
                outcome=build_outcome(OutcomeStatus.IGNORED, reason="in_progress"),
                duplicate=True,
            )

        event = NormalizedEvent.from_dict(record.normalized_event or {})
        try:
            with cls.atomic():
                outcome = dispatch_event(event)
                ledger.complete(record, outcome)
        except REVIEW_ERRORS as e:
            outcome = build_outcome(
                OutcomeStatus.NEEDS_REVIEW,
                reason_code=getattr(e, "error_code", ReasonCode.INVALID_STATE),
                error=getattr(e, "message", str(e)),
            )
            cls._flag_for_review(event)
            ledger.complete(record, outcome)
            logger.warning(
                "Event needs manual review",
                extra={**log_context, "reason_code": outcome.get("reason_code")},
            )
            return ProcessingResult(key=record.key, outcome=outcome)
        except Exception as e:
            cls._fail_record(record, e)
            raise

        logger.info(
            "Event processed",
            extra={**log_context, "outcome": outcome.get("status")},
        )
        return ProcessingResult(key=record.key, outcome=outcome)

    @classmethod
    def _fail_record(cls, record: IdempotencyRecord, error: Exception) -> None:
        try:
            ledger.fail(record, f"{type(error).__name__}: {error}")
        except DatabaseError:
            cls.get_logger().exception(
                "Could not mark idempotency record failed",
                extra={"key": record.key},
            )

    @classmethod
    def _flag_for_review(cls, event: NormalizedEvent) -> None:
        """Mark the entity an event refers to so sweeps stop retrying it."""
        now = timezone.now()
        if event.type in (NormalizedEventType.REFUND_SUCCEEDED, NormalizedEventType.REFUND_FAILED):
            refunds = Refund.objects.filter(
                payment_transaction__processor=event.processor,
                payment_transaction__processor_reference=event.entity_ref,
            )
            if event.refund_ref:
                refunds = refunds.filter(processor_refund_ref=event.refund_ref)
            refunds.update(needs_review=True, updated_at=now)
            return

        PaymentTransaction.objects.filter(
            processor=event.processor,
            processor_reference=event.entity_ref,
        ).update(needs_review=True, updated_at=now)
