"""
Normalized event handlers.

This module provides a handler registry and the handlers for the four
normalized event types. Handlers receive a NormalizedEvent, apply it through
the state machines and return an outcome dict (``build_outcome``) that the
Event Processor stores on the idempotency record.

Handlers raise instead of returning failures:
- PaymentNotFoundError when the entity is not known yet (retried later)
- AmountMismatchError / InvalidStateTransitionError for business-terminal
  conflicts (completed as needs_review)

Usage:
    from payments.webhooks.handlers import dispatch_event, register_handler

    @register_handler("charge.succeeded")
    def handle_charge_succeeded(event: NormalizedEvent) -> dict:
        ...

    outcome = dispatch_event(event)
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Callable

from django.core.exceptions import ValidationError

from payments.exceptions import (
    AmountMismatchError,
    InvalidStateTransitionError,
    PaymentNotFoundError,
)
from payments.ledger.types import OutcomeStatus, build_outcome
from payments.models import IN_FLIGHT_REFUND_STATES, PaymentTransaction, Refund
from payments.reason_codes import ReasonCode
from payments.services.payment_state_machine import PaymentStateMachine
from payments.services.refund_service import RefundService
from payments.services.trial_manager import TrialManager
from payments.state_machines import NormalizedEventType, RefundState, TransactionStatus

if TYPE_CHECKING:
    from payments.adapters.base import NormalizedEvent


logger = logging.getLogger(__name__)


# =============================================================================
# Handler Registry
# =============================================================================


# Maps normalized event types to handler functions
EVENT_HANDLERS: dict[str, Callable[[NormalizedEvent], dict[str, Any]]] = {}


def register_handler(event_type: str) -> Callable:
    """
    Decorator to register a normalized event handler.

    Args:
        event_type: One of NormalizedEventType

    Returns:
        Decorator function that registers the handler
    """

    def decorator(func: Callable[[NormalizedEvent], dict[str, Any]]) -> Callable:
        EVENT_HANDLERS[event_type] = func
        return func

    return decorator


def dispatch_event(event: NormalizedEvent) -> dict[str, Any]:
    """
    Dispatch a normalized event to its handler.

    Event types without a handler are acknowledged as ignored.
    """
    handler = EVENT_HANDLERS.get(event.type)
    if handler is None:
        logger.info(
            "No handler registered for event type",
            extra={"event_type": event.type, "event_id": event.processor_event_id},
        )
        return build_outcome(OutcomeStatus.IGNORED, reason="unhandled_event_type")

    logger.info(
        "Dispatching event to handler",
        extra={
            "event_type": event.type,
            "event_id": event.processor_event_id,
            "processor": event.processor,
        },
    )
    return handler(event)


# =============================================================================
# Lookups
# =============================================================================


def _first_by_pk(queryset, pk):
    try:
        return queryset.filter(pk=pk).first()
    except (ValueError, ValidationError):
        return None


def find_transaction(event: NormalizedEvent) -> PaymentTransaction:
    """
    Find the PaymentTransaction an event refers to.

    Raises:
        PaymentNotFoundError: Unknown reference (the initiating call may not
            have stored it yet)
    """
    txn = PaymentTransaction.objects.filter(
        processor=event.processor,
        processor_reference=event.entity_ref,
    ).first()
    if txn is None:
        transaction_id = event.metadata.get("transaction_id")
        if transaction_id:
            txn = _first_by_pk(
                PaymentTransaction.objects.filter(processor=event.processor),
                transaction_id,
            )
    if txn is None:
        raise PaymentNotFoundError(
            f"No transaction for reference {event.entity_ref}",
            details={"processor": event.processor, "entity_ref": event.entity_ref},
        )
    return txn


def find_refund(event: NormalizedEvent) -> Refund:
    """
    Find the Refund an event refers to.

    Lookup order: refund id echoed in metadata, processor refund reference,
    then the single in-flight refund of the referenced transaction with the
    reported amount.

    Raises:
        PaymentNotFoundError: No matching refund
    """
    refund_id = event.metadata.get("refund_id")
    if refund_id:
        refund = _first_by_pk(Refund.objects.all(), refund_id)
        if refund is not None:
            return refund

    if event.refund_ref:
        refund = Refund.objects.filter(processor_refund_ref=event.refund_ref).first()
        if refund is not None:
            return refund

    candidates = Refund.objects.filter(
        payment_transaction__processor=event.processor,
        payment_transaction__processor_reference=event.entity_ref,
        state__in=IN_FLIGHT_REFUND_STATES,
    ).order_by("created_at")
    if event.amount_cents:
        candidates = candidates.filter(amount_cents=event.amount_cents)
    refund = candidates.first()
    if refund is None:
        raise PaymentNotFoundError(
            f"No refund for reference {event.refund_ref or event.entity_ref}",
            details={
                "processor": event.processor,
                "refund_ref": event.refund_ref,
                "entity_ref": event.entity_ref,
            },
        )
    return refund


# =============================================================================
# Charge Handlers
# =============================================================================


@register_handler(NormalizedEventType.CHARGE_SUCCEEDED)
def handle_charge_succeeded(event: NormalizedEvent) -> dict[str, Any]:
    """
    Apply a successful charge.

    Booking charges go through the payment state machine; subscription
    charges through the trial manager.
    """
    txn = find_transaction(event)

    if txn.status == TransactionStatus.VERIFIED:
        return build_outcome(OutcomeStatus.ALREADY_APPLIED, transaction_id=txn.pk)

    if txn.subscription_id:
        subscription = TrialManager.apply_charge(
            txn,
            event.amount_cents,
            event.currency,
            event.payment_method_ref,
        )
        return build_outcome(
            OutcomeStatus.APPLIED,
            transaction_id=txn.pk,
            subscription_id=subscription.pk,
            subscription_status=subscription.status,
        )

    application = PaymentStateMachine.apply_charge(
        txn,
        event.amount_cents,
        event.currency,
        event.payment_method_ref,
    )
    return build_outcome(
        OutcomeStatus.APPLIED if application.applied else OutcomeStatus.ALREADY_APPLIED,
        transaction_id=txn.pk,
        booking_id=application.booking.pk,
        payment_status=application.booking.payment_status,
    )


@register_handler(NormalizedEventType.CHARGE_FAILED)
def handle_charge_failed(event: NormalizedEvent) -> dict[str, Any]:
    """
    Record a failed charge.

    A failure reported for an already verified charge is ignored; verified
    is terminal.
    """
    txn = find_transaction(event)

    if txn.status == TransactionStatus.FAILED:
        return build_outcome(OutcomeStatus.ALREADY_APPLIED, transaction_id=txn.pk)
    if txn.status == TransactionStatus.VERIFIED:
        logger.warning(
            "Charge failure reported for verified transaction",
            extra={"transaction_id": str(txn.pk), "event_id": event.processor_event_id},
        )
        return build_outcome(
            OutcomeStatus.IGNORED,
            transaction_id=txn.pk,
            reason="transaction_already_verified",
        )

    failed = PaymentStateMachine.fail_transaction(
        txn,
        ReasonCode.PAYMENT_DECLINED,
        event.failure_reason or "",
    )
    return build_outcome(
        OutcomeStatus.APPLIED,
        transaction_id=failed.pk,
        reason_code=failed.failure_reason_code,
    )


# =============================================================================
# Refund Handlers
# =============================================================================


@register_handler(NormalizedEventType.REFUND_SUCCEEDED)
def handle_refund_succeeded(event: NormalizedEvent) -> dict[str, Any]:
    refund = find_refund(event)

    if refund.state == RefundState.SUCCEEDED:
        return build_outcome(OutcomeStatus.ALREADY_APPLIED, refund_id=refund.pk)
    if refund.state == RefundState.FAILED:
        raise InvalidStateTransitionError(
            "Refund already failed; a success report needs review",
            details={"refund_id": str(refund.pk)},
        )
    if event.amount_cents and event.amount_cents != refund.amount_cents:
        raise AmountMismatchError(
            "Refund amount differs from the requested slice",
            details={
                "refund_id": str(refund.pk),
                "amount_cents": event.amount_cents,
                "expected_cents": refund.amount_cents,
            },
        )

    succeeded = RefundService.mark_succeeded(refund, processor_refund_ref=event.refund_ref)
    booking = succeeded.booking
    return build_outcome(
        OutcomeStatus.APPLIED,
        refund_id=succeeded.pk,
        booking_id=booking.pk,
        payment_status=booking.payment_status,
    )


@register_handler(NormalizedEventType.REFUND_FAILED)
def handle_refund_failed(event: NormalizedEvent) -> dict[str, Any]:
    refund = find_refund(event)

    if refund.state == RefundState.FAILED:
        return build_outcome(OutcomeStatus.ALREADY_APPLIED, refund_id=refund.pk)
    if refund.state == RefundState.SUCCEEDED:
        raise InvalidStateTransitionError(
            "Refund already succeeded; a failure report needs review",
            details={"refund_id": str(refund.pk)},
        )

    failed = RefundService.mark_failed(refund, event.failure_reason or "Refund failed at processor")
    return build_outcome(
        OutcomeStatus.APPLIED,
        refund_id=failed.pk,
        failure_reason=failed.failure_reason,
    )
