"""
Refund service for returning money to booking clients.

A refund request is split across the booking's verified charges, newest
first, one Refund per charge slice. Each Refund follows:

    PENDING (row written before the processor call)
      -> PROCESSING (processor accepted; refund reference stored)
      -> SUCCEEDED | FAILED

FAILED keeps its failure reason and never transitions again; retrying means
a new request with a new idempotency key. When a refund succeeds the
booking's cumulative refunded amount is recomputed and the booking refund
transition applied.

The processor is always called outside the database transaction that
created the PENDING rows, so a rollback can never hide money that moved.

Usage:
    from payments.services import RefundService

    result = RefundService.request_refund(
        booking,
        amount_cents=4000,
        reason="Client cancelled",
        idempotency_key="refund-7f3a",
        requested_by=request.user,
    )
    if result.success:
        for refund in result.data.refunds:
            print(refund.state)
    else:
        print(result.error_code)  # NO_CAPTURED_PAYMENT, AMOUNT_MISMATCH, ...
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from django.db import IntegrityError
from django.db.models import Sum
from django.utils import timezone

from core.services import BaseService, ServiceResult

from payments.adapters import (
    STATUS_FAILED,
    STATUS_SUCCEEDED,
    IdempotencyKeyGenerator,
    call_with_retry,
    get_adapter,
)
from payments.exceptions import (
    AlreadyRefundedError,
    DeclinedError,
    InvalidRequestError,
    InvalidStateTransitionError,
    ProcessorUnavailableError,
)
from payments.locks import retry_on_conflict, save_with_version_check
from payments.models import IN_FLIGHT_REFUND_STATES, Booking, PaymentTransaction, Refund
from payments.reason_codes import ReasonCode
from payments.services.payment_state_machine import PaymentStateMachine
from payments.state_machines import BookingPaymentStatus, RefundState, TransactionStatus

if TYPE_CHECKING:
    from django.contrib.auth.models import AbstractBaseUser


# =============================================================================
# Constants
# =============================================================================

CANCELLED_BY_PROVIDER = "provider"
CANCELLED_BY_CLIENT = "client"

# States whose amounts count against what is still refundable
COMMITTED_REFUND_STATES = [RefundState.SUCCEEDED, *IN_FLIGHT_REFUND_STATES]

_PROCESSING_FIELDS = ["state", "processor_refund_ref", "processing_at"]
_SUCCEEDED_FIELDS = ["state", "processor_refund_ref", "processing_at", "succeeded_at"]
_FAILED_FIELDS = ["state", "failure_reason", "failed_at"]


# =============================================================================
# Result Types
# =============================================================================


@dataclass
class RefundRequestResult:
    """
    Result of a refund request.

    Attributes:
        refunds: One Refund per charge slice, newest charge first
        replayed: True when the idempotency key had been used before
    """

    refunds: list[Refund] = field(default_factory=list)
    replayed: bool = False

    @property
    def total_cents(self) -> int:
        return sum(refund.amount_cents for refund in self.refunds)


# =============================================================================
# Refund Service
# =============================================================================


class RefundService(BaseService):
    """
    Service for refund requests and refund state changes.

    Two-phase pattern:
        1. In one transaction: validate against captured minus committed
           refunds, write PENDING slices, bump the booking version so a
           concurrent request recomputes
        2. Outside the transaction: call the processor per slice with the
           slice's idempotency key, then move the slice on
    """

    @classmethod
    def request_refund(
        cls,
        booking: Booking,
        amount_cents: int,
        reason: str,
        idempotency_key: str,
        requested_by: AbstractBaseUser | None = None,
    ) -> ServiceResult[RefundRequestResult]:
        """
        Request a refund for a booking.

        Args:
            booking: Booking to refund
            amount_cents: Amount to return in minor units
            reason: Human-readable reason
            idempotency_key: Caller key; replays return the original refunds
            requested_by: Account that asked for the refund

        Returns:
            ServiceResult with RefundRequestResult. Failure codes:
            INVALID_REQUEST, NO_CAPTURED_PAYMENT, AMOUNT_MISMATCH
        """
        logger = cls.get_logger()
        log_context = {
            "booking_id": str(booking.pk),
            "amount_cents": amount_cents,
            "idempotency_key": idempotency_key,
        }

        if not idempotency_key:
            return ServiceResult.failure(
                "An idempotency key is required",
                error_code=ReasonCode.INVALID_REQUEST,
            )

        replay = cls._replay(booking, idempotency_key)
        if replay is not None:
            logger.info("Refund request replayed", extra=log_context)
            return replay

        if amount_cents <= 0:
            return ServiceResult.failure(
                "Refund amount must be positive",
                error_code=ReasonCode.INVALID_REQUEST,
            )

        try:
            outcome = retry_on_conflict(
                lambda: cls._create_slices(
                    booking.pk, amount_cents, reason, idempotency_key, requested_by
                ),
                label=f"booking:{booking.pk}",
            )
        except IntegrityError:
            # Same key raced in from a concurrent request
            replay = cls._replay(booking, idempotency_key)
            if replay is not None:
                return replay
            raise

        if not outcome.success:
            logger.info(
                "Refund request rejected",
                extra={**log_context, "error_code": outcome.error_code},
            )
            return outcome

        refunds = [cls._submit(refund) for refund in outcome.data.refunds]
        logger.info(
            "Refund request submitted",
            extra={**log_context, "slices": len(refunds)},
        )
        return ServiceResult.success(RefundRequestResult(refunds=refunds))

    @classmethod
    def _replay(
        cls,
        booking: Booking,
        idempotency_key: str,
    ) -> ServiceResult[RefundRequestResult] | None:
        existing = list(
            Refund.objects.filter(request_key=idempotency_key).order_by("created_at")
        )
        if not existing:
            return None
        if any(refund.booking_id != booking.pk for refund in existing):
            return ServiceResult.failure(
                "Idempotency key already used for another booking",
                error_code=ReasonCode.INVALID_REQUEST,
            )
        return ServiceResult.success(RefundRequestResult(refunds=existing, replayed=True))

    @classmethod
    def _create_slices(
        cls,
        booking_id,
        amount_cents: int,
        reason: str,
        idempotency_key: str,
        requested_by: AbstractBaseUser | None,
    ) -> ServiceResult[RefundRequestResult]:
        with cls.atomic():
            booking = Booking.objects.get(pk=booking_id)
            if booking.payment_status == BookingPaymentStatus.AWAITING_DEPOSIT:
                return ServiceResult.failure(
                    "No payment has been captured for this booking",
                    error_code=ReasonCode.NO_CAPTURED_PAYMENT,
                )

            charges = list(
                PaymentTransaction.objects.filter(
                    booking_id=booking_id,
                    status=TransactionStatus.VERIFIED,
                ).order_by("-verified_at", "-created_at")
            )
            captured = sum(charge.amount_cents for charge in charges)
            committed_by_charge = cls._committed_by_charge(booking_id)
            available = captured - sum(committed_by_charge.values())

            if amount_cents > available:
                return ServiceResult.failure(
                    "Refund exceeds the refundable amount",
                    error_code=ReasonCode.AMOUNT_MISMATCH,
                    details={
                        "requested_cents": amount_cents,
                        "refundable_cents": max(available, 0),
                    },
                )

            expected_version = booking.version
            refunds: list[Refund] = []
            remaining = amount_cents
            for charge in charges:
                if remaining == 0:
                    break
                room = charge.amount_cents - committed_by_charge.get(charge.pk, 0)
                if room <= 0:
                    continue
                slice_cents = min(remaining, room)
                refunds.append(
                    Refund.objects.create(
                        booking=booking,
                        payment_transaction=charge,
                        requested_by=requested_by,
                        amount_cents=slice_cents,
                        currency=booking.currency,
                        reason=reason or "",
                        idempotency_key=IdempotencyKeyGenerator.generate(
                            "refund", idempotency_key, charge.pk
                        ),
                        request_key=idempotency_key,
                    )
                )
                remaining -= slice_cents

            # Serializes concurrent requests for the same booking
            save_with_version_check(booking, expected_version, [])

        return ServiceResult.success(RefundRequestResult(refunds=refunds))

    @staticmethod
    def _committed_by_charge(booking_id) -> dict:
        rows = (
            Refund.objects.filter(booking_id=booking_id, state__in=COMMITTED_REFUND_STATES)
            .values("payment_transaction_id")
            .annotate(total=Sum("amount_cents"))
        )
        return {row["payment_transaction_id"]: row["total"] for row in rows}

    @classmethod
    def _submit(cls, refund: Refund) -> Refund:
        """Send one PENDING slice to the processor and record the answer."""
        logger = cls.get_logger()
        charge = refund.payment_transaction
        adapter = get_adapter(charge.processor)
        log_context = {
            "refund_id": str(refund.pk),
            "transaction_id": str(charge.pk),
            "processor": charge.processor,
            "amount_cents": refund.amount_cents,
        }

        try:
            result = call_with_retry(
                lambda: adapter.initiate_refund(
                    transaction_ref=charge.processor_reference,
                    amount_cents=refund.amount_cents,
                    idempotency_key=refund.idempotency_key,
                    metadata={
                        "refund_id": str(refund.pk),
                        "booking_id": str(refund.booking_id),
                        "reason": refund.reason,
                    },
                ),
                label="initiate_refund",
            )
        except AlreadyRefundedError:
            logger.info("Processor reports funds already returned", extra=log_context)
            return cls.mark_succeeded(refund)
        except (InvalidRequestError, DeclinedError) as e:
            logger.warning(
                "Processor rejected refund",
                extra={**log_context, "error_code": e.error_code},
            )
            return cls.mark_failed(refund, e.message)
        except ProcessorUnavailableError as e:
            logger.warning(
                "Refund left pending, processor unavailable",
                extra={**log_context, "error_code": e.error_code},
            )
            return refund

        refund = cls._record_processing(refund, result.refund_ref)
        if result.status == STATUS_SUCCEEDED:
            return cls.mark_succeeded(refund)
        if result.status == STATUS_FAILED:
            return cls.mark_failed(refund, result.failure_reason or "Refund failed at processor")
        return refund

    @classmethod
    def _record_processing(cls, refund: Refund, processor_refund_ref: str | None) -> Refund:
        refund_id = refund.pk

        def attempt() -> Refund:
            with cls.atomic():
                current = Refund.objects.get(pk=refund_id)
                expected = current.version
                if current.state == RefundState.PENDING:
                    current.start_processing(processor_refund_ref)
                elif (
                    current.state == RefundState.PROCESSING
                    and processor_refund_ref
                    and not current.processor_refund_ref
                ):
                    current.processor_refund_ref = processor_refund_ref
                else:
                    return current
                return save_with_version_check(current, expected, _PROCESSING_FIELDS)

        return retry_on_conflict(attempt, label=f"refund:{refund_id}")

    # =========================================================================
    # Terminal transitions
    # =========================================================================

    @classmethod
    def mark_succeeded(
        cls,
        refund: Refund,
        processor_refund_ref: str | None = None,
    ) -> Refund:
        """
        Move a refund to SUCCEEDED and apply it to the booking.

        A PENDING refund passes through PROCESSING first. Already succeeded
        refunds are returned unchanged.

        Raises:
            InvalidStateTransitionError: The refund had already failed
            AmountMismatchError: Succeeded refunds would exceed captured
        """
        refund_id = refund.pk

        def attempt() -> Refund:
            with cls.atomic():
                current = Refund.objects.get(pk=refund_id)
                if current.state == RefundState.SUCCEEDED:
                    return current
                if current.state == RefundState.FAILED:
                    raise InvalidStateTransitionError(
                        "Refund already failed; a success report needs review",
                        details={"refund_id": str(refund_id)},
                    )

                expected = current.version
                if current.state == RefundState.PENDING:
                    current.start_processing(processor_refund_ref)
                elif processor_refund_ref and not current.processor_refund_ref:
                    current.processor_refund_ref = processor_refund_ref
                current.succeed()
                save_with_version_check(current, expected, _SUCCEEDED_FIELDS)
                PaymentStateMachine.apply_refund(current.booking_id)

            cls.get_logger().info(
                "Refund succeeded",
                extra={
                    "refund_id": str(refund_id),
                    "booking_id": str(current.booking_id),
                    "amount_cents": current.amount_cents,
                },
            )
            return current

        return retry_on_conflict(attempt, label=f"refund:{refund_id}")

    @classmethod
    def mark_failed(cls, refund: Refund, reason: str) -> Refund:
        """
        Move a refund to FAILED, keeping ``reason`` for the requester.

        Raises:
            InvalidStateTransitionError: The refund had already succeeded
        """
        refund_id = refund.pk

        def attempt() -> Refund:
            with cls.atomic():
                current = Refund.objects.get(pk=refund_id)
                if current.state == RefundState.FAILED:
                    return current
                if current.state == RefundState.SUCCEEDED:
                    raise InvalidStateTransitionError(
                        "Refund already succeeded; a failure report needs review",
                        details={"refund_id": str(refund_id)},
                    )
                expected = current.version
                current.fail(reason or "Refund failed")
                return save_with_version_check(current, expected, _FAILED_FIELDS)

        failed = retry_on_conflict(attempt, label=f"refund:{refund_id}")
        cls.get_logger().warning(
            "Refund failed",
            extra={"refund_id": str(refund_id), "failure_reason": failed.failure_reason},
        )
        return failed

    # =========================================================================
    # Reconciliation support
    # =========================================================================

    @classmethod
    def resume_pending(cls, refund: Refund) -> ServiceResult[Refund]:
        """
        Re-submit a PENDING refund that never reached the processor.

        Only processors that deduplicate refunds on the idempotency key are
        re-submitted; for the others the outcome is unknowable from here, so
        the refund is flagged for manual review.
        """
        current = Refund.objects.select_related("payment_transaction").get(pk=refund.pk)
        if current.state != RefundState.PENDING:
            return ServiceResult.success(current)

        adapter = get_adapter(current.payment_transaction.processor)
        if not adapter.supports_idempotent_refunds:
            Refund.objects.filter(pk=current.pk).update(
                needs_review=True,
                updated_at=timezone.now(),
            )
            current.needs_review = True
            cls.get_logger().warning(
                "Pending refund flagged for review",
                extra={
                    "refund_id": str(current.pk),
                    "processor": adapter.processor,
                },
            )
            return ServiceResult.failure(
                "Refund outcome unknown; flagged for manual review",
                error_code=ReasonCode.NEEDS_REVIEW,
                details={"refund_id": str(current.pk)},
            )

        cls.get_logger().info(
            "Re-submitting pending refund",
            extra={"refund_id": str(current.pk), "processor": adapter.processor},
        )
        return ServiceResult.success(cls._submit(current))

    # =========================================================================
    # Cancellation policy
    # =========================================================================

    @staticmethod
    def calculate_cancellation_refund(booking: Booking, cancelled_by: str) -> int:
        """
        Amount to refund when a booking is cancelled.

        - Provider cancels: everything still refundable
        - Client cancels before the provider confirmed: everything still refundable
        - Client cancels after confirmation: nothing

        Raises:
            ValueError: Unknown ``cancelled_by``
        """
        if cancelled_by == CANCELLED_BY_PROVIDER:
            return booking.refundable_cents
        if cancelled_by == CANCELLED_BY_CLIENT:
            return 0 if booking.is_confirmed else booking.refundable_cents
        raise ValueError(f"Unknown cancelling party: {cancelled_by!r}")
