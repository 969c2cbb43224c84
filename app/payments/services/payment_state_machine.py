"""
Booking payment state machine.

Applies verified charges and settled refunds to a Booking. Every write is a
version compare-and-set (``save_with_version_check``); a stale write is
retried once against a fresh read and then surfaces as
TransitionConflictError.

Charge rules:
    AWAITING_DEPOSIT + amount == total                  -> FULLY_PAID (checked first)
    AWAITING_DEPOSIT + deposit stage, amount == deposit -> DEPOSIT_PAID
    DEPOSIT_PAID     + balance stage, amount == balance -> FULLY_PAID
    DEPOSIT_PAID     + any other stage                  -> InvalidStateTransitionError
    anything else                                       -> AmountMismatchError

Refund rules (cumulative succeeded refunds vs captured):
    equal -> REFUNDED
    less  -> PARTIALLY_REFUNDED
    more  -> AmountMismatchError

Usage:
    from payments.services import PaymentStateMachine

    application = PaymentStateMachine.apply_charge(
        transaction, amount_cents=2000, currency="USD"
    )
    application.booking.payment_status  # DEPOSIT_PAID

    booking = PaymentStateMachine.apply_refund(booking.id)
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

from django.db.models import Sum

from core.services import BaseService

from payments.exceptions import AmountMismatchError, InvalidStateTransitionError
from payments.locks import retry_on_conflict, save_with_version_check
from payments.models import Booking, PaymentTransaction, Refund
from payments.reason_codes import ReasonCode
from payments.state_machines import (
    BookingPaymentStatus,
    PaymentStage,
    RefundState,
    TransactionStatus,
)

if TYPE_CHECKING:
    from uuid import UUID


_BOOKING_CHARGE_FIELDS = [
    "payment_status",
    "amount_paid_cents",
    "deposit_paid_at",
    "fully_paid_at",
]

_BOOKING_REFUND_FIELDS = [
    "payment_status",
    "amount_refunded_cents",
    "refunded_at",
]

_TRANSACTION_VERIFY_FIELDS = ["status", "verified_at", "payment_method_ref"]

_TRANSACTION_FAIL_FIELDS = [
    "status",
    "failed_at",
    "failure_reason_code",
    "failure_message",
]


@dataclass
class ChargeApplication:
    """
    Result of applying a verified charge.

    Attributes:
        booking: Booking after the transition
        transaction: Transaction after verification
        applied: False when the transaction had already been verified
    """

    booking: Booking
    transaction: PaymentTransaction
    applied: bool = True


class PaymentStateMachine(BaseService):
    """Booking payment transitions driven by verified processor results."""

    @classmethod
    def apply_charge(
        cls,
        transaction: PaymentTransaction,
        amount_cents: int,
        currency: str,
        payment_method_ref: str | None = None,
    ) -> ChargeApplication:
        """
        Verify ``transaction`` and advance its booking in one atomic unit.

        Args:
            transaction: Booking charge being verified
            amount_cents: Amount the processor reports as settled
            currency: Currency the processor reports
            payment_method_ref: Reusable payment method, if any

        Returns:
            ChargeApplication with the updated booking and transaction

        Raises:
            AmountMismatchError: Amount is not the expected next increment,
                or the currency differs from the booking's
            InvalidStateTransitionError: Booking cannot accept a charge
                (refunded, already fully paid) or the transaction failed
            TransitionConflictError: Concurrent writers won twice
        """
        transaction_id = transaction.pk

        def attempt() -> ChargeApplication:
            with cls.atomic():
                txn = PaymentTransaction.objects.get(pk=transaction_id)
                booking = Booking.objects.get(pk=txn.booking_id)

                if txn.status == TransactionStatus.VERIFIED:
                    return ChargeApplication(booking=booking, transaction=txn, applied=False)
                if txn.status == TransactionStatus.FAILED:
                    raise InvalidStateTransitionError(
                        "Transaction already failed; a success report needs review",
                        details={"transaction_id": str(txn.pk)},
                    )

                cls._check_currency(booking.currency, currency, txn)
                booking_version = booking.version
                txn_version = txn.version

                cls._advance_booking(booking, amount_cents, txn)
                txn.verify(payment_method_ref)

                save_with_version_check(booking, booking_version, _BOOKING_CHARGE_FIELDS)
                save_with_version_check(txn, txn_version, _TRANSACTION_VERIFY_FIELDS)

            cls.get_logger().info(
                "Charge applied to booking",
                extra={
                    "booking_id": str(booking.pk),
                    "transaction_id": str(txn.pk),
                    "amount_cents": amount_cents,
                    "payment_status": booking.payment_status,
                },
            )
            return ChargeApplication(booking=booking, transaction=txn)

        return retry_on_conflict(attempt, label=f"transaction:{transaction_id}")

    @classmethod
    def _advance_booking(
        cls,
        booking: Booking,
        amount_cents: int,
        txn: PaymentTransaction,
    ) -> None:
        status = booking.payment_status

        if status == BookingPaymentStatus.AWAITING_DEPOSIT:
            if amount_cents == booking.total_amount_cents:
                booking.mark_paid_in_full(amount_cents)
                return
            if txn.stage == PaymentStage.DEPOSIT and amount_cents == booking.deposit_amount_cents:
                booking.mark_deposit_paid(amount_cents)
                return
            raise AmountMismatchError(
                "Charge amount matches neither the deposit nor the total",
                details={
                    "transaction_id": str(txn.pk),
                    "stage": txn.stage,
                    "amount_cents": amount_cents,
                    "deposit_amount_cents": booking.deposit_amount_cents,
                    "total_amount_cents": booking.total_amount_cents,
                },
            )

        if status == BookingPaymentStatus.DEPOSIT_PAID:
            if txn.stage != PaymentStage.BALANCE:
                raise InvalidStateTransitionError(
                    f"Booking in {status} only accepts a balance charge",
                    details={
                        "booking_id": str(booking.pk),
                        "transaction_id": str(txn.pk),
                        "stage": txn.stage,
                        "payment_status": status,
                    },
                )
            if amount_cents == booking.balance_due_cents:
                booking.mark_fully_paid(amount_cents)
                return
            raise AmountMismatchError(
                "Charge amount does not match the remaining balance",
                details={
                    "transaction_id": str(txn.pk),
                    "amount_cents": amount_cents,
                    "balance_due_cents": booking.balance_due_cents,
                },
            )

        raise InvalidStateTransitionError(
            f"Booking in {status} cannot accept a charge",
            details={
                "booking_id": str(booking.pk),
                "transaction_id": str(txn.pk),
                "payment_status": status,
            },
        )

    @staticmethod
    def _check_currency(
        expected: str,
        reported: str,
        txn: PaymentTransaction,
    ) -> None:
        if (reported or "").upper() != expected.upper():
            raise AmountMismatchError(
                f"Charge currency {reported} does not match {expected}",
                error_code=ReasonCode.CURRENCY_MISMATCH,
                details={
                    "transaction_id": str(txn.pk),
                    "expected_currency": expected,
                    "reported_currency": reported,
                },
            )

    @classmethod
    def fail_transaction(
        cls,
        transaction: PaymentTransaction,
        reason_code: str,
        message: str = "",
    ) -> PaymentTransaction:
        """
        Mark an initiated transaction failed.

        Failed or verified transactions are returned unchanged; a late
        failure report never overrides a verified charge.
        """
        transaction_id = transaction.pk

        def attempt() -> PaymentTransaction:
            with cls.atomic():
                txn = PaymentTransaction.objects.get(pk=transaction_id)
                if txn.status != TransactionStatus.INITIATED:
                    return txn
                expected = txn.version
                txn.fail(reason_code, (message or "")[:2000])
                save_with_version_check(txn, expected, _TRANSACTION_FAIL_FIELDS)
            cls.get_logger().info(
                "Transaction failed",
                extra={"transaction_id": str(txn.pk), "reason_code": reason_code},
            )
            return txn

        return retry_on_conflict(attempt, label=f"transaction:{transaction_id}")

    @classmethod
    def apply_refund(cls, booking_id: UUID) -> Booking:
        """
        Recompute the booking's cumulative succeeded refunds and transition.

        Idempotent: when the stored refunded amount already matches, the
        booking is returned unchanged.

        Raises:
            AmountMismatchError: Succeeded refunds exceed what was captured
            TransitionConflictError: Concurrent writers won twice
        """

        def attempt() -> Booking:
            with cls.atomic():
                booking = Booking.objects.get(pk=booking_id)
                refunded = (
                    Refund.objects.filter(
                        booking_id=booking_id,
                        state=RefundState.SUCCEEDED,
                    ).aggregate(total=Sum("amount_cents"))["total"]
                    or 0
                )
                captured = booking.amount_paid_cents

                if refunded > captured:
                    raise AmountMismatchError(
                        "Succeeded refunds exceed the captured amount",
                        details={
                            "booking_id": str(booking_id),
                            "refunded_cents": refunded,
                            "captured_cents": captured,
                        },
                    )

                if refunded == 0 or refunded == booking.amount_refunded_cents:
                    return booking

                expected = booking.version
                if refunded == captured:
                    booking.mark_refunded(refunded)
                else:
                    booking.mark_partially_refunded(refunded)
                save_with_version_check(booking, expected, _BOOKING_REFUND_FIELDS)

            cls.get_logger().info(
                "Refund applied to booking",
                extra={
                    "booking_id": str(booking_id),
                    "refunded_cents": refunded,
                    "captured_cents": captured,
                    "payment_status": booking.payment_status,
                },
            )
            return booking

        return retry_on_conflict(attempt, label=f"booking:{booking_id}")
