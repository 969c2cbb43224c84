"""
Charge service: the synchronous "initiate" and "confirm" calls.

``initiate_booking_charge`` reserves the caller's idempotency key in the
ledger, creates exactly one PaymentTransaction per key and calls the
booking's processor with retry. Replays with the same key never create a
second transaction; they return the recorded one.

``confirm_transaction`` is the client-driven verification after the client
finished the processor flow; the verified result goes through the Event
Processor under ledger key ``confirm:<ref>:<status>``.

Usage:
    from payments.services import ChargeService

    result = ChargeService.initiate_booking_charge(
        booking, stage=PaymentStage.DEPOSIT, idempotency_key="c0ffee-1"
    )
    if result.success:
        initiation = result.data
        initiation.client_action_token  # hand to the client SDK / redirect

    ChargeService.confirm_transaction(initiation.transaction)
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

from core.services import BaseService, ServiceResult

from payments.adapters import (
    STATUS_FAILED,
    STATUS_SUCCEEDED,
    call_with_retry,
    get_adapter,
)
from payments.exceptions import (
    DeclinedError,
    InvalidRequestError,
    ProcessorUnavailableError,
)
from payments.ledger import OutcomeStatus, build_outcome, ledger
from payments.locks import save_with_version_check
from payments.models import PaymentTransaction
from payments.reason_codes import ReasonCode, customer_message
from payments.services.event_processor import EventProcessor, event_from_verification
from payments.services.payment_state_machine import PaymentStateMachine
from payments.state_machines import (
    BookingPaymentStatus,
    IdempotencyKind,
    PaymentStage,
    TransactionStatus,
)

if TYPE_CHECKING:
    from payments.ledger import IdempotencyRecord
    from payments.models import Booking


@dataclass
class ChargeInitiation:
    """
    Result of initiating a booking charge.

    Attributes:
        transaction: The single PaymentTransaction for the idempotency key
        client_action_token: What the client needs to finish the payment
        replayed: True when the key had been used before
    """

    transaction: PaymentTransaction
    client_action_token: str | None = None
    replayed: bool = False

    @property
    def status(self) -> str:
        return self.transaction.status


class ChargeService(BaseService):
    """Initiate and confirm booking charges."""

    @staticmethod
    def expected_amount(booking: Booking, stage: str) -> int | None:
        """
        Amount the given stage collects, or None if the booking's status
        does not allow that stage.
        """
        status = booking.payment_status
        if stage == PaymentStage.DEPOSIT and status == BookingPaymentStatus.AWAITING_DEPOSIT:
            return booking.deposit_amount_cents
        if stage == PaymentStage.FULL and status == BookingPaymentStatus.AWAITING_DEPOSIT:
            return booking.total_amount_cents
        if stage == PaymentStage.BALANCE and status == BookingPaymentStatus.DEPOSIT_PAID:
            return booking.balance_due_cents
        return None

    @classmethod
    def initiate_booking_charge(
        cls,
        booking: Booking,
        stage: str,
        idempotency_key: str,
    ) -> ServiceResult[ChargeInitiation]:
        """
        Start a deposit, balance or full charge for a booking.

        Args:
            booking: Booking to charge
            stage: PaymentStage (deposit, balance, full)
            idempotency_key: Caller key; mandatory

        Returns:
            ServiceResult with ChargeInitiation. Failure codes:
            INVALID_REQUEST, INVALID_STATE, REQUEST_IN_PROGRESS,
            PAYMENT_DECLINED, INSUFFICIENT_FUNDS, PROCESSOR_UNAVAILABLE,
            PROCESSOR_TIMEOUT
        """
        logger = cls.get_logger()
        if not idempotency_key:
            return ServiceResult.failure(
                "An idempotency key is required",
                error_code=ReasonCode.INVALID_REQUEST,
            )

        ledger_key = f"charge:{idempotency_key}"
        reservation = ledger.reserve(
            key=ledger_key,
            kind=IdempotencyKind.OUTBOUND,
            processor=booking.processor,
            event_type=f"charge.{stage}",
        )
        record = reservation.record
        existing = PaymentTransaction.objects.filter(idempotency_key=idempotency_key).first()

        if existing is not None and existing.booking_id != booking.pk:
            return ServiceResult.failure(
                "Idempotency key already used for another booking",
                error_code=ReasonCode.INVALID_REQUEST,
            )

        if record.is_completed:
            if existing is None:
                outcome = record.outcome or {}
                return ServiceResult.failure(
                    customer_message(outcome.get("reason_code")),
                    error_code=outcome.get("reason_code") or ReasonCode.INVALID_REQUEST,
                )
            if existing.status == TransactionStatus.FAILED:
                return cls._failed_result(existing)
            logger.info(
                "Charge initiation replayed",
                extra={"booking_id": str(booking.pk), "transaction_id": str(existing.pk)},
            )
            return ServiceResult.success(
                ChargeInitiation(
                    transaction=existing,
                    client_action_token=existing.client_action_token,
                    replayed=True,
                )
            )

        if not ledger.mark_processing(record):
            if existing is not None:
                return ServiceResult.success(
                    ChargeInitiation(
                        transaction=existing,
                        client_action_token=existing.client_action_token,
                        replayed=True,
                    )
                )
            return ServiceResult.failure(
                customer_message(ReasonCode.REQUEST_IN_PROGRESS),
                error_code=ReasonCode.REQUEST_IN_PROGRESS,
            )

        # A failed earlier attempt left its transaction behind; reuse it
        if existing is not None:
            txn = existing
        else:
            amount_cents = cls.expected_amount(booking, stage)
            if amount_cents is None or amount_cents <= 0:
                ledger.complete(
                    record,
                    build_outcome(OutcomeStatus.FAILED, reason_code=ReasonCode.INVALID_STATE),
                )
                return ServiceResult.failure(
                    f"Booking in {booking.payment_status} cannot take a {stage} charge",
                    error_code=ReasonCode.INVALID_STATE,
                )
            adapter = get_adapter(booking.processor)
            txn = PaymentTransaction.objects.create(
                booking=booking,
                processor=booking.processor,
                processor_reference=adapter.preassigned_reference(idempotency_key),
                idempotency_key=idempotency_key,
                stage=stage,
                amount_cents=amount_cents,
                currency=booking.currency,
            )

        return cls._submit_charge(booking, txn, record)

    @classmethod
    def _submit_charge(
        cls,
        booking: Booking,
        txn: PaymentTransaction,
        record: IdempotencyRecord,
    ) -> ServiceResult[ChargeInitiation]:
        logger = cls.get_logger()
        adapter = get_adapter(txn.processor)
        log_context = {
            "booking_id": str(booking.pk),
            "transaction_id": str(txn.pk),
            "processor": txn.processor,
            "stage": txn.stage,
            "amount_cents": txn.amount_cents,
        }

        try:
            charge = call_with_retry(
                lambda: adapter.initiate_charge(
                    amount_cents=txn.amount_cents,
                    currency=txn.currency,
                    customer_ref=booking.customer_ref,
                    idempotency_key=txn.idempotency_key,
                    metadata={
                        "booking_id": str(booking.pk),
                        "transaction_id": str(txn.pk),
                        "stage": txn.stage,
                    },
                ),
                label="initiate_charge",
            )
        except (DeclinedError, InvalidRequestError) as e:
            txn = PaymentStateMachine.fail_transaction(txn, e.error_code, e.message)
            ledger.complete(
                record,
                build_outcome(
                    OutcomeStatus.FAILED,
                    transaction_id=txn.pk,
                    reason_code=e.error_code,
                ),
            )
            logger.warning(
                "Charge rejected by processor",
                extra={**log_context, "error_code": e.error_code},
            )
            return cls._failed_result(txn)
        except ProcessorUnavailableError as e:
            ledger.fail(record, str(e))
            logger.warning(
                "Charge initiation failed, processor unavailable",
                extra={**log_context, "error_code": e.error_code},
            )
            return ServiceResult.failure(
                customer_message(e.error_code),
                error_code=e.error_code,
                details={"transaction_id": str(txn.pk)},
            )

        expected = txn.version
        txn.processor_reference = charge.transaction_ref
        txn.client_action_token = charge.client_action_token
        save_with_version_check(txn, expected, ["processor_reference", "client_action_token"])
        ledger.complete(
            record,
            build_outcome(
                OutcomeStatus.APPLIED,
                transaction_id=txn.pk,
                processor_reference=charge.transaction_ref,
                processor_status=charge.status,
            ),
        )
        logger.info(
            "Charge initiated",
            extra={**log_context, "processor_status": charge.status},
        )

        if charge.status == STATUS_SUCCEEDED:
            cls.confirm_transaction(txn)
            txn = PaymentTransaction.objects.get(pk=txn.pk)
        elif charge.status == STATUS_FAILED:
            txn = PaymentStateMachine.fail_transaction(
                txn, ReasonCode.PAYMENT_DECLINED, charge.failure_reason or ""
            )

        if txn.status == TransactionStatus.FAILED:
            return cls._failed_result(txn)
        return ServiceResult.success(
            ChargeInitiation(transaction=txn, client_action_token=charge.client_action_token)
        )

    @staticmethod
    def _failed_result(txn: PaymentTransaction) -> ServiceResult[ChargeInitiation]:
        reason_code = txn.failure_reason_code or ReasonCode.PAYMENT_DECLINED
        return ServiceResult.failure(
            customer_message(reason_code),
            error_code=reason_code,
            details={"transaction_id": str(txn.pk)},
        )

    @classmethod
    def confirm_transaction(
        cls,
        transaction: PaymentTransaction,
    ) -> ServiceResult[PaymentTransaction]:
        """
        Verify a transaction with its processor and apply a terminal result.

        Pending results leave the transaction initiated; the webhook or the
        reconciliation sweep settles it later.

        Returns:
            ServiceResult with the refreshed transaction. Failure codes:
            INVALID_STATE, PROCESSOR_UNAVAILABLE, PROCESSOR_TIMEOUT,
            INVALID_REQUEST, plus the outcome's reason code when the result
            needs review
        """
        if transaction.status != TransactionStatus.INITIATED:
            return ServiceResult.success(transaction)
        if not transaction.processor_reference:
            return ServiceResult.failure(
                "Transaction has not reached the processor yet",
                error_code=ReasonCode.INVALID_STATE,
            )

        adapter = get_adapter(transaction.processor)
        reference = transaction.processor_reference
        try:
            verification = call_with_retry(
                lambda: adapter.verify_transaction(reference),
                label="verify_transaction",
            )
        except (ProcessorUnavailableError, InvalidRequestError) as e:
            return ServiceResult.from_exception(e)

        if not verification.is_terminal:
            return ServiceResult.success(transaction)

        event = event_from_verification(
            verification,
            processor=transaction.processor,
            entity_ref=reference,
            source="confirm",
            metadata={"transaction_id": str(transaction.pk)},
        )
        result = EventProcessor.submit(
            event,
            key=f"confirm:{reference}:{verification.status}",
            kind=IdempotencyKind.RECONCILE,
        )
        refreshed = PaymentTransaction.objects.get(pk=transaction.pk)

        if result.status == OutcomeStatus.NEEDS_REVIEW:
            reason_code = result.outcome.get("reason_code") or ReasonCode.AMOUNT_MISMATCH
            return ServiceResult.failure(
                customer_message(reason_code),
                error_code=reason_code,
                details={"transaction_id": str(refreshed.pk)},
            )

        cls.get_logger().info(
            "Transaction confirmed",
            extra={
                "transaction_id": str(refreshed.pk),
                "processor_status": verification.status,
                "outcome": result.status,
            },
        )
        return ServiceResult.success(refreshed)
