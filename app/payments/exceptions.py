"""
Payment-specific exceptions for orchestration operations.

Every exception carries a stable reason code (``payments.reason_codes``) as
its ``error_code`` so callers can report outcomes without leaking raw
processor messages.

Exception Hierarchy:
    PaymentError (base for payment domain)
    ├── ProcessorError - Base for processor adapter failures
    │   ├── ProcessorUnavailableError - Transport failure, 5xx, rate limit (transient, retry)
    │   │   └── ProcessorTimeoutError - No response within the timeout (transient, retry)
    │   ├── DeclinedError - Business rejection by the processor (terminal)
    │   ├── InvalidRequestError - Malformed request or credentials (terminal)
    │   └── AlreadyRefundedError - Funds already returned (treat as success)
    ├── AmountMismatchError - Reported amount is not the expected increment (terminal, review)
    ├── AuthenticityFailureError - Webhook failed signature / source checks
    └── PaymentNotFoundError - Entity lookup by processor reference failed

    StaleRecordError - Optimistic locking conflict (inherits ConflictError)
    TransitionConflictError - Conflict still present after the local retry (inherits ConflictError)
    LockAcquisitionError - Distributed lock timeout (inherits ConflictError)
    ReconciliationLockError - A reconciliation sweep is already running (inherits LockAcquisitionError)
    InvalidStateTransitionError - FSM transition not allowed (inherits ConflictError)

Usage:
    from payments.exceptions import ProcessorError, ProcessorUnavailableError

    try:
        adapter.initiate_charge(...)
    except ProcessorUnavailableError:
        # Safe to retry with the same idempotency key
        raise
    except ProcessorError as e:
        transaction.fail(reason_code=e.error_code)
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from core.exceptions import BaseApplicationError, ConflictError

from payments.reason_codes import ReasonCode

if TYPE_CHECKING:
    from typing import Any


# =============================================================================
# Payment Domain Exceptions
# =============================================================================


class PaymentError(BaseApplicationError):
    """
    Base exception for all payment operations.

    Inherits from BaseApplicationError for consistent API error responses.
    """

    default_error_code: str = "PAYMENT_ERROR"


class PaymentNotFoundError(PaymentError):
    """
    Raised when a payment entity cannot be resolved.

    Typically a webhook or reconciliation result that names a processor
    reference we have no record of (yet). Event processing treats it as
    retryable for a bounded number of attempts because the processor can
    notify us before our own request has returned.
    """

    default_error_code: str = ReasonCode.NOT_FOUND


class AmountMismatchError(PaymentError):
    """
    Raised when a reported amount does not match the expected increment.

    Terminal business outcome: never applied silently and never retried;
    surfaced for manual review.

    Example:
        raise AmountMismatchError(
            "Charge of 3000 does not match expected 2000",
            details={"expected_cents": 2000, "reported_cents": 3000},
        )
    """

    default_error_code: str = ReasonCode.AMOUNT_MISMATCH


class AuthenticityFailureError(PaymentError):
    """
    Raised when an inbound webhook fails authenticity checks.

    The delivery is rejected without touching the idempotency ledger so that
    a correctly signed retry is still processed.
    """

    default_error_code: str = ReasonCode.AUTHENTICITY_FAILURE


# =============================================================================
# Processor Exceptions
# =============================================================================


class ProcessorError(PaymentError):
    """
    Base exception for processor adapter failures.

    Attributes:
        processor: Processor identifier ("stripe", "paystack")
        processor_code: Processor's own error code, for logs only
        is_retryable: Whether the same request may be retried

    Example:
        except ProcessorError as e:
            if e.is_retryable:
                raise self.retry(exc=e, countdown=backoff_delay(self.request.retries))
            refund.fail(reason=e.message)
    """

    default_error_code: str = ReasonCode.INVALID_REQUEST
    is_retryable: bool = False

    def __init__(
        self,
        message: str,
        error_code: str | None = None,
        processor: str | None = None,
        processor_code: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        details = details or {}
        if processor:
            details["processor"] = processor
        if processor_code:
            details["processor_code"] = processor_code
        super().__init__(message, error_code=error_code, details=details)
        self.processor = processor
        self.processor_code = processor_code


class ProcessorUnavailableError(ProcessorError):
    """
    Processor could not be reached or answered with a transient failure.

    Covers network errors, 5xx responses and rate limiting. The request may
    have been applied on the processor side, so retries must reuse the same
    idempotency key.
    """

    default_error_code: str = ReasonCode.PROCESSOR_UNAVAILABLE
    is_retryable: bool = True


class ProcessorTimeoutError(ProcessorUnavailableError):
    """
    Processor call exceeded the configured timeout.

    Never a definite failure: the charge or refund may have succeeded.
    """

    default_error_code: str = ReasonCode.PROCESSOR_TIMEOUT
    is_retryable: bool = True


class DeclinedError(ProcessorError):
    """
    Processor rejected the payment for business reasons.

    Terminal. The reason code distinguishes a generic decline from
    insufficient funds for customer messaging.
    """

    default_error_code: str = ReasonCode.PAYMENT_DECLINED
    is_retryable: bool = False


class InvalidRequestError(ProcessorError):
    """
    Request was malformed or rejected as invalid (including bad credentials).

    Terminal and surfaced to the caller. Usually indicates a bug or a
    configuration problem rather than a customer problem.
    """

    default_error_code: str = ReasonCode.INVALID_REQUEST
    is_retryable: bool = False


class AlreadyRefundedError(ProcessorError):
    """
    Processor reports the funds were already returned.

    Callers treat this as a successful refund.
    """

    default_error_code: str = ReasonCode.ALREADY_REFUNDED
    is_retryable: bool = False


# =============================================================================
# Concurrency Control Exceptions
# =============================================================================


class StaleRecordError(ConflictError):
    """
    Raised when optimistic locking detects concurrent modification.

    The record's version changed between read and conditional write. The
    caller re-reads and retries once (see ``payments.locks.retry_on_conflict``).

    Attributes:
        details: Contains pk, model, expected_version
    """

    default_error_code: str = ReasonCode.CONFLICT


class TransitionConflictError(ConflictError):
    """
    Raised when a compare-and-set still fails after the local retry.

    Transient from the caller's perspective: webhook processing lets Celery
    retry it, API callers receive HTTP 409.
    """

    default_error_code: str = ReasonCode.CONFLICT


class LockAcquisitionError(ConflictError):
    """
    Raised when a distributed lock cannot be acquired.

    Attributes:
        details: Contains key and timeout information
    """

    default_error_code: str = "LOCK_ACQUISITION_FAILED"


class ReconciliationLockError(LockAcquisitionError):
    """Raised when another reconciliation sweep holds the run lock."""

    default_error_code: str = "RECONCILIATION_LOCKED"


class InvalidStateTransitionError(ConflictError):
    """
    Raised when a state machine transition is not allowed.

    Wraps django-fsm's TransitionNotAllowed with our error format.

    Example:
        try:
            booking.mark_fully_paid(amount_cents)
        except TransitionNotAllowed:
            raise InvalidStateTransitionError(
                f"Cannot mark booking paid from '{booking.payment_status}'",
                details={"current_state": booking.payment_status},
            )
    """

    default_error_code: str = ReasonCode.INVALID_STATE


# =============================================================================
# Exports
# =============================================================================

__all__ = [
    # Payment domain
    "PaymentError",
    "PaymentNotFoundError",
    "AmountMismatchError",
    "AuthenticityFailureError",
    # Processor
    "ProcessorError",
    "ProcessorUnavailableError",
    "ProcessorTimeoutError",
    "DeclinedError",
    "InvalidRequestError",
    "AlreadyRefundedError",
    # Concurrency control
    "StaleRecordError",
    "TransitionConflictError",
    "LockAcquisitionError",
    "ReconciliationLockError",
    "InvalidStateTransitionError",
]
