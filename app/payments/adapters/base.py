"""
Processor-neutral adapter contract.

Every processor integration implements ProviderAdapter and speaks in the
types defined here, so the state machines never see a processor SDK object
or a processor-specific status string.

Types:
    ChargeResult: Outcome of initiate_charge
    VerificationResult: Outcome of verify_transaction / verify_refund
    RefundResult: Outcome of initiate_refund
    NormalizedEvent: Webhook event in the closed engine vocabulary

Helpers:
    backoff_delay: Exponential backoff with jitter
    call_with_retry: Retry ProcessorUnavailableError with backoff
    IdempotencyKeyGenerator: Derived keys for processor calls

Usage:
    from payments.adapters import get_adapter, call_with_retry

    adapter = get_adapter(booking.processor)
    result = call_with_retry(
        lambda: adapter.initiate_charge(
            amount_cents=2000,
            currency="USD",
            customer_ref=booking.customer_ref,
            idempotency_key="booking_123_deposit",
        ),
        label="initiate_charge",
    )
"""

from __future__ import annotations

import hashlib
import logging
import random
import time
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from typing import TYPE_CHECKING, Any, TypeVar

from django.conf import settings

from payments.exceptions import ProcessorUnavailableError

if TYPE_CHECKING:
    from collections.abc import Callable, Mapping

T = TypeVar("T")

logger = logging.getLogger(__name__)

# Processor-neutral result statuses
STATUS_SUCCEEDED = "succeeded"
STATUS_FAILED = "failed"
STATUS_PENDING = "pending"


# =============================================================================
# Data Types
# =============================================================================


@dataclass
class ChargeResult:
    """
    Result of initiating a charge.

    Attributes:
        transaction_ref: Processor transaction reference
        status: succeeded, failed or pending (client action still required)
        client_action_token: What the client needs to finish the payment
            (Stripe client_secret, Paystack authorization URL)
        failure_reason: Processor text when status is failed
    """

    transaction_ref: str
    status: str
    client_action_token: str | None = None
    failure_reason: str | None = None
    raw_response: dict[str, Any] = field(default_factory=dict)


@dataclass
class VerificationResult:
    """
    Authoritative processor view of a transaction or refund.

    Attributes:
        reference: The reference that was verified
        status: succeeded, failed or pending
        amount_cents: Amount the processor reports as settled
        currency: Upper-case ISO 4217 code
        payment_method_ref: Reusable payment method, when the processor has one
    """

    reference: str
    status: str
    amount_cents: int
    currency: str
    payment_method_ref: str | None = None
    failure_reason: str | None = None
    raw_response: dict[str, Any] = field(default_factory=dict)

    @property
    def is_terminal(self) -> bool:
        return self.status in (STATUS_SUCCEEDED, STATUS_FAILED)


@dataclass
class RefundResult:
    """
    Result of initiating a refund.

    Attributes:
        refund_ref: Processor refund reference
        status: succeeded, failed or pending
        amount_cents: Amount the processor accepted
    """

    refund_ref: str
    status: str
    amount_cents: int
    failure_reason: str | None = None
    raw_response: dict[str, Any] = field(default_factory=dict)


@dataclass
class NormalizedEvent:
    """
    A processor notification translated into the engine's vocabulary.

    Attributes:
        type: One of NormalizedEventType
        entity_ref: Processor transaction reference the event is about
        amount_cents: Amount reported by the processor
        currency: Upper-case ISO 4217 code
        processor_event_id: Processor-unique event id (ledger key suffix)
        processor: Processor identifier
        refund_ref: Processor refund reference for refund events
        failure_reason: Processor failure text for failed events
        metadata: Metadata echoed back by the processor
    """

    type: str
    entity_ref: str
    amount_cents: int
    currency: str
    processor_event_id: str
    processor: str
    refund_ref: str | None = None
    failure_reason: str | None = None
    payment_method_ref: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def ledger_key(self) -> str:
        return f"{self.processor}:{self.processor_event_id}"

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> NormalizedEvent:
        return cls(
            type=data["type"],
            entity_ref=data["entity_ref"],
            amount_cents=int(data["amount_cents"]),
            currency=data["currency"],
            processor_event_id=data["processor_event_id"],
            processor=data["processor"],
            refund_ref=data.get("refund_ref"),
            failure_reason=data.get("failure_reason"),
            payment_method_ref=data.get("payment_method_ref"),
            metadata=dict(data.get("metadata") or {}),
        )


# =============================================================================
# Adapter Contract
# =============================================================================


class ProviderAdapter(ABC):
    """
    Contract every processor integration implements.

    Attributes:
        processor: Processor identifier stored on entities
        supports_idempotent_refunds: Whether initiate_refund honours the
            idempotency key on the processor side, which makes re-submitting
            a refund of unknown outcome safe
    """

    processor: str = ""
    supports_idempotent_refunds: bool = False

    @classmethod
    def get_logger(cls) -> logging.Logger:
        return logging.getLogger(f"{cls.__module__}.{cls.__name__}")

    @abstractmethod
    def initiate_charge(
        self,
        amount_cents: int,
        currency: str,
        customer_ref: str,
        idempotency_key: str,
        metadata: dict[str, str] | None = None,
        payment_method_ref: str | None = None,
    ) -> ChargeResult:
        """
        Start a charge.

        Raises:
            ValueError: idempotency_key is empty
            ProcessorUnavailableError: Transient failure (retry with the same key)
            DeclinedError: Processor rejected the payment
            InvalidRequestError: Malformed request
        """

    @abstractmethod
    def verify_transaction(self, transaction_ref: str) -> VerificationResult:
        """Fetch the authoritative status of a charge (idempotent read)."""

    @abstractmethod
    def verify_refund(self, refund_ref: str) -> VerificationResult:
        """Fetch the authoritative status of a refund (idempotent read)."""

    @abstractmethod
    def initiate_refund(
        self,
        transaction_ref: str,
        amount_cents: int,
        idempotency_key: str,
        metadata: dict[str, str] | None = None,
    ) -> RefundResult:
        """
        Start a refund against a settled charge.

        Raises:
            AlreadyRefundedError: Funds were already returned (treat as success)
            ProcessorUnavailableError: Transient failure
            InvalidRequestError: Refund not possible
        """

    @abstractmethod
    def verify_webhook_authenticity(
        self,
        raw_payload: bytes,
        headers: Mapping[str, str],
        remote_addr: str | None = None,
    ) -> bool:
        """Return True only for genuine processor deliveries. Never raises."""

    @abstractmethod
    def parse_webhook_event(self, raw_payload: bytes) -> NormalizedEvent | None:
        """
        Translate a verified payload.

        Returns:
            NormalizedEvent, or None for event types the engine ignores

        Raises:
            InvalidRequestError: Payload is not a well-formed event
        """

    def preassigned_reference(self, idempotency_key: str) -> str | None:
        """
        Transaction reference known before the processor answers, if any.

        Processors that let the merchant choose the reference return it here so
        a transaction can be found even when the initiating call timed out.
        """
        return None

    @staticmethod
    def require_idempotency_key(idempotency_key: str) -> None:
        if not idempotency_key:
            raise ValueError("idempotency_key is required")


def get_header(headers: Mapping[str, str], name: str) -> str | None:
    """Case-insensitive header lookup that works for plain dicts too."""
    wanted = name.lower()
    for key, value in headers.items():
        if key.lower() == wanted:
            return value
    return None


# =============================================================================
# Idempotency Key Generator
# =============================================================================


class IdempotencyKeyGenerator:
    """
    Generate derived idempotency keys for processor calls.

    Format: "{operation}:{entity_id}:{discriminator}:{hash}"

    The hash binds the key to this deployment's SECRET_KEY so keys from
    different environments never collide on a shared processor account.

    Example:
        key = IdempotencyKeyGenerator.generate("refund", request_key, txn.id)
        # "refund:refund_booking_1:550e8400-...:a1b2c3d4"
    """

    @staticmethod
    def generate(operation: str, entity_id: Any, discriminator: Any = 1) -> str:
        entity_str = str(entity_id)
        hash_input = f"{operation}:{entity_str}:{discriminator}:{settings.SECRET_KEY}"
        short_hash = hashlib.sha256(hash_input.encode()).hexdigest()[:8]
        return f"{operation}:{entity_str}:{discriminator}:{short_hash}"


# =============================================================================
# Retry Logic Helpers
# =============================================================================


def backoff_delay(
    attempt: int,
    base: float | None = None,
    max_delay: float | None = None,
) -> float:
    """
    Calculate exponential backoff delay with jitter.

    Args:
        attempt: Current attempt number (0-indexed)
        base: Base delay in seconds (default: PROCESSOR_RETRY_BASE_DELAY_SECONDS)
        max_delay: Cap in seconds (default: PROCESSOR_RETRY_MAX_DELAY_SECONDS)

    Returns:
        Delay in seconds with 0-25% jitter

    Example:
        # Attempt 0: 1.0 - 1.25 seconds
        # Attempt 2: 4.0 - 5.0 seconds
        delay = backoff_delay(attempt=2, base=1.0)
    """
    if base is None:
        base = settings.PROCESSOR_RETRY_BASE_DELAY_SECONDS
    if max_delay is None:
        max_delay = settings.PROCESSOR_RETRY_MAX_DELAY_SECONDS
    delay = min(base * (2**attempt), max_delay)
    jitter = delay * random.uniform(0, 0.25)
    return delay + jitter


def call_with_retry(
    operation: Callable[[], T],
    max_attempts: int | None = None,
    label: str = "",
) -> T:
    """
    Call ``operation``, retrying ProcessorUnavailableError with backoff.

    The operation must reuse the same idempotency key on every attempt.
    Terminal processor errors propagate immediately.

    Raises:
        ProcessorUnavailableError: Still failing after ``max_attempts``
    """
    if max_attempts is None:
        max_attempts = settings.PROCESSOR_MAX_ATTEMPTS

    attempt = 0
    while True:
        try:
            return operation()
        except ProcessorUnavailableError as e:
            attempt += 1
            if attempt >= max_attempts:
                logger.warning(
                    "Processor call failed after retries",
                    extra={"label": label, "attempts": attempt, "error_code": e.error_code},
                )
                raise
            delay = backoff_delay(attempt - 1)
            logger.info(
                "Retrying processor call",
                extra={"label": label, "attempt": attempt, "delay_seconds": delay},
            )
            time.sleep(delay)
