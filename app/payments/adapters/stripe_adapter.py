"""
Stripe adapter: global card-network processor.

All Stripe calls go through this adapter to ensure consistent error
translation, timeouts, idempotency and observability.

Features:
- Configurable timeout on every API call (timeout -> ProcessorTimeoutError)
- Stripe SDK errors translated to the processor-neutral taxonomy
- Structured logging with timing metrics
- Idempotency keys passed straight through to Stripe

Configuration (via settings):
- STRIPE_SECRET_KEY: Stripe API secret key
- STRIPE_WEBHOOK_SECRET: Webhook signing secret
- STRIPE_API_TIMEOUT_SECONDS: API call timeout (default: 10)

Usage:
    from payments.adapters import StripeAdapter

    adapter = StripeAdapter()
    result = adapter.initiate_charge(
        amount_cents=5000,
        currency="USD",
        customer_ref="cus_123",
        idempotency_key="booking_123_full",
        metadata={"booking_id": str(booking.id)},
    )
    result.client_action_token  # PaymentIntent client_secret
"""

from __future__ import annotations

import json
import time
from typing import TYPE_CHECKING, Any

import stripe
from django.conf import settings

from payments.adapters.base import (
    STATUS_FAILED,
    STATUS_PENDING,
    STATUS_SUCCEEDED,
    ChargeResult,
    NormalizedEvent,
    ProviderAdapter,
    RefundResult,
    VerificationResult,
    get_header,
)
from payments.exceptions import (
    AlreadyRefundedError,
    DeclinedError,
    InvalidRequestError,
    ProcessorTimeoutError,
    ProcessorUnavailableError,
)
from payments.reason_codes import ReasonCode
from payments.state_machines import NormalizedEventType, Processor

if TYPE_CHECKING:
    from collections.abc import Mapping

_REFUND_EVENT_TYPES = {"refund.created", "refund.updated", "refund.failed", "charge.refund.updated"}


def _intent_status(intent: Any) -> str:
    # A declined intent sits in requires_payment_method and can be confirmed
    # again; only cancellation is terminal.
    if intent.status == "succeeded":
        return STATUS_SUCCEEDED
    if intent.status == "canceled":
        return STATUS_FAILED
    return STATUS_PENDING


def _refund_status(status: str | None) -> str:
    if status == "succeeded":
        return STATUS_SUCCEEDED
    if status in ("failed", "canceled"):
        return STATUS_FAILED
    return STATUS_PENDING


def _error_message(error: Any) -> str | None:
    if not error:
        return None
    if isinstance(error, dict):
        return error.get("message") or error.get("code")
    return getattr(error, "message", None) or getattr(error, "code", None)


class StripeAdapter(ProviderAdapter):
    """
    Adapter for Stripe API operations.

    Charges are PaymentIntents; the client finishes them with the returned
    client_secret. A saved payment method (``payment_method_ref``) is charged
    off-session and confirmed immediately.

    Stripe honours idempotency keys on refunds, so a PENDING refund whose
    outcome is unknown can be re-submitted safely.
    """

    processor = Processor.STRIPE
    supports_idempotent_refunds = True

    # =========================================================================
    # Configuration
    # =========================================================================

    @staticmethod
    def _configure_stripe() -> None:
        """Configure Stripe client with API key and timeout."""
        stripe.api_key = settings.STRIPE_SECRET_KEY
        stripe.default_http_client = stripe.RequestsClient(
            timeout=settings.STRIPE_API_TIMEOUT_SECONDS
        )

    # =========================================================================
    # Charges
    # =========================================================================

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
        Create a PaymentIntent.

        Raises:
            ValueError: idempotency_key is empty
            DeclinedError: Card was declined (off-session charges)
            InvalidRequestError: Invalid parameters
            ProcessorUnavailableError: Stripe unreachable or erroring
            ProcessorTimeoutError: Request timed out
        """
        self.require_idempotency_key(idempotency_key)
        self._configure_stripe()
        logger = self.get_logger()

        log_context = {
            "operation": "initiate_charge",
            "processor": self.processor,
            "amount_cents": amount_cents,
            "currency": currency,
            "idempotency_key": idempotency_key,
        }

        params: dict[str, Any] = {
            "amount": amount_cents,
            "currency": currency.lower(),
            "metadata": metadata or {},
        }
        if customer_ref.startswith("cus_"):
            params["customer"] = customer_ref
        else:
            params["receipt_email"] = customer_ref
        if payment_method_ref:
            params.update(payment_method=payment_method_ref, off_session=True, confirm=True)
        else:
            params["automatic_payment_methods"] = {"enabled": True}

        start_time = time.time()
        logger.info("Starting Stripe operation", extra=log_context)

        try:
            intent = stripe.PaymentIntent.create(idempotency_key=idempotency_key, **params)
        except Exception as e:
            self._handle_stripe_error(e, log_context, (time.time() - start_time) * 1000)
            raise

        logger.info(
            "Stripe operation completed",
            extra={
                **log_context,
                "payment_intent_id": intent.id,
                "status": intent.status,
                "duration_ms": (time.time() - start_time) * 1000,
            },
        )

        return ChargeResult(
            transaction_ref=intent.id,
            status=_intent_status(intent),
            client_action_token=intent.client_secret,
            failure_reason=_error_message(intent.last_payment_error),
            raw_response=intent.to_dict(),
        )

    def verify_transaction(self, transaction_ref: str) -> VerificationResult:
        """Retrieve a PaymentIntent and report its settled state."""
        self._configure_stripe()
        logger = self.get_logger()
        log_context = {
            "operation": "verify_transaction",
            "processor": self.processor,
            "payment_intent_id": transaction_ref,
        }

        start_time = time.time()
        logger.debug("Starting Stripe operation", extra=log_context)

        try:
            intent = stripe.PaymentIntent.retrieve(transaction_ref)
        except Exception as e:
            self._handle_stripe_error(e, log_context, (time.time() - start_time) * 1000)
            raise

        status = _intent_status(intent)
        logger.debug(
            "Stripe operation completed",
            extra={
                **log_context,
                "status": intent.status,
                "duration_ms": (time.time() - start_time) * 1000,
            },
        )

        payment_method = intent.payment_method
        if payment_method is not None and not isinstance(payment_method, str):
            payment_method = payment_method.id

        return VerificationResult(
            reference=intent.id,
            status=status,
            amount_cents=intent.amount_received if status == STATUS_SUCCEEDED else intent.amount,
            currency=intent.currency.upper(),
            payment_method_ref=payment_method,
            failure_reason=_error_message(intent.last_payment_error),
            raw_response=intent.to_dict(),
        )

    # =========================================================================
    # Refunds
    # =========================================================================

    def initiate_refund(
        self,
        transaction_ref: str,
        amount_cents: int,
        idempotency_key: str,
        metadata: dict[str, str] | None = None,
    ) -> RefundResult:
        """
        Refund part or all of a PaymentIntent.

        Raises:
            AlreadyRefundedError: Stripe reports charge_already_refunded
            InvalidRequestError: Refund not possible
            ProcessorUnavailableError: Stripe unreachable or erroring
        """
        self.require_idempotency_key(idempotency_key)
        self._configure_stripe()
        logger = self.get_logger()

        log_context = {
            "operation": "initiate_refund",
            "processor": self.processor,
            "payment_intent_id": transaction_ref,
            "amount_cents": amount_cents,
            "idempotency_key": idempotency_key,
        }

        start_time = time.time()
        logger.info("Starting Stripe operation", extra=log_context)

        try:
            refund = stripe.Refund.create(
                payment_intent=transaction_ref,
                amount=amount_cents,
                metadata=metadata or {},
                idempotency_key=idempotency_key,
            )
        except Exception as e:
            self._handle_stripe_error(e, log_context, (time.time() - start_time) * 1000)
            raise

        logger.info(
            "Stripe operation completed",
            extra={
                **log_context,
                "refund_id": refund.id,
                "status": refund.status,
                "duration_ms": (time.time() - start_time) * 1000,
            },
        )

        return RefundResult(
            refund_ref=refund.id,
            status=_refund_status(refund.status),
            amount_cents=refund.amount,
            failure_reason=getattr(refund, "failure_reason", None),
            raw_response=refund.to_dict(),
        )

    def verify_refund(self, refund_ref: str) -> VerificationResult:
        """Retrieve a Refund and report its settled state."""
        self._configure_stripe()
        log_context = {
            "operation": "verify_refund",
            "processor": self.processor,
            "refund_id": refund_ref,
        }
        start_time = time.time()

        try:
            refund = stripe.Refund.retrieve(refund_ref)
        except Exception as e:
            self._handle_stripe_error(e, log_context, (time.time() - start_time) * 1000)
            raise

        return VerificationResult(
            reference=refund.id,
            status=_refund_status(refund.status),
            amount_cents=refund.amount,
            currency=refund.currency.upper(),
            failure_reason=getattr(refund, "failure_reason", None),
            raw_response=refund.to_dict(),
        )

    # =========================================================================
    # Webhooks
    # =========================================================================

    def verify_webhook_authenticity(
        self,
        raw_payload: bytes,
        headers: Mapping[str, str],
        remote_addr: str | None = None,
    ) -> bool:
        """Check the Stripe-Signature header against the webhook secret."""
        signature = get_header(headers, "Stripe-Signature")
        if not signature or not settings.STRIPE_WEBHOOK_SECRET:
            return False
        try:
            stripe.Webhook.construct_event(
                raw_payload,
                signature,
                settings.STRIPE_WEBHOOK_SECRET,
            )
        except (stripe.SignatureVerificationError, ValueError):
            return False
        return True

    def parse_webhook_event(self, raw_payload: bytes) -> NormalizedEvent | None:
        """
        Map a Stripe event onto the engine vocabulary.

        payment_intent.succeeded -> charge.succeeded
        payment_intent.canceled -> charge.failed
        payment_intent.payment_failed -> ignored (the intent can still be retried)
        refund.* / charge.refund.updated -> refund.succeeded | refund.failed
            (pending refunds are ignored until they settle)
        """
        try:
            payload = json.loads(raw_payload)
            event_id = payload["id"]
            event_type = payload["type"]
            obj = payload["data"]["object"]
        except (ValueError, KeyError, TypeError) as e:
            raise InvalidRequestError(
                "Malformed Stripe event payload",
                processor=self.processor,
                details={"error": str(e)},
            ) from e

        if event_type == "payment_intent.succeeded":
            return NormalizedEvent(
                type=NormalizedEventType.CHARGE_SUCCEEDED,
                entity_ref=obj["id"],
                amount_cents=int(obj.get("amount_received") or obj.get("amount") or 0),
                currency=str(obj.get("currency", "")).upper(),
                processor_event_id=event_id,
                processor=self.processor,
                payment_method_ref=obj.get("payment_method")
                if isinstance(obj.get("payment_method"), str)
                else None,
                metadata=dict(obj.get("metadata") or {}),
            )

        if event_type == "payment_intent.canceled":
            return NormalizedEvent(
                type=NormalizedEventType.CHARGE_FAILED,
                entity_ref=obj["id"],
                amount_cents=int(obj.get("amount") or 0),
                currency=str(obj.get("currency", "")).upper(),
                processor_event_id=event_id,
                processor=self.processor,
                failure_reason=obj.get("cancellation_reason")
                or _error_message(obj.get("last_payment_error")),
                metadata=dict(obj.get("metadata") or {}),
            )

        if event_type in _REFUND_EVENT_TYPES:
            status = _refund_status(obj.get("status"))
            if status == STATUS_PENDING:
                return None
            return NormalizedEvent(
                type=NormalizedEventType.REFUND_SUCCEEDED
                if status == STATUS_SUCCEEDED
                else NormalizedEventType.REFUND_FAILED,
                entity_ref=obj.get("payment_intent") or "",
                amount_cents=int(obj.get("amount") or 0),
                currency=str(obj.get("currency", "")).upper(),
                processor_event_id=event_id,
                processor=self.processor,
                refund_ref=obj.get("id"),
                failure_reason=obj.get("failure_reason"),
                metadata=dict(obj.get("metadata") or {}),
            )

        return None

    # =========================================================================
    # Error Handling
    # =========================================================================

    def _handle_stripe_error(
        self,
        error: Exception,
        log_context: dict[str, Any],
        duration_ms: float,
    ) -> None:
        """
        Translate Stripe exceptions to processor-neutral exceptions.

        Raises:
            DeclinedError: Card declined / insufficient funds
            AlreadyRefundedError: charge_already_refunded
            InvalidRequestError: Invalid parameters or bad credentials
            ProcessorTimeoutError: Request timed out
            ProcessorUnavailableError: Network error, rate limit, Stripe 5xx
        """
        logger = self.get_logger()
        log_context = {**log_context, "duration_ms": duration_ms}

        if isinstance(error, stripe.CardError):
            decline_code = getattr(error, "decline_code", None)
            logger.warning(
                "Card error from Stripe",
                extra={**log_context, "decline_code": decline_code},
            )
            raise DeclinedError(
                str(error.user_message or error),
                error_code=ReasonCode.INSUFFICIENT_FUNDS
                if decline_code == "insufficient_funds"
                else ReasonCode.PAYMENT_DECLINED,
                processor=self.processor,
                processor_code=error.code,
            ) from error

        if isinstance(error, stripe.InvalidRequestError):
            if error.code == "charge_already_refunded":
                logger.info("Stripe reports charge already refunded", extra=log_context)
                raise AlreadyRefundedError(
                    "Charge already refunded",
                    processor=self.processor,
                    processor_code=error.code,
                ) from error
            logger.error(
                "Invalid request to Stripe",
                extra={**log_context, "stripe_code": error.code},
            )
            raise InvalidRequestError(
                str(error.user_message or error),
                processor=self.processor,
                processor_code=error.code,
            ) from error

        if isinstance(error, stripe.RateLimitError):
            logger.warning("Rate limited by Stripe", extra=log_context)
            raise ProcessorUnavailableError(
                "Stripe rate limit exceeded. Please retry.",
                processor=self.processor,
                processor_code="rate_limit",
            ) from error

        if isinstance(error, stripe.APIConnectionError):
            if "timeout" in str(error).lower() or "timed out" in str(error).lower():
                logger.error("Stripe request timed out", extra=log_context)
                raise ProcessorTimeoutError(
                    "Stripe did not respond in time.",
                    processor=self.processor,
                    processor_code="timeout",
                ) from error
            logger.error("Connection error to Stripe", extra=log_context, exc_info=True)
            raise ProcessorUnavailableError(
                "Could not connect to Stripe. Please retry.",
                processor=self.processor,
                processor_code="api_connection_error",
            ) from error

        if isinstance(error, stripe.AuthenticationError):
            logger.critical(
                "Stripe authentication failed - check API key",
                extra=log_context,
            )
            raise InvalidRequestError(
                "Stripe authentication failed",
                processor=self.processor,
                processor_code="authentication_error",
            ) from error

        if isinstance(error, stripe.APIError):
            logger.error("Stripe API error", extra=log_context, exc_info=True)
            raise ProcessorUnavailableError(
                "Stripe service error. Please retry.",
                processor=self.processor,
                processor_code="api_error",
            ) from error

        logger.error(
            f"Unexpected error from Stripe: {type(error).__name__}",
            extra=log_context,
            exc_info=True,
        )
        raise ProcessorUnavailableError(
            f"Unexpected Stripe error: {error}",
            processor=self.processor,
            processor_code="unknown_error",
        ) from error
