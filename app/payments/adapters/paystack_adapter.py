"""
Paystack adapter: regional card + mobile-money processor.

Talks to the Paystack REST API over httpx. Paystack lets the merchant choose
the transaction reference, so the reference is derived from the caller's
idempotency key: replaying an initiate call can never create a second charge
(Paystack answers "Duplicate Transaction Reference").

Configuration (via settings):
- PAYSTACK_SECRET_KEY: API secret key (also the webhook HMAC key)
- PAYSTACK_BASE_URL: API base URL (default: https://api.paystack.co)
- PAYSTACK_API_TIMEOUT_SECONDS: API call timeout (default: 10)
- PAYSTACK_WEBHOOK_IPS: Allowed webhook source IPs (empty disables the check)
- PAYSTACK_CALLBACK_URL: Where hosted checkout returns the client

Usage:
    from payments.adapters import PaystackAdapter

    adapter = PaystackAdapter()
    result = adapter.initiate_charge(
        amount_cents=2_000_000,
        currency="NGN",
        customer_ref="client@example.com",
        idempotency_key="booking_123_deposit",
    )
    result.client_action_token  # hosted checkout authorization URL

    # Tests inject a transport
    adapter = PaystackAdapter(transport=httpx.MockTransport(handler))
"""

from __future__ import annotations

import hashlib
import hmac
import json
import re
import time
from typing import TYPE_CHECKING, Any

import httpx
from django.conf import settings

from core.helpers import constant_time_equals
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
from payments.state_machines import NormalizedEventType, Processor

if TYPE_CHECKING:
    from collections.abc import Mapping

_REFERENCE_INVALID_CHARS = re.compile(r"[^A-Za-z0-9.=-]")
_REFERENCE_MAX_LENGTH = 100

_TRANSACTION_STATUS = {
    "success": STATUS_SUCCEEDED,
    "failed": STATUS_FAILED,
    "abandoned": STATUS_FAILED,
    "reversed": STATUS_FAILED,
}

_REFUND_STATUS = {
    "processed": STATUS_SUCCEEDED,
    "failed": STATUS_FAILED,
}

_EVENT_TYPES = {
    "charge.success": NormalizedEventType.CHARGE_SUCCEEDED,
    "charge.failed": NormalizedEventType.CHARGE_FAILED,
    "refund.processed": NormalizedEventType.REFUND_SUCCEEDED,
    "refund.failed": NormalizedEventType.REFUND_FAILED,
}


def reference_from_key(idempotency_key: str) -> str:
    """
    Derive a Paystack transaction reference from an idempotency key.

    Paystack references allow ``[A-Za-z0-9.=-]``. Keys using other
    characters are rewritten and suffixed with a short hash of the original
    so distinct keys keep distinct references.
    """
    reference = _REFERENCE_INVALID_CHARS.sub("-", idempotency_key)
    if reference != idempotency_key or len(reference) > _REFERENCE_MAX_LENGTH:
        digest = hashlib.sha256(idempotency_key.encode()).hexdigest()[:10]
        reference = f"{reference[: _REFERENCE_MAX_LENGTH - 11]}-{digest}"
    return reference


class PaystackAdapter(ProviderAdapter):
    """
    Adapter for Paystack API operations.

    Paystack refunds carry no idempotency key, so a refund whose outcome is
    unknown must not be re-submitted automatically.
    """

    processor = Processor.PAYSTACK
    supports_idempotent_refunds = False

    def __init__(
        self,
        secret_key: str | None = None,
        base_url: str | None = None,
        timeout: float | None = None,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.secret_key = secret_key if secret_key is not None else settings.PAYSTACK_SECRET_KEY
        self.base_url = base_url or settings.PAYSTACK_BASE_URL
        self.timeout = timeout if timeout is not None else settings.PAYSTACK_API_TIMEOUT_SECONDS
        self._transport = transport
        self._client: httpx.Client | None = None

    def _get_client(self) -> httpx.Client:
        if self._client is None:
            self._client = httpx.Client(
                base_url=self.base_url,
                headers={
                    "Authorization": f"Bearer {self.secret_key}",
                    "Content-Type": "application/json",
                },
                timeout=self.timeout,
                transport=self._transport,
            )
        return self._client

    def preassigned_reference(self, idempotency_key: str) -> str | None:
        return reference_from_key(idempotency_key)

    # =========================================================================
    # HTTP
    # =========================================================================

    def _request(
        self,
        method: str,
        path: str,
        log_context: dict[str, Any],
        payload: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """
        Call the Paystack API and return the ``data`` member of the response.

        Raises:
            ProcessorTimeoutError: No response within the timeout
            ProcessorUnavailableError: Transport error, 429 or 5xx
            InvalidRequestError: Authentication failure or rejected request
        """
        logger = self.get_logger()
        start_time = time.time()
        logger.info("Starting Paystack operation", extra=log_context)

        try:
            response = self._get_client().request(method, path, json=payload)
        except httpx.TimeoutException as e:
            logger.error(
                "Paystack request timed out",
                extra={**log_context, "duration_ms": (time.time() - start_time) * 1000},
            )
            raise ProcessorTimeoutError(
                "Paystack did not respond in time.",
                processor=self.processor,
                processor_code="timeout",
            ) from e
        except httpx.TransportError as e:
            logger.error(
                "Connection error to Paystack",
                extra={**log_context, "duration_ms": (time.time() - start_time) * 1000},
                exc_info=True,
            )
            raise ProcessorUnavailableError(
                "Could not connect to Paystack. Please retry.",
                processor=self.processor,
                processor_code="connection_error",
            ) from e

        duration_ms = (time.time() - start_time) * 1000
        try:
            body = response.json()
        except ValueError:
            body = {}
        message = str(body.get("message") or "") if isinstance(body, dict) else ""

        if response.status_code == 429 or response.status_code >= 500:
            logger.error(
                "Paystack service error",
                extra={**log_context, "status_code": response.status_code, "duration_ms": duration_ms},
            )
            raise ProcessorUnavailableError(
                "Paystack service error. Please retry.",
                processor=self.processor,
                processor_code=str(response.status_code),
            )

        if response.status_code in (401, 403):
            logger.critical(
                "Paystack authentication failed - check secret key",
                extra={**log_context, "status_code": response.status_code},
            )
            raise InvalidRequestError(
                "Paystack authentication failed",
                processor=self.processor,
                processor_code="authentication_error",
            )

        if response.status_code >= 400 or not body.get("status", False):
            lowered = message.lower()
            logger.warning(
                "Paystack rejected request",
                extra={
                    **log_context,
                    "status_code": response.status_code,
                    "paystack_message": message,
                    "duration_ms": duration_ms,
                },
            )
            if "fully reversed" in lowered or "already been refunded" in lowered:
                raise AlreadyRefundedError(
                    message or "Transaction already refunded",
                    processor=self.processor,
                    processor_code="already_refunded",
                )
            if "duplicate transaction reference" in lowered:
                raise _DuplicateReference(message)
            raise InvalidRequestError(
                message or "Paystack rejected the request",
                processor=self.processor,
                processor_code=str(response.status_code),
            )

        logger.info(
            "Paystack operation completed",
            extra={**log_context, "duration_ms": duration_ms},
        )
        return body.get("data") or {}

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
        Initialize a hosted checkout, or charge a saved authorization.

        A replay with the same idempotency key finds Paystack's existing
        transaction and reports it as pending; the caller verifies it.

        Raises:
            ValueError: idempotency_key is empty
            DeclinedError: Saved authorization was declined
            InvalidRequestError: Rejected request
            ProcessorUnavailableError / ProcessorTimeoutError: Transient failure
        """
        self.require_idempotency_key(idempotency_key)
        reference = reference_from_key(idempotency_key)
        log_context = {
            "operation": "initiate_charge",
            "processor": self.processor,
            "amount_cents": amount_cents,
            "currency": currency,
            "reference": reference,
        }

        payload: dict[str, Any] = {
            "email": customer_ref,
            "amount": amount_cents,
            "currency": currency.upper(),
            "reference": reference,
            "metadata": metadata or {},
        }

        try:
            if payment_method_ref:
                payload["authorization_code"] = payment_method_ref
                data = self._request(
                    "POST", "/transaction/charge_authorization", log_context, payload
                )
            else:
                if settings.PAYSTACK_CALLBACK_URL:
                    payload["callback_url"] = settings.PAYSTACK_CALLBACK_URL
                data = self._request("POST", "/transaction/initialize", log_context, payload)
        except _DuplicateReference:
            self.get_logger().info(
                "Paystack reference already exists, treating as pending",
                extra=log_context,
            )
            return ChargeResult(transaction_ref=reference, status=STATUS_PENDING)

        status = _TRANSACTION_STATUS.get(data.get("status"), STATUS_PENDING)
        if payment_method_ref and status == STATUS_FAILED:
            raise DeclinedError(
                data.get("gateway_response") or "Payment declined",
                processor=self.processor,
                processor_code=data.get("status"),
            )

        return ChargeResult(
            transaction_ref=data.get("reference") or reference,
            status=status if payment_method_ref else STATUS_PENDING,
            client_action_token=data.get("authorization_url"),
            raw_response=data,
        )

    def verify_transaction(self, transaction_ref: str) -> VerificationResult:
        """Verify a transaction by reference."""
        log_context = {
            "operation": "verify_transaction",
            "processor": self.processor,
            "reference": transaction_ref,
        }
        data = self._request("GET", f"/transaction/verify/{transaction_ref}", log_context)

        authorization = data.get("authorization") or {}
        payment_method_ref = None
        if authorization.get("reusable"):
            payment_method_ref = authorization.get("authorization_code")

        status = _TRANSACTION_STATUS.get(data.get("status"), STATUS_PENDING)
        return VerificationResult(
            reference=data.get("reference") or transaction_ref,
            status=status,
            amount_cents=int(data.get("amount") or 0),
            currency=str(data.get("currency") or "").upper(),
            payment_method_ref=payment_method_ref,
            failure_reason=data.get("gateway_response") if status == STATUS_FAILED else None,
            raw_response=data,
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
        Create a refund for a transaction.

        The idempotency key travels as the merchant note so the refund can be
        matched by hand; Paystack itself does not deduplicate on it.

        Raises:
            AlreadyRefundedError: Transaction has been fully reversed
            InvalidRequestError: Refund not possible
            ProcessorUnavailableError / ProcessorTimeoutError: Transient failure
        """
        self.require_idempotency_key(idempotency_key)
        log_context = {
            "operation": "initiate_refund",
            "processor": self.processor,
            "reference": transaction_ref,
            "amount_cents": amount_cents,
            "idempotency_key": idempotency_key,
        }
        payload: dict[str, Any] = {
            "transaction": transaction_ref,
            "amount": amount_cents,
            "merchant_note": idempotency_key,
        }
        if metadata and metadata.get("reason"):
            payload["customer_note"] = metadata["reason"]

        data = self._request("POST", "/refund", log_context, payload)
        return RefundResult(
            refund_ref=str(data.get("id")),
            status=_REFUND_STATUS.get(data.get("status"), STATUS_PENDING),
            amount_cents=int(data.get("amount") or amount_cents),
            raw_response=data,
        )

    def verify_refund(self, refund_ref: str) -> VerificationResult:
        log_context = {
            "operation": "verify_refund",
            "processor": self.processor,
            "refund_id": refund_ref,
        }
        data = self._request("GET", f"/refund/{refund_ref}", log_context)
        return VerificationResult(
            reference=str(data.get("id") or refund_ref),
            status=_REFUND_STATUS.get(data.get("status"), STATUS_PENDING),
            amount_cents=int(data.get("amount") or 0),
            currency=str(data.get("currency") or "").upper(),
            raw_response=data,
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
        """
        HMAC-SHA512 of the raw body with the secret key, plus source IP.

        The IP allow-list applies only when PAYSTACK_WEBHOOK_IPS is set.
        """
        allowed_ips = settings.PAYSTACK_WEBHOOK_IPS
        if allowed_ips and remote_addr not in allowed_ips:
            return False

        signature = get_header(headers, "x-paystack-signature")
        if not signature or not self.secret_key:
            return False

        expected = hmac.new(
            self.secret_key.encode(),
            raw_payload,
            hashlib.sha512,
        ).hexdigest()
        return constant_time_equals(expected, signature)

    def parse_webhook_event(self, raw_payload: bytes) -> NormalizedEvent | None:
        """
        Map a Paystack event onto the engine vocabulary.

        Paystack events carry no event id, so one is synthesized from the
        event name, the object identifier and the amount.
        """
        try:
            payload = json.loads(raw_payload)
            event_name = payload["event"]
            data = payload["data"]
            if not isinstance(data, dict):
                raise TypeError("data must be an object")
        except (ValueError, KeyError, TypeError) as e:
            raise InvalidRequestError(
                "Malformed Paystack event payload",
                processor=self.processor,
                details={"error": str(e)},
            ) from e

        event_type = _EVENT_TYPES.get(event_name)
        if event_type is None:
            return None

        amount = int(data.get("amount") or 0)
        metadata = data.get("metadata")
        if not isinstance(metadata, dict):
            metadata = {}

        if event_name.startswith("refund."):
            transaction_ref = str(data.get("transaction_reference") or "")
            refund_ref = data.get("id") or data.get("refund_reference")
            object_id = refund_ref or transaction_ref
            return NormalizedEvent(
                type=event_type,
                entity_ref=transaction_ref,
                amount_cents=amount,
                currency=str(data.get("currency") or "").upper(),
                processor_event_id=f"{event_name}:{object_id}:{amount}",
                processor=self.processor,
                refund_ref=str(refund_ref) if refund_ref else None,
                failure_reason=data.get("reason") if event_type == NormalizedEventType.REFUND_FAILED else None,
                metadata=metadata,
            )

        authorization = data.get("authorization") or {}
        return NormalizedEvent(
            type=event_type,
            entity_ref=str(data.get("reference") or ""),
            amount_cents=amount,
            currency=str(data.get("currency") or "").upper(),
            processor_event_id=f"{event_name}:{data.get('id') or data.get('reference')}:{amount}",
            processor=self.processor,
            failure_reason=data.get("gateway_response")
            if event_type == NormalizedEventType.CHARGE_FAILED
            else None,
            payment_method_ref=authorization.get("authorization_code")
            if authorization.get("reusable")
            else None,
            metadata=metadata,
        )


class _DuplicateReference(Exception):
    """Paystack already holds a transaction with this reference."""
