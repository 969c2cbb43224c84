"""
In-memory processor adapter for tests.

FakeAdapter honours the ProviderAdapter contract the way a real processor
would: the same idempotency key returns the same charge or refund, and
verification reports whatever state the test settled the object into.

Usage:
    adapter = FakeAdapter()
    set_adapter(Processor.STRIPE, adapter)

    result = ChargeService.initiate_booking_charge(booking, "deposit", "key-1")
    adapter.settle_charge(result.data.transaction.processor_reference, STATUS_SUCCEEDED)

    # Queue errors per operation; each call pops one before succeeding
    adapter.fail_with("initiate_charge", ProcessorUnavailableError("down"))
"""

from __future__ import annotations

import itertools
import json
from collections import defaultdict
from typing import Any

from payments.adapters.base import (
    STATUS_PENDING,
    STATUS_SUCCEEDED,
    ChargeResult,
    NormalizedEvent,
    ProviderAdapter,
    RefundResult,
    VerificationResult,
    get_header,
)
from payments.exceptions import InvalidRequestError
from payments.state_machines import Processor

FAKE_SIGNATURE = "fake-signature"


class FakeAdapter(ProviderAdapter):
    """
    Scriptable processor.

    Attributes:
        charge_status: Status returned by initiate_charge for new charges
        refund_status: Status returned by initiate_refund for new refunds
        calls: (operation, kwargs) for every call, in order
    """

    def __init__(
        self,
        processor: str = Processor.STRIPE,
        supports_idempotent_refunds: bool = True,
        preassign_references: bool = False,
        charge_status: str = STATUS_PENDING,
        refund_status: str = STATUS_PENDING,
    ) -> None:
        self.processor = processor
        self.supports_idempotent_refunds = supports_idempotent_refunds
        self.preassign_references = preassign_references
        self.charge_status = charge_status
        self.refund_status = refund_status
        self.calls: list[tuple[str, dict[str, Any]]] = []
        self.charges: dict[str, dict[str, Any]] = {}
        self.refunds: dict[str, dict[str, Any]] = {}
        self._charge_keys: dict[str, str] = {}
        self._refund_keys: dict[str, str] = {}
        self._errors: dict[str, list[Exception]] = defaultdict(list)
        self._ids = itertools.count(1)

    # =========================================================================
    # Test controls
    # =========================================================================

    def fail_with(self, operation: str, *errors: Exception) -> None:
        self._errors[operation].extend(errors)

    def settle_charge(
        self,
        reference: str,
        status: str,
        amount_cents: int | None = None,
        currency: str | None = None,
        payment_method_ref: str | None = None,
    ) -> None:
        charge = self.charges[reference]
        charge["status"] = status
        if amount_cents is not None:
            charge["amount_cents"] = amount_cents
        if currency is not None:
            charge["currency"] = currency
        if payment_method_ref is not None:
            charge["payment_method_ref"] = payment_method_ref

    def add_charge(
        self,
        reference: str,
        amount_cents: int,
        currency: str,
        status: str = STATUS_SUCCEEDED,
        payment_method_ref: str | None = None,
    ) -> None:
        """Register a charge made outside the engine (e.g. hosted checkout)."""
        self.charges[reference] = {
            "amount_cents": amount_cents,
            "currency": currency,
            "status": status,
            "payment_method_ref": payment_method_ref,
        }

    def settle_refund(self, refund_ref: str, status: str) -> None:
        self.refunds[refund_ref]["status"] = status

    def count(self, operation: str) -> int:
        return sum(1 for name, _ in self.calls if name == operation)

    def _record(self, operation: str, **kwargs: Any) -> None:
        self.calls.append((operation, kwargs))
        if self._errors[operation]:
            raise self._errors[operation].pop(0)

    # =========================================================================
    # ProviderAdapter
    # =========================================================================

    def preassigned_reference(self, idempotency_key: str) -> str | None:
        if self.preassign_references:
            return f"ref-{idempotency_key}"
        return None

    def initiate_charge(
        self,
        amount_cents: int,
        currency: str,
        customer_ref: str,
        idempotency_key: str,
        metadata: dict[str, str] | None = None,
        payment_method_ref: str | None = None,
    ) -> ChargeResult:
        self.require_idempotency_key(idempotency_key)
        self._record(
            "initiate_charge",
            amount_cents=amount_cents,
            currency=currency,
            customer_ref=customer_ref,
            idempotency_key=idempotency_key,
            metadata=metadata,
            payment_method_ref=payment_method_ref,
        )
        reference = self._charge_keys.get(idempotency_key)
        if reference is None:
            reference = self.preassigned_reference(idempotency_key) or f"fake_txn_{next(self._ids)}"
            self._charge_keys[idempotency_key] = reference
            self.add_charge(
                reference,
                amount_cents,
                currency.upper(),
                status=self.charge_status,
                payment_method_ref=payment_method_ref,
            )
        charge = self.charges[reference]
        return ChargeResult(
            transaction_ref=reference,
            status=charge["status"],
            client_action_token=f"secret_{reference}",
        )

    def verify_transaction(self, transaction_ref: str) -> VerificationResult:
        self._record("verify_transaction", transaction_ref=transaction_ref)
        charge = self.charges.get(transaction_ref)
        if charge is None:
            raise InvalidRequestError(
                "No such transaction",
                processor=self.processor,
                processor_code="not_found",
            )
        return VerificationResult(
            reference=transaction_ref,
            status=charge["status"],
            amount_cents=charge["amount_cents"],
            currency=charge["currency"],
            payment_method_ref=charge.get("payment_method_ref"),
        )

    def initiate_refund(
        self,
        transaction_ref: str,
        amount_cents: int,
        idempotency_key: str,
        metadata: dict[str, str] | None = None,
    ) -> RefundResult:
        self.require_idempotency_key(idempotency_key)
        self._record(
            "initiate_refund",
            transaction_ref=transaction_ref,
            amount_cents=amount_cents,
            idempotency_key=idempotency_key,
            metadata=metadata,
        )
        refund_ref = None
        if self.supports_idempotent_refunds:
            refund_ref = self._refund_keys.get(idempotency_key)
        if refund_ref is None:
            refund_ref = f"fake_re_{next(self._ids)}"
            self._refund_keys[idempotency_key] = refund_ref
            self.refunds[refund_ref] = {
                "transaction_ref": transaction_ref,
                "amount_cents": amount_cents,
                "status": self.refund_status,
            }
        refund = self.refunds[refund_ref]
        return RefundResult(
            refund_ref=refund_ref,
            status=refund["status"],
            amount_cents=refund["amount_cents"],
        )

    def verify_refund(self, refund_ref: str) -> VerificationResult:
        self._record("verify_refund", refund_ref=refund_ref)
        refund = self.refunds[refund_ref]
        charge = self.charges.get(refund["transaction_ref"], {})
        return VerificationResult(
            reference=refund_ref,
            status=refund["status"],
            amount_cents=refund["amount_cents"],
            currency=charge.get("currency", ""),
        )

    def verify_webhook_authenticity(self, raw_payload, headers, remote_addr=None) -> bool:
        return get_header(headers, "X-Fake-Signature") == FAKE_SIGNATURE

    def parse_webhook_event(self, raw_payload: bytes) -> NormalizedEvent | None:
        """Payloads are NormalizedEvent dicts; ``{"ignore": true}`` is ignored."""
        try:
            data = json.loads(raw_payload)
        except ValueError as e:
            raise InvalidRequestError("Malformed payload", processor=self.processor) from e
        if data.get("ignore"):
            return None
        return NormalizedEvent.from_dict({"processor": self.processor, **data})
