"""
Processor adapters.

Every processor API call goes through an adapter so the rest of the engine
sees one contract: bounded timeouts, mandatory idempotency keys, a closed
error taxonomy and processor-neutral result types.

Usage:
    from payments.adapters import call_with_retry, get_adapter, resolve_region

    region = resolve_region("NG")
    adapter = get_adapter(region.processor)
    result = call_with_retry(
        lambda: adapter.initiate_charge(
            amount_cents=2_000_000,
            currency=region.currency,
            customer_ref="client@example.com",
            idempotency_key="booking_123_deposit",
        ),
        label="initiate_charge",
    )
"""

from payments.adapters.base import (
    STATUS_FAILED,
    STATUS_PENDING,
    STATUS_SUCCEEDED,
    ChargeResult,
    IdempotencyKeyGenerator,
    NormalizedEvent,
    ProviderAdapter,
    RefundResult,
    VerificationResult,
    backoff_delay,
    call_with_retry,
)
from payments.adapters.paystack_adapter import PaystackAdapter
from payments.adapters.regions import (
    REGIONS,
    Region,
    currency_for_region,
    processor_for_region,
    resolve_region,
)
from payments.adapters.registry import get_adapter, reset_adapters, set_adapter
from payments.adapters.stripe_adapter import StripeAdapter

__all__ = [
    "REGIONS",
    "STATUS_FAILED",
    "STATUS_PENDING",
    "STATUS_SUCCEEDED",
    "ChargeResult",
    "IdempotencyKeyGenerator",
    "NormalizedEvent",
    "PaystackAdapter",
    "ProviderAdapter",
    "RefundResult",
    "Region",
    "StripeAdapter",
    "VerificationResult",
    "backoff_delay",
    "call_with_retry",
    "currency_for_region",
    "get_adapter",
    "processor_for_region",
    "reset_adapters",
    "resolve_region",
    "set_adapter",
]
