"""
Adapter registry: processor identifier -> adapter instance.

Entities store the processor they were created with, so every later call for
that entity goes through ``get_adapter(entity.processor)``.

Usage:
    from payments.adapters import get_adapter

    adapter = get_adapter(booking.processor)

    # Tests swap in a fake
    set_adapter(Processor.STRIPE, FakeAdapter())
    ...
    reset_adapters()
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from django.conf import settings

from payments.adapters.paystack_adapter import PaystackAdapter
from payments.adapters.stripe_adapter import StripeAdapter
from payments.state_machines import Processor

if TYPE_CHECKING:
    from payments.adapters.base import ProviderAdapter

logger = logging.getLogger(__name__)

ADAPTER_CLASSES: dict[str, type[ProviderAdapter]] = {
    Processor.STRIPE: StripeAdapter,
    Processor.PAYSTACK: PaystackAdapter,
}

_registry: dict[str, ProviderAdapter] = {}


def get_adapter(processor: str) -> ProviderAdapter:
    """
    Return the adapter for a processor, creating it on first use.

    Raises:
        ValueError: Unknown processor identifier
    """
    adapter = _registry.get(processor)
    if adapter is None:
        try:
            adapter_class = ADAPTER_CLASSES[processor]
        except KeyError:
            raise ValueError(f"Unknown processor: {processor!r}") from None
        adapter = adapter_class()
        _registry[processor] = adapter
        logger.info(
            "Processor adapter created",
            extra={"processor": processor, "payment_mode": settings.PAYMENT_MODE},
        )
    return adapter


def set_adapter(processor: str, adapter: ProviderAdapter) -> None:
    """Override the adapter used for a processor (for testing)."""
    _registry[processor] = adapter


def reset_adapters() -> None:
    """Drop cached and overridden adapters."""
    _registry.clear()
