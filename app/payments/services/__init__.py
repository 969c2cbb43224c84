"""
Payment services for coordinating bookings, charges, refunds and trials.

This module provides:
- BookingService: Creates bookings in a region's processor and currency
- PaymentStateMachine: Applies verified charges and settled refunds
- ChargeService: Initiates and confirms booking charges
- RefundService: Slices refund requests across captured charges
- TrialManager: Subscription trials, trial-end charges and cancellation
- EventProcessor: Ledger-guarded dispatch of normalized events
- ReconciliationService: Verifies stale records against their processor

Usage:
    from payments.services import BookingService, ChargeService

    booking = BookingService.create_booking(
        region_code="US",
        deposit_amount_cents=2000,
        total_amount_cents=10000,
        customer_ref="cus_123",
    ).data

    result = ChargeService.initiate_booking_charge(
        booking, stage="deposit", idempotency_key="c0ffee-1"
    )

    # Refund part of what was captured
    from payments.services import RefundService

    result = RefundService.request_refund(
        booking,
        amount_cents=4000,
        reason="Client cancelled",
        idempotency_key="refund-1",
    )

    # Run reconciliation
    from payments.services import ReconciliationService

    run = ReconciliationService.run(stale_after_minutes=30)
"""

from payments.services.payment_state_machine import (
    ChargeApplication,
    PaymentStateMachine,
)
from payments.services.booking_service import BookingService
from payments.services.refund_service import (
    RefundRequestResult,
    RefundService,
)
from payments.services.trial_manager import (
    TrialManager,
    TrialSweepResult,
)
from payments.services.event_processor import (
    EventProcessor,
    ProcessingResult,
    event_from_verification,
)
from payments.services.charge_service import (
    ChargeInitiation,
    ChargeService,
)
from payments.services.reconciliation_service import (
    ReconciliationRunResult,
    ReconciliationService,
)

__all__ = [
    "BookingService",
    "ChargeApplication",
    "ChargeInitiation",
    "ChargeService",
    "EventProcessor",
    "PaymentStateMachine",
    "ProcessingResult",
    "ReconciliationRunResult",
    "ReconciliationService",
    "RefundRequestResult",
    "RefundService",
    "TrialManager",
    "TrialSweepResult",
    "event_from_verification",
]
