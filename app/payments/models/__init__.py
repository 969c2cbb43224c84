"""
Payment domain models.

This module contains all payment-related models:
- Booking: Application-side financial record of a booking
- PaymentTransaction: One processor-side charge attempt
- Refund: Money returned from a verified charge
- Subscription: Provider plan with optional free trial
- TrialPolicy: Per-region / per-tier trial configuration
- IdempotencyRecord: Reserved idempotency keys and their outcomes
- ReconciliationRun: Audit row per reconciliation sweep
- ReconciliationDiscrepancy: Local/processor mismatches found by a sweep
"""

from payments.ledger.models import IdempotencyRecord
from payments.models.booking import Booking
from payments.models.reconciliation import (
    DiscrepancyResolution,
    ReconciliationDiscrepancy,
    ReconciliationRun,
)
from payments.models.refund import IN_FLIGHT_REFUND_STATES, Refund
from payments.models.subscription import Subscription
from payments.models.transaction import PaymentTransaction
from payments.models.trial_policy import ResolvedTrialPolicy, TrialPolicy

__all__ = [
    "Booking",
    "DiscrepancyResolution",
    "IN_FLIGHT_REFUND_STATES",
    "IdempotencyRecord",
    "PaymentTransaction",
    "ReconciliationDiscrepancy",
    "ReconciliationRun",
    "Refund",
    "ResolvedTrialPolicy",
    "Subscription",
    "TrialPolicy",
]
