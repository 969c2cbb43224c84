"""
State machine enums for payment models.

This module defines the state enums used by payment models with django-fsm.
"""

from payments.state_machines.states import (
    BookingPaymentStatus,
    IdempotencyKind,
    IdempotencyStatus,
    NormalizedEventType,
    PaymentStage,
    Processor,
    ReconciliationRunStatus,
    RefundState,
    SubscriptionStatus,
    SubscriptionTier,
    TransactionStatus,
)

__all__ = [
    "BookingPaymentStatus",
    "IdempotencyKind",
    "IdempotencyStatus",
    "NormalizedEventType",
    "PaymentStage",
    "Processor",
    "ReconciliationRunStatus",
    "RefundState",
    "SubscriptionStatus",
    "SubscriptionTier",
    "TransactionStatus",
]
