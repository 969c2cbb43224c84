"""
Ledger - Idempotency records for every keyed payment operation.

Public API:
    Models:
        IdempotencyRecord - One row per reserved key

    Service:
        ledger - Singleton instance of IdempotencyLedger
        IdempotencyLedger - Reserve / claim / complete / fail / prune

    Types:
        Reservation - Result of an insert-if-absent reservation
        OutcomeStatus - Vocabulary for recorded outcomes
        build_outcome - Outcome snapshot helper

    Exceptions:
        LedgerError - Base exception for ledger operations
        RecordNotFound - Key lookup failures

Usage:
    from payments.ledger import ledger, OutcomeStatus, build_outcome

    reservation = ledger.reserve("stripe:evt_123", kind="webhook")
    if reservation.is_duplicate:
        return reservation.record.outcome

    if ledger.mark_processing(reservation.record):
        ...
        ledger.complete(reservation.record, build_outcome(OutcomeStatus.APPLIED))
"""

from .exceptions import LedgerError, RecordNotFound
from .models import IdempotencyRecord
from .services import IdempotencyLedger, ledger
from .types import OutcomeStatus, Reservation, build_outcome

__all__ = [
    # Models
    "IdempotencyRecord",
    # Service
    "ledger",
    "IdempotencyLedger",
    # Types
    "OutcomeStatus",
    "Reservation",
    "build_outcome",
    # Exceptions
    "LedgerError",
    "RecordNotFound",
]
