"""
Data types for idempotency ledger operations.

Types:
    Reservation: Result of an insert-if-absent reservation
    OutcomeStatus: Vocabulary for recorded outcomes
    build_outcome: Helper producing the JSON outcome snapshot

Usage:
    from payments.ledger.types import OutcomeStatus, build_outcome

    reservation = ledger.reserve(key, kind=IdempotencyKind.WEBHOOK)
    if reservation.is_duplicate:
        return reservation.record.outcome

    ledger.complete(
        reservation.record,
        build_outcome(OutcomeStatus.APPLIED, booking_id=str(booking.id)),
    )
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from django.db import models

if TYPE_CHECKING:
    from payments.ledger.models import IdempotencyRecord


class OutcomeStatus(models.TextChoices):
    """
    What happened when a keyed operation was processed.

    Values:
        APPLIED: State changed as a result of this operation
        ALREADY_APPLIED: Target state was already reached (no-op)
        IGNORED: Nothing to do for this event
        NEEDS_REVIEW: Business-terminal problem, surfaced for manual review
        FAILED: Operation completed with a definite failure (e.g. declined)
    """

    APPLIED = "applied", "Applied"
    ALREADY_APPLIED = "already_applied", "Already Applied"
    IGNORED = "ignored", "Ignored"
    NEEDS_REVIEW = "needs_review", "Needs Review"
    FAILED = "failed", "Failed"


@dataclass
class Reservation:
    """
    Result of ``IdempotencyLedger.reserve``.

    Attributes:
        record: The record now holding the key (new or pre-existing)
        created: True only for the caller whose insert won
    """

    record: IdempotencyRecord
    created: bool

    @property
    def is_duplicate(self) -> bool:
        return not self.created


def build_outcome(status: str, **details: Any) -> dict[str, Any]:
    """Build the JSON snapshot stored in ``IdempotencyRecord.outcome``."""
    outcome: dict[str, Any] = {"status": str(status)}
    for name, value in details.items():
        if value is not None:
            outcome[name] = value if isinstance(value, (int, bool)) else str(value)
    return outcome
