"""
Idempotency ledger exceptions.

Exception Hierarchy:
    LedgerError (base)
    └── RecordNotFound - No record holds the requested key

Usage:
    from payments.ledger.exceptions import RecordNotFound

    try:
        record = ledger.require(key)
    except RecordNotFound:
        logger.warning("Ledger record vanished", extra={"key": key})
"""

from __future__ import annotations

from core.exceptions import BaseApplicationError, NotFoundError


class LedgerError(BaseApplicationError):
    """Base exception for idempotency ledger operations."""

    default_error_code: str = "LEDGER_ERROR"


class RecordNotFound(LedgerError, NotFoundError):
    """Raised when no IdempotencyRecord exists for a key."""

    default_error_code: str = "LEDGER_RECORD_NOT_FOUND"
