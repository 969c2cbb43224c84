"""
Base exception classes for application-wide error handling.

Every domain error carries a human-readable message, a machine-readable
``error_code`` and an optional ``details`` dict. API views serialize them
with ``to_dict()`` so clients always see the same error envelope.

Exception Hierarchy:
    BaseApplicationError (base)
    ├── ValidationError - Input or business-rule validation failures
    ├── NotFoundError - Resource not found
    └── ConflictError - State conflicts (concurrent modification, bad transition)

Usage:
    from core.exceptions import NotFoundError, ValidationError

    raise ValidationError("Deposit cannot exceed total", error_code="INVALID_REQUEST")

    raise NotFoundError(
        "Booking not found",
        details={"booking_id": str(booking_id)},
    )

    try:
        ...
    except BaseApplicationError as e:
        return Response(e.to_dict(), status=400)
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from typing import Any


class BaseApplicationError(Exception):
    """
    Base exception for all application-specific errors.

    Attributes:
        message: Human-readable error description
        error_code: Machine-readable code for client-side handling
        details: Additional error context

    Subclasses set ``default_error_code``; callers may override it per raise.
    """

    default_error_code: str = "APPLICATION_ERROR"

    def __init__(
        self,
        message: str,
        error_code: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        """
        Initialize the exception.

        Args:
            message: Human-readable error description
            error_code: Machine-readable error code (defaults to class default)
            details: Additional error context
        """
        self.message = message
        self.error_code = error_code or self.default_error_code
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        """
        Convert exception to dictionary for API response.

        Returns:
            Dict with error, error_code and (when present) details keys

        Example:
            {
                "error": "Refund exceeds refundable amount",
                "error_code": "AMOUNT_MISMATCH",
                "details": {"requested_cents": 6100, "refundable_cents": 6000}
            }
        """
        result: dict[str, Any] = {
            "error": self.message,
            "error_code": self.error_code,
        }
        if self.details:
            result["details"] = self.details
        return result

    def __str__(self) -> str:
        """Return string representation with error code."""
        return f"[{self.error_code}] {self.message}"

    def __repr__(self) -> str:
        """Return detailed representation for debugging."""
        return (
            f"{self.__class__.__name__}("
            f"message={self.message!r}, "
            f"error_code={self.error_code!r}, "
            f"details={self.details!r})"
        )


class ValidationError(BaseApplicationError):
    """
    Raised when input or a business rule fails validation.

    Use for service-layer checks (amount ranges, immutable fields, missing
    identifiers). DRF serializers handle request-shape validation.
    """

    default_error_code: str = "VALIDATION_ERROR"


class NotFoundError(BaseApplicationError):
    """
    Raised when a requested resource is not found.

    Example:
        booking = Booking.objects.filter(id=booking_id).first()
        if booking is None:
            raise NotFoundError(
                f"Booking {booking_id} not found",
                details={"booking_id": str(booking_id)},
            )
    """

    default_error_code: str = "NOT_FOUND"


class ConflictError(BaseApplicationError):
    """
    Raised when an operation conflicts with current resource state.

    Use for:
    - Optimistic locking failures
    - Invalid state transitions
    - Contended locks

    Note:
        HTTP 409 Conflict is the matching status.
    """

    default_error_code: str = "CONFLICT"


__all__ = [
    "BaseApplicationError",
    "ConflictError",
    "NotFoundError",
    "ValidationError",
]
