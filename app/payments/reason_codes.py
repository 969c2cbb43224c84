"""
Stable reason codes for payment outcomes.

Clients receive these codes instead of raw processor messages so the UI can
show consistent guidance regardless of which processor handled the booking.
Exceptions in ``payments.exceptions`` use them as their ``error_code``; the
API maps them to HTTP statuses through ``HTTP_STATUS_BY_REASON``.

Usage:
    from payments.reason_codes import ReasonCode, customer_message

    return ServiceResult.failure(
        "Refund exceeds refundable amount",
        error_code=ReasonCode.AMOUNT_MISMATCH,
    )

    customer_message(ReasonCode.PAYMENT_DECLINED)
    # "Your payment was declined. Please try another payment method."
"""

from django.db import models


class ReasonCode(models.TextChoices):
    """Machine-readable outcome codes exposed to collaborators."""

    # Processor outcomes
    PROCESSOR_UNAVAILABLE = "PROCESSOR_UNAVAILABLE", "Processor unavailable"
    PROCESSOR_TIMEOUT = "PROCESSOR_TIMEOUT", "Processor timeout"
    PAYMENT_DECLINED = "PAYMENT_DECLINED", "Payment declined"
    INSUFFICIENT_FUNDS = "INSUFFICIENT_FUNDS", "Insufficient funds"
    INVALID_REQUEST = "INVALID_REQUEST", "Invalid request"
    ALREADY_REFUNDED = "ALREADY_REFUNDED", "Already refunded"

    # State machine outcomes
    AMOUNT_MISMATCH = "AMOUNT_MISMATCH", "Amount mismatch"
    CURRENCY_MISMATCH = "CURRENCY_MISMATCH", "Currency mismatch"
    INVALID_STATE = "INVALID_STATE", "Invalid state transition"
    CONFLICT = "CONFLICT", "Concurrent modification"
    NO_CAPTURED_PAYMENT = "NO_CAPTURED_PAYMENT", "No captured payment"
    NOT_FOUND = "NOT_FOUND", "Not found"

    # Intake
    AUTHENTICITY_FAILURE = "AUTHENTICITY_FAILURE", "Authenticity failure"
    REQUEST_IN_PROGRESS = "REQUEST_IN_PROGRESS", "Request in progress"
    NEEDS_REVIEW = "NEEDS_REVIEW", "Needs manual review"

    # Subscriptions
    PAYMENT_METHOD_REQUIRED = "PAYMENT_METHOD_REQUIRED", "Payment method required"
    PAYMENT_METHOD_UNVERIFIED = "PAYMENT_METHOD_UNVERIFIED", "Payment method unverified"
    PAYMENT_NOT_RECEIVED = "PAYMENT_NOT_RECEIVED", "Payment not received"


CUSTOMER_MESSAGES: dict[str, str] = {
    ReasonCode.PROCESSOR_UNAVAILABLE: (
        "The payment service is temporarily unavailable. Please try again shortly."
    ),
    ReasonCode.PROCESSOR_TIMEOUT: (
        "We could not confirm your payment yet. Please check back before retrying."
    ),
    ReasonCode.PAYMENT_DECLINED: (
        "Your payment was declined. Please try another payment method."
    ),
    ReasonCode.INSUFFICIENT_FUNDS: (
        "Your payment method has insufficient funds. Please try another one."
    ),
    ReasonCode.AMOUNT_MISMATCH: (
        "The payment amount did not match what was expected. Our team will review it."
    ),
    ReasonCode.CURRENCY_MISMATCH: (
        "The payment currency did not match the booking. Our team will review it."
    ),
    ReasonCode.NO_CAPTURED_PAYMENT: "No payment has been captured for this booking.",
    ReasonCode.REQUEST_IN_PROGRESS: "This request is already being processed.",
    ReasonCode.PAYMENT_METHOD_REQUIRED: "A payment method is required for this plan.",
    ReasonCode.PAYMENT_METHOD_UNVERIFIED: "We could not verify your payment method.",
}

DEFAULT_CUSTOMER_MESSAGE = "Something went wrong with this payment request."


# Reason code -> HTTP status used by the API layer
HTTP_STATUS_BY_REASON: dict[str, int] = {
    ReasonCode.PROCESSOR_UNAVAILABLE: 503,
    ReasonCode.PROCESSOR_TIMEOUT: 503,
    ReasonCode.PAYMENT_DECLINED: 402,
    ReasonCode.INSUFFICIENT_FUNDS: 402,
    ReasonCode.INVALID_REQUEST: 400,
    ReasonCode.AMOUNT_MISMATCH: 422,
    ReasonCode.CURRENCY_MISMATCH: 422,
    ReasonCode.INVALID_STATE: 409,
    ReasonCode.CONFLICT: 409,
    ReasonCode.REQUEST_IN_PROGRESS: 409,
    ReasonCode.NEEDS_REVIEW: 409,
    ReasonCode.NO_CAPTURED_PAYMENT: 409,
    ReasonCode.NOT_FOUND: 404,
    ReasonCode.PAYMENT_METHOD_REQUIRED: 400,
    ReasonCode.PAYMENT_METHOD_UNVERIFIED: 402,
}


def customer_message(reason_code: str | None) -> str:
    """Return the customer-facing message for a reason code."""
    if reason_code is None:
        return DEFAULT_CUSTOMER_MESSAGE
    return CUSTOMER_MESSAGES.get(reason_code, DEFAULT_CUSTOMER_MESSAGE)


def http_status_for(reason_code: str | None) -> int:
    """Return the HTTP status matching a reason code (400 when unmapped)."""
    if reason_code is None:
        return 400
    return HTTP_STATUS_BY_REASON.get(reason_code, 400)
