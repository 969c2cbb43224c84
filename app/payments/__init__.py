"""
Payments app for booking charges, trials and refunds.

This app handles:
- Deposit and balance charges against bookings
- Processor adapters (Stripe for NA/EU, Paystack for GH/NG)
- Webhook intake with an idempotency ledger in front of every state change
- Refund requests and cancellation refund policy
- Trial subscriptions and the trial-end charge
- Scheduled reconciliation against processor state

Related apps:
    - core: base models, exceptions and the ServiceResult wrapper

Usage:
    from payments.services import ChargeService, RefundService

    # Charge the deposit for a booking
    result = ChargeService.initiate_booking_charge(booking, stage="deposit", idempotency_key=key)

    # Refund part of what was captured
    result = RefundService.request_refund(booking, 4000, reason="client_request", idempotency_key=key)
"""
