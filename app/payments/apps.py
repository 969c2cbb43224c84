"""
Payments app configuration.

This app provides the payment orchestration engine:
- Region routing and processor adapters (Stripe, Paystack)
- Booking payment, refund and subscription state machines
- Idempotency ledger and webhook intake
- Reconciliation and trial sweeps
"""

from django.apps import AppConfig


class PaymentsConfig(AppConfig):
    """Configuration for the payments application."""

    default_auto_field = "django.db.models.BigAutoField"
    name = "payments"
    verbose_name = "Payments"

    def ready(self) -> None:
        from payments.signals import connect_transition_receivers

        connect_transition_receivers()
