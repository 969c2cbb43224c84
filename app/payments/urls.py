"""
URL configuration for the payments app.

Routes:
    - POST bookings/ - Create booking
    - GET  bookings/<id>/ - Booking payment status
    - POST bookings/<id>/charges/ - Initiate charge
    - POST bookings/<id>/refunds/ - Request refund
    - POST bookings/<id>/cancel/ - Cancellation refund
    - POST transactions/<id>/confirm/ - Client confirm
    - GET  refunds/<id>/ - Refund status
    - POST subscriptions/ - Start subscription
    - GET  subscriptions/<id>/ - Subscription status
    - POST subscriptions/<id>/cancel/ - Cancel subscription
    - POST webhooks/stripe/ - Stripe webhook endpoint
    - POST webhooks/paystack/ - Paystack webhook endpoint

All routes are prefixed with /api/v1/payments/ when included in the main URLconf.

Usage:
    # In config/urls.py
    api_v1_patterns = [
        path("payments/", include("payments.urls")),
    ]
"""

from django.urls import path

from payments import views
from payments.webhooks.views import paystack_webhook, stripe_webhook

app_name = "payments"

urlpatterns = [
    # Bookings
    path("bookings/", views.BookingCreateView.as_view(), name="booking_create"),
    path(
        "bookings/<uuid:booking_id>/",
        views.BookingDetailView.as_view(),
        name="booking_detail",
    ),
    path(
        "bookings/<uuid:booking_id>/charges/",
        views.BookingChargeView.as_view(),
        name="booking_charge",
    ),
    path(
        "bookings/<uuid:booking_id>/refunds/",
        views.BookingRefundView.as_view(),
        name="booking_refund",
    ),
    path(
        "bookings/<uuid:booking_id>/cancel/",
        views.BookingCancelView.as_view(),
        name="booking_cancel",
    ),
    # Transactions and refunds
    path(
        "transactions/<uuid:transaction_id>/confirm/",
        views.TransactionConfirmView.as_view(),
        name="transaction_confirm",
    ),
    path(
        "refunds/<uuid:refund_id>/",
        views.RefundDetailView.as_view(),
        name="refund_detail",
    ),
    # Subscriptions
    path(
        "subscriptions/",
        views.SubscriptionCreateView.as_view(),
        name="subscription_create",
    ),
    path(
        "subscriptions/<uuid:subscription_id>/",
        views.SubscriptionDetailView.as_view(),
        name="subscription_detail",
    ),
    path(
        "subscriptions/<uuid:subscription_id>/cancel/",
        views.SubscriptionCancelView.as_view(),
        name="subscription_cancel",
    ),
    # Webhook endpoints
    path("webhooks/stripe/", stripe_webhook, name="stripe_webhook"),
    path("webhooks/paystack/", paystack_webhook, name="paystack_webhook"),
]
