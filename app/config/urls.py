"""
URL configuration for the payment orchestration engine.

The `urlpatterns` list routes URLs to views. This is the root URL configuration
that includes all app-specific routes.

URL Structure:
    /admin/                        - Django admin interface
    /health/                       - Health check endpoint (for load balancers, Docker)
    /api/schema/                   - OpenAPI schema (YAML)
    /api/docs/                     - ReDoc API documentation
    /api/v1/payments/              - Payment endpoints
        bookings/                  - Register a booking (POST)
        bookings/{id}/             - Booking payment status
        bookings/{id}/charges/     - Initiate a charge (POST)
        bookings/{id}/refunds/     - Request a refund (POST)
        bookings/{id}/cancel/      - Cancel with policy refund (POST)
        transactions/{id}/confirm/ - Client-side confirmation (POST)
        refunds/{id}/              - Refund status
        subscriptions/             - Start a subscription (POST)
        subscriptions/{id}/        - Subscription status
        subscriptions/{id}/cancel/ - Cancel a subscription (POST)
        webhooks/stripe/           - Stripe webhook endpoint (POST)
        webhooks/paystack/         - Paystack webhook endpoint (POST)

For more information, see:
https://docs.djangoproject.com/en/5.2/topics/http/urls/
"""

from django.contrib import admin
from django.urls import include, path
from drf_spectacular.views import SpectacularAPIView, SpectacularRedocView

from core.views import health_check

# =============================================================================
# API v1 Routes
# =============================================================================
# All routes here are prefixed with /api/v1/ automatically
api_v1_patterns = [
    path("payments/", include("payments.urls")),
]

urlpatterns = [
    # Documentation
    path("api/schema/", SpectacularAPIView.as_view(), name="schema"),
    path("api/docs/", SpectacularRedocView.as_view(url_name="schema"), name="redoc"),
    # Admin
    path("admin/", admin.site.urls),
    # Health check (Docker, Kubernetes, load balancers)
    path("health/", health_check, name="health_check"),
    # API v1
    path("api/v1/", include(api_v1_patterns)),
]

# =============================================================================
# Admin Site Customization
# =============================================================================
admin.site.site_header = "Booking Payments Admin"
admin.site.site_title = "Payments Admin"
admin.site.index_title = "Payments, refunds and reconciliation"
