"""
Pytest fixtures for payment tests.

This module provides fixtures for creating payment-related test data and
for swapping the processor adapters with in-memory fakes. Fixtures provide
bookings in various payment states for testing state transitions and
business logic.

Usage:
    def test_deposit_charge(booking, fake_adapter):
        result = ChargeService.initiate_booking_charge(booking, "deposit", "key-1")
        assert fake_adapter.count("initiate_charge") == 1
"""

from unittest.mock import MagicMock, patch

import pytest
from django.utils import timezone

from payments.adapters import reset_adapters, set_adapter
from payments.state_machines import (
    BookingPaymentStatus,
    PaymentStage,
    Processor,
)
from payments.tests.factories import (
    BookingFactory,
    PaymentTransactionFactory,
    SubscriptionFactory,
    UserFactory,
)
from payments.tests.fakes import FakeAdapter


# =============================================================================
# Adapter Fixtures
# =============================================================================


@pytest.fixture(autouse=True)
def reset_adapter_registry():
    """Never let an adapter override leak between tests."""
    reset_adapters()
    yield
    reset_adapters()


@pytest.fixture
def fake_adapter():
    """In-memory Stripe-like processor (idempotent refunds)."""
    adapter = FakeAdapter(processor=Processor.STRIPE)
    set_adapter(Processor.STRIPE, adapter)
    return adapter


@pytest.fixture
def fake_paystack():
    """In-memory Paystack-like processor (merchant references, no refund dedupe)."""
    adapter = FakeAdapter(
        processor=Processor.PAYSTACK,
        supports_idempotent_refunds=False,
        preassign_references=True,
    )
    set_adapter(Processor.PAYSTACK, adapter)
    return adapter


# =============================================================================
# Redis Fixtures
# =============================================================================


@pytest.fixture
def mock_redis():
    """Mock Redis for distributed locking."""
    mock_redis = MagicMock()
    mock_redis.set.return_value = True
    mock_redis.get.return_value = None
    mock_redis.delete.return_value = 1
    mock_redis.eval.return_value = 1

    with patch("payments.locks.get_redis_connection", return_value=mock_redis):
        yield mock_redis


# =============================================================================
# User Fixtures
# =============================================================================


@pytest.fixture
def user(db):
    """Create a test user."""
    return UserFactory()


@pytest.fixture
def other_user(db):
    return UserFactory()


@pytest.fixture
def staff_user(db):
    return UserFactory(is_staff=True)


# =============================================================================
# Booking State Fixtures
# =============================================================================


@pytest.fixture
def booking(db, user):
    """Booking awaiting its deposit: 20.00 of 100.00 USD on Stripe."""
    return BookingFactory(client=user)


@pytest.fixture
def paystack_booking(db, user):
    """Booking awaiting its deposit on Paystack (GH, GHS)."""
    return BookingFactory(client=user, paystack=True)


@pytest.fixture
def deposit_paid_booking(db, user):
    """Booking with a verified 20.00 deposit."""
    booking = BookingFactory(
        client=user,
        payment_status=BookingPaymentStatus.DEPOSIT_PAID,
        amount_paid_cents=2000,
        deposit_paid_at=timezone.now(),
    )
    PaymentTransactionFactory(
        booking=booking,
        stage=PaymentStage.DEPOSIT,
        amount_cents=2000,
        verified=True,
    )
    return booking


@pytest.fixture
def fully_paid_booking(db, user):
    """Booking paid in one 100.00 charge."""
    booking = BookingFactory(
        client=user,
        payment_status=BookingPaymentStatus.FULLY_PAID,
        amount_paid_cents=10000,
        deposit_paid_at=timezone.now(),
        fully_paid_at=timezone.now(),
    )
    PaymentTransactionFactory(
        booking=booking,
        stage=PaymentStage.FULL,
        amount_cents=10000,
        verified=True,
    )
    return booking


# =============================================================================
# Subscription Fixtures
# =============================================================================


@pytest.fixture
def trialing_subscription(db, user):
    """Solo plan on a 60-day trial that started now."""
    return SubscriptionFactory(owner=user)
