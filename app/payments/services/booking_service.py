"""
Booking creation and confirmation.

The booking calendar lives in an external collaborator; this service only
creates the financial record, fixing region, currency and processor once.

Usage:
    from payments.services import BookingService

    result = BookingService.create_booking(
        region_code="US",
        deposit_amount_cents=2000,
        total_amount_cents=10000,
        customer_ref="client@example.com",
    )
    booking = result.data
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from django.utils import timezone

from core.services import BaseService, ServiceResult

from payments.adapters import resolve_region
from payments.locks import retry_on_conflict, save_with_version_check
from payments.models import Booking
from payments.reason_codes import ReasonCode

if TYPE_CHECKING:
    from django.contrib.auth.models import AbstractBaseUser


class BookingService(BaseService):
    """Create and confirm bookings' financial records."""

    @classmethod
    def create_booking(
        cls,
        region_code: str,
        deposit_amount_cents: int,
        total_amount_cents: int,
        customer_ref: str,
        client: AbstractBaseUser | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> ServiceResult[Booking]:
        """
        Create a booking in AWAITING_DEPOSIT.

        Args:
            region_code: Region or ISO country code of the booking
            deposit_amount_cents: Deposit in minor units (0 < deposit <= total)
            total_amount_cents: Total price in minor units
            customer_ref: Processor customer reference or e-mail
            client: Booking client account, if known
            metadata: Free-form context

        Returns:
            ServiceResult with the new Booking
        """
        if total_amount_cents <= 0:
            return ServiceResult.failure(
                "Total amount must be positive",
                error_code=ReasonCode.INVALID_REQUEST,
            )
        if not 0 < deposit_amount_cents <= total_amount_cents:
            return ServiceResult.failure(
                "Deposit must be positive and not exceed the total",
                error_code=ReasonCode.INVALID_REQUEST,
            )
        if not customer_ref:
            return ServiceResult.failure(
                "A customer reference is required",
                error_code=ReasonCode.INVALID_REQUEST,
            )

        region = resolve_region(region_code)
        booking = Booking.objects.create(
            region_code=region.code,
            currency=region.currency,
            processor=region.processor,
            customer_ref=customer_ref,
            client=client,
            deposit_amount_cents=deposit_amount_cents,
            total_amount_cents=total_amount_cents,
            metadata=metadata or {},
        )

        cls.get_logger().info(
            "Created booking",
            extra={
                "booking_id": str(booking.id),
                "region_code": region.code,
                "processor": region.processor,
                "total_amount_cents": total_amount_cents,
            },
        )
        return ServiceResult.success(booking)

    @classmethod
    def confirm_booking(cls, booking: Booking) -> Booking:
        """
        Record that the provider confirmed the booking.

        Confirmation changes the cancellation refund policy; confirming twice
        keeps the first timestamp.
        """
        booking_id = booking.pk

        def attempt() -> Booking:
            current = Booking.objects.get(pk=booking_id)
            if current.confirmed_at is not None:
                return current
            expected = current.version
            current.confirmed_at = timezone.now()
            return save_with_version_check(current, expected, ["confirmed_at"])

        confirmed = retry_on_conflict(attempt, label=f"booking:{booking_id}")
        cls.get_logger().info(
            "Booking confirmed",
            extra={"booking_id": str(booking_id)},
        )
        return confirmed
