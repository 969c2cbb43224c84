"""
DRF views for the payments API.

Endpoints:
    POST /api/v1/payments/bookings/ - Register a booking's financial record
    GET  /api/v1/payments/bookings/{id}/ - Payment status, amounts, charges, refunds
    POST /api/v1/payments/bookings/{id}/charges/ - Initiate a deposit/balance/full charge
    POST /api/v1/payments/bookings/{id}/refunds/ - Request a refund
    POST /api/v1/payments/bookings/{id}/cancel/ - Refund per the cancellation policy
    POST /api/v1/payments/transactions/{id}/confirm/ - Client-driven confirmation
    GET  /api/v1/payments/refunds/{id}/ - Refund status
    POST /api/v1/payments/subscriptions/ - Start a subscription
    GET  /api/v1/payments/subscriptions/{id}/ - Subscription status
    POST /api/v1/payments/subscriptions/{id}/cancel/ - Cancel a subscription

Related files:
    - services/: ChargeService, RefundService, TrialManager, BookingService
    - serializers.py: Request/response serializers
    - urls.py: URL routing

Security:
    - All endpoints require authentication
    - Users see their own bookings and subscriptions; staff see all

Failures share one body, ``{"error", "error_code"}``, with the HTTP status
taken from the reason code.
"""

from __future__ import annotations

import logging

from django.db.models import Q
from drf_spectacular.utils import OpenApiResponse, extend_schema
from rest_framework import status
from rest_framework.permissions import IsAuthenticated
from rest_framework.response import Response
from rest_framework.views import APIView

from core.services import ServiceResult

from payments.exceptions import ProcessorUnavailableError, TransitionConflictError
from payments.models import Booking, PaymentTransaction, Refund, Subscription
from payments.reason_codes import ReasonCode, http_status_for
from payments.serializers import (
    BookingCancelSerializer,
    BookingCreateSerializer,
    BookingSerializer,
    ChargeCreateSerializer,
    ChargeInitiationSerializer,
    ErrorSerializer,
    PaymentTransactionSerializer,
    RefundCreateSerializer,
    RefundRequestResultSerializer,
    RefundSerializer,
    SubscriptionCancelSerializer,
    SubscriptionCreateSerializer,
    SubscriptionSerializer,
)
from payments.services import (
    BookingService,
    ChargeService,
    RefundService,
    TrialManager,
)

logger = logging.getLogger(__name__)

# Errors a mutating call surfaces as a failure instead of a 500
RECOVERABLE_ERRORS = (ProcessorUnavailableError, TransitionConflictError)


# =============================================================================
# Helpers
# =============================================================================


def failure_response(result: ServiceResult) -> Response:
    """Render a failed ServiceResult with the status for its reason code."""
    return Response(
        {"error": result.error, "error_code": result.error_code},
        status=http_status_for(result.error_code),
    )


def not_found_response(entity: str) -> Response:
    return Response(
        {"error": f"{entity} not found", "error_code": ReasonCode.NOT_FOUND},
        status=status.HTTP_404_NOT_FOUND,
    )


def validation_response(errors: dict) -> Response:
    return Response(
        {
            "error": "Invalid request",
            "error_code": ReasonCode.INVALID_REQUEST,
            "errors": errors,
        },
        status=status.HTTP_400_BAD_REQUEST,
    )


def visible_bookings(user):
    bookings = Booking.objects.all()
    if not user.is_staff:
        bookings = bookings.filter(client=user)
    return bookings


def visible_subscriptions(user):
    subscriptions = Subscription.objects.all()
    if not user.is_staff:
        subscriptions = subscriptions.filter(owner=user)
    return subscriptions


# =============================================================================
# Bookings
# =============================================================================


class BookingCreateView(APIView):
    """
    Register a booking's financial record.

    POST /api/v1/payments/bookings/

    The region decides the processor and currency; the booking starts in
    awaiting_deposit with the requesting user as client.
    """

    permission_classes = [IsAuthenticated]

    @extend_schema(
        operation_id="create_booking",
        summary="Create booking",
        request=BookingCreateSerializer,
        responses={
            201: OpenApiResponse(response=BookingSerializer, description="Booking created"),
            400: OpenApiResponse(response=ErrorSerializer, description="Validation error"),
        },
        tags=["Payments - Bookings"],
    )
    def post(self, request):
        serializer = BookingCreateSerializer(data=request.data)
        if not serializer.is_valid():
            return validation_response(serializer.errors)

        result = BookingService.create_booking(client=request.user, **serializer.validated_data)
        if not result.success:
            return failure_response(result)

        return Response(BookingSerializer(result.data).data, status=status.HTTP_201_CREATED)


class BookingDetailView(APIView):
    """
    Booking payment status.

    GET /api/v1/payments/bookings/{booking_id}/

    Response:
        200 OK: Status, amounts, transactions and refunds
        404 Not Found: Unknown booking or not visible to the user
    """

    permission_classes = [IsAuthenticated]

    @extend_schema(
        operation_id="get_booking_payment_status",
        summary="Get booking payment status",
        responses={
            200: OpenApiResponse(response=BookingSerializer, description="Booking"),
            404: OpenApiResponse(response=ErrorSerializer, description="Booking not found"),
        },
        tags=["Payments - Bookings"],
    )
    def get(self, request, booking_id):
        booking = (
            visible_bookings(request.user)
            .prefetch_related("transactions", "refunds")
            .filter(pk=booking_id)
            .first()
        )
        if booking is None:
            return not_found_response("Booking")
        return Response(BookingSerializer(booking).data)


class BookingChargeView(APIView):
    """
    Initiate a booking charge.

    POST /api/v1/payments/bookings/{booking_id}/charges/

    Request:
        - stage: deposit, balance or full
        - idempotency_key: caller-chosen key; replays return the same charge

    Response:
        201 Created: New charge, with the client continuation token
        200 OK: Replay of an earlier request with the same key
        402 / 409 / 503: Declined, wrong state, processor unavailable
    """

    permission_classes = [IsAuthenticated]

    @extend_schema(
        operation_id="initiate_booking_charge",
        summary="Initiate booking charge",
        request=ChargeCreateSerializer,
        responses={
            201: OpenApiResponse(response=ChargeInitiationSerializer, description="Charge initiated"),
            200: OpenApiResponse(response=ChargeInitiationSerializer, description="Replayed"),
            402: OpenApiResponse(response=ErrorSerializer, description="Payment declined"),
            409: OpenApiResponse(response=ErrorSerializer, description="Invalid state or in progress"),
            503: OpenApiResponse(response=ErrorSerializer, description="Processor unavailable"),
        },
        tags=["Payments - Charges"],
    )
    def post(self, request, booking_id):
        booking = visible_bookings(request.user).filter(pk=booking_id).first()
        if booking is None:
            return not_found_response("Booking")

        serializer = ChargeCreateSerializer(data=request.data)
        if not serializer.is_valid():
            return validation_response(serializer.errors)

        try:
            result = ChargeService.initiate_booking_charge(
                booking,
                stage=serializer.validated_data["stage"],
                idempotency_key=serializer.validated_data["idempotency_key"],
            )
        except RECOVERABLE_ERRORS as e:
            result = ServiceResult.from_exception(e)

        if not result.success:
            return failure_response(result)

        initiation = result.data
        return Response(
            ChargeInitiationSerializer(initiation).data,
            status=status.HTTP_200_OK if initiation.replayed else status.HTTP_201_CREATED,
        )


class BookingRefundView(APIView):
    """
    Request a refund for a booking.

    POST /api/v1/payments/bookings/{booking_id}/refunds/

    The amount is split across captured charges, newest first. Each slice
    settles independently; poll GET refunds/{id}/ for the outcome.
    """

    permission_classes = [IsAuthenticated]

    @extend_schema(
        operation_id="request_booking_refund",
        summary="Request refund",
        request=RefundCreateSerializer,
        responses={
            201: OpenApiResponse(response=RefundRequestResultSerializer, description="Refund requested"),
            200: OpenApiResponse(response=RefundRequestResultSerializer, description="Replayed"),
            409: OpenApiResponse(response=ErrorSerializer, description="Nothing captured"),
            422: OpenApiResponse(response=ErrorSerializer, description="Exceeds refundable amount"),
        },
        tags=["Payments - Refunds"],
    )
    def post(self, request, booking_id):
        booking = visible_bookings(request.user).filter(pk=booking_id).first()
        if booking is None:
            return not_found_response("Booking")

        serializer = RefundCreateSerializer(data=request.data)
        if not serializer.is_valid():
            return validation_response(serializer.errors)

        try:
            result = RefundService.request_refund(
                booking,
                requested_by=request.user,
                **serializer.validated_data,
            )
        except RECOVERABLE_ERRORS as e:
            result = ServiceResult.from_exception(e)

        return _refund_request_response(result)


class BookingCancelView(APIView):
    """
    Refund a cancelled booking per the cancellation policy.

    POST /api/v1/payments/bookings/{booking_id}/cancel/

    Provider cancellations refund everything refundable; client
    cancellations refund everything only before the provider confirmed.
    """

    permission_classes = [IsAuthenticated]

    @extend_schema(
        operation_id="cancel_booking",
        summary="Cancel booking and refund per policy",
        request=BookingCancelSerializer,
        responses={
            200: OpenApiResponse(response=RefundRequestResultSerializer, description="Refund (possibly none)"),
            201: OpenApiResponse(response=RefundRequestResultSerializer, description="Refund requested"),
        },
        tags=["Payments - Refunds"],
    )
    def post(self, request, booking_id):
        booking = visible_bookings(request.user).filter(pk=booking_id).first()
        if booking is None:
            return not_found_response("Booking")

        serializer = BookingCancelSerializer(data=request.data)
        if not serializer.is_valid():
            return validation_response(serializer.errors)

        cancelled_by = serializer.validated_data["cancelled_by"]
        amount_cents = RefundService.calculate_cancellation_refund(booking, cancelled_by)
        if amount_cents == 0:
            logger.info(
                "Cancellation without refund",
                extra={"booking_id": str(booking.pk), "cancelled_by": cancelled_by},
            )
            return Response({"refunds": [], "total_cents": 0, "replayed": False})

        try:
            result = RefundService.request_refund(
                booking,
                amount_cents=amount_cents,
                reason=f"Cancelled by {cancelled_by}",
                idempotency_key=serializer.validated_data["idempotency_key"],
                requested_by=request.user,
            )
        except RECOVERABLE_ERRORS as e:
            result = ServiceResult.from_exception(e)

        return _refund_request_response(result)


def _refund_request_response(result: ServiceResult) -> Response:
    if not result.success:
        return failure_response(result)
    request_result = result.data
    return Response(
        RefundRequestResultSerializer(request_result).data,
        status=status.HTTP_200_OK if request_result.replayed else status.HTTP_201_CREATED,
    )


# =============================================================================
# Transactions and Refunds
# =============================================================================


class TransactionConfirmView(APIView):
    """
    Client-driven confirmation after finishing the processor flow.

    POST /api/v1/payments/transactions/{transaction_id}/confirm/

    Verifies the charge with the processor. A pending result leaves the
    transaction initiated; webhooks or reconciliation settle it later.
    """

    permission_classes = [IsAuthenticated]

    @extend_schema(
        operation_id="confirm_transaction",
        summary="Confirm transaction",
        request=None,
        responses={
            200: OpenApiResponse(response=PaymentTransactionSerializer, description="Transaction"),
            404: OpenApiResponse(response=ErrorSerializer, description="Transaction not found"),
            409: OpenApiResponse(response=ErrorSerializer, description="Needs review"),
            503: OpenApiResponse(response=ErrorSerializer, description="Processor unavailable"),
        },
        tags=["Payments - Charges"],
    )
    def post(self, request, transaction_id):
        transactions = PaymentTransaction.objects.all()
        if not request.user.is_staff:
            transactions = transactions.filter(
                Q(booking__client=request.user) | Q(subscription__owner=request.user)
            )
        txn = transactions.filter(pk=transaction_id).first()
        if txn is None:
            return not_found_response("Transaction")

        try:
            result = ChargeService.confirm_transaction(txn)
        except RECOVERABLE_ERRORS as e:
            result = ServiceResult.from_exception(e)

        if not result.success:
            return failure_response(result)
        return Response(PaymentTransactionSerializer(result.data).data)


class RefundDetailView(APIView):
    """
    Refund status.

    GET /api/v1/payments/refunds/{refund_id}/

    Failed refunds include the failure reason and the follow-up SLA.
    """

    permission_classes = [IsAuthenticated]

    @extend_schema(
        operation_id="get_refund",
        summary="Get refund status",
        responses={
            200: OpenApiResponse(response=RefundSerializer, description="Refund"),
            404: OpenApiResponse(response=ErrorSerializer, description="Refund not found"),
        },
        tags=["Payments - Refunds"],
    )
    def get(self, request, refund_id):
        refunds = Refund.objects.all()
        if not request.user.is_staff:
            refunds = refunds.filter(booking__client=request.user)
        refund = refunds.filter(pk=refund_id).first()
        if refund is None:
            return not_found_response("Refund")
        return Response(RefundSerializer(refund).data)


# =============================================================================
# Subscriptions
# =============================================================================


class SubscriptionCreateView(APIView):
    """
    Start a subscription for the requesting provider.

    POST /api/v1/payments/subscriptions/

    With the region's trial enabled the subscription starts trialing and is
    charged at trial end. Without a trial a verified payment reference is
    required and the subscription starts active.
    """

    permission_classes = [IsAuthenticated]

    @extend_schema(
        operation_id="start_subscription",
        summary="Start subscription",
        request=SubscriptionCreateSerializer,
        responses={
            201: OpenApiResponse(response=SubscriptionSerializer, description="Subscription started"),
            400: OpenApiResponse(response=ErrorSerializer, description="Payment method required"),
            402: OpenApiResponse(response=ErrorSerializer, description="Payment not verified"),
        },
        tags=["Payments - Subscriptions"],
    )
    def post(self, request):
        serializer = SubscriptionCreateSerializer(data=request.data)
        if not serializer.is_valid():
            return validation_response(serializer.errors)

        data = serializer.validated_data
        try:
            result = TrialManager.start_subscription(
                owner=request.user,
                tier=data["tier"],
                region_code=data["region_code"],
                customer_ref=data["customer_ref"],
                verification_ref=data.get("verification_ref") or None,
            )
        except RECOVERABLE_ERRORS as e:
            result = ServiceResult.from_exception(e)

        if not result.success:
            return failure_response(result)
        return Response(SubscriptionSerializer(result.data).data, status=status.HTTP_201_CREATED)


class SubscriptionDetailView(APIView):
    """
    Subscription status.

    GET /api/v1/payments/subscriptions/{subscription_id}/
    """

    permission_classes = [IsAuthenticated]

    @extend_schema(
        operation_id="get_subscription",
        summary="Get subscription",
        responses={
            200: OpenApiResponse(response=SubscriptionSerializer, description="Subscription"),
            404: OpenApiResponse(response=ErrorSerializer, description="Subscription not found"),
        },
        tags=["Payments - Subscriptions"],
    )
    def get(self, request, subscription_id):
        subscription = visible_subscriptions(request.user).filter(pk=subscription_id).first()
        if subscription is None:
            return not_found_response("Subscription")
        return Response(SubscriptionSerializer(subscription).data)


class SubscriptionCancelView(APIView):
    """
    Cancel a subscription.

    POST /api/v1/payments/subscriptions/{subscription_id}/cancel/

    Cancelling an already canceled subscription returns it unchanged.
    """

    permission_classes = [IsAuthenticated]

    @extend_schema(
        operation_id="cancel_subscription",
        summary="Cancel subscription",
        request=SubscriptionCancelSerializer,
        responses={
            200: OpenApiResponse(response=SubscriptionSerializer, description="Subscription canceled"),
            404: OpenApiResponse(response=ErrorSerializer, description="Subscription not found"),
        },
        tags=["Payments - Subscriptions"],
    )
    def post(self, request, subscription_id):
        subscription = visible_subscriptions(request.user).filter(pk=subscription_id).first()
        if subscription is None:
            return not_found_response("Subscription")

        serializer = SubscriptionCancelSerializer(data=request.data)
        if not serializer.is_valid():
            return validation_response(serializer.errors)

        try:
            result = TrialManager.cancel(subscription, serializer.validated_data["reason"])
        except RECOVERABLE_ERRORS as e:
            result = ServiceResult.from_exception(e)

        if not result.success:
            return failure_response(result)
        return Response(SubscriptionSerializer(result.data).data)
