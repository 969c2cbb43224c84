"""
Webhook endpoint views, one per processor.

Each view:
1. Verifies authenticity with the processor's adapter
2. Parses the payload into a NormalizedEvent
3. Reserves ``<processor>:<event_id>`` in the idempotency ledger
4. Queues the event for async processing and returns immediately

Responses:
    200 - new, duplicate and ignored events
    400 - authenticity failure or malformed payload (no ledger slot used)
    500 - the ledger could not be written; the processor retries

Usage:
    # In urls.py
    from payments.webhooks.views import paystack_webhook, stripe_webhook

    urlpatterns = [
        path("webhooks/stripe/", stripe_webhook, name="stripe_webhook"),
        path("webhooks/paystack/", paystack_webhook, name="paystack_webhook"),
    ]
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from django.db import DatabaseError
from django.http import HttpRequest, HttpResponse
from django.views.decorators.csrf import csrf_exempt
from django.views.decorators.http import require_POST

from core.helpers import get_client_ip

from payments.adapters import get_adapter
from payments.exceptions import AuthenticityFailureError, InvalidRequestError
from payments.services.event_processor import EventProcessor
from payments.state_machines import Processor

if TYPE_CHECKING:
    from payments.adapters.base import ProviderAdapter

logger = logging.getLogger(__name__)


def authenticate_delivery(
    adapter: ProviderAdapter,
    payload: bytes,
    request: HttpRequest,
    processor: str,
) -> None:
    """
    Reject a delivery the processor's adapter cannot authenticate.

    Raises:
        AuthenticityFailureError: Signature or source check failed
    """
    remote_addr = get_client_ip(request)
    if not adapter.verify_webhook_authenticity(payload, request.headers, remote_addr):
        raise AuthenticityFailureError(
            "Webhook authenticity check failed",
            details={"processor": processor, "remote_addr": remote_addr},
        )


def receive_webhook(request: HttpRequest, processor: str) -> HttpResponse:
    """
    Shared intake for all processors.

    Args:
        request: The processor's POST
        processor: Processor identifier the route belongs to

    Returns:
        HttpResponse with the status described in the module docstring
    """
    adapter = get_adapter(processor)
    payload = request.body

    try:
        authenticate_delivery(adapter, payload, request, processor)
    except AuthenticityFailureError as e:
        logger.warning(e.message, extra={**e.details, "reason_code": e.error_code})
        return HttpResponse("Invalid signature", status=400)

    try:
        event = adapter.parse_webhook_event(payload)
    except InvalidRequestError as e:
        logger.warning(
            "Malformed webhook payload",
            extra={"processor": processor, "error": e.message},
        )
        return HttpResponse("Invalid event", status=400)

    if event is None:
        return HttpResponse("Ignored", status=200)

    log_context = {
        "processor": processor,
        "event_id": event.processor_event_id,
        "event_type": event.type,
    }

    try:
        reservation = EventProcessor.reserve(event)
    except DatabaseError:
        logger.error("Could not reserve webhook event", extra=log_context, exc_info=True)
        return HttpResponse("Temporarily unavailable", status=500)

    if reservation.is_duplicate:
        logger.info("Duplicate webhook delivery", extra=log_context)
        return HttpResponse("Already received", status=200)

    try:
        from payments.tasks import process_webhook_event

        process_webhook_event.delay(reservation.record.key)
        logger.info(
            "Webhook queued for processing",
            extra={**log_context, "key": reservation.record.key},
        )
    except Exception:
        # The reserved record is picked up by requeue_stuck_webhooks
        logger.error(
            "Failed to queue webhook",
            extra=log_context,
            exc_info=True,
        )

    return HttpResponse("Accepted", status=200)


@csrf_exempt
@require_POST
def stripe_webhook(request: HttpRequest) -> HttpResponse:
    """
    Receive Stripe events.

    Example Stripe-Signature header:
        t=1614556800,v1=xxx,v0=yyy
    """
    return receive_webhook(request, Processor.STRIPE)


@csrf_exempt
@require_POST
def paystack_webhook(request: HttpRequest) -> HttpResponse:
    """Receive Paystack events (x-paystack-signature, HMAC-SHA512)."""
    return receive_webhook(request, Processor.PAYSTACK)
