"""
Webhook endpoint for M-Pesa STK callbacks.

The view:
1. Verifies the callback signature
2. Normalizes the callback and records it in the idempotency ledger
3. Queues the record for async application
4. Returns immediately

Usage:
    # In urls.py
    from escrow.webhooks.views import mpesa_webhook

    urlpatterns = [
        path("webhooks/mpesa/", mpesa_webhook, name="mpesa_webhook"),
    ]
"""

from __future__ import annotations

import logging

from django.http import HttpRequest, JsonResponse
from django.views.decorators.csrf import csrf_exempt
from django.views.decorators.http import require_POST

from core.helpers import get_client_ip
from escrow.adapters import SIGNATURE_HEADER, MpesaAdapter
from escrow.exceptions import WebhookVerificationError
from escrow.services.idempotency_ledger import IdempotencyLedger
from escrow.state_machines import EventSource

logger = logging.getLogger(__name__)


def _ack(description: str, status: int = 200) -> JsonResponse:
    # Daraja only looks at ResultCode; 0 stops its retries
    return JsonResponse(
        {"ResultCode": 0 if status == 200 else 1, "ResultDesc": description},
        status=status,
    )


@csrf_exempt
@require_POST
def mpesa_webhook(request: HttpRequest) -> JsonResponse:
    """
    Receive and queue M-Pesa STK callbacks.

    Unverifiable payloads are rejected with 400 and never stored. Once
    verified, the response is always 200: duplicates and events that
    fail later are handled by the ledger and its retry task, not by the
    provider's redelivery.

    Returns:
        JsonResponse with status:
        - 200: Event accepted (new or duplicate)
        - 400: Invalid signature or payload
    """
    payload = request.body
    signature = request.headers.get(SIGNATURE_HEADER, "")

    try:
        data = MpesaAdapter.verify_webhook_signature(payload, signature)
        event = MpesaAdapter.parse_callback(data)
    except WebhookVerificationError as e:
        logger.warning(
            "Webhook verification failed",
            extra={"error": e.message, "remote_addr": get_client_ip(request)},
        )
        return _ack(e.message, status=400)

    logger.info(
        f"Received M-Pesa callback: {event.event_type}",
        extra={
            "provider_reference": event.provider_reference,
            "event_type": event.event_type,
            "result_code": event.result_code,
        },
    )

    record, created = IdempotencyLedger.record(event, source=EventSource.WEBHOOK)

    if not created and record.is_final:
        logger.info(
            "Callback already processed, returning success",
            extra={"provider_reference": event.provider_reference, "status": record.status},
        )
        return _ack("Already processed")

    try:
        from escrow.tasks import process_gateway_event

        process_gateway_event.delay(str(record.id))
        logger.info(
            "Callback queued for processing",
            extra={"provider_reference": event.provider_reference, "record_id": str(record.id)},
        )
    except Exception as e:
        # The retry task picks up records that were never applied
        logger.error(
            f"Failed to queue callback: {type(e).__name__}",
            extra={"provider_reference": event.provider_reference},
            exc_info=True,
        )

    return _ack("Accepted")
