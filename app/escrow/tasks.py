"""
Celery tasks for escrow processing.

This module provides async tasks for:
- Sending the STK push for a newly created transaction
- Applying recorded gateway events through the idempotency ledger
- Retrying failed gateway events
- Resetting gateway events stuck in processing

Usage:
    from escrow.tasks import process_gateway_event

    # Queue a recorded callback for application
    process_gateway_event.delay(str(record.id))

    # Retry failed events (typically via celery-beat)
    from escrow.tasks import retry_failed_gateway_events
    retry_failed_gateway_events.delay()
"""

from __future__ import annotations

import logging
from datetime import timedelta
from uuid import UUID

from celery import shared_task
from django.conf import settings
from django.db.models import F, Q
from django.utils import timezone

from escrow.exceptions import GatewayRateLimitError, GatewayUnavailableError
from escrow.models import IdempotencyRecord
from escrow.state_machines import IdempotencyRecordStatus

logger = logging.getLogger(__name__)


# =============================================================================
# Constants
# =============================================================================

MAX_EVENT_RETRIES = 5
STUCK_PROCESSING_THRESHOLD_MINUTES = 30

# Records still PENDING this long after arrival were never queued
UNQUEUED_THRESHOLD_MINUTES = 5


def _max_event_retries() -> int:
    return getattr(settings, "ESCROW_EVENT_MAX_RETRIES", MAX_EVENT_RETRIES)


# =============================================================================
# Payment Initiation
# =============================================================================


@shared_task(
    bind=True,
    autoretry_for=(GatewayRateLimitError, GatewayUnavailableError),
    retry_backoff=True,
    retry_backoff_max=300,
    retry_kwargs={"max_retries": 3},
    acks_late=True,
)
def initiate_payment(self, transaction_id: str) -> dict:
    """
    Send the STK push for a transaction created with a payer phone.

    Timeouts are not retried here: the outcome is unknown and the
    reconciliation poll resolves it instead of prompting the payer twice.

    Returns:
        Dict with status "initiated", "already_initiated" or "failed"
    """
    from escrow.services import PaymentGatewayService

    result = PaymentGatewayService.initiate(UUID(str(transaction_id)))

    if result.success:
        return {
            "status": "initiated" if result.data.created else "already_initiated",
            "transaction_id": str(transaction_id),
            "provider_reference": result.data.provider_reference,
        }

    reason = result.details.get("reason")
    if result.error_code == "GATEWAY_ERROR" and reason in ("rate_limited", "unavailable"):
        logger.warning(
            "Transient gateway error during initiation, will retry",
            extra={"transaction_id": str(transaction_id), "celery_retries": self.request.retries},
        )
        exc_class = GatewayRateLimitError if reason == "rate_limited" else GatewayUnavailableError
        raise exc_class(result.error)

    return {
        "status": "failed",
        "transaction_id": str(transaction_id),
        "error": result.error,
        "error_code": result.error_code,
    }


# =============================================================================
# Gateway Event Processing
# =============================================================================


@shared_task(
    bind=True,
    autoretry_for=(Exception,),
    retry_backoff=True,
    retry_backoff_max=300,
    retry_kwargs={"max_retries": MAX_EVENT_RETRIES},
    acks_late=True,
)
def process_gateway_event(self, record_id: str) -> dict:
    """
    Apply a recorded gateway event asynchronously.

    This task:
    1. Locks the IdempotencyRecord
    2. Returns early if it is already final (replay)
    3. Dispatches to the registered handler inside the same transaction
    4. Marks it processed, rejected or failed

    Args:
        record_id: UUID of the IdempotencyRecord

    Returns:
        Dict with the ledger outcome

    Raises:
        Exception: Re-raised to trigger Celery retry mechanism
    """
    from core.exceptions import NotFoundError
    from escrow.services import IdempotencyLedger

    record_uuid = UUID(str(record_id))
    logger.info("Processing gateway event", extra={"record_id": str(record_id)})

    try:
        result = IdempotencyLedger.apply(record_uuid)
    except NotFoundError:
        logger.error("IdempotencyRecord not found", extra={"record_id": str(record_id)})
        return {"status": "not_found", "record_id": str(record_id)}
    except Exception as e:
        # The ledger transaction rolled back; record the failure so the
        # retry scan sees it, then let Celery retry
        error_msg = f"{type(e).__name__}: {e}"
        IdempotencyRecord.objects.filter(id=record_uuid).exclude(
            status__in=[IdempotencyRecordStatus.PROCESSED, IdempotencyRecordStatus.REJECTED]
        ).update(
            status=IdempotencyRecordStatus.FAILED,
            error_message=error_msg,
            retry_count=F("retry_count") + 1,
            updated_at=timezone.now(),
        )

        logger.exception(
            "Gateway event processing failed with exception",
            extra={"record_id": str(record_id), "error": error_msg},
        )
        raise

    ledger = result.data
    return {
        "status": ledger.outcome.value.lower(),
        "record_id": str(record_id),
        "provider_reference": ledger.record.provider_reference,
    }


@shared_task
def retry_failed_gateway_events() -> dict:
    """
    Periodic task to retry failed gateway events.

    Also re-queues PENDING records that were recorded but never queued
    (the broker was unreachable when the callback arrived).

    Returns:
        Dict with count of events queued for retry
    """
    unqueued_cutoff = timezone.now() - timedelta(minutes=UNQUEUED_THRESHOLD_MINUTES)
    records = (
        IdempotencyRecord.objects.filter(
            Q(status=IdempotencyRecordStatus.FAILED, retry_count__lt=_max_event_retries())
            | Q(status=IdempotencyRecordStatus.PENDING, created_at__lt=unqueued_cutoff)
        )
        .order_by("created_at")
        .values_list("id", "provider_reference", "status", "retry_count")[:100]
    )

    queued_count = 0
    for record_id, provider_reference, status, retry_count in records:
        try:
            process_gateway_event.delay(str(record_id))
            queued_count += 1
            logger.info(
                "Queued gateway event for retry",
                extra={
                    "record_id": str(record_id),
                    "provider_reference": provider_reference,
                    "status": status,
                    "retry_count": retry_count,
                },
            )
        except Exception as e:
            logger.error(
                f"Failed to queue gateway event for retry: {e}",
                extra={"record_id": str(record_id)},
            )

    if queued_count:
        logger.info(
            f"Queued {queued_count} gateway events for retry",
            extra={"queued_count": queued_count},
        )

    return {"queued_count": queued_count}


@shared_task
def cleanup_stuck_gateway_events() -> dict:
    """
    Periodic task to reset stuck gateway events.

    Finds records that have been PROCESSING for too long and resets them
    to FAILED so they can be retried. Handles worker crashes mid-apply.

    Returns:
        Dict with count of records reset
    """
    threshold = timezone.now() - timedelta(minutes=STUCK_PROCESSING_THRESHOLD_MINUTES)

    stuck_records = IdempotencyRecord.objects.filter(
        status=IdempotencyRecordStatus.PROCESSING,
        updated_at__lt=threshold,
    )

    reset_count = 0
    for record in stuck_records:
        record.mark_failed("Processing timed out - reset for retry")
        record.save()
        reset_count += 1
        logger.warning(
            "Reset stuck gateway event",
            extra={
                "record_id": str(record.id),
                "provider_reference": record.provider_reference,
                "stuck_since": record.updated_at.isoformat(),
            },
        )

    if reset_count > 0:
        logger.info(
            f"Reset {reset_count} stuck gateway events",
            extra={"reset_count": reset_count},
        )

    return {"reset_count": reset_count}


# =============================================================================
# Re-exported Worker Tasks
# =============================================================================
# These tasks are defined in escrow.workers but re-exported here so Celery
# autodiscover finds them.

from escrow.workers import (  # noqa: E402, F401
    dispatch_due_instructions,
    dispatch_instruction,
    sweep_escrow_deadlines,
)
