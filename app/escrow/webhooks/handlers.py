"""
Gateway event handlers.

Maps normalized provider event types to escrow triggers. Handlers are
called by IdempotencyLedger.apply() with the record row locked, inside
the transaction that marks the record final.

Usage:
    from escrow.webhooks.handlers import dispatch_gateway_event, register_handler

    @register_handler("payment.reversed")
    def handle_payment_reversed(record: IdempotencyRecord) -> ServiceResult:
        ...

    result = dispatch_gateway_event(record)
"""

from __future__ import annotations

import logging
from typing import Callable

from core.services import ServiceResult
from escrow.adapters import NormalizedEvent
from escrow.commands import Actor, ConfirmPayment, FailPayment
from escrow.models import IdempotencyRecord
from escrow.services.escrow_service import EscrowService
from escrow.state_machines import GatewayEventType

logger = logging.getLogger(__name__)


# =============================================================================
# Handler Registry
# =============================================================================

GATEWAY_EVENT_HANDLERS: dict[str, Callable[[IdempotencyRecord], ServiceResult]] = {}


def register_handler(event_type: str) -> Callable:
    """
    Decorator to register a gateway event handler.

    Args:
        event_type: Normalized event type (e.g., "payment.confirmed")
    """

    def decorator(func: Callable[[IdempotencyRecord], ServiceResult]) -> Callable:
        GATEWAY_EVENT_HANDLERS[event_type] = func
        logger.debug(f"Registered gateway event handler for {event_type}")
        return func

    return decorator


def dispatch_gateway_event(record: IdempotencyRecord) -> ServiceResult:
    """
    Dispatch a recorded event to its handler.

    Unknown event types succeed without doing anything so the record is
    closed instead of retried forever.
    """
    handler = GATEWAY_EVENT_HANDLERS.get(record.event_type)
    if not handler:
        logger.info(
            f"No handler registered for event type: {record.event_type}",
            extra={"provider_reference": record.provider_reference},
        )
        return ServiceResult.success(None)

    logger.info(
        f"Dispatching {record.event_type} to handler",
        extra={"provider_reference": record.provider_reference, "source": record.source},
    )
    return handler(record)


# =============================================================================
# Payment Handlers
# =============================================================================


@register_handler(GatewayEventType.PAYMENT_CONFIRMED)
def handle_payment_confirmed(record: IdempotencyRecord) -> ServiceResult:
    """
    Provider confirmed the payment: PENDING -> ESCROWED.

    The confirmed amount is checked against the requested amount by the
    state machine guard.
    """
    event = NormalizedEvent.from_payload(record.payload)
    return EscrowService.execute(
        ConfirmPayment(
            actor=Actor.system(),
            provider_reference=event.provider_reference,
            amount=event.amount,
            receipt_number=event.receipt_number,
        )
    )


@register_handler(GatewayEventType.PAYMENT_FAILED)
def handle_payment_failed(record: IdempotencyRecord) -> ServiceResult:
    """Provider reported a terminal failure: PENDING -> CANCELLED."""
    event = NormalizedEvent.from_payload(record.payload)
    reason = event.result_description or f"Payment failed (code {event.result_code})"
    return EscrowService.execute(
        FailPayment(
            actor=Actor.system(),
            provider_reference=event.provider_reference,
            reason=reason,
        )
    )
