"""
Notification service layer.

Turns escrow events into SMS messages for the buyer and the seller.
Messages are rendered from templates and queued for delivery by the
send_sms Celery task; nothing is sent inline.

Design Principles:
    - Services are stateless (use class methods)
    - Called after commit: a notification never rolls back escrow state
    - Template rendering raises KeyError on missing placeholders
    - Missing phone numbers are skipped, not treated as errors

Usage:
    from notifications.services import NotificationService

    # Usually registered with transaction.on_commit by EscrowService
    NotificationService.notify("seller_accepted", txn.id)
    NotificationService.notify("shipped", txn.id, code="123456")
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

from django.conf import settings

from authentication.models import MSISDN_PATTERN, normalize_msisdn
from core.services import BaseService, ServiceResult

if TYPE_CHECKING:
    import uuid
    from typing import Any

    from escrow.models import EscrowTransaction

logger = logging.getLogger(__name__)


BUYER = "buyer"
SELLER = "seller"


@dataclass(frozen=True)
class SmsTemplate:
    recipient: str
    body: str


# Placeholders: {sender}, {ref}, {item}, {amount}, {currency}, {buyer}, {seller},
# plus event specific context ({code}, {outcome})
TEMPLATES: dict[str, tuple[SmsTemplate, ...]] = {
    "payment_confirmed": (
        SmsTemplate(BUYER, "{sender}: Payment of {currency} {amount} for {item} is held in escrow. Ref {ref}."),
        SmsTemplate(
            SELLER,
            "{sender}: {buyer} paid {currency} {amount} for {item}. Accept the order to proceed. Ref {ref}.",
        ),
    ),
    "payment_failed": (
        SmsTemplate(BUYER, "{sender}: Your payment for {item} did not go through. Ref {ref}."),
    ),
    "transaction_cancelled": (
        SmsTemplate(BUYER, "{sender}: Order {ref} for {item} was cancelled. Any funds held will be refunded."),
        SmsTemplate(SELLER, "{sender}: Order {ref} for {item} was cancelled."),
    ),
    "seller_accepted": (
        SmsTemplate(BUYER, "{sender}: {seller} accepted your order for {item}. Ref {ref}."),
    ),
    "seller_rejected": (
        SmsTemplate(
            BUYER,
            "{sender}: {seller} declined your order for {item}. {currency} {amount} will be refunded. Ref {ref}.",
        ),
    ),
    "shipped": (
        SmsTemplate(
            BUYER,
            "{sender}: {item} has shipped. Give delivery code {code} only once you receive it. Ref {ref}.",
        ),
    ),
    "otp_reissued": (
        SmsTemplate(BUYER, "{sender}: Your new delivery code for {item} is {code}. Ref {ref}."),
    ),
    "delivered": (
        SmsTemplate(BUYER, "{sender}: Delivery of {item} confirmed. Report any problem before release. Ref {ref}."),
        SmsTemplate(SELLER, "{sender}: Delivery of {item} confirmed. Funds are released after the dispute window."),
    ),
    "completed": (
        SmsTemplate(SELLER, "{sender}: {currency} {amount} for {item} has been released to you. Ref {ref}."),
        SmsTemplate(BUYER, "{sender}: Order {ref} for {item} is complete. Thank you."),
    ),
    "dispute_opened": (
        SmsTemplate(BUYER, "{sender}: Your dispute on order {ref} was received. Funds stay held until it is resolved."),
        SmsTemplate(SELLER, "{sender}: The buyer disputed order {ref} for {item}. Funds are on hold."),
    ),
    "dispute_resolved": (
        SmsTemplate(BUYER, "{sender}: The dispute on order {ref} was resolved ({outcome})."),
        SmsTemplate(SELLER, "{sender}: The dispute on order {ref} was resolved ({outcome})."),
    ),
    "payout_sent": (
        SmsTemplate(SELLER, "{sender}: {currency} {amount} for order {ref} has been sent to your M-Pesa."),
    ),
    "refund_sent": (
        SmsTemplate(BUYER, "{sender}: {currency} {amount} for order {ref} has been refunded to your M-Pesa."),
    ),
}


class NotificationService(BaseService):
    """
    Service for escrow SMS notifications.

    Methods:
        notify: Render and queue the messages for an escrow event
        render: Render a single template for a transaction
    """

    @classmethod
    def notify(cls, event: str, transaction_id: uuid.UUID, **context: Any) -> ServiceResult[int]:
        """
        Queue the SMS messages for an escrow event.

        Args:
            event: Event key, e.g. "seller_accepted"
            transaction_id: Transaction the event happened to
            **context: Extra placeholders (e.g. code for "shipped")

        Returns:
            ServiceResult with the number of messages queued
        """
        from escrow.models import EscrowTransaction

        templates = TEMPLATES.get(event)
        if not templates:
            logger.debug(f"No notification templates for event: {event}")
            return ServiceResult.success(0)

        txn = EscrowTransaction.objects.select_related("buyer", "seller").filter(id=transaction_id).first()
        if txn is None:
            logger.warning(
                "Notification for unknown transaction",
                extra={"event": event, "transaction_id": str(transaction_id)},
            )
            return ServiceResult.failure("Transaction not found", error_code="NOT_FOUND")

        queued = 0
        for template in templates:
            phone = cls.recipient_phone(txn, template.recipient)
            if not phone:
                logger.info(
                    "Recipient has no mobile number, SMS skipped",
                    extra={"event": event, "transaction_id": str(txn.id), "recipient": template.recipient},
                )
                continue

            body = cls.render(template, txn, **context)
            if cls._queue(phone, body, event, txn):
                queued += 1

        return ServiceResult.success(queued)

    @staticmethod
    def recipient_phone(txn: EscrowTransaction, recipient: str) -> str:
        if recipient == BUYER:
            phone = txn.payer_phone or normalize_msisdn(txn.buyer.phone_number)
        else:
            phone = normalize_msisdn(txn.seller.phone_number)
        return phone if MSISDN_PATTERN.match(phone) else ""

    @staticmethod
    def render(template: SmsTemplate, txn: EscrowTransaction, **context: Any) -> str:
        values = {
            "sender": getattr(settings, "SMS_SENDER_NAME", "Swiftline"),
            "ref": txn.id.hex[:8].upper(),
            "item": txn.item_name or "your order",
            "amount": f"{txn.amount:,}",
            "currency": txn.currency,
            "buyer": txn.buyer.get_short_name(),
            "seller": txn.seller.get_short_name(),
            **context,
        }
        return template.body.format(**values)

    @staticmethod
    def _queue(phone: str, body: str, event: str, txn: EscrowTransaction) -> bool:
        from notifications.tasks import send_sms

        try:
            send_sms.delay(phone, body, event=event, transaction_id=str(txn.id))
        except Exception as e:
            # Escrow state is already committed; only the SMS is lost
            logger.error(
                f"Failed to queue SMS: {type(e).__name__}",
                extra={"event": event, "transaction_id": str(txn.id)},
                exc_info=True,
            )
            return False
        return True
