"""
State enums for escrow models.

This module defines all state enums used by escrow models with django-fsm.
These are Django TextChoices for database storage and admin integration.

State Machines Overview:

EscrowTransaction States:
    PENDING → ESCROWED → ACCEPTED → SHIPPED → DELIVERED → COMPLETED
    DELIVERED → DISPUTED → COMPLETED / REFUNDED
    ESCROWED/ACCEPTED → REJECTED (seller declines)
    PENDING/ESCROWED → CANCELLED (payment failure or expiry)

PayoutInstruction States:
    PENDING → SENT
    PENDING → FAILED (retries exhausted, manual intervention)

IdempotencyRecord States:
    PENDING → PROCESSING → PROCESSED / REJECTED
    PENDING → PROCESSING → FAILED (can retry)
"""

from django.db import models


class TransactionStatus(models.TextChoices):
    """
    States for the EscrowTransaction lifecycle.

    The stored values are the exact tokens exposed to API callers.

    Terminal states: COMPLETED, REFUNDED, REJECTED, CANCELLED
    In-flight states: ESCROWED, ACCEPTED, SHIPPED, DELIVERED, DISPUTED

    Happy Path:
        PENDING → ESCROWED → ACCEPTED → SHIPPED → DELIVERED → COMPLETED

    Dispute Path:
        DELIVERED → DISPUTED → COMPLETED (release) / REFUNDED

    Early Exits:
        PENDING → CANCELLED (payment failed or never paid)
        ESCROWED → CANCELLED (seller never accepted, funds refunded)
        ESCROWED/ACCEPTED → REJECTED (seller declined, funds refunded)
    """

    PENDING = "PENDING", "Pending"
    ESCROWED = "ESCROWED", "Escrowed"
    ACCEPTED = "ACCEPTED", "Accepted"
    SHIPPED = "SHIPPED", "Shipped"
    DELIVERED = "DELIVERED", "Delivered"
    DISPUTED = "DISPUTED", "Disputed"
    COMPLETED = "COMPLETED", "Completed"
    REFUNDED = "REFUNDED", "Refunded"
    REJECTED = "REJECTED", "Rejected"
    CANCELLED = "CANCELLED", "Cancelled"


TERMINAL_STATUSES = frozenset(
    {
        TransactionStatus.COMPLETED,
        TransactionStatus.REFUNDED,
        TransactionStatus.REJECTED,
        TransactionStatus.CANCELLED,
    }
)


class InstructionKind(models.TextChoices):
    """Direction of a fund movement instruction."""

    PAYOUT = "PAYOUT", "Payout to seller"
    REFUND = "REFUND", "Refund to buyer"


class InstructionStatus(models.TextChoices):
    """
    States for the PayoutInstruction lifecycle.

    A PENDING instruction may have failed attempts behind it; it stays
    PENDING while retries remain and becomes FAILED once they are exhausted
    or the provider rejects it permanently.
    """

    PENDING = "PENDING", "Pending"
    SENT = "SENT", "Sent"
    FAILED = "FAILED", "Failed"


class IdempotencyRecordStatus(models.TextChoices):
    """
    Processing status for IdempotencyRecord.

    PROCESSED and REJECTED are final: the event was applied, or it was
    evaluated and refused by a guard. Neither is ever applied again.
    """

    PENDING = "pending", "Pending"
    PROCESSING = "processing", "Processing"
    PROCESSED = "processed", "Processed"
    REJECTED = "rejected", "Rejected"
    FAILED = "failed", "Failed"


class GatewayEventType(models.TextChoices):
    """Normalized provider event types recorded in the idempotency ledger."""

    PAYMENT_CONFIRMED = "payment.confirmed", "Payment confirmed"
    PAYMENT_FAILED = "payment.failed", "Payment failed"


class EventSource(models.TextChoices):
    """Which path delivered a provider event."""

    WEBHOOK = "webhook", "Webhook"
    POLL = "poll", "Status poll"


class ActorRole(models.TextChoices):
    """Role supplied by the identity layer for every trigger."""

    BUYER = "BUYER", "Buyer"
    SELLER = "SELLER", "Seller"
    ADJUDICATOR = "ADJUDICATOR", "Adjudicator"
    SYSTEM = "SYSTEM", "System"
    FRAUD_SIGNAL = "FRAUD_SIGNAL", "Automated fraud signal"


class PayoutMethodType(models.TextChoices):
    """Kinds of disbursement targets a seller can register."""

    MOBILE_MONEY = "MOBILE_MONEY", "Mobile money"
    BANK = "BANK", "Bank account"


__all__ = [
    "ActorRole",
    "EventSource",
    "GatewayEventType",
    "IdempotencyRecordStatus",
    "InstructionKind",
    "InstructionStatus",
    "PayoutMethodType",
    "TERMINAL_STATUSES",
    "TransactionStatus",
]
