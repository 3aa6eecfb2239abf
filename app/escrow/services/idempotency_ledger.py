"""
Idempotency ledger for provider payment events.

Webhooks and status polls both end up here. An event is recorded under
(provider_reference, event_type) and applied through EscrowService in
the same database transaction that marks the record final, so a
confirmation is applied at most once whichever path delivers it first.

A confirmation whose amount differs from the transaction amount is never
applied. Whether it arrives first (refused by the guard) or after a
status poll already escrowed the payment (a replay), the transaction is
held for manual intervention.

Usage:
    from escrow.services import IdempotencyLedger

    # Webhook path: record now, apply in a Celery task
    record, created = IdempotencyLedger.record(event, source=EventSource.WEBHOOK)
    process_gateway_event.delay(str(record.id))

    # Poll path: record and apply synchronously
    result = IdempotencyLedger.ingest(event, source=EventSource.POLL)
    result.data.outcome  # LedgerOutcome.APPLIED or LedgerOutcome.REPLAY
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING

from django.db import IntegrityError, transaction

from core.exceptions import NotFoundError
from core.services import BaseService, ServiceResult
from escrow.models import EscrowTransaction, IdempotencyRecord
from escrow.state_machines import GatewayEventType

if TYPE_CHECKING:
    import uuid

    from escrow.adapters import NormalizedEvent
    from escrow.services.escrow_service import TransitionResult

# Refusals that will not change on retry: the event was evaluated and the
# guard said no (wrong state, amount mismatch).
FINAL_REFUSAL_CODES = frozenset({"GUARD_VIOLATION", "VALIDATION"})


class LedgerOutcome(str, Enum):
    APPLIED = "APPLIED"
    REPLAY = "IDEMPOTENT_REPLAY"
    REJECTED = "REJECTED"
    FAILED = "FAILED"


@dataclass
class LedgerResult:
    record: IdempotencyRecord
    outcome: LedgerOutcome
    transition: TransitionResult | None = None


class IdempotencyLedger(BaseService):
    @classmethod
    def record(cls, event: NormalizedEvent, source: str) -> tuple[IdempotencyRecord, bool]:
        """
        Record an event if it has not been seen.

        Returns:
            (record, created). An existing record is returned unchanged;
            its payload is never rewritten.
        """
        defaults = {"payload": event.to_payload(), "source": source}
        try:
            with transaction.atomic():
                record, created = IdempotencyRecord.objects.get_or_create(
                    provider_reference=event.provider_reference,
                    event_type=event.event_type,
                    defaults=defaults,
                )
        except IntegrityError:
            # Lost a race with a concurrent delivery of the same event
            record = IdempotencyRecord.objects.get(
                provider_reference=event.provider_reference,
                event_type=event.event_type,
            )
            created = False

        cls.get_logger().info(
            "Gateway event recorded" if created else "Gateway event already recorded",
            extra={
                "record_id": str(record.id),
                "provider_reference": record.provider_reference,
                "event_type": record.event_type,
                "source": source,
                "status": record.status,
            },
        )
        if not created and event.event_type == GatewayEventType.PAYMENT_CONFIRMED:
            # The stored payload is kept; a later delivery may still disagree with it
            cls._hold_on_amount_mismatch(event.provider_reference, event.amount)
        return record, created

    @classmethod
    def apply(cls, record_id: uuid.UUID) -> ServiceResult[LedgerResult]:
        """
        Apply a recorded event exactly once.

        The record row is locked for the whole application. A final record
        is a replay and succeeds without touching the transaction.

        Raises:
            NotFoundError: No record with this ID
        """
        from escrow.webhooks.handlers import dispatch_gateway_event

        logger = cls.get_logger()

        with cls.atomic():
            record = IdempotencyRecord.objects.select_for_update().filter(id=record_id).first()
            if record is None:
                raise NotFoundError(
                    f"IdempotencyRecord {record_id} not found",
                    details={"record_id": str(record_id)},
                )

            log_context = {
                "record_id": str(record.id),
                "provider_reference": record.provider_reference,
                "event_type": record.event_type,
            }

            if record.is_final:
                logger.info("Gateway event already applied", extra={**log_context, "status": record.status})
                return ServiceResult.success(LedgerResult(record=record, outcome=LedgerOutcome.REPLAY))

            record.mark_processing()
            result = dispatch_gateway_event(record)

            if result.success:
                record.mark_processed()
                outcome = LedgerOutcome.APPLIED
            elif result.error_code in FINAL_REFUSAL_CODES:
                record.mark_rejected(result.error or "Refused")
                outcome = LedgerOutcome.REJECTED
                logger.warning(
                    "Gateway event refused by guard",
                    extra={**log_context, "error": result.error, "error_code": result.error_code},
                )
                details = result.details or {}
                if record.event_type == GatewayEventType.PAYMENT_CONFIRMED and details.get("reason") == "amount":
                    cls._hold_on_amount_mismatch(record.provider_reference, details.get("received"))
            else:
                record.mark_failed(result.error or "Handler returned failure")
                outcome = LedgerOutcome.FAILED
                logger.warning(
                    "Gateway event could not be applied",
                    extra={**log_context, "error": result.error, "error_code": result.error_code},
                )
            record.save()

        return ServiceResult.success(
            LedgerResult(
                record=record,
                outcome=outcome,
                transition=result.data if result.success else None,
            )
        )

    @classmethod
    def ingest(cls, event: NormalizedEvent, source: str) -> ServiceResult[LedgerResult]:
        """Record and apply in one call (status poll path)."""
        record, _ = cls.record(event, source)
        return cls.apply(record.id)

    @classmethod
    def _hold_on_amount_mismatch(cls, provider_reference: str, confirmed_amount: int | None) -> bool:
        """
        Flag the transaction when the provider confirmed a different amount.

        Returns:
            True if the amounts disagree, whether or not the flag is new.
        """
        if confirmed_amount is None:
            return False
        txn = EscrowTransaction.objects.filter(provider_reference=provider_reference).first()
        if txn is None or txn.amount == confirmed_amount:
            return False

        cls.get_logger().error(
            "Confirmed amount does not match transaction - held for manual review",
            extra={
                "transaction_id": str(txn.id),
                "provider_reference": provider_reference,
                "status": txn.status,
                "requested": txn.amount,
                "confirmed": confirmed_amount,
            },
        )
        txn.flag_for_review(
            f"Provider confirmed {confirmed_amount} {txn.currency} against a requested {txn.amount} {txn.currency}"
        )
        return True
