"""
Payout dispatcher: moves the money an instruction says is owed.

Three phases per attempt, under a per-instruction Redis lock:
1. Count the attempt and commit (so a crash mid-call still counts it)
2. Call the provider (B2C payout, or reversal / B2C for refunds) outside
   any database transaction
3. Record the outcome: SENT, a later retry, or FAILED

The escrow transaction is never touched. A failed payout is money owed
but not yet moved, tracked on the instruction only.

Usage:
    from escrow.services import PayoutDispatcher

    result = PayoutDispatcher.dispatch(instruction_id)
    if result.success:
        result.data.status  # "sent" or "already_processed"
    else:
        result.details["status"]  # "retry_scheduled" or "failed"
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import timedelta

from django.conf import settings
from django.db import transaction
from django.utils import timezone

from core.exceptions import NotFoundError
from core.services import BaseService, ServiceResult
from escrow.adapters import (
    DisbursementParams,
    DisbursementResult,
    IdempotencyKeyGenerator,
    MpesaAdapter,
    ReversalParams,
    backoff_delay,
)
from escrow.exceptions import GatewayError
from escrow.locks import DistributedLock
from escrow.models import PayoutInstruction
from escrow.state_machines import InstructionKind, InstructionStatus

# Distributed lock TTL for a dispatch attempt (seconds)
DISPATCH_LOCK_TTL = 120

# Lock acquisition timeout (seconds)
DISPATCH_LOCK_TIMEOUT = 10.0


@dataclass
class DispatchResult:
    """
    Attributes:
        instruction: The instruction after the attempt
        status: "sent", "already_processed" or "not_due"
        provider_reference: Provider conversation ID when sent
    """

    instruction: PayoutInstruction
    status: str
    provider_reference: str = ""


class PayoutDispatcher(BaseService):
    """
    Executes payout and refund instructions with bounded retries.

    Error Handling:
        - Retryable gateway errors: attempt recorded, next_attempt_at set
          with exponential backoff, instruction stays PENDING
        - Permanent gateway errors, or the last allowed attempt failing:
          FAILED with requires_manual_intervention
        - Lock contention: LockAcquisitionError is raised to the caller
    """

    @staticmethod
    def max_attempts() -> int:
        return getattr(settings, "ESCROW_PAYOUT_MAX_ATTEMPTS", 5)

    @staticmethod
    def retry_delay(attempt_count: int) -> timedelta:
        seconds = backoff_delay(
            attempt_count - 1,
            base=getattr(settings, "ESCROW_PAYOUT_BACKOFF_BASE_SECONDS", 60),
            max_delay=getattr(settings, "ESCROW_PAYOUT_BACKOFF_MAX_SECONDS", 3600),
        )
        return timedelta(seconds=seconds)

    @classmethod
    def dispatch(cls, instruction_id: uuid.UUID) -> ServiceResult[DispatchResult]:
        """
        Attempt one provider call for a PENDING instruction.

        Raises:
            LockAcquisitionError: Another worker is dispatching it
            NotFoundError: No such instruction
        """
        with DistributedLock(
            f"escrow:instruction:{instruction_id}",
            ttl=DISPATCH_LOCK_TTL,
            timeout=DISPATCH_LOCK_TIMEOUT,
        ):
            return cls._dispatch_with_lock(instruction_id)

    @classmethod
    def _dispatch_with_lock(cls, instruction_id: uuid.UUID) -> ServiceResult[DispatchResult]:
        logger = cls.get_logger()
        log_context = {"instruction_id": str(instruction_id)}

        # Phase 1: count the attempt
        with transaction.atomic():
            instruction = (
                PayoutInstruction.objects.select_for_update()
                .select_related("transaction")
                .filter(id=instruction_id)
                .first()
            )
            if instruction is None:
                raise NotFoundError(
                    f"PayoutInstruction {instruction_id} not found",
                    details={"instruction_id": str(instruction_id)},
                )

            if instruction.status != InstructionStatus.PENDING:
                logger.info(
                    "Instruction already processed",
                    extra={**log_context, "status": instruction.status},
                )
                return ServiceResult.success(
                    DispatchResult(
                        instruction=instruction,
                        status="already_processed",
                        provider_reference=instruction.provider_reference,
                    )
                )

            if not instruction.is_due:
                return ServiceResult.success(DispatchResult(instruction=instruction, status="not_due"))

            instruction.attempt_count += 1
            instruction.last_attempt_at = timezone.now()
            instruction.save(update_fields=["attempt_count", "last_attempt_at"])

        log_context.update(
            {
                "kind": instruction.kind,
                "amount": instruction.amount,
                "attempt": instruction.attempt_count,
                "transaction_id": str(instruction.transaction_id),
            }
        )
        logger.info("Dispatching fund instruction", extra=log_context)

        # Phase 2: provider call
        try:
            disbursement = cls._call_provider(instruction)
        except GatewayError as e:
            return cls._record_failure(instruction.id, e, log_context)
        except ValueError as e:
            # Unusable instruction data (no destination); retrying cannot help
            return cls._record_failure(instruction.id, GatewayError(str(e)), log_context)

        # Phase 3: record success
        with transaction.atomic():
            instruction = PayoutInstruction.objects.select_for_update().get(id=instruction.id)
            instruction.mark_sent(provider_reference=disbursement.conversation_id)
            instruction.save()

        from notifications.services import NotificationService

        event = "payout_sent" if instruction.kind == InstructionKind.PAYOUT else "refund_sent"
        transaction.on_commit(lambda: NotificationService.notify(event, instruction.transaction_id))

        logger.info(
            "Fund instruction sent",
            extra={**log_context, "provider_reference": instruction.provider_reference},
        )
        return ServiceResult.success(
            DispatchResult(
                instruction=instruction,
                status="sent",
                provider_reference=instruction.provider_reference,
            )
        )

    @classmethod
    def _call_provider(cls, instruction: PayoutInstruction) -> DisbursementResult:
        idempotency_key = IdempotencyKeyGenerator.generate(
            operation=instruction.kind.lower(),
            entity_id=instruction.id,
        )
        receipt = instruction.transaction.provider_receipt

        if instruction.kind == InstructionKind.REFUND and receipt:
            return MpesaAdapter.reverse_transaction(
                ReversalParams(
                    receipt_number=receipt,
                    amount=instruction.amount,
                    idempotency_key=idempotency_key,
                ),
                trace_id=str(instruction.transaction_id),
            )

        return MpesaAdapter.send_b2c_payment(
            DisbursementParams(
                amount=instruction.amount,
                phone_number=instruction.destination,
                idempotency_key=idempotency_key,
                remarks="Escrow payout" if instruction.kind == InstructionKind.PAYOUT else "Escrow refund",
                occasion=str(instruction.transaction_id),
            ),
            trace_id=str(instruction.transaction_id),
        )

    @classmethod
    def _record_failure(
        cls,
        instruction_id: uuid.UUID,
        error: GatewayError,
        log_context: dict,
    ) -> ServiceResult[DispatchResult]:
        logger = cls.get_logger()

        with transaction.atomic():
            instruction = PayoutInstruction.objects.select_for_update().get(id=instruction_id)
            give_up = not error.is_retryable or instruction.attempt_count >= cls.max_attempts()

            if give_up:
                instruction.mark_failed(error=error.message)
                instruction.save()
            else:
                instruction.last_error = error.message
                instruction.next_attempt_at = timezone.now() + cls.retry_delay(instruction.attempt_count)
                instruction.save(update_fields=["last_error", "next_attempt_at"])

        if give_up:
            logger.error(
                "Fund instruction failed - manual intervention required",
                extra={
                    **log_context,
                    "error": error.message,
                    "is_retryable": error.is_retryable,
                },
            )
            return ServiceResult.failure(
                error.message,
                error_code=error.error_code,
                details={"status": "failed", "attempt_count": instruction.attempt_count},
            )

        logger.warning(
            "Fund instruction attempt failed, retry scheduled",
            extra={
                **log_context,
                "error": error.message,
                "next_attempt_at": instruction.next_attempt_at.isoformat(),
            },
        )
        return ServiceResult.failure(
            error.message,
            error_code=error.error_code,
            details={
                "status": "retry_scheduled",
                "attempt_count": instruction.attempt_count,
                "next_attempt_at": instruction.next_attempt_at.isoformat(),
            },
        )

    @staticmethod
    def due_instruction_ids(limit: int = 100) -> list[uuid.UUID]:
        """PENDING instructions whose next attempt is due, oldest first."""
        from django.db.models import Q

        now = timezone.now()
        return list(
            PayoutInstruction.objects.filter(status=InstructionStatus.PENDING)
            .filter(Q(next_attempt_at__isnull=True) | Q(next_attempt_at__lte=now))
            .order_by("created_at")
            .values_list("id", flat=True)[:limit]
        )
