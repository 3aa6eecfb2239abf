"""
Payout executor worker for fund instructions.

Tasks:
- dispatch_instruction: Executes a single payout/refund instruction
- dispatch_due_instructions: Periodic task that queues instructions whose
  next attempt is due

Usage:
    from escrow.workers import dispatch_instruction

    # Queued on commit by the state machine
    dispatch_instruction.delay(str(instruction.id))

    # Typically called via celery-beat schedule
    dispatch_due_instructions.delay()
"""

from __future__ import annotations

import logging
from uuid import UUID

from celery import shared_task

from core.exceptions import NotFoundError
from escrow.exceptions import LockAcquisitionError

logger = logging.getLogger(__name__)


# =============================================================================
# Constants
# =============================================================================

# Maximum instructions to queue per scan
BATCH_SIZE = 100


# =============================================================================
# Individual Dispatch Task
# =============================================================================


@shared_task(bind=True, acks_late=True)
def dispatch_instruction(self, instruction_id: str) -> dict:
    """
    Execute a single payout or refund instruction.

    Retries are not left to Celery: a retryable failure stores
    ``next_attempt_at`` on the instruction and dispatch_due_instructions
    picks it up again.

    Args:
        instruction_id: UUID of the PayoutInstruction

    Returns:
        Dict with:
        - status: One of "executed", "already_processed", "not_due",
                  "not_found", "retry_scheduled", "failed", "lock_failed"
        - instruction_id: The instruction processed
        - provider_reference: Provider conversation ID if sent
        - error / error_code: If the attempt failed
    """
    from escrow.services import PayoutDispatcher

    try:
        instruction_uuid = UUID(str(instruction_id))
    except ValueError:
        logger.error(f"Invalid instruction_id format: {instruction_id}")
        return {
            "status": "not_found",
            "instruction_id": instruction_id,
            "error": "Invalid UUID format",
        }

    logger.info(
        "Processing fund instruction",
        extra={"instruction_id": str(instruction_id), "task_id": self.request.id},
    )

    try:
        result = PayoutDispatcher.dispatch(instruction_uuid)
    except NotFoundError:
        logger.warning("PayoutInstruction not found", extra={"instruction_id": str(instruction_id)})
        return {"status": "not_found", "instruction_id": str(instruction_id)}
    except LockAcquisitionError as e:
        logger.warning(
            f"Could not acquire lock for instruction dispatch: {e}",
            extra={"instruction_id": str(instruction_id)},
        )
        return {"status": "lock_failed", "instruction_id": str(instruction_id), "error": str(e)}

    if result.success:
        status = "executed" if result.data.status == "sent" else result.data.status
        return {
            "status": status,
            "instruction_id": str(instruction_id),
            "provider_reference": result.data.provider_reference,
        }

    return {
        "status": result.details.get("status", "failed"),
        "instruction_id": str(instruction_id),
        "error": result.error,
        "error_code": result.error_code,
    }


# =============================================================================
# Periodic Task: Scan for Due Instructions
# =============================================================================


@shared_task(bind=True)
def dispatch_due_instructions(self) -> dict:
    """
    Queue every PENDING instruction whose next attempt is due.

    Idempotent: dispatch_instruction re-checks state under a lock, so an
    instruction queued twice is only sent once.

    Returns:
        Dict with queued_count
    """
    from escrow.services import PayoutDispatcher

    instruction_ids = PayoutDispatcher.due_instruction_ids(limit=BATCH_SIZE)

    queued_count = 0
    for instruction_id in instruction_ids:
        try:
            dispatch_instruction.delay(str(instruction_id))
            queued_count += 1
        except Exception as e:
            logger.error(
                f"Failed to queue instruction for dispatch: {e}",
                extra={"instruction_id": str(instruction_id)},
            )

    if queued_count:
        logger.info(
            f"Queued {queued_count} due fund instructions",
            extra={"queued_count": queued_count},
        )

    return {"queued_count": queued_count}


__all__ = [
    "dispatch_due_instructions",
    "dispatch_instruction",
]
