"""
Workers for async escrow processing.

- DeadlineScheduler: applies timeouts and reconciles unconfirmed payments
- PayoutExecutor: executes payout and refund instructions

Usage:
    from escrow.workers import (
        dispatch_due_instructions,
        dispatch_instruction,
        sweep_escrow_deadlines,
    )

    sweep_escrow_deadlines.delay()
    dispatch_instruction.delay(str(instruction_id))
"""

from escrow.workers.deadline_scheduler import sweep_escrow_deadlines
from escrow.workers.payout_executor import (
    dispatch_due_instructions,
    dispatch_instruction,
)

__all__ = [
    # Deadline Scheduler
    "sweep_escrow_deadlines",
    # Payout Executor
    "dispatch_due_instructions",
    "dispatch_instruction",
]
