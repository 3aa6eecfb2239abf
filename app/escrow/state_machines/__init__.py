"""
State machine enums for escrow models.

This module defines the state enums used by escrow models with django-fsm.
"""

from escrow.state_machines.states import (
    TERMINAL_STATUSES,
    ActorRole,
    EventSource,
    GatewayEventType,
    IdempotencyRecordStatus,
    InstructionKind,
    InstructionStatus,
    PayoutMethodType,
    TransactionStatus,
)

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
