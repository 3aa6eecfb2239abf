"""
Escrow domain models.

This module contains all escrow-related models:
- EscrowTransaction: The escrow lifecycle of a single purchase
- DeliveryOtp: Outstanding delivery code and attempt state
- IdempotencyRecord: Provider events keyed for exactly-once application
- PayoutInstruction: Payout to the seller or refund to the buyer
- PayoutMethod: Seller disbursement targets
- AuditEntry: Immutable transition history
"""

from escrow.models.audit_entry import AuditEntry
from escrow.models.delivery_otp import DeliveryOtp
from escrow.models.idempotency_record import IdempotencyRecord
from escrow.models.payout_instruction import PayoutInstruction
from escrow.models.payout_method import PayoutMethod
from escrow.models.transaction import EscrowTransaction

__all__ = [
    "AuditEntry",
    "DeliveryOtp",
    "EscrowTransaction",
    "IdempotencyRecord",
    "PayoutInstruction",
    "PayoutMethod",
]
