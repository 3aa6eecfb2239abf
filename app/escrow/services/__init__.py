"""
Escrow services.

- EscrowService: applies every trigger to a transaction
- OtpService: delivery code issue and verification
- AuditTrail: immutable transition history
- PayoutMethodRegistry: seller payout targets
- IdempotencyLedger: exactly-once application of provider events
- PaymentGatewayService: STK push initiation and status polls
- PayoutDispatcher: executes payout and refund instructions

Usage:
    from escrow.services import EscrowService, PayoutDispatcher

    result = EscrowService.execute(command)
    PayoutDispatcher.dispatch(instruction_id)
"""

from escrow.services.audit import AuditTrail
from escrow.services.escrow_service import EscrowService, TransitionResult
from escrow.services.idempotency_ledger import IdempotencyLedger, LedgerOutcome, LedgerResult
from escrow.services.otp_service import OtpService, OtpVerification
from escrow.services.payment_gateway import InitiationResult, PaymentGatewayService, PollResult
from escrow.services.payout_dispatcher import DispatchResult, PayoutDispatcher
from escrow.services.payout_methods import PayoutMethodRegistry

__all__ = [
    "AuditTrail",
    "DispatchResult",
    "EscrowService",
    "IdempotencyLedger",
    "InitiationResult",
    "LedgerOutcome",
    "LedgerResult",
    "OtpService",
    "OtpVerification",
    "PaymentGatewayService",
    "PayoutDispatcher",
    "PayoutMethodRegistry",
    "PollResult",
    "TransitionResult",
]
