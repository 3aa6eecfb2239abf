"""
Payment provider adapters.

All M-Pesa API calls go through MpesaAdapter so that error handling,
timeouts and logging stay consistent.

Usage:
    from escrow.adapters import MpesaAdapter, StkPushParams

    result = MpesaAdapter.initiate_stk_push(
        StkPushParams(amount=5000, phone_number="254712345678", account_reference="SWL-1A2B")
    )
"""

from escrow.adapters.mpesa_adapter import (
    SIGNATURE_HEADER,
    DisbursementParams,
    DisbursementResult,
    IdempotencyKeyGenerator,
    MpesaAdapter,
    NormalizedEvent,
    PaymentOutcome,
    ReversalParams,
    StatusResult,
    StkPushParams,
    StkPushResult,
    backoff_delay,
    is_retryable_gateway_error,
)

__all__ = [
    "DisbursementParams",
    "DisbursementResult",
    "IdempotencyKeyGenerator",
    "MpesaAdapter",
    "NormalizedEvent",
    "PaymentOutcome",
    "ReversalParams",
    "SIGNATURE_HEADER",
    "StatusResult",
    "StkPushParams",
    "StkPushResult",
    "backoff_delay",
    "is_retryable_gateway_error",
]
