"""
Escrow-specific exceptions.

Every exception carries a stable machine-readable ``error_code`` that is
the error kind reported to callers, plus a human-readable message and a
``details`` dict. The escrow service converts these into
``ServiceResult.failure`` at its boundary, so views and tasks only ever see
the kind.

Exception Hierarchy:
    EscrowError (base for the escrow domain)
    ├── EscrowValidationError      VALIDATION
    ├── GuardViolationError        GUARD_VIOLATION
    ├── OtpInvalidError            OTP_INVALID
    │   └── OtpLockedError         OTP_LOCKED
    ├── OtpExpiredError            OTP_EXPIRED
    ├── NoPayoutMethodError        NO_PAYOUT_METHOD
    └── GatewayError               GATEWAY_ERROR
        ├── GatewayRejectedError          (permanent)
        ├── GatewayAuthenticationError    (permanent)
        ├── GatewayRateLimitError         (transient, retry)
        ├── GatewayUnavailableError       (transient, retry)
        └── GatewayTimeoutError           (transient, retry)

    StaleRecordError       CONCURRENT_MODIFICATION (inherits ConflictError)
    LockAcquisitionError   LOCK_ACQUISITION_FAILED (inherits ConflictError)
    WebhookVerificationError  INVALID_SIGNATURE

Usage:
    from escrow.exceptions import GuardViolationError

    raise GuardViolationError(
        "Only the seller can accept this transaction",
        details={"reason": "actor", "trigger": "seller_accept"},
    )
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from core.exceptions import BaseApplicationError, ConflictError

if TYPE_CHECKING:
    from typing import Any


# =============================================================================
# Escrow Domain Exceptions
# =============================================================================


class EscrowError(BaseApplicationError):
    """
    Base exception for all escrow operations.

    Example:
        try:
            EscrowService.execute(command)
        except EscrowError as e:
            return Response(e.to_dict(), status=400)
    """

    default_error_code: str = "ESCROW_ERROR"


class EscrowValidationError(EscrowError):
    """
    Rejected input: bad amount or currency, malformed OTP, unknown trigger.

    Raised before any mutation takes place.
    """

    default_error_code: str = "VALIDATION"


class GuardViolationError(EscrowError):
    """
    A transition guard refused the trigger.

    ``details["reason"]`` tells which guard failed:
    - "actor": wrong actor or role for the trigger
    - "state": transaction is not in a source state of the edge
    - "deadline": the time window for the trigger is closed or not yet open
    - "amount": provider-confirmed amount differs from the requested amount

    The transaction is unchanged.
    """

    default_error_code: str = "GUARD_VIOLATION"


class OtpInvalidError(EscrowError):
    """Supplied delivery code does not match the outstanding code."""

    default_error_code: str = "OTP_INVALID"


class OtpLockedError(OtpInvalidError):
    """
    Confirmation is in cooldown after repeated mismatches.

    ``details["locked_until"]`` carries the ISO timestamp when attempts
    are accepted again.
    """

    default_error_code: str = "OTP_LOCKED"


class OtpExpiredError(EscrowError):
    """Delivery code has expired, was already consumed, or was never issued."""

    default_error_code: str = "OTP_EXPIRED"


class NoPayoutMethodError(EscrowError):
    """
    Seller has no active default payout method.

    Blocks release; the transaction stays DELIVERED or DISPUTED until the
    seller registers one.
    """

    default_error_code: str = "NO_PAYOUT_METHOD"


# =============================================================================
# Payment Gateway Exceptions
# =============================================================================


class GatewayError(EscrowError):
    """
    Base exception for payment provider failures.

    All gateway errors share the GATEWAY_ERROR kind. ``reason`` and
    ``provider_code`` narrow it down, and ``is_retryable`` drives the
    payout backoff decision:
    - True: transient error, safe to retry with backoff
    - False: permanent error, do not retry

    Example:
        try:
            MpesaAdapter.send_b2c_payment(params)
        except GatewayError as e:
            if e.is_retryable:
                schedule_retry(instruction, backoff_delay(attempt))
            else:
                surface_for_manual_review(instruction, e)
    """

    default_error_code: str = "GATEWAY_ERROR"
    reason: str = "gateway_error"
    is_retryable: bool = False

    def __init__(
        self,
        message: str,
        error_code: str | None = None,
        provider_code: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        details = details or {}
        details.setdefault("reason", self.reason)
        if provider_code:
            details["provider_code"] = provider_code
        super().__init__(message, error_code=error_code, details=details)
        self.provider_code = provider_code


class GatewayRejectedError(GatewayError):
    """Provider refused the request (bad parameters, invalid MSISDN, etc.)."""

    reason = "rejected"
    is_retryable = False


class GatewayAuthenticationError(GatewayError):
    """Credentials were refused. Operational issue, not retryable."""

    reason = "authentication"
    is_retryable = False


class GatewayRateLimitError(GatewayError):
    """Provider throttled the request."""

    reason = "rate_limited"
    is_retryable = True


class GatewayUnavailableError(GatewayError):
    """Provider unreachable or returned a server error."""

    reason = "unavailable"
    is_retryable = True


class GatewayTimeoutError(GatewayError):
    """Request to the provider timed out; outcome unknown."""

    reason = "timeout"
    is_retryable = True


class WebhookVerificationError(BaseApplicationError):
    """Inbound callback failed signature or shape verification."""

    default_error_code: str = "INVALID_SIGNATURE"


# =============================================================================
# Concurrency Control Exceptions
# =============================================================================


class StaleRecordError(ConflictError):
    """
    Raised when optimistic locking detects a concurrent modification.

    The caller must re-read the transaction and retry the trigger.

    Example:
        raise StaleRecordError(
            "EscrowTransaction 123 has been modified",
            details={"pk": "123", "expected_version": 3, "current_version": 4},
        )
    """

    default_error_code: str = "CONCURRENT_MODIFICATION"


class LockAcquisitionError(ConflictError):
    """
    Raised when a distributed lock cannot be acquired.

    For the deadline sweep this means a previous sweep is still running.
    """

    default_error_code: str = "LOCK_ACQUISITION_FAILED"


__all__ = [
    "EscrowError",
    "EscrowValidationError",
    "GatewayAuthenticationError",
    "GatewayError",
    "GatewayRateLimitError",
    "GatewayRejectedError",
    "GatewayTimeoutError",
    "GatewayUnavailableError",
    "GuardViolationError",
    "LockAcquisitionError",
    "NoPayoutMethodError",
    "OtpExpiredError",
    "OtpInvalidError",
    "OtpLockedError",
    "StaleRecordError",
    "WebhookVerificationError",
]
