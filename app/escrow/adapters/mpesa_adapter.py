"""
M-Pesa Daraja API adapter for payment operations.

This module provides the MpesaAdapter class which encapsulates all
Daraja API interactions. All M-Pesa calls should go through this
adapter to ensure consistent error handling, timeouts, and observability.

Features:
- OAuth access token cached in the Django cache
- Configurable timeouts on all API calls
- Automatic error translation to GatewayError subclasses
- Structured logging with timing metrics
- Callback signature verification and normalization

Configuration (via settings):
- MPESA_BASE_URL: Daraja base URL (sandbox or production)
- MPESA_CONSUMER_KEY / MPESA_CONSUMER_SECRET: OAuth app credentials
- MPESA_SHORTCODE / MPESA_PASSKEY: Paybill used for STK push
- MPESA_CALLBACK_URL: Where Daraja posts STK results
- MPESA_B2C_SHORTCODE, MPESA_INITIATOR_NAME, MPESA_SECURITY_CREDENTIAL:
  Disbursement and reversal credentials
- MPESA_RESULT_URL / MPESA_TIMEOUT_URL: Disbursement result callbacks
- MPESA_WEBHOOK_SECRET: Shared secret for callback signatures
- MPESA_API_TIMEOUT_SECONDS: API call timeout (default: 10)

Usage:
    from escrow.adapters import MpesaAdapter, StkPushParams

    result = MpesaAdapter.initiate_stk_push(
        StkPushParams(
            amount=5000,
            phone_number="254712345678",
            account_reference="SWL-1A2B3C4D",
        )
    )
    result.checkout_request_id  # "ws_CO_191220191020363925"

    status = MpesaAdapter.query_stk_status("ws_CO_191220191020363925")
    status.outcome  # PaymentOutcome.CONFIRMED
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
import logging
import random
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

import requests
from django.conf import settings
from django.core.cache import cache
from django.utils import timezone

from escrow.exceptions import (
    GatewayAuthenticationError,
    GatewayError,
    GatewayRateLimitError,
    GatewayRejectedError,
    GatewayTimeoutError,
    GatewayUnavailableError,
    WebhookVerificationError,
)
from escrow.state_machines import GatewayEventType

SIGNATURE_HEADER = "X-Mpesa-Signature"

# Daraja answers an STK query for a prompt the payer has not acted on yet
# with this error code instead of a result.
STILL_PROCESSING_CODE = "500.001.1001"

TOKEN_CACHE_KEY = "mpesa:access_token"


class PaymentOutcome(str, Enum):
    """Uniform payment status reported by polls and callbacks."""

    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    FAILED = "FAILED"


# =============================================================================
# Data Types
# =============================================================================


@dataclass
class StkPushParams:
    """
    Parameters for an STK push (Lipa na M-Pesa Online) request.

    Attributes:
        amount: Amount in whole shillings
        phone_number: MSISDN to prompt (2547XXXXXXXX)
        account_reference: Reference shown to the payer (max 12 chars)
        description: Short transaction description
    """

    amount: int
    phone_number: str
    account_reference: str
    description: str = "Escrow payment"

    def __post_init__(self) -> None:
        if self.amount <= 0:
            raise ValueError("amount must be positive")
        if not self.phone_number:
            raise ValueError("phone_number is required")
        if not self.account_reference:
            raise ValueError("account_reference is required")


@dataclass
class StkPushResult:
    """
    Result of an accepted STK push request.

    Attributes:
        checkout_request_id: Provider reference used to match the callback
        merchant_request_id: Provider merchant request ID
        customer_message: Message Daraja suggests showing the payer
        raw_response: Full response body (for debugging)
    """

    checkout_request_id: str
    merchant_request_id: str
    customer_message: str = ""
    raw_response: dict[str, Any] = field(default_factory=dict)


@dataclass
class StatusResult:
    """Result of an STK status query."""

    checkout_request_id: str
    outcome: PaymentOutcome
    result_code: str = ""
    result_description: str = ""
    raw_response: dict[str, Any] = field(default_factory=dict)


@dataclass
class DisbursementParams:
    """
    Parameters for a B2C payment to a mobile number.

    Attributes:
        amount: Amount in whole shillings
        phone_number: Receiving MSISDN
        idempotency_key: Sent as OriginatorConversationID
        remarks: Free text attached to the payment
        occasion: Optional extra reference
    """

    amount: int
    phone_number: str
    idempotency_key: str
    remarks: str = "Escrow payout"
    occasion: str = ""

    def __post_init__(self) -> None:
        if self.amount <= 0:
            raise ValueError("amount must be positive")
        if not self.phone_number:
            raise ValueError("phone_number is required")
        if not self.idempotency_key:
            raise ValueError("idempotency_key is required")


@dataclass
class ReversalParams:
    """
    Parameters for reversing a completed C2B/STK payment.

    Attributes:
        receipt_number: M-Pesa receipt of the payment to reverse
        amount: Amount in whole shillings
        idempotency_key: Sent as OriginatorConversationID
        remarks: Free text attached to the reversal
    """

    receipt_number: str
    amount: int
    idempotency_key: str
    remarks: str = "Escrow refund"

    def __post_init__(self) -> None:
        if self.amount <= 0:
            raise ValueError("amount must be positive")
        if not self.receipt_number:
            raise ValueError("receipt_number is required")


@dataclass
class DisbursementResult:
    """
    Result of an accepted B2C or reversal request.

    Daraja accepts these asynchronously; acceptance is what the dispatcher
    treats as SENT.
    """

    conversation_id: str
    originator_conversation_id: str
    response_description: str = ""
    raw_response: dict[str, Any] = field(default_factory=dict)


@dataclass
class NormalizedEvent:
    """
    A verified provider callback reduced to what the engine needs.

    Attributes:
        provider_reference: CheckoutRequestID the callback refers to
        event_type: GatewayEventType value
        outcome: CONFIRMED or FAILED
        amount: Paid amount (None when the provider did not report one)
        receipt_number: M-Pesa receipt number on success
        result_code: Provider result code as a string
        result_description: Provider result text
        phone_number: MSISDN that paid, when reported
    """

    provider_reference: str
    event_type: str
    outcome: PaymentOutcome
    amount: int | None = None
    receipt_number: str = ""
    result_code: str = ""
    result_description: str = ""
    phone_number: str = ""

    def to_payload(self) -> dict[str, Any]:
        """JSON-safe form stored on the idempotency record."""
        return {
            "provider_reference": self.provider_reference,
            "event_type": self.event_type,
            "outcome": self.outcome.value,
            "amount": self.amount,
            "receipt_number": self.receipt_number,
            "result_code": self.result_code,
            "result_description": self.result_description,
            "phone_number": self.phone_number,
        }

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> NormalizedEvent:
        return cls(
            provider_reference=payload["provider_reference"],
            event_type=payload["event_type"],
            outcome=PaymentOutcome(payload["outcome"]),
            amount=payload.get("amount"),
            receipt_number=payload.get("receipt_number") or "",
            result_code=payload.get("result_code") or "",
            result_description=payload.get("result_description") or "",
            phone_number=payload.get("phone_number") or "",
        )


# =============================================================================
# Idempotency Key Generator
# =============================================================================


class IdempotencyKeyGenerator:
    """
    Generate idempotency keys for disbursement calls.

    Format: "{operation}:{entity_id}:{attempt}:{hash}"

    Example:
        key = IdempotencyKeyGenerator.generate(
            operation="payout",
            entity_id=instruction.id,
            attempt=1,
        )
        # Result: "payout:550e8400-e29b-41d4-a716-446655440000:1:a1b2c3d4"
    """

    @staticmethod
    def generate(
        operation: str,
        entity_id: uuid.UUID | str,
        attempt: int = 1,
    ) -> str:
        entity_str = str(entity_id)
        hash_input = f"{operation}:{entity_str}:{attempt}:{settings.SECRET_KEY}"
        short_hash = hashlib.sha256(hash_input.encode()).hexdigest()[:8]

        return f"{operation}:{entity_str}:{attempt}:{short_hash}"


# =============================================================================
# Retry Logic Helpers
# =============================================================================


def is_retryable_gateway_error(error: Exception) -> bool:
    """True if the error is a transient gateway failure worth retrying."""
    if isinstance(error, GatewayError):
        return error.is_retryable
    return False


def backoff_delay(attempt: int, base: float = 1.0, max_delay: float = 60.0) -> float:
    """
    Calculate exponential backoff delay with jitter.

    Args:
        attempt: Current attempt number (0-indexed)
        base: Base delay in seconds (default: 1.0)
        max_delay: Maximum delay in seconds (default: 60.0)

    Returns:
        Delay in seconds with jitter (0-25% of calculated delay)

    Example:
        # Attempt 0: 1.0 - 1.25 seconds
        # Attempt 1: 2.0 - 2.5 seconds
        # Attempt 2: 4.0 - 5.0 seconds
        delay = backoff_delay(attempt=2)
    """
    delay = min(base * (2**attempt), max_delay)
    jitter = delay * random.uniform(0, 0.25)
    return delay + jitter


# =============================================================================
# M-Pesa Adapter
# =============================================================================


class MpesaAdapter:
    """
    Adapter for M-Pesa Daraja API operations.

    All methods are classmethods - no instance state is maintained apart
    from the cached access token. Thread-safe for use from Celery workers.

    Usage:
        result = MpesaAdapter.initiate_stk_push(params)
        status = MpesaAdapter.query_stk_status(result.checkout_request_id)
        event = MpesaAdapter.parse_callback(payload)
    """

    # =========================================================================
    # Configuration
    # =========================================================================

    @classmethod
    def get_logger(cls) -> logging.Logger:
        """Get logger for this adapter."""
        return logging.getLogger(f"{cls.__module__}.{cls.__name__}")

    @staticmethod
    def _url(path: str) -> str:
        return f"{settings.MPESA_BASE_URL.rstrip('/')}{path}"

    @staticmethod
    def _timeout() -> float:
        return getattr(settings, "MPESA_API_TIMEOUT_SECONDS", 10)

    @staticmethod
    def _timestamp() -> str:
        return timezone.localtime().strftime("%Y%m%d%H%M%S")

    @staticmethod
    def _password(timestamp: str) -> str:
        raw = f"{settings.MPESA_SHORTCODE}{settings.MPESA_PASSKEY}{timestamp}"
        return base64.b64encode(raw.encode()).decode()

    @classmethod
    def get_access_token(cls, force_refresh: bool = False) -> str:
        """
        Return a Daraja OAuth token, fetching a new one when needed.

        Tokens live for an hour; they are cached slightly shorter than
        ``expires_in`` so a cached token is never presented expired.
        """
        if not force_refresh:
            token = cache.get(TOKEN_CACHE_KEY)
            if token:
                return token

        log_context = {"operation": "get_access_token"}
        start_time = time.time()

        try:
            response = requests.get(
                cls._url("/oauth/v1/generate"),
                params={"grant_type": "client_credentials"},
                auth=(settings.MPESA_CONSUMER_KEY, settings.MPESA_CONSUMER_SECRET),
                timeout=cls._timeout(),
            )
            body = cls._check_response(response, log_context, start_time)
        except requests.RequestException as e:
            cls._handle_error(e, log_context, (time.time() - start_time) * 1000)
            raise

        token = body.get("access_token")
        if not token:
            raise GatewayAuthenticationError(
                "Daraja returned no access token",
                provider_code="no_token",
            )

        expires_in = int(body.get("expires_in") or 3599)
        cache.set(TOKEN_CACHE_KEY, token, timeout=max(expires_in - 60, 60))
        return token

    @classmethod
    def _post(cls, path: str, payload: dict[str, Any], log_context: dict[str, Any]) -> dict[str, Any]:
        """POST a JSON body with bearer auth and return the decoded response."""
        logger = cls.get_logger()
        start_time = time.time()
        logger.info("Starting M-Pesa operation", extra=log_context)

        try:
            response = requests.post(
                cls._url(path),
                json=payload,
                headers={"Authorization": f"Bearer {cls.get_access_token()}"},
                timeout=cls._timeout(),
            )
            body = cls._check_response(response, log_context, start_time)
        except requests.RequestException as e:
            cls._handle_error(e, log_context, (time.time() - start_time) * 1000)
            raise

        logger.info(
            "M-Pesa operation completed",
            extra={**log_context, "duration_ms": (time.time() - start_time) * 1000},
        )
        return body

    # =========================================================================
    # Core Operations
    # =========================================================================

    @classmethod
    def initiate_stk_push(
        cls,
        params: StkPushParams,
        trace_id: str | None = None,
    ) -> StkPushResult:
        """
        Prompt the payer's phone to authorize a payment.

        Args:
            params: Amount, phone number and reference
            trace_id: Optional trace ID for distributed tracing

        Returns:
            StkPushResult carrying the CheckoutRequestID

        Raises:
            GatewayRejectedError: Daraja refused the request
            GatewayAuthenticationError: Credentials rejected
            GatewayRateLimitError: Rate limited
            GatewayUnavailableError: Daraja unreachable or erroring
            GatewayTimeoutError: Request timed out
        """
        timestamp = cls._timestamp()
        payload = {
            "BusinessShortCode": settings.MPESA_SHORTCODE,
            "Password": cls._password(timestamp),
            "Timestamp": timestamp,
            "TransactionType": "CustomerPayBillOnline",
            "Amount": params.amount,
            "PartyA": params.phone_number,
            "PartyB": settings.MPESA_SHORTCODE,
            "PhoneNumber": params.phone_number,
            "CallBackURL": settings.MPESA_CALLBACK_URL,
            "AccountReference": params.account_reference[:12],
            "TransactionDesc": params.description[:13],
        }
        log_context = {
            "operation": "initiate_stk_push",
            "amount": params.amount,
            "account_reference": params.account_reference,
            "trace_id": trace_id,
        }

        body = cls._post("/mpesa/stkpush/v1/processrequest", payload, log_context)

        if str(body.get("ResponseCode")) != "0" or not body.get("CheckoutRequestID"):
            cls.get_logger().warning(
                "STK push not accepted",
                extra={**log_context, "response_code": body.get("ResponseCode")},
            )
            raise GatewayRejectedError(
                body.get("ResponseDescription") or "STK push was not accepted",
                provider_code=str(body.get("ResponseCode") or ""),
            )

        return StkPushResult(
            checkout_request_id=body["CheckoutRequestID"],
            merchant_request_id=body.get("MerchantRequestID", ""),
            customer_message=body.get("CustomerMessage", ""),
            raw_response=body,
        )

    @classmethod
    def query_stk_status(
        cls,
        checkout_request_id: str,
        trace_id: str | None = None,
    ) -> StatusResult:
        """
        Ask Daraja for the outcome of an STK push.

        A prompt the payer has not answered yet is reported as PENDING,
        not as an error.
        """
        timestamp = cls._timestamp()
        payload = {
            "BusinessShortCode": settings.MPESA_SHORTCODE,
            "Password": cls._password(timestamp),
            "Timestamp": timestamp,
            "CheckoutRequestID": checkout_request_id,
        }
        log_context = {
            "operation": "query_stk_status",
            "checkout_request_id": checkout_request_id,
            "trace_id": trace_id,
        }

        try:
            body = cls._post("/mpesa/stkpushquery/v1/query", payload, log_context)
        except GatewayError as e:
            if e.provider_code == STILL_PROCESSING_CODE:
                return StatusResult(
                    checkout_request_id=checkout_request_id,
                    outcome=PaymentOutcome.PENDING,
                    result_code=STILL_PROCESSING_CODE,
                    result_description=e.message,
                )
            raise

        result_code = str(body.get("ResultCode", ""))
        if result_code == "":
            outcome = PaymentOutcome.PENDING
        elif result_code == "0":
            outcome = PaymentOutcome.CONFIRMED
        else:
            outcome = PaymentOutcome.FAILED

        return StatusResult(
            checkout_request_id=checkout_request_id,
            outcome=outcome,
            result_code=result_code,
            result_description=body.get("ResultDesc", ""),
            raw_response=body,
        )

    @classmethod
    def send_b2c_payment(
        cls,
        params: DisbursementParams,
        trace_id: str | None = None,
    ) -> DisbursementResult:
        """
        Send money from the B2C shortcode to a mobile number.

        Raises:
            GatewayRejectedError: Daraja refused the request
            GatewayUnavailableError: Daraja unreachable or erroring
        """
        payload = {
            "OriginatorConversationID": params.idempotency_key,
            "InitiatorName": settings.MPESA_INITIATOR_NAME,
            "SecurityCredential": settings.MPESA_SECURITY_CREDENTIAL,
            "CommandID": "BusinessPayment",
            "Amount": params.amount,
            "PartyA": settings.MPESA_B2C_SHORTCODE,
            "PartyB": params.phone_number,
            "Remarks": params.remarks,
            "QueueTimeOutURL": settings.MPESA_TIMEOUT_URL,
            "ResultURL": settings.MPESA_RESULT_URL,
            "Occassion": params.occasion,
        }
        log_context = {
            "operation": "send_b2c_payment",
            "amount": params.amount,
            "idempotency_key": params.idempotency_key,
            "trace_id": trace_id,
        }

        body = cls._post("/mpesa/b2c/v3/paymentrequest", payload, log_context)
        return cls._disbursement_result(body, log_context)

    @classmethod
    def reverse_transaction(
        cls,
        params: ReversalParams,
        trace_id: str | None = None,
    ) -> DisbursementResult:
        """
        Reverse a completed payment back to the payer.

        Raises:
            GatewayRejectedError: Daraja refused the request
            GatewayUnavailableError: Daraja unreachable or erroring
        """
        payload = {
            "Initiator": settings.MPESA_INITIATOR_NAME,
            "SecurityCredential": settings.MPESA_SECURITY_CREDENTIAL,
            "CommandID": "TransactionReversal",
            "TransactionID": params.receipt_number,
            "Amount": params.amount,
            "ReceiverParty": settings.MPESA_SHORTCODE,
            "RecieverIdentifierType": "11",
            "ResultURL": settings.MPESA_RESULT_URL,
            "QueueTimeOutURL": settings.MPESA_TIMEOUT_URL,
            "Remarks": params.remarks,
            "Occasion": params.idempotency_key,
        }
        log_context = {
            "operation": "reverse_transaction",
            "amount": params.amount,
            "receipt_number": params.receipt_number,
            "idempotency_key": params.idempotency_key,
            "trace_id": trace_id,
        }

        body = cls._post("/mpesa/reversal/v1/request", payload, log_context)
        return cls._disbursement_result(body, log_context)

    @classmethod
    def _disbursement_result(cls, body: dict[str, Any], log_context: dict[str, Any]) -> DisbursementResult:
        if str(body.get("ResponseCode")) != "0":
            cls.get_logger().warning(
                "Disbursement not accepted",
                extra={**log_context, "response_code": body.get("ResponseCode")},
            )
            raise GatewayRejectedError(
                body.get("ResponseDescription") or "Disbursement was not accepted",
                provider_code=str(body.get("ResponseCode") or ""),
            )

        return DisbursementResult(
            conversation_id=body.get("ConversationID", ""),
            originator_conversation_id=body.get("OriginatorConversationID", ""),
            response_description=body.get("ResponseDescription", ""),
            raw_response=body,
        )

    # =========================================================================
    # Webhook Verification
    # =========================================================================

    @classmethod
    def verify_webhook_signature(cls, payload: bytes, signature: str) -> dict[str, Any]:
        """
        Verify and parse an STK callback.

        The signature is the hex HMAC-SHA256 of the raw body keyed with
        MPESA_WEBHOOK_SECRET.

        Args:
            payload: Raw request body
            signature: X-Mpesa-Signature header value

        Returns:
            Parsed callback body

        Raises:
            WebhookVerificationError: Missing or wrong signature, or a body
                that is not JSON
        """
        secret = getattr(settings, "MPESA_WEBHOOK_SECRET", "")
        if not secret:
            raise WebhookVerificationError("Webhook secret is not configured")
        if not signature:
            raise WebhookVerificationError("Missing signature header")

        expected = hmac.new(secret.encode(), payload, hashlib.sha256).hexdigest()
        if not hmac.compare_digest(expected, signature.strip().lower()):
            raise WebhookVerificationError("Invalid webhook signature")

        try:
            data = json.loads(payload)
        except (UnicodeDecodeError, ValueError) as e:
            raise WebhookVerificationError(
                "Webhook body is not valid JSON",
                details={"error": str(e)},
            )
        if not isinstance(data, dict):
            raise WebhookVerificationError("Webhook body must be a JSON object")
        return data

    @staticmethod
    def parse_callback(data: dict[str, Any]) -> NormalizedEvent:
        """
        Normalize an STK callback body.

        ResultCode 0 is a confirmed payment; any other code is a terminal
        failure (cancelled by the payer, insufficient funds, timeout...).

        Raises:
            WebhookVerificationError: Body is not a well-formed STK callback
        """
        body = data.get("Body")
        callback = body.get("stkCallback") if isinstance(body, dict) else None
        reference = callback.get("CheckoutRequestID") if isinstance(callback, dict) else None
        if not isinstance(reference, str) or not reference:
            raise WebhookVerificationError("Not an STK callback")
        if "ResultCode" not in callback:
            raise WebhookVerificationError("STK callback has no ResultCode")

        metadata = callback.get("CallbackMetadata") or {}
        raw_items = metadata.get("Item") if isinstance(metadata, dict) else None
        if not isinstance(raw_items, list):
            raw_items = []
        items = {
            item["Name"]: item.get("Value")
            for item in raw_items
            if isinstance(item, dict) and isinstance(item.get("Name"), str)
        }

        result_code = str(callback["ResultCode"])
        confirmed = result_code == "0"

        return NormalizedEvent(
            provider_reference=reference,
            event_type=(
                GatewayEventType.PAYMENT_CONFIRMED if confirmed else GatewayEventType.PAYMENT_FAILED
            ),
            outcome=PaymentOutcome.CONFIRMED if confirmed else PaymentOutcome.FAILED,
            amount=MpesaAdapter._parse_amount(items.get("Amount")),
            receipt_number=str(items.get("MpesaReceiptNumber") or ""),
            result_code=result_code,
            result_description=str(callback.get("ResultDesc") or ""),
            phone_number=str(items.get("PhoneNumber") or ""),
        )

    @staticmethod
    def _parse_amount(value: Any) -> int | None:
        """
        Whole-shilling amount from callback metadata.

        Raises:
            WebhookVerificationError: Not a whole number
        """
        if value is None:
            return None
        if isinstance(value, bool):
            raise WebhookVerificationError("STK callback amount is not a number", details={"amount": str(value)})
        if isinstance(value, float):
            if not value.is_integer():
                raise WebhookVerificationError(
                    "STK callback amount is not a whole number",
                    details={"amount": str(value)},
                )
            return int(value)
        if isinstance(value, int):
            return value
        if isinstance(value, str) and value.strip().isdigit():
            return int(value.strip())
        raise WebhookVerificationError("STK callback amount is not a number", details={"amount": str(value)})

    # =========================================================================
    # Error Handling
    # =========================================================================

    @classmethod
    def _check_response(
        cls,
        response: requests.Response,
        log_context: dict[str, Any],
        start_time: float,
    ) -> dict[str, Any]:
        """Decode a Daraja response, raising a GatewayError for HTTP errors."""
        duration_ms = (time.time() - start_time) * 1000
        try:
            body = response.json()
        except ValueError:
            body = {}
        if not isinstance(body, dict):
            body = {}

        if response.ok:
            return body

        provider_code = str(body.get("errorCode") or "")
        message = body.get("errorMessage") or f"M-Pesa returned HTTP {response.status_code}"
        context = {
            **log_context,
            "status_code": response.status_code,
            "provider_code": provider_code,
            "duration_ms": duration_ms,
        }
        logger = cls.get_logger()

        if provider_code == STILL_PROCESSING_CODE:
            logger.info("M-Pesa transaction still processing", extra=context)
            raise GatewayUnavailableError(message, provider_code=provider_code)

        if response.status_code == 429:
            logger.warning("Rate limited by M-Pesa", extra=context)
            raise GatewayRateLimitError(
                "M-Pesa rate limit exceeded. Please retry.",
                provider_code=provider_code or "rate_limit",
            )

        if response.status_code in (401, 403):
            logger.critical("M-Pesa authentication failed - check credentials", extra=context)
            cache.delete(TOKEN_CACHE_KEY)
            raise GatewayAuthenticationError(
                "M-Pesa authentication failed",
                provider_code=provider_code or "authentication_error",
            )

        if response.status_code >= 500:
            logger.error("M-Pesa API error", extra=context)
            raise GatewayUnavailableError(message, provider_code=provider_code or "api_error")

        logger.error("Invalid request to M-Pesa", extra=context)
        raise GatewayRejectedError(message, provider_code=provider_code or "invalid_request")

    @classmethod
    def _handle_error(
        cls,
        error: Exception,
        log_context: dict[str, Any],
        duration_ms: float,
    ) -> None:
        """
        Translate transport exceptions to gateway exceptions.

        Raises:
            GatewayTimeoutError: Request timed out
            GatewayUnavailableError: Connection failure or other transport error
        """
        logger = cls.get_logger()
        log_context = {**log_context, "duration_ms": duration_ms}

        if isinstance(error, requests.Timeout):
            logger.warning("M-Pesa request timed out", extra=log_context)
            raise GatewayTimeoutError(
                "M-Pesa request timed out. Please retry.",
                provider_code="timeout",
            ) from error

        if isinstance(error, requests.ConnectionError):
            logger.error("Connection error to M-Pesa", extra=log_context, exc_info=True)
            raise GatewayUnavailableError(
                "Could not connect to M-Pesa. Please retry.",
                provider_code="connection_error",
            ) from error

        logger.error(
            f"Unexpected error calling M-Pesa: {type(error).__name__}",
            extra=log_context,
            exc_info=True,
        )
        raise GatewayUnavailableError(
            f"Unexpected M-Pesa error: {error}",
            provider_code="unknown_error",
        ) from error
