"""
Payment gateway service: initiation and status polling for escrow payments.

Wraps MpesaAdapter with the escrow rules:
- initiate() is idempotent by transaction. A transaction that already
  has a provider reference returns it without calling the provider.
- poll() applies CONFIRMED/FAILED results through the idempotency
  ledger, exactly like a webhook would.

Usage:
    from escrow.services import PaymentGatewayService

    result = PaymentGatewayService.initiate(txn.id, payer_phone="0712345678")
    if result.success:
        result.data.provider_reference  # "ws_CO_191220191020363925"

    result = PaymentGatewayService.poll(txn.id)
    result.data.outcome  # PaymentOutcome.PENDING
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import TYPE_CHECKING

from django.db import transaction
from django.utils import timezone

from authentication.models import MSISDN_PATTERN, normalize_msisdn
from core.exceptions import BaseApplicationError, NotFoundError
from core.services import BaseService, ServiceResult
from escrow.adapters import MpesaAdapter, NormalizedEvent, PaymentOutcome, StkPushParams
from escrow.exceptions import (
    EscrowValidationError,
    GatewayError,
    GuardViolationError,
    LockAcquisitionError,
)
from escrow.locks import DistributedLock
from escrow.models import EscrowTransaction
from escrow.services.idempotency_ledger import IdempotencyLedger, LedgerOutcome
from escrow.state_machines import ActorRole, EventSource, GatewayEventType, TransactionStatus

if TYPE_CHECKING:
    from escrow.commands import Actor

# One provider call per transaction at a time
INITIATE_LOCK_TTL = 60
INITIATE_LOCK_TIMEOUT = 5.0


@dataclass
class InitiationResult:
    """
    Attributes:
        transaction: The transaction, with provider_reference set
        provider_reference: CheckoutRequestID
        created: False when an earlier call already produced the reference
        customer_message: Text Daraja suggests showing the payer
    """

    transaction: EscrowTransaction
    provider_reference: str
    created: bool
    customer_message: str = ""


@dataclass
class PollResult:
    transaction: EscrowTransaction
    outcome: PaymentOutcome
    ledger_outcome: LedgerOutcome | None = None


class PaymentGatewayService(BaseService):
    """
    Service for push-payment initiation and reconciliation polls.

    Initiation errors are surfaced immediately as GATEWAY_ERROR; nothing
    is retried behind the caller's back.
    """

    @classmethod
    def initiate(
        cls,
        transaction_id: uuid.UUID,
        payer_phone: str = "",
        actor: Actor | None = None,
    ) -> ServiceResult[InitiationResult]:
        """
        Send the STK push for a PENDING transaction.

        Args:
            transaction_id: Transaction to collect payment for
            payer_phone: MSISDN to prompt; defaults to the stored payer phone
            actor: Requesting identity; buyers may only pay their own
                transactions. None for system initiated calls.

        Returns:
            ServiceResult with InitiationResult
        """
        lock_key = f"escrow:initiate:{transaction_id}"
        try:
            with DistributedLock(lock_key, ttl=INITIATE_LOCK_TTL, timeout=INITIATE_LOCK_TIMEOUT):
                return cls._initiate_with_lock(transaction_id, payer_phone, actor)
        except LockAcquisitionError as e:
            return cls.handle_exception(e, "Payment initiation already in progress")
        except BaseApplicationError as e:
            return cls.handle_exception(e, "Payment initiation refused")

    @classmethod
    def _initiate_with_lock(
        cls,
        transaction_id: uuid.UUID,
        payer_phone: str,
        actor: Actor | None,
    ) -> ServiceResult[InitiationResult]:
        txn = EscrowTransaction.objects.select_related("buyer").filter(id=transaction_id).first()
        if txn is None:
            raise NotFoundError(
                f"EscrowTransaction {transaction_id} not found",
                details={"transaction_id": str(transaction_id)},
            )

        if actor is not None and not (actor.role == ActorRole.BUYER and actor.is_user(txn.buyer_id)):
            raise GuardViolationError(
                "Only the buyer may pay for this transaction",
                details={"reason": "actor", "trigger": "initiate_payment"},
            )

        if txn.provider_reference:
            cls.get_logger().info(
                "Payment already initiated, returning existing reference",
                extra={"transaction_id": str(txn.id), "provider_reference": txn.provider_reference},
            )
            return ServiceResult.success(
                InitiationResult(transaction=txn, provider_reference=txn.provider_reference, created=False)
            )

        if txn.status != TransactionStatus.PENDING:
            raise GuardViolationError(
                f"Cannot initiate payment for a {txn.status} transaction",
                details={"reason": "state", "trigger": "initiate_payment", "status": txn.status},
            )

        phone = normalize_msisdn(payer_phone or txn.payer_phone or txn.buyer.phone_number)
        if not MSISDN_PATTERN.match(phone):
            raise EscrowValidationError(
                "Enter a valid Kenyan mobile number",
                details={"field": "payer_phone"},
            )

        # Provider call stays outside any database transaction
        try:
            push = MpesaAdapter.initiate_stk_push(
                StkPushParams(
                    amount=txn.amount,
                    phone_number=phone,
                    account_reference=f"SWL-{txn.id.hex[:8].upper()}",
                    description="Escrow payment",
                ),
                trace_id=str(txn.id),
            )
        except GatewayError as e:
            return cls.handle_exception(e, "STK push failed")

        with transaction.atomic():
            txn = EscrowTransaction.objects.select_for_update().get(id=txn.id)
            if txn.provider_reference:
                # Only reachable if the lock expired mid-call
                cls.get_logger().error(
                    "Transaction got a provider reference while initiating",
                    extra={
                        "transaction_id": str(txn.id),
                        "existing": txn.provider_reference,
                        "discarded": push.checkout_request_id,
                    },
                )
                return ServiceResult.success(
                    InitiationResult(transaction=txn, provider_reference=txn.provider_reference, created=False)
                )

            txn.provider_reference = push.checkout_request_id
            txn.provider_merchant_reference = push.merchant_request_id
            txn.payer_phone = phone
            txn.payment_initiated_at = timezone.now()
            txn.save(
                update_fields=[
                    "provider_reference",
                    "provider_merchant_reference",
                    "payer_phone",
                    "payment_initiated_at",
                ]
            )

        cls.get_logger().info(
            "Payment initiated",
            extra={"transaction_id": str(txn.id), "provider_reference": txn.provider_reference},
        )
        return ServiceResult.success(
            InitiationResult(
                transaction=txn,
                provider_reference=txn.provider_reference,
                created=True,
                customer_message=push.customer_message,
            )
        )

    @classmethod
    def poll(cls, transaction_id: uuid.UUID, actor: Actor | None = None) -> ServiceResult[PollResult]:
        """
        Ask the provider for the payment outcome and apply it.

        A CONFIRMED or FAILED answer goes through the idempotency ledger,
        so a poll racing the webhook for the same outcome applies once.
        """
        txn = EscrowTransaction.objects.filter(id=transaction_id).first()
        if txn is None:
            return ServiceResult.failure("Transaction not found", error_code="NOT_FOUND")

        if actor is not None and actor.role != ActorRole.SYSTEM and not (
            actor.is_user(txn.buyer_id) or actor.is_user(txn.seller_id)
        ):
            return ServiceResult.failure(
                "Only the parties may check this transaction",
                error_code="GUARD_VIOLATION",
                details={"reason": "actor", "trigger": "check_status"},
            )

        if txn.status != TransactionStatus.PENDING:
            outcome = PaymentOutcome.CONFIRMED if txn.escrowed_at else PaymentOutcome.FAILED
            return ServiceResult.success(PollResult(transaction=txn, outcome=outcome))
        if not txn.provider_reference:
            return ServiceResult.success(PollResult(transaction=txn, outcome=PaymentOutcome.PENDING))

        try:
            status = MpesaAdapter.query_stk_status(txn.provider_reference, trace_id=str(txn.id))
        except GatewayError as e:
            return cls.handle_exception(e, "STK status query failed")

        if status.outcome is PaymentOutcome.PENDING:
            return ServiceResult.success(PollResult(transaction=txn, outcome=status.outcome))

        confirmed = status.outcome is PaymentOutcome.CONFIRMED
        event = NormalizedEvent(
            provider_reference=txn.provider_reference,
            event_type=GatewayEventType.PAYMENT_CONFIRMED if confirmed else GatewayEventType.PAYMENT_FAILED,
            outcome=status.outcome,
            # The query response carries no amount or receipt. A callback that
            # later reports a different amount holds the transaction for review.
            amount=None,
            result_code=status.result_code,
            result_description=status.result_description,
        )
        result = IdempotencyLedger.ingest(event, source=EventSource.POLL)

        txn = EscrowTransaction.objects.get(id=txn.id)
        return ServiceResult.success(
            PollResult(transaction=txn, outcome=status.outcome, ledger_outcome=result.data.outcome)
        )
