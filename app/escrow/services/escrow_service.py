"""
Escrow state machine service.

EscrowService.execute() is the single entry point for every trigger:
user actions from the API, provider events from the idempotency ledger,
and deadline sweeps. Each trigger runs the same path inside one database
transaction:

    1. Lock the transaction row and compare versions (check_version)
    2. Check the guard (actor, current state, deadline, amount)
    3. Apply the django-fsm transition and save (version + 1)
    4. Create the payout/refund instruction or OTP the edge calls for
    5. Write the audit entry
    6. Queue notifications and instruction dispatch for after commit

Usage:
    from escrow.commands import Actor, SellerAccept
    from escrow.services import EscrowService

    result = EscrowService.execute(
        SellerAccept(
            actor=Actor.for_user(request.user, ActorRole.SELLER),
            transaction_id=txn.id,
            expected_version=txn.version,
        )
    )
    if result.success:
        result.data.transaction.status  # "ACCEPTED"
    elif result.error_code == "CONCURRENT_MODIFICATION":
        ...  # re-read and retry

Error codes:
    VALIDATION, GUARD_VIOLATION, CONCURRENT_MODIFICATION, OTP_INVALID,
    OTP_LOCKED, OTP_EXPIRED, NO_PAYOUT_METHOD, NOT_FOUND
"""

from __future__ import annotations

import functools
from dataclasses import dataclass
from datetime import timedelta
from typing import TYPE_CHECKING

from django.conf import settings
from django.contrib.auth import get_user_model
from django.db import transaction
from django.utils import timezone

from django_fsm import TransitionNotAllowed, can_proceed

from authentication.models import MSISDN_PATTERN, normalize_msisdn
from core.exceptions import BaseApplicationError, NotFoundError
from core.services import BaseService, ServiceResult
from escrow.commands import (
    AutoDeliver,
    AutoRelease,
    BuyerConfirmOtp,
    ConfirmPayment,
    CreateTransaction,
    ExpireUnaccepted,
    ExpireUnpaid,
    FailPayment,
    OpenDispute,
    Release,
    ResendOtp,
    ResolveDisputeRefund,
    ResolveDisputeRelease,
    SellerAccept,
    SellerReject,
    SellerShip,
)
from escrow.exceptions import EscrowValidationError, GuardViolationError
from escrow.locks import check_version
from escrow.models import EscrowTransaction, PayoutInstruction
from escrow.services.audit import AuditTrail
from escrow.services.otp_service import OtpService, OtpVerification
from escrow.services.payout_methods import PayoutMethodRegistry
from escrow.state_machines import ActorRole, InstructionKind

if TYPE_CHECKING:
    from collections.abc import Callable
    from datetime import datetime
    from typing import Any

    from escrow.commands import Command, TransitionCommand
    from escrow.models import PayoutMethod


def _window(setting_name: str, default_hours: int) -> timedelta:
    return timedelta(hours=getattr(settings, setting_name, default_hours))


@dataclass
class TransitionResult:
    """
    Outcome of an applied trigger.

    Attributes:
        transaction: The transaction after the trigger
        trigger: Trigger name
        from_status: Status before ("" on creation)
        to_status: Status after
        instruction: Payout or refund instruction emitted by this trigger
    """

    transaction: EscrowTransaction
    trigger: str
    from_status: str
    to_status: str
    instruction: PayoutInstruction | None = None

    @property
    def changed(self) -> bool:
        return self.from_status != self.to_status


class EscrowService(BaseService):
    """
    Applies triggers to escrow transactions.

    Guards:
        - Role and identity: only the transaction's seller accepts, rejects
          and ships; only its buyer confirms delivery; adjudicators resolve
          disputes; deadline and provider triggers are SYSTEM only
        - State: the django-fsm source of the transition
        - Deadlines: auto-transitions only after their deadline, disputes
          only before the release deadline
        - Amount: a confirmed payment must match the requested amount

    Every guard failure raises GuardViolationError, which rolls back the
    surrounding transaction and is returned as a failed ServiceResult.
    OTP mismatches are the exception: they are returned without raising
    so the attempt counter commits.
    """

    @classmethod
    def execute(cls, command: Command) -> ServiceResult[TransitionResult]:
        """
        Apply a trigger.

        Args:
            command: Any command from escrow.commands

        Returns:
            ServiceResult with TransitionResult on success, or the error
            code of the refusal
        """
        handler = cls._handler_for(command)
        log_context = {
            "trigger": command.trigger,
            "actor_role": command.actor.role,
            "actor_id": command.actor.actor_id,
            "transaction_id": str(getattr(command, "transaction_id", "") or ""),
        }

        try:
            with cls.atomic():
                result = handler(command)
        except BaseApplicationError as e:
            return cls.handle_exception(e, f"Trigger {command.trigger} refused")

        if result.success:
            cls.get_logger().info(
                "Escrow trigger applied",
                extra={
                    **log_context,
                    "transaction_id": str(result.data.transaction.id),
                    "from_status": result.data.from_status,
                    "to_status": result.data.to_status,
                    "version": result.data.transaction.version,
                },
            )
        return result

    @classmethod
    def _handler_for(cls, command: Command) -> Callable[[Any], ServiceResult[TransitionResult]]:
        handlers = {
            CreateTransaction: cls._create,
            ConfirmPayment: cls._confirm_payment,
            FailPayment: cls._fail_payment,
            SellerAccept: cls._seller_accept,
            SellerReject: cls._seller_reject,
            SellerShip: cls._seller_ship,
            BuyerConfirmOtp: cls._buyer_confirm_otp,
            ResendOtp: cls._resend_otp,
            Release: cls._release,
            AutoRelease: cls._auto_release,
            AutoDeliver: cls._auto_deliver,
            OpenDispute: cls._open_dispute,
            ResolveDisputeRelease: cls._resolve_dispute_release,
            ResolveDisputeRefund: cls._resolve_dispute_refund,
            ExpireUnaccepted: cls._expire_unaccepted,
            ExpireUnpaid: cls._expire_unpaid,
        }
        return handlers[type(command)]

    # =========================================================================
    # Guards
    # =========================================================================

    @staticmethod
    def _refuse(command: Command, message: str, reason: str, **details: Any) -> GuardViolationError:
        return GuardViolationError(
            message,
            details={"reason": reason, "trigger": command.trigger, **details},
        )

    @classmethod
    def _require_role(cls, command: Command, *roles: ActorRole) -> None:
        if command.actor.role not in roles:
            raise cls._refuse(
                command,
                f"{command.actor.role} may not {command.trigger}",
                "actor",
                role=command.actor.role,
            )

    @classmethod
    def _require_party(cls, command: Command, role: ActorRole, user_id: Any) -> None:
        cls._require_role(command, role)
        if not command.actor.is_user(user_id):
            raise cls._refuse(
                command,
                f"Only the transaction's {ActorRole(role).label.lower()} may {command.trigger}",
                "actor",
                role=command.actor.role,
            )

    @classmethod
    def _require_state(cls, command: Command, txn: EscrowTransaction, transition: Callable) -> None:
        if not can_proceed(transition):
            raise cls._refuse(
                command,
                f"Cannot {command.trigger} a {txn.status} transaction",
                "state",
                status=txn.status,
            )

    @classmethod
    def _require_deadline_passed(
        cls, command: Command, deadline: datetime | None, now: datetime, label: str
    ) -> None:
        if deadline is None or now < deadline:
            raise cls._refuse(
                command,
                f"{label} has not passed",
                "deadline",
                deadline=deadline.isoformat() if deadline else None,
            )

    @classmethod
    def _load(cls, command: TransitionCommand) -> EscrowTransaction:
        return check_version(EscrowTransaction, command.transaction_id, command.expected_version)

    # =========================================================================
    # Effects
    # =========================================================================

    @classmethod
    def _apply(cls, command: Command, txn: EscrowTransaction, transition: Callable, **kwargs: Any) -> str:
        """Run a checked transition and persist it. Returns the prior status."""
        from_status = txn.status
        try:
            transition(**kwargs)
        except TransitionNotAllowed:
            raise cls._refuse(
                command,
                f"Cannot {command.trigger} a {from_status} transaction",
                "state",
                status=from_status,
            )
        txn.save()
        return from_status

    @classmethod
    def _finish(
        cls,
        command: Command,
        txn: EscrowTransaction,
        from_status: str,
        instruction: PayoutInstruction | None = None,
        details: dict[str, Any] | None = None,
    ) -> ServiceResult[TransitionResult]:
        audit_details = dict(details or {})
        if instruction is not None:
            audit_details["instruction_id"] = str(instruction.id)
            audit_details["instruction_kind"] = instruction.kind
        AuditTrail.record(txn, command.actor, command.trigger, from_status, txn.status, audit_details)
        return ServiceResult.success(
            TransitionResult(
                transaction=txn,
                trigger=command.trigger,
                from_status=from_status,
                to_status=txn.status,
                instruction=instruction,
            )
        )

    @classmethod
    def _emit_instruction(
        cls,
        txn: EscrowTransaction,
        kind: InstructionKind,
        payout_method: PayoutMethod | None = None,
    ) -> PayoutInstruction:
        """
        Create the fund movement for a terminal decision.

        The one-to-one link to the transaction makes a second instruction
        (payout after refund, or vice versa) fail at the database.
        """
        if kind == InstructionKind.PAYOUT:
            destination = payout_method.account_number
        else:
            destination = txn.payer_phone or normalize_msisdn(txn.buyer.phone_number)

        instruction = PayoutInstruction.objects.create(
            transaction=txn,
            kind=kind,
            payout_method=payout_method,
            destination=destination,
            amount=txn.amount,
            currency=txn.currency,
        )

        cls.get_logger().info(
            "Fund instruction created",
            extra={
                "transaction_id": str(txn.id),
                "instruction_id": str(instruction.id),
                "kind": kind,
                "amount": txn.amount,
            },
        )
        transaction.on_commit(functools.partial(cls._queue_dispatch, instruction.id))
        return instruction

    @staticmethod
    def _queue_dispatch(instruction_id) -> None:
        from escrow.workers.payout_executor import dispatch_instruction

        dispatch_instruction.delay(str(instruction_id))

    @staticmethod
    def _notify(event: str, txn: EscrowTransaction, **context: Any) -> None:
        from notifications.services import NotificationService

        transaction.on_commit(functools.partial(NotificationService.notify, event, txn.id, **context))

    # =========================================================================
    # Creation & Payment
    # =========================================================================

    @classmethod
    def _create(cls, command: CreateTransaction) -> ServiceResult[TransitionResult]:
        cls._require_role(command, ActorRole.BUYER)
        if command.actor.actor_id is None:
            raise cls._refuse(command, "A buyer identity is required", "actor")

        if command.amount <= 0:
            raise EscrowValidationError("Amount must be greater than zero", details={"field": "amount"})

        currency = command.currency.upper()
        supported = getattr(settings, "ESCROW_SUPPORTED_CURRENCIES", ["KES"])
        if currency not in supported:
            raise EscrowValidationError(
                f"Unsupported currency '{command.currency}'",
                details={"field": "currency", "supported": list(supported)},
            )

        User = get_user_model()
        seller = User.objects.filter(pk=command.seller_id, is_active=True).first()
        if seller is None:
            raise NotFoundError("Seller not found", details={"seller_id": command.seller_id})
        if command.actor.is_user(seller.pk):
            raise EscrowValidationError("Buyer and seller must differ", details={"field": "seller_id"})

        buyer = User.objects.filter(pk=command.actor.actor_id, is_active=True).first()
        if buyer is None:
            raise NotFoundError("Buyer not found", details={"buyer_id": command.actor.actor_id})
        payer_phone = normalize_msisdn(command.payer_phone or buyer.phone_number)
        if command.payer_phone and not MSISDN_PATTERN.match(payer_phone):
            raise EscrowValidationError("Enter a valid Kenyan mobile number", details={"field": "payer_phone"})

        now = timezone.now()
        txn = EscrowTransaction.objects.create(
            buyer=buyer,
            seller=seller,
            amount=command.amount,
            currency=currency,
            item_name=command.item_name,
            description=command.description,
            payer_phone=payer_phone if MSISDN_PATTERN.match(payer_phone) else "",
            expires_at=now + _window("ESCROW_PAYMENT_WINDOW_HOURS", 24),
            last_transition_at=now,
        )

        if txn.payer_phone:
            transaction.on_commit(functools.partial(cls._queue_initiation, txn.id))

        return cls._finish(command, txn, "", details={"amount": txn.amount, "currency": txn.currency})

    @staticmethod
    def _queue_initiation(transaction_id) -> None:
        from escrow.tasks import initiate_payment

        initiate_payment.delay(str(transaction_id))

    @classmethod
    def _load_by_reference(cls, command: ConfirmPayment | FailPayment) -> EscrowTransaction:
        txn = EscrowTransaction.objects.select_for_update().filter(provider_reference=command.provider_reference).first()
        if txn is None:
            raise NotFoundError(
                "No transaction for provider reference",
                details={"provider_reference": command.provider_reference},
            )
        return txn

    @classmethod
    def _confirm_payment(cls, command: ConfirmPayment) -> ServiceResult[TransitionResult]:
        cls._require_role(command, ActorRole.SYSTEM)
        txn = cls._load_by_reference(command)
        cls._require_state(command, txn, txn.confirm_payment)

        if command.amount is not None and command.amount != txn.amount:
            cls.get_logger().error(
                "Confirmed amount does not match requested amount",
                extra={
                    "transaction_id": str(txn.id),
                    "requested": txn.amount,
                    "confirmed": command.amount,
                },
            )
            raise cls._refuse(
                command,
                "Confirmed amount does not match the transaction amount",
                "amount",
                expected=txn.amount,
                received=command.amount,
            )

        from_status = cls._apply(
            command,
            txn,
            txn.confirm_payment,
            receipt_number=command.receipt_number,
            acceptance_deadline=timezone.now() + _window("ESCROW_ACCEPTANCE_WINDOW_HOURS", 48),
        )
        cls._notify("payment_confirmed", txn)
        return cls._finish(command, txn, from_status, details={"receipt_number": command.receipt_number})

    @classmethod
    def _fail_payment(cls, command: FailPayment) -> ServiceResult[TransitionResult]:
        cls._require_role(command, ActorRole.SYSTEM)
        txn = cls._load_by_reference(command)
        cls._require_state(command, txn, txn.fail_payment)

        from_status = cls._apply(command, txn, txn.fail_payment, reason=command.reason)
        cls._notify("payment_failed", txn)
        return cls._finish(command, txn, from_status, details={"reason": command.reason})

    @classmethod
    def _expire_unpaid(cls, command: ExpireUnpaid) -> ServiceResult[TransitionResult]:
        cls._require_role(command, ActorRole.SYSTEM)
        txn = cls._load(command)
        cls._require_state(command, txn, txn.expire_unpaid)
        cls._require_deadline_passed(command, txn.expires_at, timezone.now(), "Payment window")

        from_status = cls._apply(command, txn, txn.expire_unpaid)
        cls._notify("transaction_cancelled", txn)
        return cls._finish(command, txn, from_status)

    # =========================================================================
    # Seller Triggers
    # =========================================================================

    @classmethod
    def _seller_accept(cls, command: SellerAccept) -> ServiceResult[TransitionResult]:
        txn = cls._load(command)
        cls._require_party(command, ActorRole.SELLER, txn.seller_id)
        cls._require_state(command, txn, txn.accept)

        from_status = cls._apply(
            command,
            txn,
            txn.accept,
            shipping_deadline=timezone.now() + _window("ESCROW_SHIPPING_WINDOW_HOURS", 72),
        )
        cls._notify("seller_accepted", txn)
        return cls._finish(command, txn, from_status)

    @classmethod
    def _seller_reject(cls, command: SellerReject) -> ServiceResult[TransitionResult]:
        txn = cls._load(command)
        cls._require_party(command, ActorRole.SELLER, txn.seller_id)
        cls._require_state(command, txn, txn.reject)

        from_status = cls._apply(command, txn, txn.reject, reason=command.reason)
        instruction = cls._emit_instruction(txn, InstructionKind.REFUND)
        cls._notify("seller_rejected", txn)
        return cls._finish(command, txn, from_status, instruction, details={"reason": command.reason})

    @classmethod
    def _seller_ship(cls, command: SellerShip) -> ServiceResult[TransitionResult]:
        txn = cls._load(command)
        cls._require_party(command, ActorRole.SELLER, txn.seller_id)
        cls._require_state(command, txn, txn.ship)

        now = timezone.now()
        from_status = cls._apply(
            command,
            txn,
            txn.ship,
            auto_deliver_at=now + _window("ESCROW_AUTO_DELIVER_WINDOW_HOURS", 120),
            auto_release_at=now + _window("ESCROW_DELIVERY_WINDOW_HOURS", 168),
            courier_name=command.courier_name,
            tracking_number=command.tracking_number,
            estimated_delivery_date=command.estimated_delivery_date,
            shipping_notes=command.shipping_notes,
            delivery_proof_urls=list(command.delivery_proof_urls),
        )
        code = OtpService.issue(txn)
        cls._notify("shipped", txn, code=code)
        return cls._finish(
            command,
            txn,
            from_status,
            details={"courier_name": command.courier_name, "tracking_number": command.tracking_number},
        )

    # =========================================================================
    # Buyer Triggers
    # =========================================================================

    @classmethod
    def _buyer_confirm_otp(cls, command: BuyerConfirmOtp) -> ServiceResult[TransitionResult]:
        OtpService.validate_format(command.code)
        txn = cls._load(command)
        cls._require_party(command, ActorRole.BUYER, txn.buyer_id)
        cls._require_state(command, txn, txn.mark_delivered)

        outcome = OtpService.verify(txn, command.code)
        if outcome is OtpVerification.LOCKED:
            return ServiceResult.failure(
                "Too many incorrect codes. Try again later.",
                error_code="OTP_LOCKED",
                details={"transaction_id": str(txn.id)},
            )
        if outcome is OtpVerification.EXPIRED:
            return ServiceResult.failure(
                "Delivery code has expired or was already used",
                error_code="OTP_EXPIRED",
                details={"transaction_id": str(txn.id)},
            )
        if outcome is OtpVerification.INVALID:
            return ServiceResult.failure(
                "Incorrect delivery code",
                error_code="OTP_INVALID",
                details={"transaction_id": str(txn.id)},
            )

        from_status = cls._apply(
            command,
            txn,
            txn.mark_delivered,
            minimum_release_at=timezone.now() + _window("ESCROW_DISPUTE_WINDOW_HOURS", 48),
        )
        cls._notify("delivered", txn)
        return cls._finish(command, txn, from_status, details={"method": "otp"})

    @classmethod
    def _resend_otp(cls, command: ResendOtp) -> ServiceResult[TransitionResult]:
        txn = cls._load(command)
        cls._require_role(command, ActorRole.BUYER, ActorRole.SELLER)
        party_id = txn.buyer_id if command.actor.role == ActorRole.BUYER else txn.seller_id
        cls._require_party(command, command.actor.role, party_id)
        cls._require_state(command, txn, txn.mark_delivered)

        code = OtpService.issue(txn)
        cls._notify("otp_reissued", txn, code=code)
        return cls._finish(command, txn, txn.status)

    @classmethod
    def _release(cls, command: Release) -> ServiceResult[TransitionResult]:
        """
        Buyer confirms satisfaction, or the system releases after the
        dispute window.
        """
        txn = cls._load(command)
        cls._require_role(command, ActorRole.BUYER, ActorRole.SYSTEM)
        if command.actor.role == ActorRole.BUYER:
            cls._require_party(command, ActorRole.BUYER, txn.buyer_id)
        cls._require_state(command, txn, txn.release)
        if command.actor.role == ActorRole.SYSTEM:
            cls._require_deadline_passed(command, txn.auto_release_at, timezone.now(), "Dispute window")

        return cls._complete(command, txn, txn.release)

    @classmethod
    def _auto_release(cls, command: AutoRelease) -> ServiceResult[TransitionResult]:
        txn = cls._load(command)
        cls._require_role(command, ActorRole.SYSTEM)
        cls._require_state(command, txn, txn.release)
        cls._require_deadline_passed(command, txn.auto_release_at, timezone.now(), "Dispute window")

        return cls._complete(command, txn, txn.release)

    @classmethod
    def _complete(cls, command: TransitionCommand, txn: EscrowTransaction, transition: Callable) -> ServiceResult[TransitionResult]:
        method = PayoutMethodRegistry.resolve_default(txn.seller_id)
        from_status = cls._apply(command, txn, transition, payout_method=method)
        instruction = cls._emit_instruction(txn, InstructionKind.PAYOUT, payout_method=method)
        cls._notify("completed", txn)
        return cls._finish(command, txn, from_status, instruction)

    @classmethod
    def _open_dispute(cls, command: OpenDispute) -> ServiceResult[TransitionResult]:
        txn = cls._load(command)
        cls._require_role(command, ActorRole.BUYER, ActorRole.FRAUD_SIGNAL)
        if command.actor.role == ActorRole.BUYER:
            cls._require_party(command, ActorRole.BUYER, txn.buyer_id)
        cls._require_state(command, txn, txn.open_dispute)

        if txn.auto_release_at is not None and timezone.now() >= txn.auto_release_at:
            raise cls._refuse(
                command,
                "Dispute window has closed",
                "deadline",
                deadline=txn.auto_release_at.isoformat(),
            )

        from_status = cls._apply(command, txn, txn.open_dispute, reason=command.reason)
        cls._notify("dispute_opened", txn)
        return cls._finish(command, txn, from_status, details={"reason": command.reason})

    # =========================================================================
    # Adjudicator Triggers
    # =========================================================================

    @classmethod
    def _resolve_dispute_release(cls, command: ResolveDisputeRelease) -> ServiceResult[TransitionResult]:
        txn = cls._load(command)
        cls._require_role(command, ActorRole.ADJUDICATOR)
        cls._require_state(command, txn, txn.resolve_release)

        method = PayoutMethodRegistry.resolve_default(txn.seller_id)
        from_status = cls._apply(command, txn, txn.resolve_release, payout_method=method)
        instruction = cls._emit_instruction(txn, InstructionKind.PAYOUT, payout_method=method)
        cls._notify("dispute_resolved", txn, outcome="release")
        return cls._finish(command, txn, from_status, instruction, details={"notes": command.notes})

    @classmethod
    def _resolve_dispute_refund(cls, command: ResolveDisputeRefund) -> ServiceResult[TransitionResult]:
        txn = cls._load(command)
        cls._require_role(command, ActorRole.ADJUDICATOR)
        cls._require_state(command, txn, txn.resolve_refund)

        from_status = cls._apply(command, txn, txn.resolve_refund)
        instruction = cls._emit_instruction(txn, InstructionKind.REFUND)
        cls._notify("dispute_resolved", txn, outcome="refund")
        return cls._finish(command, txn, from_status, instruction, details={"notes": command.notes})

    # =========================================================================
    # Scheduler Triggers
    # =========================================================================

    @classmethod
    def _auto_deliver(cls, command: AutoDeliver) -> ServiceResult[TransitionResult]:
        txn = cls._load(command)
        cls._require_role(command, ActorRole.SYSTEM)
        cls._require_state(command, txn, txn.mark_delivered)
        cls._require_deadline_passed(command, txn.auto_deliver_at, timezone.now(), "Auto-deliver deadline")

        from_status = cls._apply(
            command,
            txn,
            txn.mark_delivered,
            minimum_release_at=timezone.now() + _window("ESCROW_DISPUTE_WINDOW_HOURS", 48),
        )
        OtpService.invalidate(txn)
        cls._notify("delivered", txn)
        return cls._finish(command, txn, from_status, details={"method": "auto"})

    @classmethod
    def _expire_unaccepted(cls, command: ExpireUnaccepted) -> ServiceResult[TransitionResult]:
        txn = cls._load(command)
        cls._require_role(command, ActorRole.SYSTEM)
        cls._require_state(command, txn, txn.expire_unaccepted)
        cls._require_deadline_passed(command, txn.expires_at, timezone.now(), "Acceptance window")

        from_status = cls._apply(command, txn, txn.expire_unaccepted)
        instruction = cls._emit_instruction(txn, InstructionKind.REFUND)
        cls._notify("transaction_cancelled", txn)
        return cls._finish(command, txn, from_status, instruction)
