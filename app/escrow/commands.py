"""
Typed commands accepted by the escrow state machine.

Every trigger is a frozen dataclass carrying the acting identity. Loosely
typed request bodies are turned into commands by ``parse_command`` at the
edge, so anything outside the fixed trigger set (or with unexpected or
malformed fields) is rejected with VALIDATION before it reaches the
engine.

Usage:
    from escrow.commands import Actor, SellerAccept, parse_command

    command = SellerAccept(
        actor=Actor.for_user(request.user, ActorRole.SELLER),
        transaction_id=txn.id,
        expected_version=3,
    )

    command = parse_command(
        "seller_ship",
        {"transaction_id": str(txn.id), "tracking_number": "KE123"},
        actor,
    )
"""

from __future__ import annotations

import uuid
from dataclasses import MISSING, dataclass, field, fields
from datetime import date
from typing import TYPE_CHECKING, ClassVar

from escrow.exceptions import EscrowValidationError
from escrow.state_machines import ActorRole

if TYPE_CHECKING:
    from typing import Any, Callable


# =============================================================================
# Identity
# =============================================================================


@dataclass(frozen=True)
class Actor:
    """
    Identity supplied by the auth layer for a trigger.

    The engine trusts the pair but still checks that the role and identity
    fit each guard (only the transaction's seller may accept it, etc.).
    """

    actor_id: str | None
    role: ActorRole

    @classmethod
    def system(cls) -> Actor:
        return cls(actor_id=None, role=ActorRole.SYSTEM)

    @classmethod
    def for_user(cls, user, role: ActorRole) -> Actor:
        return cls(actor_id=str(user.pk), role=role)

    def is_user(self, user_id: Any) -> bool:
        return self.actor_id is not None and self.actor_id == str(user_id)


# =============================================================================
# Base Commands
# =============================================================================


@dataclass(frozen=True, kw_only=True)
class Command:
    """Base for every trigger."""

    trigger: ClassVar[str] = ""

    actor: Actor


@dataclass(frozen=True, kw_only=True)
class TransitionCommand(Command):
    """
    A trigger against an existing transaction.

    ``expected_version`` is the version the caller last read. None means
    "whatever is current", used by provider callbacks which carry none.
    """

    transaction_id: uuid.UUID
    expected_version: int | None = None


# =============================================================================
# Creation & Payment
# =============================================================================


@dataclass(frozen=True, kw_only=True)
class CreateTransaction(Command):
    trigger: ClassVar[str] = "create"

    seller_id: str
    amount: int
    currency: str = "KES"
    item_name: str = ""
    description: str = ""
    payer_phone: str = ""


@dataclass(frozen=True, kw_only=True)
class ConfirmPayment(Command):
    """
    Provider confirmed payment for a checkout request.

    ``amount`` is None when the confirmation came from a status poll,
    which does not report the paid amount.
    """

    trigger: ClassVar[str] = "payment_confirmed"

    provider_reference: str
    amount: int | None = None
    receipt_number: str = ""


@dataclass(frozen=True, kw_only=True)
class FailPayment(Command):
    trigger: ClassVar[str] = "payment_failed"

    provider_reference: str
    reason: str = ""


# =============================================================================
# Seller Triggers
# =============================================================================


@dataclass(frozen=True, kw_only=True)
class SellerAccept(TransitionCommand):
    trigger: ClassVar[str] = "seller_accept"


@dataclass(frozen=True, kw_only=True)
class SellerReject(TransitionCommand):
    trigger: ClassVar[str] = "seller_reject"

    reason: str = ""


@dataclass(frozen=True, kw_only=True)
class SellerShip(TransitionCommand):
    trigger: ClassVar[str] = "seller_ship"

    courier_name: str = ""
    tracking_number: str = ""
    estimated_delivery_date: date | None = None
    shipping_notes: str = ""
    delivery_proof_urls: tuple[str, ...] = field(default_factory=tuple)


# =============================================================================
# Buyer Triggers
# =============================================================================


@dataclass(frozen=True, kw_only=True)
class BuyerConfirmOtp(TransitionCommand):
    trigger: ClassVar[str] = "buyer_confirm_otp"

    code: str


@dataclass(frozen=True, kw_only=True)
class ResendOtp(TransitionCommand):
    trigger: ClassVar[str] = "resend_otp"


@dataclass(frozen=True, kw_only=True)
class Release(TransitionCommand):
    trigger: ClassVar[str] = "release"


@dataclass(frozen=True, kw_only=True)
class OpenDispute(TransitionCommand):
    trigger: ClassVar[str] = "open_dispute"

    reason: str = ""


# =============================================================================
# Adjudicator Triggers
# =============================================================================


@dataclass(frozen=True, kw_only=True)
class ResolveDisputeRelease(TransitionCommand):
    trigger: ClassVar[str] = "resolve_dispute_release"

    notes: str = ""


@dataclass(frozen=True, kw_only=True)
class ResolveDisputeRefund(TransitionCommand):
    trigger: ClassVar[str] = "resolve_dispute_refund"

    notes: str = ""


# =============================================================================
# Scheduler Triggers
# =============================================================================


@dataclass(frozen=True, kw_only=True)
class AutoDeliver(TransitionCommand):
    trigger: ClassVar[str] = "auto_deliver"


@dataclass(frozen=True, kw_only=True)
class AutoRelease(TransitionCommand):
    trigger: ClassVar[str] = "auto_release"


@dataclass(frozen=True, kw_only=True)
class ExpireUnaccepted(TransitionCommand):
    trigger: ClassVar[str] = "expire_unaccepted"


@dataclass(frozen=True, kw_only=True)
class ExpireUnpaid(TransitionCommand):
    trigger: ClassVar[str] = "expire_unpaid"


COMMANDS: dict[str, type[Command]] = {
    command.trigger: command
    for command in (
        CreateTransaction,
        ConfirmPayment,
        FailPayment,
        SellerAccept,
        SellerReject,
        SellerShip,
        BuyerConfirmOtp,
        ResendOtp,
        Release,
        OpenDispute,
        ResolveDisputeRelease,
        ResolveDisputeRefund,
        AutoDeliver,
        AutoRelease,
        ExpireUnaccepted,
        ExpireUnpaid,
    )
}


# =============================================================================
# Boundary Parsing
# =============================================================================


def _as_str(name: str, value: Any) -> str:
    if not isinstance(value, str):
        raise EscrowValidationError(
            f"'{name}' must be a string",
            details={"field": name},
        )
    return value.strip()


def _as_uuid(name: str, value: Any) -> uuid.UUID:
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except ValueError:
        raise EscrowValidationError(
            f"'{name}' must be a UUID",
            details={"field": name},
        )


def _as_int(name: str, value: Any) -> int:
    # bool is an int subclass; "true" is never a valid amount or version
    if isinstance(value, bool):
        raise EscrowValidationError(f"'{name}' must be an integer", details={"field": name})
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.strip().lstrip("-").isdigit():
        return int(value.strip())
    raise EscrowValidationError(f"'{name}' must be an integer", details={"field": name})


def _as_identifier(name: str, value: Any) -> str:
    if isinstance(value, int) and not isinstance(value, bool):
        return str(value)
    return _as_str(name, value)


def _as_optional_int(name: str, value: Any) -> int | None:
    return None if value is None else _as_int(name, value)


def _as_date(name: str, value: Any) -> date | None:
    if value in (None, ""):
        return None
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(_as_str(name, value))
    except ValueError:
        raise EscrowValidationError(
            f"'{name}' must be an ISO date (YYYY-MM-DD)",
            details={"field": name},
        )


def _as_url_list(name: str, value: Any) -> tuple[str, ...]:
    if value is None:
        return ()
    if not isinstance(value, (list, tuple)):
        raise EscrowValidationError(f"'{name}' must be a list of URLs", details={"field": name})
    return tuple(_as_str(name, item) for item in value)


_COERCERS: dict[str, Callable[[str, Any], Any]] = {
    "transaction_id": _as_uuid,
    "seller_id": _as_identifier,
    "expected_version": _as_optional_int,
    "amount": _as_optional_int,
    "estimated_delivery_date": _as_date,
    "delivery_proof_urls": _as_url_list,
}


def parse_command(trigger: str, data: dict[str, Any], actor: Actor) -> Command:
    """
    Build a command from an untyped payload.

    Args:
        trigger: Trigger name, e.g. "seller_accept"
        data: Field values (typically a request body plus URL kwargs)
        actor: Identity from the auth layer

    Returns:
        The typed command

    Raises:
        EscrowValidationError: Unknown trigger, unknown field, missing
            required field or a value of the wrong type
    """
    command_class = COMMANDS.get(trigger)
    if command_class is None:
        raise EscrowValidationError(
            f"Unknown trigger '{trigger}'",
            details={"trigger": trigger},
        )

    accepted = {f.name: f for f in fields(command_class) if f.name != "actor"}
    unknown = sorted(set(data) - set(accepted))
    if unknown:
        raise EscrowValidationError(
            f"Unexpected fields for {trigger}: {', '.join(unknown)}",
            details={"trigger": trigger, "fields": unknown},
        )

    missing = sorted(
        name
        for name, f in accepted.items()
        if name not in data and f.default is MISSING and f.default_factory is MISSING
    )
    if missing:
        raise EscrowValidationError(
            f"Missing required fields for {trigger}: {', '.join(missing)}",
            details={"trigger": trigger, "fields": missing},
        )

    kwargs: dict[str, Any] = {}
    for name, value in data.items():
        coerce = _COERCERS.get(name, _as_str)
        kwargs[name] = coerce(name, value)

    return command_class(actor=actor, **kwargs)


__all__ = [
    "Actor",
    "AutoDeliver",
    "AutoRelease",
    "BuyerConfirmOtp",
    "COMMANDS",
    "Command",
    "ConfirmPayment",
    "CreateTransaction",
    "ExpireUnaccepted",
    "ExpireUnpaid",
    "FailPayment",
    "OpenDispute",
    "Release",
    "ResendOtp",
    "ResolveDisputeRefund",
    "ResolveDisputeRelease",
    "SellerAccept",
    "SellerReject",
    "SellerShip",
    "TransitionCommand",
]
