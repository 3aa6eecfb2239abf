"""
Delivery OTP issue and verification.

Codes are short numeric strings from ``secrets``. Only an HMAC-SHA256 of
salt + code (keyed with SECRET_KEY) is stored. Re-issuing overwrites the
stored hash, so at most one code is live per transaction.

Usage:
    from escrow.services import OtpService

    with transaction.atomic():
        code = OtpService.issue(txn)        # plaintext, deliver out of band

    with transaction.atomic():
        outcome = OtpService.verify(txn, "482913")
        if outcome is OtpVerification.VALID:
            ...

Note:
    Both calls lock the DeliveryOtp row and must run inside a transaction.
"""

from __future__ import annotations

import hashlib
import hmac
import secrets
from datetime import timedelta
from enum import Enum
from typing import TYPE_CHECKING

from django.conf import settings
from django.utils import timezone

from core.services import BaseService
from escrow.exceptions import EscrowValidationError
from escrow.models import DeliveryOtp

if TYPE_CHECKING:
    from datetime import datetime

    from escrow.models import EscrowTransaction


class OtpVerification(str, Enum):
    """Outcome of a verification attempt."""

    VALID = "VALID"
    INVALID = "INVALID"
    EXPIRED = "EXPIRED"
    LOCKED = "LOCKED"


class OtpService(BaseService):
    """
    Issues and checks delivery codes.

    Lockout:
        ESCROW_OTP_MAX_ATTEMPTS consecutive mismatches set ``locked_until``
        to now + ESCROW_OTP_COOLDOWN_MINUTES. While locked, verification
        returns LOCKED without comparing the code. The attempt counter
        restarts only after a lockout or a successful match; issuing a new
        code carries it over.
    """

    @staticmethod
    def code_length() -> int:
        return getattr(settings, "ESCROW_OTP_LENGTH", 6)

    @classmethod
    def generate_code(cls) -> str:
        """Random numeric code of ESCROW_OTP_LENGTH digits (leading zeros kept)."""
        length = cls.code_length()
        return f"{secrets.randbelow(10**length):0{length}d}"

    @staticmethod
    def hash_code(code: str, salt: str) -> str:
        return hmac.new(
            settings.SECRET_KEY.encode(),
            f"{salt}{code}".encode(),
            hashlib.sha256,
        ).hexdigest()

    @classmethod
    def validate_format(cls, code: str) -> None:
        """
        Reject malformed codes before anything is read or counted.

        Raises:
            EscrowValidationError: Not exactly ESCROW_OTP_LENGTH digits
        """
        length = cls.code_length()
        if not isinstance(code, str) or len(code) != length or not code.isdigit():
            raise EscrowValidationError(
                f"Delivery code must be {length} digits",
                details={"field": "code"},
            )

    @classmethod
    def issue(cls, txn: EscrowTransaction) -> str:
        """
        Issue a new code for the transaction, invalidating any earlier one.

        An active lockout and the failed-attempt count are both kept, so
        re-issuing cannot skip the cooldown or reset the count toward it.

        Returns:
            The plaintext code. It is not stored and must only be handed to
            the notification layer.
        """
        now = timezone.now()
        otp, _ = DeliveryOtp.objects.select_for_update().get_or_create(transaction=txn)

        code = cls.generate_code()
        otp.salt = secrets.token_hex(16)
        otp.code_hash = cls.hash_code(code, otp.salt)
        otp.expires_at = now + timedelta(hours=getattr(settings, "ESCROW_OTP_TTL_HOURS", 24))
        otp.consumed_at = None
        otp.issued_count += 1
        otp.save()

        cls.get_logger().info(
            "Delivery code issued",
            extra={
                "transaction_id": str(txn.id),
                "issued_count": otp.issued_count,
                "expires_at": otp.expires_at.isoformat(),
            },
        )
        return code

    @classmethod
    def verify(cls, txn: EscrowTransaction, code: str, now: datetime | None = None) -> OtpVerification:
        """
        Check a code against the live hash.

        Fails closed: no code, a consumed code and an expired code are all
        EXPIRED. A match consumes the code.
        """
        now = now or timezone.now()
        logger = cls.get_logger()
        log_context = {"transaction_id": str(txn.id)}

        otp = DeliveryOtp.objects.select_for_update().filter(transaction=txn).first()
        if otp is None:
            logger.info("No delivery code issued", extra=log_context)
            return OtpVerification.EXPIRED

        if otp.is_locked(now):
            logger.info(
                "Delivery code verification locked",
                extra={**log_context, "locked_until": otp.locked_until.isoformat()},
            )
            return OtpVerification.LOCKED

        if otp.consumed_at is not None or not otp.code_hash:
            return OtpVerification.EXPIRED

        if otp.expires_at is None or otp.expires_at <= now:
            otp.clear_code()
            otp.save(update_fields=["code_hash", "salt", "updated_at"])
            logger.info("Delivery code expired", extra=log_context)
            return OtpVerification.EXPIRED

        if hmac.compare_digest(cls.hash_code(code, otp.salt), otp.code_hash):
            otp.clear_code()
            otp.consumed_at = now
            otp.failed_attempts = 0
            otp.save(update_fields=["code_hash", "salt", "consumed_at", "failed_attempts", "updated_at"])
            logger.info("Delivery code verified", extra=log_context)
            return OtpVerification.VALID

        otp.failed_attempts += 1
        max_attempts = getattr(settings, "ESCROW_OTP_MAX_ATTEMPTS", 3)
        if otp.failed_attempts >= max_attempts:
            cooldown = getattr(settings, "ESCROW_OTP_COOLDOWN_MINUTES", 15)
            otp.locked_until = now + timedelta(minutes=cooldown)
            otp.failed_attempts = 0
            logger.warning(
                "Delivery code locked after repeated failures",
                extra={**log_context, "locked_until": otp.locked_until.isoformat()},
            )
        else:
            logger.info(
                "Delivery code mismatch",
                extra={**log_context, "failed_attempts": otp.failed_attempts},
            )
        otp.save(update_fields=["failed_attempts", "locked_until", "updated_at"])
        return OtpVerification.INVALID

    @classmethod
    def invalidate(cls, txn: EscrowTransaction) -> None:
        """Drop any outstanding code (delivery confirmed by other means)."""
        otp = DeliveryOtp.objects.select_for_update().filter(transaction=txn).first()
        if otp is not None and otp.code_hash:
            otp.clear_code()
            otp.save(update_fields=["code_hash", "salt", "updated_at"])

    @classmethod
    def clear_expired(cls, now: datetime | None = None) -> int:
        """
        Drop the hash of every code past its expiry.

        Run by the deadline sweep so an expired code does not linger until
        someone next tries it.

        Returns:
            Number of codes cleared
        """
        now = now or timezone.now()
        cleared = (
            DeliveryOtp.objects.filter(expires_at__lte=now)
            .exclude(code_hash="")
            .update(code_hash="", salt="", updated_at=now)
        )
        if cleared:
            cls.get_logger().info("Expired delivery codes cleared", extra={"count": cleared})
        return cleared
