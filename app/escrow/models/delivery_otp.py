"""
DeliveryOtp model: the outstanding delivery code of a shipped transaction.

Kept apart from EscrowTransaction so failed attempts and lockouts do not
bump the transaction version.
"""

from __future__ import annotations

from django.db import models
from django.utils import timezone

from core.model_mixins import UUIDPrimaryKeyMixin
from core.models import BaseModel


class DeliveryOtp(UUIDPrimaryKeyMixin, BaseModel):
    """
    Salted hash and attempt state for a transaction's delivery code.

    At most one code is live per transaction: re-issuing overwrites the
    hash, salt and expiry in place. The plaintext is never stored.

    Fields:
        code_hash: HMAC-SHA256 hex digest, blank once consumed or expired
        salt: Random per-issue salt
        expires_at: When the current code stops being accepted
        consumed_at: When the code was successfully used
        failed_attempts: Consecutive mismatches since the last lockout
        locked_until: Verification refused until this time
        issued_count: How many codes have been issued
    """

    transaction = models.OneToOneField(
        "escrow.EscrowTransaction",
        on_delete=models.PROTECT,
        related_name="delivery_otp",
        help_text="Transaction this code confirms delivery for",
    )

    code_hash = models.CharField(
        max_length=64,
        blank=True,
        default="",
        help_text="HMAC-SHA256 of the salted code; cleared on use or expiry",
    )

    salt = models.CharField(
        max_length=32,
        blank=True,
        default="",
        help_text="Random salt mixed into the hash",
    )

    expires_at = models.DateTimeField(
        null=True,
        blank=True,
        help_text="When the current code expires",
    )

    consumed_at = models.DateTimeField(
        null=True,
        blank=True,
        help_text="When the code was successfully verified",
    )

    failed_attempts = models.PositiveSmallIntegerField(
        default=0,
        help_text="Consecutive failed verifications",
    )

    locked_until = models.DateTimeField(
        null=True,
        blank=True,
        help_text="Verification is refused until this time",
    )

    issued_count = models.PositiveSmallIntegerField(
        default=0,
        help_text="Number of codes issued for this transaction",
    )

    class Meta:
        verbose_name = "Delivery OTP"
        verbose_name_plural = "Delivery OTPs"

    def __str__(self) -> str:
        return f"DeliveryOtp({self.transaction_id}, issued={self.issued_count})"

    @property
    def is_live(self) -> bool:
        """A code is live while it has a hash and has not expired."""
        return bool(self.code_hash) and self.expires_at is not None and self.expires_at > timezone.now()

    def is_locked(self, now=None) -> bool:
        now = now or timezone.now()
        return self.locked_until is not None and self.locked_until > now

    def clear_code(self) -> None:
        """
        Forget the current code.

        Note: Does not save - caller must save after calling.
        """
        self.code_hash = ""
        self.salt = ""
