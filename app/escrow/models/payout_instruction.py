"""
PayoutInstruction model: a fund movement the platform owes.

Created by the state machine in the same database transaction as the
terminal transition that decided it, then owned by the payout dispatcher
until it is SENT or FAILED.

Usage:
    from escrow.models import PayoutInstruction

    instruction = PayoutInstruction.objects.create(
        transaction=txn,
        kind=InstructionKind.PAYOUT,
        payout_method=method,
        destination=method.account_number,
        amount=txn.amount,
        currency=txn.currency,
    )

    instruction.mark_sent(provider_reference="AG_20191219_000043fdf61864fe9ff5")
    instruction.save()
"""

from __future__ import annotations

from django.db import models
from django.db.models import F
from django.utils import timezone

from django_fsm import FSMField, transition

from core.model_mixins import UUIDPrimaryKeyMixin
from core.models import BaseModel
from escrow.state_machines import InstructionKind, InstructionStatus


class PayoutInstruction(UUIDPrimaryKeyMixin, BaseModel):
    """
    A payout to the seller or a refund to the buyer.

    State Flow:
        PENDING -> SENT
        PENDING -> FAILED (permanent error or attempts exhausted)

    A failed attempt that can still be retried leaves the instruction
    PENDING with a later ``next_attempt_at``. The transaction's status is
    never rolled back because of a payout failure.

    Note:
        The one-to-one link to the transaction means a transaction can
        never carry both a payout and a refund.
    """

    # ==========================================================================
    # Relationships
    # ==========================================================================

    transaction = models.OneToOneField(
        "escrow.EscrowTransaction",
        on_delete=models.PROTECT,
        related_name="instruction",
        help_text="Transaction whose funds this instruction moves",
    )

    kind = models.CharField(
        max_length=10,
        choices=InstructionKind.choices,
        help_text="PAYOUT to the seller or REFUND to the buyer",
    )

    payout_method = models.ForeignKey(
        "escrow.PayoutMethod",
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name="instructions",
        help_text="Seller payout method (payouts only)",
    )

    destination = models.CharField(
        max_length=50,
        help_text="Snapshot of the receiving MSISDN or account",
    )

    # ==========================================================================
    # Amount & Currency
    # ==========================================================================

    amount = models.PositiveBigIntegerField(
        help_text="Amount to move in whole currency units",
    )

    currency = models.CharField(
        max_length=3,
        default="KES",
        help_text="ISO 4217 currency code (uppercase)",
    )

    # ==========================================================================
    # State
    # ==========================================================================

    status = FSMField(
        default=InstructionStatus.PENDING,
        choices=InstructionStatus.choices,
        db_index=True,
        protected=True,
        help_text="Current dispatch state (managed by FSM)",
    )

    version = models.PositiveIntegerField(
        default=1,
        help_text="Version for optimistic locking - incremented on each save",
    )

    # ==========================================================================
    # Retry Tracking
    # ==========================================================================

    attempt_count = models.PositiveSmallIntegerField(
        default=0,
        help_text="Number of provider calls made",
    )

    next_attempt_at = models.DateTimeField(
        null=True,
        blank=True,
        db_index=True,
        help_text="Earliest time the dispatcher may try again",
    )

    last_attempt_at = models.DateTimeField(
        null=True,
        blank=True,
        help_text="When the provider was last called",
    )

    last_error = models.TextField(
        blank=True,
        default="",
        help_text="Error from the most recent failed attempt",
    )

    requires_manual_intervention = models.BooleanField(
        default=False,
        db_index=True,
        help_text="Set when retries are exhausted or the provider refused permanently",
    )

    # ==========================================================================
    # Provider
    # ==========================================================================

    provider_reference = models.CharField(
        max_length=100,
        blank=True,
        default="",
        help_text="Provider conversation ID of the accepted request",
    )

    sent_at = models.DateTimeField(
        null=True,
        blank=True,
        help_text="When the provider accepted the disbursement",
    )

    failed_at = models.DateTimeField(
        null=True,
        blank=True,
        help_text="When the instruction was given up on",
    )

    # ==========================================================================
    # Meta & Methods
    # ==========================================================================

    class Meta:
        ordering = ["-created_at"]
        verbose_name = "Payout Instruction"
        verbose_name_plural = "Payout Instructions"
        indexes = [
            models.Index(fields=["status", "next_attempt_at"], name="escrow_payo_status_5e21f8_idx"),
        ]
        constraints = [
            models.CheckConstraint(
                check=models.Q(amount__gt=0),
                name="payout_instruction_amount_positive",
            ),
        ]

    def __str__(self) -> str:
        return f"PayoutInstruction({self.id}, {self.kind}, {self.status}, {self.amount} {self.currency})"

    def save(self, *args, **kwargs):
        """Save with version auto-increment for optimistic locking."""
        is_update = self.pk and not self._state.adding and not kwargs.get("force_insert", False)
        if is_update:
            self.version = F("version") + 1
            update_fields = kwargs.get("update_fields")
            if update_fields is not None:
                kwargs["update_fields"] = {*update_fields, "version", "updated_at"}
        super().save(*args, **kwargs)
        if is_update:
            self.refresh_from_db(fields=["version"])

    @property
    def is_due(self) -> bool:
        return self.status == InstructionStatus.PENDING and (
            self.next_attempt_at is None or self.next_attempt_at <= timezone.now()
        )

    # ==========================================================================
    # State Transitions (django-fsm)
    # ==========================================================================

    @transition(
        field=status,
        source=InstructionStatus.PENDING,
        target=InstructionStatus.SENT,
    )
    def mark_sent(self, provider_reference: str = ""):
        """
        Provider accepted the disbursement.

        Transition: PENDING -> SENT
        """
        self.sent_at = timezone.now()
        self.provider_reference = provider_reference or ""
        self.next_attempt_at = None
        self.last_error = ""

    @transition(
        field=status,
        source=InstructionStatus.PENDING,
        target=InstructionStatus.FAILED,
    )
    def mark_failed(self, error: str):
        """
        Give up and surface for manual intervention.

        Transition: PENDING -> FAILED
        """
        self.failed_at = timezone.now()
        self.last_error = error
        self.next_attempt_at = None
        self.requires_manual_intervention = True
