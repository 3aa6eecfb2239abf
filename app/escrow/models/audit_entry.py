"""
AuditEntry model: immutable record of every applied transition.
"""

from __future__ import annotations

from django.db import models

from core.model_mixins import UUIDPrimaryKeyMixin
from core.models import BaseModel
from escrow.state_machines import ActorRole, TransactionStatus


class AuditEntry(UUIDPrimaryKeyMixin, BaseModel):
    """
    Who did what to a transaction, and when.

    Rows are written once and never updated; ``save()`` on an existing
    row raises.
    """

    transaction = models.ForeignKey(
        "escrow.EscrowTransaction",
        on_delete=models.PROTECT,
        related_name="audit_entries",
        help_text="Transaction the entry belongs to",
    )

    actor_id = models.CharField(
        max_length=64,
        null=True,
        blank=True,
        help_text="Identifier of the acting user; empty for system triggers",
    )

    actor_role = models.CharField(
        max_length=20,
        choices=ActorRole.choices,
        help_text="Role the actor acted in",
    )

    trigger = models.CharField(
        max_length=50,
        db_index=True,
        help_text="Trigger name, e.g. seller_accept",
    )

    from_status = models.CharField(
        max_length=20,
        choices=TransactionStatus.choices,
        blank=True,
        default="",
        help_text="Status before the transition (blank on creation)",
    )

    to_status = models.CharField(
        max_length=20,
        choices=TransactionStatus.choices,
        help_text="Status after the transition",
    )

    details = models.JSONField(
        default=dict,
        blank=True,
        help_text="Trigger-specific context (never secrets)",
    )

    class Meta:
        ordering = ["created_at"]
        verbose_name = "Audit Entry"
        verbose_name_plural = "Audit Entries"
        indexes = [
            models.Index(fields=["transaction", "created_at"], name="escrow_audi_transac_0b8e62_idx"),
        ]

    def __str__(self) -> str:
        return f"AuditEntry({self.trigger}: {self.from_status or '-'} -> {self.to_status})"

    def save(self, *args, **kwargs):
        if not self._state.adding:
            raise ValueError("Audit entries are immutable")
        super().save(*args, **kwargs)

    def delete(self, *args, **kwargs):
        raise ValueError("Audit entries are immutable")
