"""
IdempotencyRecord model: the ledger of provider events.

Every payment event, whether it arrived by webhook or by status poll, is
keyed by (provider_reference, event_type). The unique constraint is what
guarantees a confirmation is applied at most once.

Usage:
    from escrow.models import IdempotencyRecord

    record, created = IdempotencyRecord.objects.get_or_create(
        provider_reference="ws_CO_191220191020363925",
        event_type=GatewayEventType.PAYMENT_CONFIRMED,
        defaults={"payload": payload, "source": EventSource.WEBHOOK},
    )
    if not created and record.is_final:
        return  # replay
"""

from __future__ import annotations

from django.conf import settings
from django.db import models
from django.utils import timezone

from core.model_mixins import UUIDPrimaryKeyMixin
from core.models import BaseModel
from escrow.state_machines import (
    EventSource,
    GatewayEventType,
    IdempotencyRecordStatus,
)


class IdempotencyRecord(UUIDPrimaryKeyMixin, BaseModel):
    """
    Tracks provider events for exactly-once application.

    Processing Flow:
        1. Callback verified (or poll answered), event normalized
        2. get_or_create on (provider_reference, event_type)
        3. If the record is PROCESSED or REJECTED -> replay, no-op
        4. Lock the record, set PROCESSING
        5. Apply through EscrowService in the same DB transaction
        6. PROCESSED on success, REJECTED when a guard refused it,
           FAILED otherwise (picked up by the retry worker)

    Note:
        Keys are never deleted or rewritten. A poll and a webhook for the
        same outcome share one record.
    """

    # ==========================================================================
    # Event Identification
    # ==========================================================================

    provider_reference = models.CharField(
        max_length=100,
        db_index=True,
        help_text="Provider checkout request ID the event refers to",
    )

    event_type = models.CharField(
        max_length=50,
        choices=GatewayEventType.choices,
        help_text="Normalized event type",
    )

    source = models.CharField(
        max_length=10,
        choices=EventSource.choices,
        default=EventSource.WEBHOOK,
        help_text="Path that first delivered the event",
    )

    payload = models.JSONField(
        default=dict,
        help_text="Normalized event as recorded (amount, receipt, result code)",
    )

    # ==========================================================================
    # Processing Status
    # ==========================================================================

    status = models.CharField(
        max_length=20,
        choices=IdempotencyRecordStatus.choices,
        default=IdempotencyRecordStatus.PENDING,
        db_index=True,
        help_text="Current processing status",
    )

    processed_at = models.DateTimeField(
        null=True,
        blank=True,
        help_text="When the event reached a final status",
    )

    error_message = models.TextField(
        null=True,
        blank=True,
        help_text="Why processing failed or was rejected",
    )

    retry_count = models.PositiveSmallIntegerField(
        default=0,
        help_text="Number of processing attempts",
    )

    # ==========================================================================
    # Meta & Methods
    # ==========================================================================

    class Meta:
        ordering = ["-created_at"]
        verbose_name = "Idempotency Record"
        verbose_name_plural = "Idempotency Records"
        constraints = [
            models.UniqueConstraint(
                fields=["provider_reference", "event_type"],
                name="unique_provider_event",
            ),
        ]
        indexes = [
            models.Index(fields=["status", "created_at"], name="escrow_idem_status_2d6e0b_idx"),
            models.Index(fields=["status", "retry_count"], name="escrow_idem_status_7a93c4_idx"),
        ]

    def __str__(self) -> str:
        return f"IdempotencyRecord({self.provider_reference}, {self.event_type})"

    @property
    def is_final(self) -> bool:
        """PROCESSED and REJECTED records are never applied again."""
        return self.status in (
            IdempotencyRecordStatus.PROCESSED,
            IdempotencyRecordStatus.REJECTED,
        )

    @property
    def can_retry(self) -> bool:
        max_retries = getattr(settings, "ESCROW_EVENT_MAX_RETRIES", 5)
        return self.status == IdempotencyRecordStatus.FAILED and self.retry_count < max_retries

    def mark_processing(self) -> None:
        """
        Mark event as being processed.

        Note: Does not save - caller must save after calling.
        """
        self.status = IdempotencyRecordStatus.PROCESSING
        self.retry_count += 1

    def mark_processed(self) -> None:
        """
        Mark event as applied.

        Note: Does not save - caller must save after calling.
        """
        self.status = IdempotencyRecordStatus.PROCESSED
        self.processed_at = timezone.now()
        self.error_message = None

    def mark_rejected(self, reason: str) -> None:
        """
        Mark event as evaluated and refused by a guard.

        Note: Does not save - caller must save after calling.
        """
        self.status = IdempotencyRecordStatus.REJECTED
        self.processed_at = timezone.now()
        self.error_message = reason

    def mark_failed(self, error_message: str) -> None:
        """
        Mark event as failed with error message.

        Note: Does not save - caller must save after calling.
        """
        self.status = IdempotencyRecordStatus.FAILED
        self.error_message = error_message
