"""
EscrowTransaction model: the escrow lifecycle of a single purchase.

The transaction is owned by neither party. It references the buyer and
the seller, and is mutated exclusively through the django-fsm transitions
below, driven by EscrowService in response to gateway callbacks, seller
actions, buyer actions and deadline sweeps.

Usage:
    from escrow.models import EscrowTransaction
    from escrow.state_machines import TransactionStatus

    txn = EscrowTransaction.objects.create(
        buyer=buyer,
        seller=seller,
        amount=5000,
        currency="KES",
        expires_at=timezone.now() + timedelta(hours=24),
    )

    # Transitions are plain method calls followed by save()
    txn.confirm_payment(receipt_number="QK12ABC", acceptance_deadline=deadline)
    txn.save()  # version 1 -> 2

Note:
    ``status`` is a protected FSMField. Re-read instances with
    ``EscrowTransaction.objects.get()`` rather than ``refresh_from_db()``.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from django.conf import settings
from django.db import models
from django.db.models import F
from django.utils import timezone

from django_fsm import FSMField, transition

from core.model_mixins import UUIDPrimaryKeyMixin
from core.models import BaseModel
from escrow.exceptions import EscrowValidationError
from escrow.state_machines import TERMINAL_STATUSES, TransactionStatus

if TYPE_CHECKING:
    from datetime import date, datetime


class EscrowTransaction(UUIDPrimaryKeyMixin, BaseModel):
    """
    A buyer payment held in custody until delivery is confirmed.

    State Flow:
        PENDING -> ESCROWED -> ACCEPTED -> SHIPPED -> DELIVERED -> COMPLETED
        DELIVERED -> DISPUTED -> COMPLETED / REFUNDED
        ESCROWED/ACCEPTED -> REJECTED
        PENDING/ESCROWED -> CANCELLED

    Deadlines:
        expires_at: payment deadline while PENDING, acceptance deadline
            while ESCROWED, shipping deadline while ACCEPTED
        auto_deliver_at: carrier auto-confirm deadline while SHIPPED
        auto_release_at: end of the dispute window while DELIVERED; kept
            but ignored once DISPUTED

    Note:
        Every save increments ``version``. Callers that read a version and
        act on it later go through check_version() so concurrent triggers
        on the same transaction cannot both apply.
    """

    # ==========================================================================
    # Parties
    # ==========================================================================

    buyer = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.PROTECT,
        related_name="purchases",
        help_text="User paying into escrow",
    )

    seller = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.PROTECT,
        related_name="sales",
        help_text="User receiving the funds on release",
    )

    # ==========================================================================
    # Item
    # ==========================================================================

    item_name = models.CharField(
        max_length=255,
        blank=True,
        default="",
        help_text="Short name of the item being bought",
    )

    description = models.TextField(
        blank=True,
        default="",
        help_text="Free-form description supplied by the buyer",
    )

    # ==========================================================================
    # Amount & Currency
    # ==========================================================================

    amount = models.PositiveBigIntegerField(
        help_text="Amount in whole currency units; immutable once paid",
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
        default=TransactionStatus.PENDING,
        choices=TransactionStatus.choices,
        db_index=True,
        protected=True,
        help_text="Current escrow state (managed by FSM)",
    )

    version = models.PositiveIntegerField(
        default=1,
        help_text="Version for optimistic locking - incremented on each save",
    )

    last_transition_at = models.DateTimeField(
        null=True,
        blank=True,
        help_text="When the last state transition was applied",
    )

    # ==========================================================================
    # Payment Provider
    # ==========================================================================

    payer_phone = models.CharField(
        max_length=15,
        blank=True,
        default="",
        help_text="MSISDN prompted for payment (2547XXXXXXXX)",
    )

    provider_reference = models.CharField(
        max_length=100,
        null=True,
        blank=True,
        unique=True,
        help_text="Provider checkout request ID, set once initiation succeeds",
    )

    provider_merchant_reference = models.CharField(
        max_length=100,
        blank=True,
        default="",
        help_text="Provider merchant request ID",
    )

    provider_receipt = models.CharField(
        max_length=50,
        blank=True,
        default="",
        help_text="Provider receipt number of the confirmed payment",
    )

    payment_initiated_at = models.DateTimeField(
        null=True,
        blank=True,
        help_text="When the payment prompt was sent to the payer",
    )

    # ==========================================================================
    # Deadlines
    # ==========================================================================

    expires_at = models.DateTimeField(
        null=True,
        blank=True,
        db_index=True,
        help_text="Payment, acceptance or shipping deadline depending on status",
    )

    auto_deliver_at = models.DateTimeField(
        null=True,
        blank=True,
        db_index=True,
        help_text="When a shipped transaction is marked delivered without OTP",
    )

    auto_release_at = models.DateTimeField(
        null=True,
        blank=True,
        db_index=True,
        help_text="When a delivered transaction is released without dispute",
    )

    # ==========================================================================
    # Shipping
    # ==========================================================================

    courier_name = models.CharField(
        max_length=100,
        blank=True,
        default="",
        help_text="Courier handling the delivery",
    )

    tracking_number = models.CharField(
        max_length=100,
        blank=True,
        default="",
        help_text="Courier tracking number",
    )

    estimated_delivery_date = models.DateField(
        null=True,
        blank=True,
        help_text="Seller's estimate of the delivery date",
    )

    shipping_notes = models.TextField(
        blank=True,
        default="",
        help_text="Free-form notes from the seller about the shipment",
    )

    delivery_proof_urls = models.JSONField(
        default=list,
        blank=True,
        help_text="Seller-supplied proof of delivery URLs (informational only)",
    )

    # ==========================================================================
    # Payout
    # ==========================================================================

    payout_method = models.ForeignKey(
        "escrow.PayoutMethod",
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name="+",
        help_text="Seller payout method snapshotted at release time",
    )

    # ==========================================================================
    # Reasons
    # ==========================================================================

    rejection_reason = models.TextField(
        blank=True,
        default="",
        help_text="Why the seller declined",
    )

    cancellation_reason = models.TextField(
        blank=True,
        default="",
        help_text="Why the transaction was cancelled",
    )

    dispute_reason = models.TextField(
        blank=True,
        default="",
        help_text="Buyer's reason for opening a dispute",
    )

    # ==========================================================================
    # Manual Review
    # ==========================================================================

    requires_manual_intervention = models.BooleanField(
        default=False,
        db_index=True,
        help_text="Set when the provider reported a payment the engine cannot reconcile",
    )

    review_reason = models.TextField(
        blank=True,
        default="",
        help_text="Why the transaction was held for manual review",
    )

    # ==========================================================================
    # State Timestamps
    # ==========================================================================

    escrowed_at = models.DateTimeField(null=True, blank=True, help_text="When payment was confirmed")
    accepted_at = models.DateTimeField(null=True, blank=True, help_text="When the seller accepted")
    shipped_at = models.DateTimeField(null=True, blank=True, help_text="When the seller shipped")
    delivered_at = models.DateTimeField(null=True, blank=True, help_text="When delivery was confirmed")
    disputed_at = models.DateTimeField(null=True, blank=True, help_text="When a dispute was opened")
    completed_at = models.DateTimeField(null=True, blank=True, help_text="When funds were released")
    refunded_at = models.DateTimeField(null=True, blank=True, help_text="When a dispute ended in refund")
    rejected_at = models.DateTimeField(null=True, blank=True, help_text="When the seller declined")
    cancelled_at = models.DateTimeField(null=True, blank=True, help_text="When the transaction was cancelled")

    # ==========================================================================
    # Meta & Methods
    # ==========================================================================

    class Meta:
        ordering = ["-created_at"]
        verbose_name = "Escrow Transaction"
        verbose_name_plural = "Escrow Transactions"
        indexes = [
            models.Index(fields=["status", "expires_at"], name="escrow_escr_status_8c1f2a_idx"),
            models.Index(fields=["status", "auto_deliver_at"], name="escrow_escr_status_4b7d10_idx"),
            models.Index(fields=["status", "auto_release_at"], name="escrow_escr_status_e92a55_idx"),
            models.Index(fields=["buyer", "status"], name="escrow_escr_buyer_i_3f0c7e_idx"),
            models.Index(fields=["seller", "status"], name="escrow_escr_seller__a51b9d_idx"),
        ]
        constraints = [
            models.CheckConstraint(
                check=models.Q(amount__gt=0),
                name="escrow_transaction_amount_positive",
            ),
        ]

    def __str__(self) -> str:
        return f"EscrowTransaction({self.id}, {self.status}, {self.amount} {self.currency})"

    @classmethod
    def from_db(cls, db, field_names, values):
        instance = super().from_db(db, field_names, values)
        instance._loaded_amount = instance.__dict__.get("amount")
        instance._loaded_currency = instance.__dict__.get("currency")
        instance._loaded_status = instance.__dict__.get("status")
        return instance

    def save(self, *args, **kwargs):
        """
        Save with version auto-increment for optimistic locking.

        Refuses to persist a changed amount or currency once the loaded
        row had left PENDING.
        """
        loaded_status = getattr(self, "_loaded_status", None)
        if loaded_status not in (None, TransactionStatus.PENDING) and (
            self.amount != self._loaded_amount or self.currency != self._loaded_currency
        ):
            raise EscrowValidationError(
                "Amount and currency are fixed once payment is confirmed",
                details={"transaction_id": str(self.pk), "status": loaded_status},
            )

        is_update = self.pk and not self._state.adding and not kwargs.get("force_insert", False)
        if is_update:
            self.version = F("version") + 1
            update_fields = kwargs.get("update_fields")
            if update_fields is not None:
                kwargs["update_fields"] = {*update_fields, "version", "updated_at"}
        super().save(*args, **kwargs)
        if is_update:
            self.refresh_from_db(fields=["version"])
        self._loaded_amount = self.amount
        self._loaded_currency = self.currency
        self._loaded_status = self.status

    # ==========================================================================
    # Properties
    # ==========================================================================

    @property
    def is_terminal(self) -> bool:
        """Terminal states have no outgoing edges."""
        return self.status in TERMINAL_STATUSES

    @property
    def delivery_otp_expires_at(self) -> datetime | None:
        """Expiry of the outstanding delivery code, if one is live."""
        otp = getattr(self, "delivery_otp", None)
        if otp is None or not otp.is_live:
            return None
        return otp.expires_at

    def flag_for_review(self, reason: str) -> bool:
        """
        Hold the transaction for manual intervention.

        Written as a queryset update, so the version does not move.

        Returns:
            False if the transaction was already flagged.
        """
        now = timezone.now()
        updated = EscrowTransaction.objects.filter(pk=self.pk, requires_manual_intervention=False).update(
            requires_manual_intervention=True,
            review_reason=reason,
            updated_at=now,
        )
        if updated:
            self.requires_manual_intervention = True
            self.review_reason = reason
        return bool(updated)

    def _stamp(self, field_name: str) -> datetime:
        now = timezone.now()
        setattr(self, field_name, now)
        self.last_transition_at = now
        return now

    # ==========================================================================
    # State Transitions (django-fsm)
    # ==========================================================================

    @transition(
        field=status,
        source=TransactionStatus.PENDING,
        target=TransactionStatus.ESCROWED,
    )
    def confirm_payment(self, receipt_number: str, acceptance_deadline: datetime):
        """
        Provider confirmed the funds.

        Transition: PENDING -> ESCROWED
        """
        self._stamp("escrowed_at")
        self.provider_receipt = receipt_number or ""
        self.expires_at = acceptance_deadline

    @transition(
        field=status,
        source=TransactionStatus.PENDING,
        target=TransactionStatus.CANCELLED,
    )
    def fail_payment(self, reason: str):
        """
        Provider reported a terminal payment failure. No funds were held.

        Transition: PENDING -> CANCELLED
        """
        self._stamp("cancelled_at")
        self.cancellation_reason = reason or "Payment failed"
        self.expires_at = None

    @transition(
        field=status,
        source=TransactionStatus.PENDING,
        target=TransactionStatus.CANCELLED,
    )
    def expire_unpaid(self):
        """
        Payment window elapsed without confirmation.

        Transition: PENDING -> CANCELLED
        """
        self._stamp("cancelled_at")
        self.cancellation_reason = "Payment window elapsed"
        self.expires_at = None

    @transition(
        field=status,
        source=TransactionStatus.ESCROWED,
        target=TransactionStatus.ACCEPTED,
    )
    def accept(self, shipping_deadline: datetime):
        """
        Seller agreed to fulfil the order.

        Transition: ESCROWED -> ACCEPTED
        """
        self._stamp("accepted_at")
        self.expires_at = shipping_deadline

    @transition(
        field=status,
        source=[TransactionStatus.ESCROWED, TransactionStatus.ACCEPTED],
        target=TransactionStatus.REJECTED,
    )
    def reject(self, reason: str = ""):
        """
        Seller declined. A refund instruction follows.

        Transition: ESCROWED/ACCEPTED -> REJECTED
        """
        self._stamp("rejected_at")
        self.rejection_reason = reason
        self.expires_at = None

    @transition(
        field=status,
        source=TransactionStatus.ESCROWED,
        target=TransactionStatus.CANCELLED,
    )
    def expire_unaccepted(self):
        """
        Seller never acted within the acceptance window.

        Transition: ESCROWED -> CANCELLED
        """
        self._stamp("cancelled_at")
        self.cancellation_reason = "Seller did not accept in time"
        self.expires_at = None

    @transition(
        field=status,
        source=TransactionStatus.ACCEPTED,
        target=TransactionStatus.SHIPPED,
    )
    def ship(
        self,
        auto_deliver_at: datetime,
        auto_release_at: datetime,
        courier_name: str = "",
        tracking_number: str = "",
        estimated_delivery_date: date | None = None,
        shipping_notes: str = "",
        delivery_proof_urls: list[str] | None = None,
    ):
        """
        Seller handed the item to a courier.

        Transition: ACCEPTED -> SHIPPED
        """
        self._stamp("shipped_at")
        self.expires_at = None
        self.auto_deliver_at = auto_deliver_at
        self.auto_release_at = auto_release_at
        self.courier_name = courier_name
        self.tracking_number = tracking_number
        self.estimated_delivery_date = estimated_delivery_date
        self.shipping_notes = shipping_notes
        self.delivery_proof_urls = list(delivery_proof_urls or [])

    @transition(
        field=status,
        source=TransactionStatus.SHIPPED,
        target=TransactionStatus.DELIVERED,
    )
    def mark_delivered(self, minimum_release_at: datetime):
        """
        Buyer confirmed receipt, or the auto-deliver deadline passed.

        Transition: SHIPPED -> DELIVERED

        The dispute window never ends before ``minimum_release_at``.
        """
        self._stamp("delivered_at")
        if self.auto_release_at is None or self.auto_release_at < minimum_release_at:
            self.auto_release_at = minimum_release_at

    @transition(
        field=status,
        source=TransactionStatus.DELIVERED,
        target=TransactionStatus.COMPLETED,
    )
    def release(self, payout_method):
        """
        Release funds to the seller.

        Transition: DELIVERED -> COMPLETED
        """
        self._stamp("completed_at")
        self.payout_method = payout_method

    @transition(
        field=status,
        source=TransactionStatus.DELIVERED,
        target=TransactionStatus.DISPUTED,
    )
    def open_dispute(self, reason: str = ""):
        """
        Buyer or a fraud signal contested the delivery.

        Transition: DELIVERED -> DISPUTED

        ``auto_release_at`` is left as-is; the sweep only releases
        DELIVERED transactions so it stays frozen.
        """
        self._stamp("disputed_at")
        self.dispute_reason = reason

    @transition(
        field=status,
        source=TransactionStatus.DISPUTED,
        target=TransactionStatus.COMPLETED,
    )
    def resolve_release(self, payout_method):
        """
        Adjudicator ruled for the seller.

        Transition: DISPUTED -> COMPLETED
        """
        self._stamp("completed_at")
        self.payout_method = payout_method

    @transition(
        field=status,
        source=TransactionStatus.DISPUTED,
        target=TransactionStatus.REFUNDED,
    )
    def resolve_refund(self):
        """
        Adjudicator ruled for the buyer.

        Transition: DISPUTED -> REFUNDED
        """
        self._stamp("refunded_at")
