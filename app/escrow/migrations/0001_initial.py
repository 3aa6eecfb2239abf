import uuid

import django.db.models.deletion
import django_fsm
from django.conf import settings
from django.db import migrations, models


def _id():
    return (
        "id",
        models.UUIDField(
            default=uuid.uuid4,
            editable=False,
            help_text="Unique identifier for this record",
            primary_key=True,
            serialize=False,
        ),
    )


def _timestamps():
    return [
        (
            "created_at",
            models.DateTimeField(
                auto_now_add=True,
                db_index=True,
                help_text="Timestamp when this record was created",
            ),
        ),
        (
            "updated_at",
            models.DateTimeField(
                auto_now=True,
                help_text="Timestamp when this record was last modified",
            ),
        ),
    ]


TRANSACTION_STATUS_CHOICES = [
    ("PENDING", "Pending"),
    ("ESCROWED", "Escrowed"),
    ("ACCEPTED", "Accepted"),
    ("SHIPPED", "Shipped"),
    ("DELIVERED", "Delivered"),
    ("DISPUTED", "Disputed"),
    ("COMPLETED", "Completed"),
    ("REFUNDED", "Refunded"),
    ("REJECTED", "Rejected"),
    ("CANCELLED", "Cancelled"),
]


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.CreateModel(
            name="PayoutMethod",
            fields=[
                _id(),
                *_timestamps(),
                (
                    "method_type",
                    models.CharField(
                        choices=[("MOBILE_MONEY", "Mobile money"), ("BANK", "Bank account")],
                        default="MOBILE_MONEY",
                        help_text="Kind of disbursement target",
                        max_length=20,
                    ),
                ),
                ("provider", models.CharField(default="MPESA", help_text="Payment rail or bank name", max_length=50)),
                (
                    "account_number",
                    models.CharField(help_text="MSISDN (2547XXXXXXXX) or bank account number", max_length=50),
                ),
                (
                    "account_name",
                    models.CharField(
                        blank=True, default="", help_text="Name the account is registered to", max_length=255
                    ),
                ),
                ("is_default", models.BooleanField(default=False, help_text="Whether releases go to this method")),
                (
                    "is_active",
                    models.BooleanField(
                        default=True, help_text="Inactive methods are kept for history but never used"
                    ),
                ),
                (
                    "owner",
                    models.ForeignKey(
                        help_text="Seller who owns this payout method",
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="payout_methods",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
            ],
            options={
                "verbose_name": "Payout Method",
                "verbose_name_plural": "Payout Methods",
                "ordering": ["-is_default", "-created_at"],
                "constraints": [
                    models.UniqueConstraint(
                        condition=models.Q(("is_active", True), ("is_default", True)),
                        fields=("owner",),
                        name="unique_active_default_payout_method",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="EscrowTransaction",
            fields=[
                _id(),
                *_timestamps(),
                (
                    "item_name",
                    models.CharField(
                        blank=True, default="", help_text="Short name of the item being bought", max_length=255
                    ),
                ),
                (
                    "description",
                    models.TextField(blank=True, default="", help_text="Free-form description supplied by the buyer"),
                ),
                (
                    "amount",
                    models.PositiveBigIntegerField(help_text="Amount in whole currency units; immutable once paid"),
                ),
                (
                    "currency",
                    models.CharField(default="KES", help_text="ISO 4217 currency code (uppercase)", max_length=3),
                ),
                (
                    "status",
                    django_fsm.FSMField(
                        choices=TRANSACTION_STATUS_CHOICES,
                        db_index=True,
                        default="PENDING",
                        help_text="Current escrow state (managed by FSM)",
                        max_length=50,
                        protected=True,
                    ),
                ),
                (
                    "version",
                    models.PositiveIntegerField(
                        default=1, help_text="Version for optimistic locking - incremented on each save"
                    ),
                ),
                (
                    "last_transition_at",
                    models.DateTimeField(
                        blank=True, null=True, help_text="When the last state transition was applied"
                    ),
                ),
                (
                    "payer_phone",
                    models.CharField(
                        blank=True,
                        default="",
                        help_text="MSISDN prompted for payment (2547XXXXXXXX)",
                        max_length=15,
                    ),
                ),
                (
                    "provider_reference",
                    models.CharField(
                        blank=True,
                        help_text="Provider checkout request ID, set once initiation succeeds",
                        max_length=100,
                        null=True,
                        unique=True,
                    ),
                ),
                (
                    "provider_merchant_reference",
                    models.CharField(
                        blank=True, default="", help_text="Provider merchant request ID", max_length=100
                    ),
                ),
                (
                    "provider_receipt",
                    models.CharField(
                        blank=True,
                        default="",
                        help_text="Provider receipt number of the confirmed payment",
                        max_length=50,
                    ),
                ),
                (
                    "payment_initiated_at",
                    models.DateTimeField(
                        blank=True, null=True, help_text="When the payment prompt was sent to the payer"
                    ),
                ),
                (
                    "expires_at",
                    models.DateTimeField(
                        blank=True,
                        db_index=True,
                        null=True,
                        help_text="Payment, acceptance or shipping deadline depending on status",
                    ),
                ),
                (
                    "auto_deliver_at",
                    models.DateTimeField(
                        blank=True,
                        db_index=True,
                        null=True,
                        help_text="When a shipped transaction is marked delivered without OTP",
                    ),
                ),
                (
                    "auto_release_at",
                    models.DateTimeField(
                        blank=True,
                        db_index=True,
                        null=True,
                        help_text="When a delivered transaction is released without dispute",
                    ),
                ),
                (
                    "courier_name",
                    models.CharField(blank=True, default="", help_text="Courier handling the delivery", max_length=100),
                ),
                (
                    "tracking_number",
                    models.CharField(blank=True, default="", help_text="Courier tracking number", max_length=100),
                ),
                (
                    "estimated_delivery_date",
                    models.DateField(blank=True, null=True, help_text="Seller's estimate of the delivery date"),
                ),
                (
                    "shipping_notes",
                    models.TextField(
                        blank=True, default="", help_text="Free-form notes from the seller about the shipment"
                    ),
                ),
                (
                    "delivery_proof_urls",
                    models.JSONField(
                        blank=True,
                        default=list,
                        help_text="Seller-supplied proof of delivery URLs (informational only)",
                    ),
                ),
                ("rejection_reason", models.TextField(blank=True, default="", help_text="Why the seller declined")),
                (
                    "cancellation_reason",
                    models.TextField(blank=True, default="", help_text="Why the transaction was cancelled"),
                ),
                (
                    "dispute_reason",
                    models.TextField(blank=True, default="", help_text="Buyer's reason for opening a dispute"),
                ),
                ("escrowed_at", models.DateTimeField(blank=True, null=True, help_text="When payment was confirmed")),
                ("accepted_at", models.DateTimeField(blank=True, null=True, help_text="When the seller accepted")),
                ("shipped_at", models.DateTimeField(blank=True, null=True, help_text="When the seller shipped")),
                (
                    "delivered_at",
                    models.DateTimeField(blank=True, null=True, help_text="When delivery was confirmed"),
                ),
                ("disputed_at", models.DateTimeField(blank=True, null=True, help_text="When a dispute was opened")),
                ("completed_at", models.DateTimeField(blank=True, null=True, help_text="When funds were released")),
                (
                    "refunded_at",
                    models.DateTimeField(blank=True, null=True, help_text="When a dispute ended in refund"),
                ),
                ("rejected_at", models.DateTimeField(blank=True, null=True, help_text="When the seller declined")),
                (
                    "cancelled_at",
                    models.DateTimeField(blank=True, null=True, help_text="When the transaction was cancelled"),
                ),
                (
                    "buyer",
                    models.ForeignKey(
                        help_text="User paying into escrow",
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="purchases",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
                (
                    "seller",
                    models.ForeignKey(
                        help_text="User receiving the funds on release",
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="sales",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
                (
                    "payout_method",
                    models.ForeignKey(
                        blank=True,
                        help_text="Seller payout method snapshotted at release time",
                        null=True,
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="+",
                        to="escrow.payoutmethod",
                    ),
                ),
            ],
            options={
                "verbose_name": "Escrow Transaction",
                "verbose_name_plural": "Escrow Transactions",
                "ordering": ["-created_at"],
                "indexes": [
                    models.Index(fields=["status", "expires_at"], name="escrow_escr_status_8c1f2a_idx"),
                    models.Index(fields=["status", "auto_deliver_at"], name="escrow_escr_status_4b7d10_idx"),
                    models.Index(fields=["status", "auto_release_at"], name="escrow_escr_status_e92a55_idx"),
                    models.Index(fields=["buyer", "status"], name="escrow_escr_buyer_i_3f0c7e_idx"),
                    models.Index(fields=["seller", "status"], name="escrow_escr_seller__a51b9d_idx"),
                ],
                "constraints": [
                    models.CheckConstraint(
                        check=models.Q(("amount__gt", 0)),
                        name="escrow_transaction_amount_positive",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="DeliveryOtp",
            fields=[
                _id(),
                *_timestamps(),
                (
                    "code_hash",
                    models.CharField(
                        blank=True,
                        default="",
                        help_text="HMAC-SHA256 of the salted code; cleared on use or expiry",
                        max_length=64,
                    ),
                ),
                (
                    "salt",
                    models.CharField(blank=True, default="", help_text="Random salt mixed into the hash", max_length=32),
                ),
                ("expires_at", models.DateTimeField(blank=True, null=True, help_text="When the current code expires")),
                (
                    "consumed_at",
                    models.DateTimeField(blank=True, null=True, help_text="When the code was successfully verified"),
                ),
                (
                    "failed_attempts",
                    models.PositiveSmallIntegerField(default=0, help_text="Consecutive failed verifications"),
                ),
                (
                    "locked_until",
                    models.DateTimeField(blank=True, null=True, help_text="Verification is refused until this time"),
                ),
                (
                    "issued_count",
                    models.PositiveSmallIntegerField(
                        default=0, help_text="Number of codes issued for this transaction"
                    ),
                ),
                (
                    "transaction",
                    models.OneToOneField(
                        help_text="Transaction this code confirms delivery for",
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="delivery_otp",
                        to="escrow.escrowtransaction",
                    ),
                ),
            ],
            options={
                "verbose_name": "Delivery OTP",
                "verbose_name_plural": "Delivery OTPs",
            },
        ),
        migrations.CreateModel(
            name="IdempotencyRecord",
            fields=[
                _id(),
                *_timestamps(),
                (
                    "provider_reference",
                    models.CharField(
                        db_index=True,
                        help_text="Provider checkout request ID the event refers to",
                        max_length=100,
                    ),
                ),
                (
                    "event_type",
                    models.CharField(
                        choices=[("payment.confirmed", "Payment confirmed"), ("payment.failed", "Payment failed")],
                        help_text="Normalized event type",
                        max_length=50,
                    ),
                ),
                (
                    "source",
                    models.CharField(
                        choices=[("webhook", "Webhook"), ("poll", "Status poll")],
                        default="webhook",
                        help_text="Path that first delivered the event",
                        max_length=10,
                    ),
                ),
                (
                    "payload",
                    models.JSONField(
                        default=dict,
                        help_text="Normalized event as recorded (amount, receipt, result code)",
                    ),
                ),
                (
                    "status",
                    models.CharField(
                        choices=[
                            ("pending", "Pending"),
                            ("processing", "Processing"),
                            ("processed", "Processed"),
                            ("rejected", "Rejected"),
                            ("failed", "Failed"),
                        ],
                        db_index=True,
                        default="pending",
                        help_text="Current processing status",
                        max_length=20,
                    ),
                ),
                (
                    "processed_at",
                    models.DateTimeField(blank=True, null=True, help_text="When the event reached a final status"),
                ),
                (
                    "error_message",
                    models.TextField(blank=True, null=True, help_text="Why processing failed or was rejected"),
                ),
                (
                    "retry_count",
                    models.PositiveSmallIntegerField(default=0, help_text="Number of processing attempts"),
                ),
            ],
            options={
                "verbose_name": "Idempotency Record",
                "verbose_name_plural": "Idempotency Records",
                "ordering": ["-created_at"],
                "indexes": [
                    models.Index(fields=["status", "created_at"], name="escrow_idem_status_2d6e0b_idx"),
                    models.Index(fields=["status", "retry_count"], name="escrow_idem_status_7a93c4_idx"),
                ],
                "constraints": [
                    models.UniqueConstraint(
                        fields=("provider_reference", "event_type"),
                        name="unique_provider_event",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="PayoutInstruction",
            fields=[
                _id(),
                *_timestamps(),
                (
                    "kind",
                    models.CharField(
                        choices=[("PAYOUT", "Payout to seller"), ("REFUND", "Refund to buyer")],
                        help_text="PAYOUT to the seller or REFUND to the buyer",
                        max_length=10,
                    ),
                ),
                (
                    "destination",
                    models.CharField(help_text="Snapshot of the receiving MSISDN or account", max_length=50),
                ),
                ("amount", models.PositiveBigIntegerField(help_text="Amount to move in whole currency units")),
                (
                    "currency",
                    models.CharField(default="KES", help_text="ISO 4217 currency code (uppercase)", max_length=3),
                ),
                (
                    "status",
                    django_fsm.FSMField(
                        choices=[("PENDING", "Pending"), ("SENT", "Sent"), ("FAILED", "Failed")],
                        db_index=True,
                        default="PENDING",
                        help_text="Current dispatch state (managed by FSM)",
                        max_length=50,
                        protected=True,
                    ),
                ),
                (
                    "version",
                    models.PositiveIntegerField(
                        default=1, help_text="Version for optimistic locking - incremented on each save"
                    ),
                ),
                ("attempt_count", models.PositiveSmallIntegerField(default=0, help_text="Number of provider calls made")),
                (
                    "next_attempt_at",
                    models.DateTimeField(
                        blank=True,
                        db_index=True,
                        null=True,
                        help_text="Earliest time the dispatcher may try again",
                    ),
                ),
                (
                    "last_attempt_at",
                    models.DateTimeField(blank=True, null=True, help_text="When the provider was last called"),
                ),
                (
                    "last_error",
                    models.TextField(blank=True, default="", help_text="Error from the most recent failed attempt"),
                ),
                (
                    "requires_manual_intervention",
                    models.BooleanField(
                        db_index=True,
                        default=False,
                        help_text="Set when retries are exhausted or the provider refused permanently",
                    ),
                ),
                (
                    "provider_reference",
                    models.CharField(
                        blank=True,
                        default="",
                        help_text="Provider conversation ID of the accepted request",
                        max_length=100,
                    ),
                ),
                (
                    "sent_at",
                    models.DateTimeField(
                        blank=True, null=True, help_text="When the provider accepted the disbursement"
                    ),
                ),
                (
                    "failed_at",
                    models.DateTimeField(blank=True, null=True, help_text="When the instruction was given up on"),
                ),
                (
                    "payout_method",
                    models.ForeignKey(
                        blank=True,
                        help_text="Seller payout method (payouts only)",
                        null=True,
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="instructions",
                        to="escrow.payoutmethod",
                    ),
                ),
                (
                    "transaction",
                    models.OneToOneField(
                        help_text="Transaction whose funds this instruction moves",
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="instruction",
                        to="escrow.escrowtransaction",
                    ),
                ),
            ],
            options={
                "verbose_name": "Payout Instruction",
                "verbose_name_plural": "Payout Instructions",
                "ordering": ["-created_at"],
                "indexes": [
                    models.Index(fields=["status", "next_attempt_at"], name="escrow_payo_status_5e21f8_idx"),
                ],
                "constraints": [
                    models.CheckConstraint(
                        check=models.Q(("amount__gt", 0)),
                        name="payout_instruction_amount_positive",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="AuditEntry",
            fields=[
                _id(),
                *_timestamps(),
                (
                    "actor_id",
                    models.CharField(
                        blank=True,
                        help_text="Identifier of the acting user; empty for system triggers",
                        max_length=64,
                        null=True,
                    ),
                ),
                (
                    "actor_role",
                    models.CharField(
                        choices=[
                            ("BUYER", "Buyer"),
                            ("SELLER", "Seller"),
                            ("ADJUDICATOR", "Adjudicator"),
                            ("SYSTEM", "System"),
                            ("FRAUD_SIGNAL", "Automated fraud signal"),
                        ],
                        help_text="Role the actor acted in",
                        max_length=20,
                    ),
                ),
                (
                    "trigger",
                    models.CharField(db_index=True, help_text="Trigger name, e.g. seller_accept", max_length=50),
                ),
                (
                    "from_status",
                    models.CharField(
                        blank=True,
                        choices=TRANSACTION_STATUS_CHOICES,
                        default="",
                        help_text="Status before the transition (blank on creation)",
                        max_length=20,
                    ),
                ),
                (
                    "to_status",
                    models.CharField(
                        choices=TRANSACTION_STATUS_CHOICES,
                        help_text="Status after the transition",
                        max_length=20,
                    ),
                ),
                (
                    "details",
                    models.JSONField(blank=True, default=dict, help_text="Trigger-specific context (never secrets)"),
                ),
                (
                    "transaction",
                    models.ForeignKey(
                        help_text="Transaction the entry belongs to",
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="audit_entries",
                        to="escrow.escrowtransaction",
                    ),
                ),
            ],
            options={
                "verbose_name": "Audit Entry",
                "verbose_name_plural": "Audit Entries",
                "ordering": ["created_at"],
                "indexes": [
                    models.Index(fields=["transaction", "created_at"], name="escrow_audi_transac_0b8e62_idx"),
                ],
            },
        ),
    ]
