"""
Escrow admin configuration.

All escrow models are read-only here. State changes go through
EscrowService so guards, versions and the audit trail are never bypassed;
disputes are resolved through the /resolve/ API action.
"""

from django.contrib import admin

from escrow.models import (
    AuditEntry,
    DeliveryOtp,
    EscrowTransaction,
    IdempotencyRecord,
    PayoutInstruction,
    PayoutMethod,
)


class ReadOnlyAdmin(admin.ModelAdmin):
    """Base admin that allows viewing only."""

    def has_add_permission(self, request):
        return False

    def has_change_permission(self, request, obj=None):
        return False

    def has_delete_permission(self, request, obj=None):
        return False


class AuditEntryInline(admin.TabularInline):
    model = AuditEntry
    extra = 0
    can_delete = False
    fields = ["created_at", "trigger", "from_status", "to_status", "actor_role", "actor_id"]
    readonly_fields = fields
    ordering = ["created_at"]

    def has_add_permission(self, request, obj=None):
        return False


@admin.register(EscrowTransaction)
class EscrowTransactionAdmin(ReadOnlyAdmin):
    """
    Admin configuration for EscrowTransaction.

    Provides visibility into transactions, deadlines and their history.
    """

    list_display = [
        "id",
        "buyer",
        "seller",
        "amount",
        "currency",
        "status",
        "expires_at",
        "created_at",
    ]
    list_filter = ["status", "currency", "requires_manual_intervention", "created_at"]
    search_fields = [
        "id",
        "provider_reference",
        "provider_receipt",
        "buyer__email",
        "seller__email",
        "payer_phone",
    ]
    date_hierarchy = "created_at"
    ordering = ["-created_at"]
    inlines = [AuditEntryInline]

    fieldsets = (
        (None, {"fields": ("id", "status", "version", "buyer", "seller")}),
        ("Item", {"fields": ("item_name", "description", "amount", "currency")}),
        (
            "Payment",
            {
                "fields": (
                    "payer_phone",
                    "provider_reference",
                    "provider_merchant_reference",
                    "provider_receipt",
                    "payment_initiated_at",
                ),
            },
        ),
        ("Deadlines", {"fields": ("expires_at", "auto_deliver_at", "auto_release_at")}),
        (
            "Shipping",
            {
                "fields": (
                    "courier_name",
                    "tracking_number",
                    "estimated_delivery_date",
                    "shipping_notes",
                    "delivery_proof_urls",
                ),
            },
        ),
        (
            "Outcome",
            {"fields": ("payout_method", "rejection_reason", "cancellation_reason", "dispute_reason")},
        ),
        ("Manual Review", {"fields": ("requires_manual_intervention", "review_reason")}),
        (
            "State Timestamps",
            {
                "fields": (
                    "escrowed_at",
                    "accepted_at",
                    "shipped_at",
                    "delivered_at",
                    "disputed_at",
                    "completed_at",
                    "refunded_at",
                    "rejected_at",
                    "cancelled_at",
                    "last_transition_at",
                ),
                "classes": ("collapse",),
            },
        ),
    )


@admin.register(PayoutInstruction)
class PayoutInstructionAdmin(ReadOnlyAdmin):
    """
    Admin configuration for PayoutInstruction.

    Instructions flagged requires_manual_intervention exhausted their
    retries or were refused by the provider.
    """

    list_display = [
        "id",
        "transaction",
        "kind",
        "amount",
        "status",
        "attempt_count",
        "next_attempt_at",
        "requires_manual_intervention",
    ]
    list_filter = ["kind", "status", "requires_manual_intervention"]
    search_fields = ["id", "transaction__id", "destination", "provider_reference"]
    ordering = ["-created_at"]


@admin.register(IdempotencyRecord)
class IdempotencyRecordAdmin(ReadOnlyAdmin):
    """Admin configuration for the gateway event ledger."""

    list_display = [
        "provider_reference",
        "event_type",
        "source",
        "status",
        "retry_count",
        "created_at",
        "processed_at",
    ]
    list_filter = ["status", "event_type", "source"]
    search_fields = ["provider_reference"]
    ordering = ["-created_at"]


@admin.register(PayoutMethod)
class PayoutMethodAdmin(ReadOnlyAdmin):
    list_display = ["id", "owner", "method_type", "provider", "account_number", "is_default", "is_active"]
    list_filter = ["method_type", "provider", "is_default", "is_active"]
    search_fields = ["owner__email", "account_number"]


@admin.register(DeliveryOtp)
class DeliveryOtpAdmin(ReadOnlyAdmin):
    """Only delivery code metadata is shown; the hash and salt stay hidden."""

    list_display = ["transaction", "expires_at", "consumed_at", "failed_attempts", "locked_until", "issued_count"]
    exclude = ["code_hash", "salt"]


@admin.register(AuditEntry)
class AuditEntryAdmin(ReadOnlyAdmin):
    list_display = ["created_at", "transaction", "trigger", "from_status", "to_status", "actor_role"]
    list_filter = ["trigger", "actor_role"]
    search_fields = ["transaction__id", "actor_id"]
    ordering = ["-created_at"]
