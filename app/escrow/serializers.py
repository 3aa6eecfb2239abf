"""
Serializers for escrow API.

Serializer Hierarchy:
    EscrowTransactionSerializer: Read view of a transaction with parties,
        deadlines and the payout/refund instruction
    TransactionCreateSerializer: Buyer creates a transaction
    TriggerSerializer: Base for state-changing actions (expected_version)
    ShipSerializer, ConfirmDeliverySerializer, ReasonSerializer,
        ResolveSerializer, PaySerializer: Action request bodies
    PayoutMethodSerializer / PayoutMethodCreateSerializer

Design Decisions:
    - Read and write serializers are separate
    - Write serializers only check request shape; every business rule
      lives in EscrowService so API, webhook and scheduler share it
    - The OTP code, its hash and provider credentials never appear in
      any response
"""

from __future__ import annotations

from rest_framework import serializers

from authentication.serializers import PartySerializer
from escrow.models import EscrowTransaction, PayoutInstruction, PayoutMethod
from escrow.state_machines import PayoutMethodType


# =============================================================================
# Read Serializers
# =============================================================================


class PayoutInstructionSerializer(serializers.ModelSerializer):
    """Status of the money movement a terminal transition emitted."""

    class Meta:
        model = PayoutInstruction
        fields = [
            "id",
            "kind",
            "status",
            "amount",
            "currency",
            "attempt_count",
            "next_attempt_at",
            "sent_at",
            "failed_at",
        ]
        read_only_fields = fields


class EscrowTransactionSerializer(serializers.ModelSerializer):
    """
    Transaction as seen by either party.

    ``delivery_otp_expires_at`` exposes only the expiry of the live code.
    """

    buyer = PartySerializer(read_only=True)
    seller = PartySerializer(read_only=True)
    delivery_otp_expires_at = serializers.DateTimeField(read_only=True, allow_null=True)
    instruction = serializers.SerializerMethodField()

    class Meta:
        model = EscrowTransaction
        fields = [
            "id",
            "status",
            "version",
            "buyer",
            "seller",
            "item_name",
            "description",
            "amount",
            "currency",
            "payer_phone",
            "provider_reference",
            "provider_receipt",
            "expires_at",
            "auto_deliver_at",
            "auto_release_at",
            "courier_name",
            "tracking_number",
            "estimated_delivery_date",
            "shipping_notes",
            "delivery_proof_urls",
            "delivery_otp_expires_at",
            "rejection_reason",
            "cancellation_reason",
            "dispute_reason",
            "requires_manual_intervention",
            "instruction",
            "created_at",
            "escrowed_at",
            "accepted_at",
            "shipped_at",
            "delivered_at",
            "disputed_at",
            "completed_at",
            "refunded_at",
            "rejected_at",
            "cancelled_at",
        ]
        read_only_fields = fields

    def get_instruction(self, obj: EscrowTransaction) -> dict | None:
        instruction = getattr(obj, "instruction", None)
        if instruction is None:
            return None
        return PayoutInstructionSerializer(instruction).data


class PayoutMethodSerializer(serializers.ModelSerializer):
    class Meta:
        model = PayoutMethod
        fields = [
            "id",
            "method_type",
            "provider",
            "account_number",
            "account_name",
            "is_default",
            "created_at",
        ]
        read_only_fields = fields


# =============================================================================
# Write Serializers
# =============================================================================


class TransactionCreateSerializer(serializers.Serializer):
    """
    Buyer opens an escrow transaction with a seller.

    When ``payer_phone`` is given (or the buyer has a mobile number on
    file) the STK push is sent right after creation.
    """

    seller_id = serializers.IntegerField(min_value=1)
    amount = serializers.IntegerField(min_value=1)
    currency = serializers.CharField(max_length=3, required=False, default="KES")
    item_name = serializers.CharField(max_length=255, required=False, allow_blank=True, default="")
    description = serializers.CharField(required=False, allow_blank=True, default="")
    payer_phone = serializers.CharField(max_length=15, required=False, allow_blank=True, default="")


class TriggerSerializer(serializers.Serializer):
    """
    Base for transaction actions.

    ``expected_version`` is the version the client last read; a stale
    value is refused with CONCURRENT_MODIFICATION.
    """

    expected_version = serializers.IntegerField(min_value=1, required=False)


class ReasonSerializer(TriggerSerializer):
    reason = serializers.CharField(max_length=2000, required=False, allow_blank=True)


class ShipSerializer(TriggerSerializer):
    courier_name = serializers.CharField(max_length=100, required=False, allow_blank=True)
    tracking_number = serializers.CharField(max_length=100, required=False, allow_blank=True)
    estimated_delivery_date = serializers.DateField(required=False, allow_null=True)
    shipping_notes = serializers.CharField(required=False, allow_blank=True)
    delivery_proof_urls = serializers.ListField(
        child=serializers.URLField(max_length=500),
        required=False,
        max_length=10,
    )


class ConfirmDeliverySerializer(TriggerSerializer):
    code = serializers.CharField(max_length=12)


class ResolveSerializer(TriggerSerializer):
    """Adjudicator decision on a disputed transaction."""

    DECISION_RELEASE = "release"
    DECISION_REFUND = "refund"

    decision = serializers.ChoiceField(choices=[DECISION_RELEASE, DECISION_REFUND])
    notes = serializers.CharField(max_length=2000, required=False, allow_blank=True)


class PaySerializer(serializers.Serializer):
    payer_phone = serializers.CharField(max_length=15, required=False, allow_blank=True)


class PayoutMethodCreateSerializer(serializers.Serializer):
    method_type = serializers.ChoiceField(
        choices=PayoutMethodType.choices,
        required=False,
        default=PayoutMethodType.MOBILE_MONEY,
    )
    provider = serializers.CharField(max_length=50, required=False, default="MPESA")
    account_number = serializers.CharField(max_length=50)
    account_name = serializers.CharField(max_length=255, required=False, allow_blank=True, default="")
    make_default = serializers.BooleanField(required=False, default=False)


class InitiationResponseSerializer(serializers.Serializer):
    transaction = EscrowTransactionSerializer()
    provider_reference = serializers.CharField()
    created = serializers.BooleanField()
    customer_message = serializers.CharField(allow_blank=True)


class PollResponseSerializer(serializers.Serializer):
    transaction = EscrowTransactionSerializer()
    outcome = serializers.CharField()
