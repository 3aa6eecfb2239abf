"""
Serializers for authentication models.

This module provides DRF serializers for:
- User model (read operations, nested as a transaction party)
- Contact details update (full name and mobile number)

Related files:
    - models.py: User model and MSISDN helpers
    - views.py: Views that use these serializers

Security:
    - Email and staff flags are read-only
    - Mobile numbers are normalized to 2547XXXXXXXX before validation
"""

from rest_framework import serializers

from authentication.models import MSISDN_PATTERN, User, normalize_msisdn


class UserSerializer(serializers.ModelSerializer):
    """
    Serializer for User model (read operations).

    Used for the /api/v1/auth/me/ endpoint and for the buyer and seller
    of an escrow transaction.
    """

    class Meta:
        model = User
        fields = [
            "id",
            "email",
            "full_name",
            "phone_number",
            "date_joined",
        ]
        read_only_fields = fields


class PartySerializer(serializers.ModelSerializer):
    """Minimal user representation shown to the other party."""

    class Meta:
        model = User
        fields = ["id", "full_name"]
        read_only_fields = fields


class ContactUpdateSerializer(serializers.ModelSerializer):
    """
    Serializer for updating the name and mobile number SMS go to.

    Accepts 07XXXXXXXX, +2547XXXXXXXX and 2547XXXXXXXX forms.
    """

    class Meta:
        model = User
        fields = ["full_name", "phone_number"]

    def validate_phone_number(self, value: str) -> str:
        if not value:
            return ""
        normalized = normalize_msisdn(value)
        if not MSISDN_PATTERN.match(normalized):
            raise serializers.ValidationError("Enter a Kenyan mobile number, e.g. 0712345678.")
        return normalized
