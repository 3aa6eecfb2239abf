"""
Model mixins providing reusable functionality for Django models.

Available Mixins:
    UUIDPrimaryKeyMixin: Use UUID as primary key

Usage:
    from core.models import BaseModel
    from core.model_mixins import UUIDPrimaryKeyMixin

    class PayoutMethod(UUIDPrimaryKeyMixin, BaseModel):
        account_number = models.CharField(max_length=50)

Note:
    - Always list mixins before BaseModel in inheritance
    - Mixins are abstract and don't create database tables
"""

from __future__ import annotations

import uuid

from django.db import models


class UUIDPrimaryKeyMixin(models.Model):
    """
    Use UUID as primary key instead of auto-increment integer.

    Escrow identifiers appear in URLs, SMS references and provider
    payloads, so they must not reveal record counts or be guessable.

    Fields:
        id: UUIDField as primary key (auto-generated)

    Usage:
        txn = EscrowTransaction.objects.create(buyer=buyer, seller=seller, amount=1500)
        txn.id  # UUID like: 550e8400-e29b-41d4-a716-446655440000
        txn.id.hex[:8].upper()  # short reference used in SMS
    """

    id = models.UUIDField(
        primary_key=True,
        default=uuid.uuid4,
        editable=False,
        help_text="Unique identifier for this record",
    )

    class Meta:
        abstract = True
