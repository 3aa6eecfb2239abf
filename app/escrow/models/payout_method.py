"""
PayoutMethod model: where a seller wants released funds sent.
"""

from __future__ import annotations

from django.conf import settings
from django.db import models

from core.helpers import mask_tail
from core.model_mixins import UUIDPrimaryKeyMixin
from core.models import BaseModel
from escrow.state_machines import PayoutMethodType


class PayoutMethod(UUIDPrimaryKeyMixin, BaseModel):
    """
    A registered disbursement target.

    A seller may register several methods; the active default one is
    resolved at release time and snapshotted onto the transaction.

    Fields:
        owner: Seller who registered the method
        method_type: MOBILE_MONEY or BANK
        provider: Rail name, e.g. MPESA
        account_number: MSISDN for mobile money, account number for banks
        account_name: Registered holder name
        is_default: Used when releasing funds
        is_active: Inactive methods are never resolved
    """

    owner = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.PROTECT,
        related_name="payout_methods",
        help_text="Seller who owns this payout method",
    )

    method_type = models.CharField(
        max_length=20,
        choices=PayoutMethodType.choices,
        default=PayoutMethodType.MOBILE_MONEY,
        help_text="Kind of disbursement target",
    )

    provider = models.CharField(
        max_length=50,
        default="MPESA",
        help_text="Payment rail or bank name",
    )

    account_number = models.CharField(
        max_length=50,
        help_text="MSISDN (2547XXXXXXXX) or bank account number",
    )

    account_name = models.CharField(
        max_length=255,
        blank=True,
        default="",
        help_text="Name the account is registered to",
    )

    is_default = models.BooleanField(
        default=False,
        help_text="Whether releases go to this method",
    )

    is_active = models.BooleanField(
        default=True,
        help_text="Inactive methods are kept for history but never used",
    )

    class Meta:
        ordering = ["-is_default", "-created_at"]
        verbose_name = "Payout Method"
        verbose_name_plural = "Payout Methods"
        constraints = [
            models.UniqueConstraint(
                fields=["owner"],
                condition=models.Q(is_default=True, is_active=True),
                name="unique_active_default_payout_method",
            ),
        ]

    def __str__(self) -> str:
        return f"PayoutMethod({self.provider} {mask_tail(self.account_number)})"
