"""
Payout method registry.

Sellers register where released funds should go. The active default is
resolved at release time; a seller without one cannot be paid and the
release fails with NO_PAYOUT_METHOD.

Usage:
    from escrow.services import PayoutMethodRegistry

    result = PayoutMethodRegistry.add_method(
        owner=seller,
        account_number="0712345678",
        account_name="Jane Wanjiku",
        make_default=True,
    )

    method = PayoutMethodRegistry.resolve_default(seller)  # raises if none
"""

from __future__ import annotations

import uuid
from typing import TYPE_CHECKING

from authentication.models import MSISDN_PATTERN, normalize_msisdn
from core.services import BaseService, ServiceResult
from escrow.exceptions import NoPayoutMethodError
from escrow.models import PayoutMethod
from escrow.state_machines import PayoutMethodType

if TYPE_CHECKING:
    from django.db.models import QuerySet


class PayoutMethodRegistry(BaseService):
    @classmethod
    def resolve_default(cls, owner_id) -> PayoutMethod:
        """
        Return the owner's active default payout method.

        Raises:
            NoPayoutMethodError: No active default is registered
        """
        method = PayoutMethod.objects.filter(owner_id=owner_id, is_default=True, is_active=True).first()
        if method is None:
            cls.get_logger().warning(
                "No payout method registered",
                extra={"owner_id": str(owner_id)},
            )
            raise NoPayoutMethodError(
                "Seller has no active default payout method",
                details={"seller_id": str(owner_id)},
            )
        return method

    @staticmethod
    def list_for(owner) -> QuerySet[PayoutMethod]:
        return PayoutMethod.objects.filter(owner=owner, is_active=True)

    @classmethod
    def add_method(
        cls,
        owner,
        account_number: str,
        account_name: str = "",
        method_type: str = PayoutMethodType.MOBILE_MONEY,
        provider: str = "MPESA",
        make_default: bool = False,
    ) -> ServiceResult[PayoutMethod]:
        """
        Register a payout method.

        Mobile money numbers are normalized to 2547XXXXXXXX. The first
        active method an owner registers becomes the default.
        """
        if method_type == PayoutMethodType.MOBILE_MONEY:
            account_number = normalize_msisdn(account_number)
            if not MSISDN_PATTERN.match(account_number):
                return ServiceResult.failure(
                    "Enter a valid Kenyan mobile number",
                    error_code="VALIDATION",
                    errors={"account_number": ["Invalid mobile number."]},
                )
        elif not account_number:
            return ServiceResult.failure(
                "Account number is required",
                error_code="VALIDATION",
                errors={"account_number": ["This field is required."]},
            )

        with cls.atomic():
            has_default = PayoutMethod.objects.filter(owner=owner, is_default=True, is_active=True).exists()
            if make_default and has_default:
                PayoutMethod.objects.filter(owner=owner, is_default=True).update(is_default=False)

            method = PayoutMethod.objects.create(
                owner=owner,
                method_type=method_type,
                provider=provider,
                account_number=account_number,
                account_name=account_name,
                is_default=make_default or not has_default,
            )

        cls.get_logger().info(
            "Payout method registered",
            extra={
                "owner_id": str(owner.pk),
                "payout_method_id": str(method.id),
                "is_default": method.is_default,
            },
        )
        return ServiceResult.success(method)

    @classmethod
    def set_default(cls, owner, method_id: uuid.UUID) -> ServiceResult[PayoutMethod]:
        with cls.atomic():
            method = PayoutMethod.objects.select_for_update().filter(owner=owner, id=method_id, is_active=True).first()
            if method is None:
                return ServiceResult.failure("Payout method not found", error_code="NOT_FOUND")

            PayoutMethod.objects.filter(owner=owner, is_default=True).exclude(id=method.id).update(is_default=False)
            method.is_default = True
            method.save(update_fields=["is_default", "updated_at"])

        return ServiceResult.success(method)

    @classmethod
    def deactivate(cls, owner, method_id: uuid.UUID) -> ServiceResult[PayoutMethod]:
        """
        Retire a method. Instructions already created keep their snapshot
        of the destination, so funds in motion are not redirected.
        """
        with cls.atomic():
            method = PayoutMethod.objects.select_for_update().filter(owner=owner, id=method_id, is_active=True).first()
            if method is None:
                return ServiceResult.failure("Payout method not found", error_code="NOT_FOUND")

            method.is_active = False
            method.is_default = False
            method.save(update_fields=["is_active", "is_default", "updated_at"])

        return ServiceResult.success(method)
