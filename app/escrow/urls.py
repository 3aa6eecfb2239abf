"""
URL configuration for escrow API.

URL Structure:
    Transactions:
        /transactions/                          GET, POST
        /transactions/{id}/                     GET
        /transactions/{id}/pay/                 POST
        /transactions/{id}/check-status/        POST
        /transactions/{id}/accept/              POST
        /transactions/{id}/reject/              POST
        /transactions/{id}/ship/                POST
        /transactions/{id}/confirm-delivery/    POST
        /transactions/{id}/resend-otp/          POST
        /transactions/{id}/release/             POST
        /transactions/{id}/dispute/             POST
        /transactions/{id}/resolve/             POST

    Payout methods:
        /payout-methods/                        GET, POST
        /payout-methods/{id}/                   DELETE
        /payout-methods/{id}/default/           POST

    Webhooks:
        /webhooks/mpesa/                        POST (no auth, signed)

All URLs are prefixed with /api/v1/escrow/ in the main URL configuration.
"""

from django.urls import include, path
from rest_framework.routers import DefaultRouter

from escrow.views import EscrowTransactionViewSet, PayoutMethodViewSet
from escrow.webhooks.views import mpesa_webhook

router = DefaultRouter()
router.register(r"transactions", EscrowTransactionViewSet, basename="transaction")
router.register(r"payout-methods", PayoutMethodViewSet, basename="payout-method")

app_name = "escrow"

urlpatterns = [
    path("", include(router.urls)),
    path("webhooks/mpesa/", mpesa_webhook, name="mpesa-webhook"),
]
