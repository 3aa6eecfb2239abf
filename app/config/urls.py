"""
URL configuration for the Django application.

The `urlpatterns` list routes URLs to views. This is the root URL configuration
that includes all app-specific routes.

URL Structure:
    /                              - ReDoc API documentation
    /admin/                        - Django admin interface
    /health/                       - Health check endpoint (for load balancers, Docker)
    /schema/                       - OpenAPI schema (YAML)
    /api/v1/auth/                  - Authentication endpoints
        token/                     - Obtain JWT pair (email/password)
        token/refresh/             - Refresh access token
        me/                        - Current user (GET/PATCH)
    /api/v1/escrow/                - Escrow endpoints
        transactions/              - List/create transactions
        transactions/{id}/         - Transaction detail
        transactions/{id}/pay/     - Start the M-Pesa STK push
        transactions/{id}/check-status/ - Poll the payment provider
        transactions/{id}/accept/  - Seller accepts
        transactions/{id}/reject/  - Seller rejects (refund)
        transactions/{id}/ship/    - Seller records shipment
        transactions/{id}/confirm-delivery/ - Buyer enters delivery code
        transactions/{id}/resend-otp/ - Re-issue the delivery code
        transactions/{id}/release/ - Buyer releases funds
        transactions/{id}/dispute/ - Buyer opens a dispute
        transactions/{id}/resolve/ - Staff resolve a dispute
        payout-methods/            - List/add payout destinations
        payout-methods/{id}/       - Deactivate a payout destination
        payout-methods/{id}/default/ - Make a destination the default
        webhooks/mpesa/            - M-Pesa callback endpoint (POST)

For more information, see:
https://docs.djangoproject.com/en/5.2/topics/http/urls/
"""

from django.contrib import admin
from django.urls import include, path
from drf_spectacular.views import SpectacularAPIView, SpectacularRedocView

from core.views import health_check

# =============================================================================
# API v1 Routes
# =============================================================================
# All routes here are prefixed with /api/v1/ automatically
api_v1_patterns = [
    # Authentication (simplejwt + current user)
    path("auth/", include("authentication.urls")),
    # Escrow
    path("escrow/", include("escrow.urls")),
]

urlpatterns = [
    # Documentation
    path("", SpectacularRedocView.as_view(url_name="schema"), name="redoc"),
    path("schema/", SpectacularAPIView.as_view(), name="schema"),
    # Admin
    path("admin/", admin.site.urls),
    # Health check (Docker, Kubernetes, load balancers)
    path("health/", health_check, name="health_check"),
    # API v1
    path("api/v1/", include(api_v1_patterns)),
]

# =============================================================================
# Admin Site Customization
# =============================================================================
admin.site.site_header = "Swiftline Escrow Admin"
admin.site.site_title = "Escrow Admin"
admin.site.index_title = "Transactions, payouts and audit trail"
