"""
Escrow app configuration.

This app provides the escrow transaction lifecycle:
- State machine for buyer/seller transactions
- M-Pesa STK push collection and callback ledger
- Delivery codes, deadline sweeps and payout dispatch
"""

from django.apps import AppConfig


class EscrowConfig(AppConfig):
    """Configuration for the escrow application."""

    default_auto_field = "django.db.models.BigAutoField"
    name = "escrow"
    verbose_name = "Escrow"

    def ready(self):
        # Registers gateway event handlers
        from escrow.webhooks import handlers  # noqa: F401
