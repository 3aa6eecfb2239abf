"""
Webhook handling for M-Pesa payment callbacks.

Callbacks are verified, recorded in the idempotency ledger and applied
asynchronously via Celery tasks.
"""

from escrow.webhooks.handlers import dispatch_gateway_event, register_handler
from escrow.webhooks.views import mpesa_webhook

__all__ = [
    "dispatch_gateway_event",
    "mpesa_webhook",
    "register_handler",
]
