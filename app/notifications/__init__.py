"""
Notifications app for SMS delivery of escrow events.

This app provides:
- NotificationService for rendering event templates per recipient
- Celery task for async SMS delivery through Twilio

Usage:
    from notifications.services import NotificationService

    NotificationService.notify("payment_confirmed", txn.id)
"""
