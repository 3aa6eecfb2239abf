"""
Celery tasks for notification delivery.

Tasks:
    send_sms: Deliver a rendered message via the Twilio REST API

Design:
    - Permanent vs transient errors are classified for retry logic
    - Message bodies are never logged (they can carry delivery codes)
    - Missing credentials skip delivery with a warning so local and test
      environments run without Twilio

Usage:
    from notifications.tasks import send_sms

    # Called by NotificationService.notify()
    send_sms.delay("254712345678", "Swiftline: ...", event="shipped")
"""

from __future__ import annotations

import logging

import requests
from celery import shared_task
from django.conf import settings
from twilio.base.exceptions import TwilioException, TwilioRestException
from twilio.rest import Client

from core.helpers import mask_tail

logger = logging.getLogger(__name__)


# HTTP statuses Twilio returns for conditions that clear on their own
TRANSIENT_STATUSES = {429, 500, 502, 503, 504}


class DeliveryError(Exception):
    """Transient delivery failure; raised to trigger a Celery retry."""

    def __init__(self, message: str, code: str):
        super().__init__(message)
        self.code = code


def _client() -> Client | None:
    account_sid = getattr(settings, "TWILIO_ACCOUNT_SID", "")
    auth_token = getattr(settings, "TWILIO_AUTH_TOKEN", "")
    if not (account_sid and auth_token and getattr(settings, "TWILIO_FROM_NUMBER", "")):
        return None
    return Client(account_sid, auth_token)


@shared_task(
    bind=True,
    autoretry_for=(DeliveryError,),
    retry_backoff=True,
    retry_backoff_max=300,
    retry_kwargs={"max_retries": 3},
)
def send_sms(self, to: str, body: str, event: str = "", transaction_id: str = "") -> dict:
    """
    Send an SMS.

    Args:
        to: Recipient MSISDN (2547XXXXXXXX)
        body: Rendered message text
        event: Escrow event that produced the message (logging only)
        transaction_id: Related transaction (logging only)

    Returns:
        Dict with status "sent", "skipped" or "failed"

    Raises:
        DeliveryError: On transient failure (triggers retry)
    """
    log_context = {"event": event, "transaction_id": transaction_id, "to": mask_tail(to)}

    client = _client()
    if client is None:
        logger.warning("SMS delivery not configured, message skipped", extra=log_context)
        return {"status": "skipped", "reason": "not_configured"}

    try:
        message = client.messages.create(
            body=body,
            from_=settings.TWILIO_FROM_NUMBER,
            to=f"+{to}",
        )
    except TwilioRestException as e:
        if e.status in TRANSIENT_STATUSES:
            logger.warning(
                "Transient SMS provider error, will retry",
                extra={**log_context, "status": e.status, "code": e.code, "celery_retries": self.request.retries},
            )
            raise DeliveryError(str(e.msg), code="provider_unavailable") from e

        logger.error(
            "SMS rejected by provider",
            extra={**log_context, "status": e.status, "code": e.code},
        )
        return {"status": "failed", "error_code": str(e.code)}
    except requests.RequestException as e:
        logger.warning("SMS provider unreachable, will retry", extra=log_context)
        raise DeliveryError(str(e), code="connection_error") from e
    except TwilioException as e:
        logger.error(f"SMS delivery failed: {type(e).__name__}", extra=log_context)
        return {"status": "failed", "error_code": "twilio_error"}

    logger.info("SMS sent", extra={**log_context, "sid": message.sid})
    return {"status": "sent", "sid": message.sid}
