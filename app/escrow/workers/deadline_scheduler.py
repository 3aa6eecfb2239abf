"""
Deadline scheduler for escrow transactions.

Runs every minute via celery-beat. One sweep at a time is enforced with a
non-blocking Redis lock; an overlapping run returns immediately with
status "skipped" rather than queueing up behind the current one.

Categories swept, oldest deadline first:
- ESCROWED past the acceptance deadline -> expire_unaccepted (refund)
- SHIPPED past auto_deliver_at -> auto_deliver
- DELIVERED past auto_release_at -> auto_release (payout)
- PENDING with an STK push older than ESCROW_RECONCILE_AFTER_MINUTES ->
  status poll
- PENDING past the payment deadline -> final poll, then expire_unpaid
- PENDING whose confirmation was refused -> held for manual review and
  never polled again
- ACCEPTED past the shipping deadline -> logged only
- Delivery codes past their expiry -> hash cleared

Every transition goes through EscrowService.execute with the version read
during the scan, so a user action that lands first wins and the sweep's
trigger fails with CONCURRENT_MODIFICATION or a guard violation.
Per-item failures are logged and counted; they never abort the sweep.

Usage:
    from escrow.workers import sweep_escrow_deadlines

    sweep_escrow_deadlines.delay()
"""

from __future__ import annotations

import logging
from collections import Counter
from datetime import timedelta
from typing import TYPE_CHECKING

from celery import shared_task
from django.conf import settings
from django.db.models import Q
from django.utils import timezone

from escrow.adapters import PaymentOutcome
from escrow.commands import Actor, AutoDeliver, AutoRelease, ExpireUnaccepted, ExpireUnpaid
from escrow.exceptions import LockAcquisitionError
from escrow.locks import DistributedLock
from escrow.models import EscrowTransaction, IdempotencyRecord
from escrow.state_machines import GatewayEventType, IdempotencyRecordStatus, TransactionStatus

if TYPE_CHECKING:
    from collections.abc import Iterator

    from escrow.commands import TransitionCommand

logger = logging.getLogger(__name__)


# =============================================================================
# Constants
# =============================================================================

SWEEP_LOCK_KEY = "escrow:deadline-sweep"

# Long enough for a full sweep; extended between batches
SWEEP_LOCK_TTL = 300

# Upper bound on batches per category per run
MAX_BATCHES_PER_CATEGORY = 20


def _batch_size() -> int:
    return getattr(settings, "ESCROW_SWEEP_BATCH_SIZE", 100)


def _batches(queryset, order_field: str, lock: DistributedLock) -> Iterator[list[tuple]]:
    """
    Yield (id, version) batches from a queryset.

    Rows attempted earlier in this run are excluded, so a row whose
    trigger keeps failing does not starve the rest of the category.
    """
    seen: set = set()
    size = _batch_size()
    for _ in range(MAX_BATCHES_PER_CATEGORY):
        batch = list(queryset.exclude(id__in=seen).order_by(order_field).values_list("id", "version")[:size])
        if not batch:
            return
        seen.update(pk for pk, _version in batch)
        yield batch
        lock.extend()
        if len(batch) < size:
            return


def _run_trigger(command: TransitionCommand, stats: Counter, category: str) -> bool:
    from escrow.services import EscrowService

    try:
        result = EscrowService.execute(command)
    except Exception:
        logger.exception(
            "Unexpected error applying deadline trigger",
            extra={"trigger": command.trigger, "transaction_id": str(command.transaction_id)},
        )
        stats[f"{category}_errors"] += 1
        return False

    if result.success:
        stats[category] += 1
        return True

    logger.warning(
        f"Deadline trigger {command.trigger} refused: {result.error}",
        extra={
            "trigger": command.trigger,
            "transaction_id": str(command.transaction_id),
            "error_code": result.error_code,
        },
    )
    stats[f"{category}_errors"] += 1
    return False


# =============================================================================
# Categories
# =============================================================================


def _sweep_auto_transitions(now, lock: DistributedLock, stats: Counter) -> None:
    categories = (
        ("expired_unaccepted", TransactionStatus.ESCROWED, "expires_at", ExpireUnaccepted),
        ("auto_delivered", TransactionStatus.SHIPPED, "auto_deliver_at", AutoDeliver),
        ("auto_released", TransactionStatus.DELIVERED, "auto_release_at", AutoRelease),
    )
    for category, status, deadline_field, command_class in categories:
        due = EscrowTransaction.objects.filter(status=status, **{f"{deadline_field}__lte": now})
        for batch in _batches(due, deadline_field, lock):
            for transaction_id, version in batch:
                _run_trigger(
                    command_class(
                        actor=Actor.system(),
                        transaction_id=transaction_id,
                        expected_version=version,
                    ),
                    stats,
                    category,
                )


def _clear_expired_codes(now, stats: Counter) -> None:
    from escrow.services import OtpService

    cleared = OtpService.clear_expired(now)
    if cleared:
        stats["otp_cleared"] += cleared


def _report_overdue_shipments(now, stats: Counter) -> None:
    # No transition exists for a seller who accepted but never shipped;
    # these are surfaced for operations to follow up.
    overdue = EscrowTransaction.objects.filter(status=TransactionStatus.ACCEPTED, expires_at__lte=now)
    for transaction_id, expires_at in overdue.values_list("id", "expires_at")[: _batch_size()]:
        logger.warning(
            "Accepted transaction past its shipping deadline",
            extra={"transaction_id": str(transaction_id), "expires_at": expires_at.isoformat()},
        )
        stats["overdue_shipments"] += 1


def _poll(transaction_id, stats: Counter, category: str):
    from escrow.services import PaymentGatewayService

    try:
        result = PaymentGatewayService.poll(transaction_id)
    except Exception:
        logger.exception("Unexpected error polling payment status", extra={"transaction_id": str(transaction_id)})
        stats[f"{category}_errors"] += 1
        return None

    if not result.success:
        logger.warning(
            f"Payment status poll failed: {result.error}",
            extra={"transaction_id": str(transaction_id), "error_code": result.error_code},
        )
        stats[f"{category}_errors"] += 1
        return None
    return result.data


def _reconcile_pending(now, lock: DistributedLock, stats: Counter) -> None:
    cutoff = now - timedelta(minutes=getattr(settings, "ESCROW_RECONCILE_AFTER_MINUTES", 5))
    stale = EscrowTransaction.objects.filter(
        status=TransactionStatus.PENDING,
        requires_manual_intervention=False,
        provider_reference__isnull=False,
        payment_initiated_at__lte=cutoff,
    ).filter(Q(expires_at__isnull=True) | Q(expires_at__gt=now))

    for batch in _batches(stale, "payment_initiated_at", lock):
        for transaction_id, _version in batch:
            if _poll(transaction_id, stats, "reconciled") is not None:
                stats["reconciled"] += 1


def _hold_refused_confirmation(txn: EscrowTransaction, stats: Counter) -> bool:
    # A refused confirmation means the provider holds the money and polls
    # keep answering CONFIRMED.
    refused = IdempotencyRecord.objects.filter(
        provider_reference=txn.provider_reference,
        event_type=GatewayEventType.PAYMENT_CONFIRMED,
        status=IdempotencyRecordStatus.REJECTED,
    ).first()
    if refused is None:
        return False

    logger.error(
        "Unpaid transaction has a refused payment confirmation - held for manual review",
        extra={"transaction_id": str(txn.id), "record_id": str(refused.id)},
    )
    txn.flag_for_review(refused.error_message or "Payment confirmation was refused")
    stats["held_for_review"] += 1
    return True


def _expire_unpaid(now, lock: DistributedLock, stats: Counter) -> None:
    expired = EscrowTransaction.objects.filter(
        status=TransactionStatus.PENDING,
        requires_manual_intervention=False,
        expires_at__lte=now,
    )

    for batch in _batches(expired, "expires_at", lock):
        for transaction_id, version in batch:
            txn = EscrowTransaction.objects.get(id=transaction_id)
            if txn.provider_reference:
                if _hold_refused_confirmation(txn, stats):
                    continue

                # Last chance for a payment the callback never reported
                poll = _poll(transaction_id, stats, "expired_unpaid")
                if poll is None:
                    continue
                if poll.transaction.requires_manual_intervention:
                    stats["held_for_review"] += 1
                    continue
                if poll.outcome is not PaymentOutcome.PENDING:
                    stats["reconciled"] += 1
                    continue
                version = poll.transaction.version

            _run_trigger(
                ExpireUnpaid(actor=Actor.system(), transaction_id=transaction_id, expected_version=version),
                stats,
                "expired_unpaid",
            )


# =============================================================================
# Periodic Task
# =============================================================================


@shared_task(bind=True)
def sweep_escrow_deadlines(self) -> dict:
    """
    Apply every deadline that has passed.

    Returns:
        Dict with:
        - status: "completed" or "skipped" (another sweep holds the lock)
        - one count per category, plus "<category>_errors" counts
    """
    lock = DistributedLock(SWEEP_LOCK_KEY, ttl=SWEEP_LOCK_TTL, blocking=False)
    try:
        lock.acquire()
    except LockAcquisitionError:
        logger.info(
            "Deadline sweep skipped - another sweep in progress",
            extra={"task_id": self.request.id},
        )
        return {"status": "skipped", "reason": "Another sweep is in progress"}

    stats: Counter = Counter()
    now = timezone.now()
    try:
        _sweep_auto_transitions(now, lock, stats)
        _reconcile_pending(now, lock, stats)
        _expire_unpaid(now, lock, stats)
        _report_overdue_shipments(now, stats)
        _clear_expired_codes(now, stats)
    finally:
        lock.release()

    if stats:
        logger.info("Deadline sweep complete", extra=dict(stats))

    return {"status": "completed", **stats}


__all__ = [
    "sweep_escrow_deadlines",
]
