"""
Audit trail writer.

Recording is a side effect of a transition, never a guard: a failing
insert is logged and rolled back to its own savepoint so the transition
itself still commits.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from django.db import DatabaseError, transaction

from core.services import BaseService
from escrow.models import AuditEntry

if TYPE_CHECKING:
    from typing import Any

    from escrow.commands import Actor
    from escrow.models import EscrowTransaction


class AuditTrail(BaseService):
    @classmethod
    def record(
        cls,
        txn: EscrowTransaction,
        actor: Actor,
        trigger: str,
        from_status: str,
        to_status: str,
        details: dict[str, Any] | None = None,
    ) -> AuditEntry | None:
        try:
            with transaction.atomic():
                return AuditEntry.objects.create(
                    transaction=txn,
                    actor_id=actor.actor_id,
                    actor_role=actor.role,
                    trigger=trigger,
                    from_status=from_status or "",
                    to_status=to_status,
                    details=details or {},
                )
        except DatabaseError:
            cls.get_logger().exception(
                "Failed to write audit entry",
                extra={
                    "transaction_id": str(txn.id),
                    "trigger": trigger,
                    "from_status": from_status,
                    "to_status": to_status,
                },
            )
            return None

    @staticmethod
    def history(txn: EscrowTransaction):
        return AuditEntry.objects.filter(transaction=txn).order_by("created_at")
