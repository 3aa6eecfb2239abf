"""
Tests for optimistic locking.

Tests check_version and the version-guarded path through EscrowService:
two triggers racing on one transaction can never both apply.
"""

import uuid

import pytest
from django.db import transaction

from core.exceptions import NotFoundError
from escrow.commands import SellerAccept, SellerReject
from escrow.exceptions import StaleRecordError
from escrow.locks import check_version
from escrow.models import AuditEntry, EscrowTransaction, PayoutInstruction
from escrow.services import EscrowService
from escrow.state_machines import TransactionStatus


class TestCheckVersion:
    """Tests for check_version function."""

    def test_returns_instance_when_version_matches(self, escrowed_txn):
        with transaction.atomic():
            result = check_version(EscrowTransaction, escrowed_txn.pk, expected_version=escrowed_txn.version)

        assert result.pk == escrowed_txn.pk
        assert result.version == escrowed_txn.version

    def test_raises_stale_record_when_version_mismatch(self, escrowed_txn):
        with pytest.raises(StaleRecordError) as exc_info:
            check_version(EscrowTransaction, escrowed_txn.pk, expected_version=999)

        assert "has been modified" in str(exc_info.value)
        assert exc_info.value.details["expected_version"] == 999
        assert exc_info.value.details["current_version"] == escrowed_txn.version

    def test_none_expected_version_locks_current(self, escrowed_txn):
        result = check_version(EscrowTransaction, escrowed_txn.pk, expected_version=None)

        assert result.pk == escrowed_txn.pk

    def test_raises_not_found_when_record_missing(self, db):
        fake_pk = uuid.uuid4()

        with pytest.raises(NotFoundError) as exc_info:
            check_version(EscrowTransaction, fake_pk, expected_version=1)

        assert exc_info.value.details["pk"] == str(fake_pk)


class TestVersionGuardedTriggers:
    def test_second_trigger_with_same_version_is_refused(self, escrowed_txn, seller_actor):
        """Accept and reject read the same version; only the first applies."""
        version = escrowed_txn.version

        first = EscrowService.execute(
            SellerAccept(actor=seller_actor, transaction_id=escrowed_txn.id, expected_version=version)
        )
        second = EscrowService.execute(
            SellerReject(actor=seller_actor, transaction_id=escrowed_txn.id, expected_version=version, reason="x")
        )

        assert first.success
        assert second.success is False
        assert second.error_code == "CONCURRENT_MODIFICATION"
        txn = EscrowTransaction.objects.get(pk=escrowed_txn.pk)
        assert txn.status == TransactionStatus.ACCEPTED
        assert txn.version == version + 1
        assert not PayoutInstruction.objects.filter(transaction=txn).exists()

    def test_refused_trigger_leaves_no_audit_entry(self, escrowed_txn, seller_actor):
        EscrowService.execute(
            SellerAccept(actor=seller_actor, transaction_id=escrowed_txn.id, expected_version=escrowed_txn.version + 5)
        )

        assert not AuditEntry.objects.filter(transaction=escrowed_txn).exists()
        assert EscrowTransaction.objects.get(pk=escrowed_txn.pk).version == escrowed_txn.version
