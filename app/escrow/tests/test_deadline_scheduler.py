"""
Tests for the deadline sweep.

Each test builds a transaction through the normal lifecycle, moves the
clock past the relevant deadline with freezegun and runs one sweep.
"""

from datetime import timedelta

import pytest
from django.utils import timezone
from freezegun import freeze_time

from escrow.adapters import NormalizedEvent, PaymentOutcome, StatusResult
from escrow.commands import OpenDispute
from escrow.exceptions import GatewayTimeoutError
from escrow.models import DeliveryOtp, EscrowTransaction, PayoutInstruction
from escrow.services import EscrowService, IdempotencyLedger, LedgerOutcome
from escrow.state_machines import (
    EventSource,
    GatewayEventType,
    IdempotencyRecordStatus,
    InstructionKind,
    TransactionStatus,
)
from escrow.tests.factories import EscrowTransactionFactory, IdempotencyRecordFactory
from escrow.workers import deadline_scheduler, sweep_escrow_deadlines


@pytest.fixture
def mock_mpesa(mocker):
    return mocker.patch("escrow.services.payment_gateway.MpesaAdapter")


def _status(txn, outcome, code=""):
    return StatusResult(checkout_request_id=txn.provider_reference, outcome=outcome, result_code=code)


def _reload(txn):
    return EscrowTransaction.objects.get(pk=txn.pk)


def _sweep_at(moment):
    with freeze_time(moment):
        return sweep_escrow_deadlines()


class TestSweepLocking:
    def test_overlapping_sweep_is_skipped(self, db, mock_redis):
        mock_redis.set.return_value = False

        result = sweep_escrow_deadlines()

        assert result["status"] == "skipped"

    def test_lock_released_after_sweep(self, db, mock_redis):
        result = sweep_escrow_deadlines()

        assert result == {"status": "completed"}
        mock_redis.eval.assert_called()


class TestAutoTransitions:
    def test_unaccepted_escrow_is_cancelled_and_refunded(self, escrowed_txn):
        result = _sweep_at(escrowed_txn.expires_at + timedelta(minutes=1))

        assert result["expired_unaccepted"] == 1
        assert _reload(escrowed_txn).status == TransactionStatus.CANCELLED
        instruction = PayoutInstruction.objects.get(transaction=escrowed_txn)
        assert instruction.kind == InstructionKind.REFUND

    def test_nothing_happens_before_deadline(self, escrowed_txn):
        result = _sweep_at(escrowed_txn.expires_at - timedelta(minutes=1))

        assert "expired_unaccepted" not in result
        assert _reload(escrowed_txn).status == TransactionStatus.ESCROWED

    def test_shipped_is_auto_delivered(self, shipped_txn):
        result = _sweep_at(shipped_txn.auto_deliver_at + timedelta(minutes=1))

        assert result["auto_delivered"] == 1
        assert _reload(shipped_txn).status == TransactionStatus.DELIVERED

    def test_delivered_is_auto_released(self, delivered_txn, payout_method):
        result = _sweep_at(delivered_txn.auto_release_at + timedelta(minutes=1))

        assert result["auto_released"] == 1
        assert _reload(delivered_txn).status == TransactionStatus.COMPLETED
        assert PayoutInstruction.objects.get(transaction=delivered_txn).kind == InstructionKind.PAYOUT

    def test_release_without_payout_method_is_counted_and_retried_later(self, delivered_txn):
        moment = delivered_txn.auto_release_at + timedelta(minutes=1)

        result = _sweep_at(moment)

        assert result["auto_released_errors"] == 1
        assert _reload(delivered_txn).status == TransactionStatus.DELIVERED

    def test_disputed_is_never_auto_released(self, disputed_txn, payout_method):
        result = _sweep_at(disputed_txn.auto_release_at + timedelta(days=30))

        assert "auto_released" not in result
        assert _reload(disputed_txn).status == TransactionStatus.DISPUTED

    def test_shipped_runs_through_to_completed_over_two_sweeps(self, shipped_txn, payout_method):
        _sweep_at(shipped_txn.auto_deliver_at + timedelta(minutes=1))
        delivered = _reload(shipped_txn)

        result = _sweep_at(delivered.auto_release_at + timedelta(minutes=1))

        assert result["auto_released"] == 1
        assert _reload(shipped_txn).status == TransactionStatus.COMPLETED

    def test_one_failure_does_not_abort_the_sweep(self, escrowed_txn, mocker):
        other = EscrowTransactionFactory(
            provider_reference="ws_CO_other",
            payment_initiated_at=timezone.now(),
        )
        other.confirm_payment(receipt_number="QK99", acceptance_deadline=escrowed_txn.expires_at)
        other.save()

        original = EscrowService.execute
        calls = []

        def flaky(command):
            calls.append(command.transaction_id)
            if len(calls) == 1:
                raise RuntimeError("database hiccup")
            return original(command)

        mocker.patch.object(EscrowService, "execute", side_effect=flaky)

        result = _sweep_at(escrowed_txn.expires_at + timedelta(minutes=1))

        assert result["expired_unaccepted"] == 1
        assert result["expired_unaccepted_errors"] == 1

    def test_user_action_first_wins(self, delivered_txn, buyer_actor, payout_method, mocker):
        """A sweep holding an old version loses to a transition that landed first."""
        real_batches = deadline_scheduler._batches

        def batches_then_dispute(queryset, order_field, lock):
            for batch in real_batches(queryset, order_field, lock):
                if batch and batch[0][0] == delivered_txn.id:
                    with freeze_time(delivered_txn.auto_release_at - timedelta(minutes=1)):
                        EscrowService.execute(OpenDispute(actor=buyer_actor, transaction_id=delivered_txn.id))
                yield batch

        mocker.patch.object(deadline_scheduler, "_batches", side_effect=batches_then_dispute)

        result = _sweep_at(delivered_txn.auto_release_at + timedelta(minutes=1))

        assert result["auto_released_errors"] == 1
        assert _reload(delivered_txn).status == TransactionStatus.DISPUTED
        assert not PayoutInstruction.objects.filter(transaction=delivered_txn).exists()


class TestPendingPayments:
    def test_stale_push_is_reconciled(self, pending_txn, mock_mpesa):
        mock_mpesa.query_stk_status.return_value = _status(pending_txn, PaymentOutcome.CONFIRMED, "0")

        result = _sweep_at(pending_txn.payment_initiated_at + timedelta(minutes=6))

        assert result["reconciled"] == 1
        assert _reload(pending_txn).status == TransactionStatus.ESCROWED

    def test_fresh_push_is_left_alone(self, pending_txn, mock_mpesa):
        _sweep_at(pending_txn.payment_initiated_at + timedelta(minutes=2))

        mock_mpesa.query_stk_status.assert_not_called()

    def test_unpaid_without_push_expires(self, unpaid_txn, mock_mpesa):
        result = _sweep_at(unpaid_txn.expires_at + timedelta(minutes=1))

        assert result["expired_unpaid"] == 1
        assert _reload(unpaid_txn).status == TransactionStatus.CANCELLED
        mock_mpesa.query_stk_status.assert_not_called()

    def test_final_poll_pending_then_expires(self, pending_txn, mock_mpesa):
        mock_mpesa.query_stk_status.return_value = _status(pending_txn, PaymentOutcome.PENDING)

        result = _sweep_at(pending_txn.expires_at + timedelta(minutes=1))

        assert result["expired_unpaid"] == 1
        assert _reload(pending_txn).status == TransactionStatus.CANCELLED

    def test_final_poll_finds_late_payment(self, pending_txn, mock_mpesa):
        mock_mpesa.query_stk_status.return_value = _status(pending_txn, PaymentOutcome.CONFIRMED, "0")

        result = _sweep_at(pending_txn.expires_at + timedelta(minutes=1))

        assert "expired_unpaid" not in result
        assert result["reconciled"] == 1
        assert _reload(pending_txn).status == TransactionStatus.ESCROWED

    def test_expiry_deferred_when_provider_unreachable(self, pending_txn, mock_mpesa):
        mock_mpesa.query_stk_status.side_effect = GatewayTimeoutError("timed out")

        result = _sweep_at(pending_txn.expires_at + timedelta(minutes=1))

        assert result["expired_unpaid_errors"] == 1
        assert _reload(pending_txn).status == TransactionStatus.PENDING


class TestRefusedConfirmation:
    """The provider captured a payment whose confirmation was refused."""

    def _mismatched_webhook(self, txn):
        event = NormalizedEvent(
            provider_reference=txn.provider_reference,
            event_type=GatewayEventType.PAYMENT_CONFIRMED,
            outcome=PaymentOutcome.CONFIRMED,
            amount=4999,
            receipt_number="QK12ABC345",
            result_code="0",
        )
        result = IdempotencyLedger.ingest(event, source=EventSource.WEBHOOK)
        assert result.data.outcome is LedgerOutcome.REJECTED

    def test_held_transaction_is_never_polled_or_expired(self, pending_txn, mock_mpesa):
        mock_mpesa.query_stk_status.return_value = _status(pending_txn, PaymentOutcome.CONFIRMED, "0")
        self._mismatched_webhook(pending_txn)

        results = [
            _sweep_at(pending_txn.payment_initiated_at + timedelta(minutes=6)),
            _sweep_at(pending_txn.created_at + timedelta(days=2)),
            _sweep_at(pending_txn.created_at + timedelta(days=10)),
            _sweep_at(pending_txn.created_at + timedelta(days=60)),
        ]

        mock_mpesa.query_stk_status.assert_not_called()
        assert all("reconciled" not in result for result in results)
        assert all("expired_unpaid" not in result for result in results)
        txn = _reload(pending_txn)
        assert txn.status == TransactionStatus.PENDING
        assert txn.requires_manual_intervention is True

    def test_refused_record_without_flag_is_held_at_expiry(self, pending_txn, mock_mpesa):
        IdempotencyRecordFactory(
            provider_reference=pending_txn.provider_reference,
            status=IdempotencyRecordStatus.REJECTED,
            error_message="Confirmed amount does not match the transaction amount",
        )

        first = _sweep_at(pending_txn.expires_at + timedelta(minutes=1))
        second = _sweep_at(pending_txn.expires_at + timedelta(days=1))

        assert first["held_for_review"] == 1
        assert "expired_unpaid" not in first
        assert "held_for_review" not in second
        mock_mpesa.query_stk_status.assert_not_called()
        txn = _reload(pending_txn)
        assert txn.status == TransactionStatus.PENDING
        assert txn.requires_manual_intervention is True
        assert txn.review_reason == "Confirmed amount does not match the transaction amount"

    def test_poll_that_reports_mismatch_is_held(self, pending_txn, mock_mpesa):
        """Poll and flag arrive in the same sweep when the webhook is still queued."""
        mock_mpesa.query_stk_status.return_value = _status(pending_txn, PaymentOutcome.CONFIRMED, "0")
        # Webhook recorded but not applied yet
        IdempotencyRecordFactory(
            provider_reference=pending_txn.provider_reference,
            payload={
                "provider_reference": pending_txn.provider_reference,
                "event_type": GatewayEventType.PAYMENT_CONFIRMED,
                "outcome": PaymentOutcome.CONFIRMED.value,
                "amount": 4999,
                "result_code": "0",
            },
        )

        result = _sweep_at(pending_txn.expires_at + timedelta(minutes=1))

        assert result["held_for_review"] == 1
        assert "reconciled" not in result
        txn = _reload(pending_txn)
        assert txn.status == TransactionStatus.PENDING
        assert txn.requires_manual_intervention is True


class TestExpiredDeliveryCodes:
    def test_sweep_clears_expired_code(self, shipped_with_code):
        txn, code = shipped_with_code
        expires_at = DeliveryOtp.objects.get(transaction=txn).expires_at

        result = _sweep_at(expires_at + timedelta(minutes=1))

        assert result["otp_cleared"] == 1
        otp = DeliveryOtp.objects.get(transaction=txn)
        assert otp.code_hash == ""
        assert otp.salt == ""
        assert _reload(txn).status == TransactionStatus.SHIPPED

    def test_live_code_is_kept(self, shipped_with_code):
        txn, code = shipped_with_code
        otp = DeliveryOtp.objects.get(transaction=txn)

        result = _sweep_at(otp.expires_at - timedelta(minutes=1))

        assert "otp_cleared" not in result
        assert DeliveryOtp.objects.get(transaction=txn).code_hash == otp.code_hash


class TestOverdueShipments:
    def test_overdue_accepted_is_reported_only(self, accepted_txn):
        result = _sweep_at(accepted_txn.expires_at + timedelta(hours=1))

        assert result["overdue_shipments"] == 1
        assert _reload(accepted_txn).status == TransactionStatus.ACCEPTED
