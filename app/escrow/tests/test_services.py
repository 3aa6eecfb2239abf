"""
Tests for escrow services.

EscrowService is exercised trigger by trigger: the happy edge, the actor
guard, the state guard and the deadline guard where one applies. The
payment gateway service is tested with MpesaAdapter mocked out.
"""

from __future__ import annotations

import uuid
from datetime import timedelta

import pytest
from django.utils import timezone
from freezegun import freeze_time

from escrow.adapters import PaymentOutcome, StatusResult, StkPushResult
from escrow.commands import (
    Actor,
    AutoDeliver,
    AutoRelease,
    ConfirmPayment,
    CreateTransaction,
    ExpireUnaccepted,
    ExpireUnpaid,
    FailPayment,
    OpenDispute,
    Release,
    ResolveDisputeRefund,
    ResolveDisputeRelease,
    SellerAccept,
    SellerReject,
    SellerShip,
)
from escrow.exceptions import GatewayRejectedError, GatewayUnavailableError, NoPayoutMethodError
from escrow.models import AuditEntry, DeliveryOtp, EscrowTransaction, PayoutInstruction, PayoutMethod
from escrow.services import EscrowService, PaymentGatewayService, PayoutMethodRegistry
from escrow.services.idempotency_ledger import LedgerOutcome
from escrow.state_machines import ActorRole, InstructionKind, PayoutMethodType, TransactionStatus
from escrow.tests.factories import PayoutMethodFactory


def _reload(txn):
    return EscrowTransaction.objects.get(pk=txn.pk)


# =============================================================================
# Creation
# =============================================================================


class TestCreateTransaction:
    def test_buyer_creates_pending_transaction(self, buyer, seller, buyer_actor):
        result = EscrowService.execute(
            CreateTransaction(
                actor=buyer_actor,
                seller_id=str(seller.pk),
                amount=12500,
                item_name="Office chair",
            )
        )

        assert result.success
        txn = result.data.transaction
        assert txn.status == TransactionStatus.PENDING
        assert txn.version == 1
        assert txn.buyer == buyer
        assert txn.payer_phone == "254711000001"
        assert txn.expires_at > timezone.now() + timedelta(hours=23)
        entry = AuditEntry.objects.get(transaction=txn)
        assert entry.trigger == "create"
        assert entry.from_status == ""
        assert entry.to_status == TransactionStatus.PENDING

    def test_initiation_is_queued_after_commit(
        self, seller, buyer_actor, mocker, django_capture_on_commit_callbacks
    ):
        delay = mocker.patch("escrow.tasks.initiate_payment.delay")

        with django_capture_on_commit_callbacks(execute=True):
            result = EscrowService.execute(
                CreateTransaction(actor=buyer_actor, seller_id=str(seller.pk), amount=500)
            )

        delay.assert_called_once_with(str(result.data.transaction.id))

    def test_explicit_payer_phone_is_normalized(self, seller, buyer_actor):
        result = EscrowService.execute(
            CreateTransaction(actor=buyer_actor, seller_id=str(seller.pk), amount=500, payer_phone="0799 123 456")
        )

        assert result.data.transaction.payer_phone == "254799123456"

    def test_invalid_payer_phone_is_rejected(self, seller, buyer_actor):
        result = EscrowService.execute(
            CreateTransaction(actor=buyer_actor, seller_id=str(seller.pk), amount=500, payer_phone="12345")
        )

        assert result.error_code == "VALIDATION"

    @pytest.mark.parametrize("amount", [0, -100])
    def test_non_positive_amount_is_rejected(self, seller, buyer_actor, amount):
        result = EscrowService.execute(
            CreateTransaction(actor=buyer_actor, seller_id=str(seller.pk), amount=amount)
        )

        assert result.error_code == "VALIDATION"
        assert not EscrowTransaction.objects.exists()

    def test_unsupported_currency_is_rejected(self, seller, buyer_actor):
        result = EscrowService.execute(
            CreateTransaction(actor=buyer_actor, seller_id=str(seller.pk), amount=500, currency="USD")
        )

        assert result.error_code == "VALIDATION"
        assert result.details["supported"] == ["KES"]

    def test_buying_from_yourself_is_rejected(self, buyer, buyer_actor):
        result = EscrowService.execute(CreateTransaction(actor=buyer_actor, seller_id=str(buyer.pk), amount=500))

        assert result.error_code == "VALIDATION"

    def test_unknown_seller(self, buyer_actor):
        result = EscrowService.execute(CreateTransaction(actor=buyer_actor, seller_id="999999", amount=500))

        assert result.error_code == "NOT_FOUND"

    def test_unknown_buyer(self, seller):
        actor = Actor(actor_id="999998", role=ActorRole.BUYER)

        result = EscrowService.execute(CreateTransaction(actor=actor, seller_id=str(seller.pk), amount=500))

        assert result.error_code == "NOT_FOUND"
        assert not EscrowTransaction.objects.exists()

    def test_deactivated_buyer(self, buyer, buyer_actor, seller):
        buyer.is_active = False
        buyer.save(update_fields=["is_active"])

        result = EscrowService.execute(CreateTransaction(actor=buyer_actor, seller_id=str(seller.pk), amount=500))

        assert result.error_code == "NOT_FOUND"

    def test_only_buyers_create(self, seller, seller_actor, buyer):
        result = EscrowService.execute(CreateTransaction(actor=seller_actor, seller_id=str(buyer.pk), amount=500))

        assert result.error_code == "GUARD_VIOLATION"
        assert result.details["reason"] == "actor"


# =============================================================================
# Payment
# =============================================================================


class TestConfirmPayment:
    def test_confirmation_escrows_funds(self, pending_txn, system_actor):
        result = EscrowService.execute(
            ConfirmPayment(
                actor=system_actor,
                provider_reference=pending_txn.provider_reference,
                amount=5000,
                receipt_number="QK12ABC345",
            )
        )

        assert result.success
        txn = _reload(pending_txn)
        assert txn.status == TransactionStatus.ESCROWED
        assert txn.provider_receipt == "QK12ABC345"
        assert txn.escrowed_at is not None
        assert txn.expires_at > timezone.now() + timedelta(hours=47)
        assert txn.version == pending_txn.version + 1

    def test_amount_mismatch_is_refused(self, pending_txn, system_actor):
        result = EscrowService.execute(
            ConfirmPayment(actor=system_actor, provider_reference=pending_txn.provider_reference, amount=4999)
        )

        assert result.error_code == "GUARD_VIOLATION"
        assert result.details["reason"] == "amount"
        assert result.details["expected"] == 5000
        assert _reload(pending_txn).status == TransactionStatus.PENDING

    def test_poll_confirmation_without_amount_is_accepted(self, pending_txn, system_actor):
        result = EscrowService.execute(
            ConfirmPayment(actor=system_actor, provider_reference=pending_txn.provider_reference)
        )

        assert result.success

    def test_users_cannot_confirm_payments(self, pending_txn, buyer_actor):
        result = EscrowService.execute(
            ConfirmPayment(actor=buyer_actor, provider_reference=pending_txn.provider_reference, amount=5000)
        )

        assert result.details["reason"] == "actor"

    def test_unknown_reference(self, db, system_actor):
        result = EscrowService.execute(ConfirmPayment(actor=system_actor, provider_reference="ws_CO_unknown"))

        assert result.error_code == "NOT_FOUND"

    def test_second_confirmation_is_a_state_refusal(self, escrowed_txn, system_actor):
        result = EscrowService.execute(
            ConfirmPayment(actor=system_actor, provider_reference=escrowed_txn.provider_reference, amount=5000)
        )

        assert result.error_code == "GUARD_VIOLATION"
        assert result.details["reason"] == "state"


class TestFailPayment:
    def test_failure_cancels_without_instruction(self, pending_txn, system_actor):
        result = EscrowService.execute(
            FailPayment(
                actor=system_actor,
                provider_reference=pending_txn.provider_reference,
                reason="Request cancelled by user",
            )
        )

        assert result.success
        txn = _reload(pending_txn)
        assert txn.status == TransactionStatus.CANCELLED
        assert txn.cancellation_reason == "Request cancelled by user"
        assert not PayoutInstruction.objects.filter(transaction=txn).exists()


class TestExpireUnpaid:
    def test_refused_before_deadline(self, unpaid_txn, system_actor):
        result = EscrowService.execute(ExpireUnpaid(actor=system_actor, transaction_id=unpaid_txn.id))

        assert result.details["reason"] == "deadline"

    def test_cancels_after_deadline(self, unpaid_txn, system_actor):
        with freeze_time(unpaid_txn.expires_at + timedelta(seconds=1)):
            result = EscrowService.execute(ExpireUnpaid(actor=system_actor, transaction_id=unpaid_txn.id))

        assert result.success
        assert _reload(unpaid_txn).status == TransactionStatus.CANCELLED


# =============================================================================
# Seller Triggers
# =============================================================================


class TestSellerAccept:
    def test_seller_accepts(self, escrowed_txn, seller_actor):
        result = EscrowService.execute(SellerAccept(actor=seller_actor, transaction_id=escrowed_txn.id))

        assert result.success
        assert result.data.from_status == TransactionStatus.ESCROWED
        txn = _reload(escrowed_txn)
        assert txn.status == TransactionStatus.ACCEPTED
        assert txn.expires_at > timezone.now() + timedelta(hours=71)

    def test_other_seller_cannot_accept(self, escrowed_txn, stranger):
        actor = Actor.for_user(stranger, ActorRole.SELLER)

        result = EscrowService.execute(SellerAccept(actor=actor, transaction_id=escrowed_txn.id))

        assert result.error_code == "GUARD_VIOLATION"
        assert result.details["reason"] == "actor"

    def test_buyer_role_cannot_accept(self, escrowed_txn, buyer_actor):
        result = EscrowService.execute(SellerAccept(actor=buyer_actor, transaction_id=escrowed_txn.id))

        assert result.details["reason"] == "actor"

    def test_cannot_accept_unpaid(self, pending_txn, seller_actor):
        result = EscrowService.execute(SellerAccept(actor=seller_actor, transaction_id=pending_txn.id))

        assert result.details["reason"] == "state"
        assert result.details["status"] == TransactionStatus.PENDING

    def test_unknown_transaction(self, db, seller_actor):
        result = EscrowService.execute(SellerAccept(actor=seller_actor, transaction_id=uuid.uuid4()))

        assert result.error_code == "NOT_FOUND"


class TestSellerReject:
    @pytest.mark.parametrize("fixture_name", ["escrowed_txn", "accepted_txn"])
    def test_reject_emits_refund_to_payer(self, request, fixture_name, seller_actor):
        txn = request.getfixturevalue(fixture_name)

        result = EscrowService.execute(
            SellerReject(actor=seller_actor, transaction_id=txn.id, reason="Out of stock")
        )

        assert result.success
        instruction = result.data.instruction
        assert instruction.kind == InstructionKind.REFUND
        assert instruction.destination == txn.payer_phone
        assert instruction.amount == txn.amount
        reloaded = _reload(txn)
        assert reloaded.status == TransactionStatus.REJECTED
        assert reloaded.rejection_reason == "Out of stock"

    def test_cannot_reject_after_shipping(self, shipped_txn, seller_actor):
        result = EscrowService.execute(SellerReject(actor=seller_actor, transaction_id=shipped_txn.id))

        assert result.details["reason"] == "state"


class TestSellerShip:
    def test_ship_sets_deadlines_and_issues_code(self, accepted_txn, seller_actor, mocker):
        notify = mocker.patch("escrow.services.escrow_service.EscrowService._notify")

        result = EscrowService.execute(
            SellerShip(
                actor=seller_actor,
                transaction_id=accepted_txn.id,
                courier_name="Sendy",
                tracking_number="SND-42",
                delivery_proof_urls=("https://example.com/receipt.jpg",),
            )
        )

        assert result.success
        txn = _reload(accepted_txn)
        assert txn.status == TransactionStatus.SHIPPED
        assert txn.courier_name == "Sendy"
        assert txn.delivery_proof_urls == ["https://example.com/receipt.jpg"]
        assert txn.expires_at is None
        assert txn.auto_deliver_at < txn.auto_release_at
        assert DeliveryOtp.objects.get(transaction=txn).is_live
        event, _ = notify.call_args[0]
        assert event == "shipped"
        assert notify.call_args[1]["code"].isdigit()

    def test_audit_never_contains_the_code(self, accepted_txn, seller_actor):
        EscrowService.execute(SellerShip(actor=seller_actor, transaction_id=accepted_txn.id))

        entry = AuditEntry.objects.get(transaction=accepted_txn, trigger="seller_ship")
        assert "code" not in entry.details


class TestExpireUnaccepted:
    def test_refused_before_acceptance_deadline(self, escrowed_txn, system_actor):
        result = EscrowService.execute(ExpireUnaccepted(actor=system_actor, transaction_id=escrowed_txn.id))

        assert result.details["reason"] == "deadline"

    def test_cancels_and_refunds_after_deadline(self, escrowed_txn, system_actor):
        with freeze_time(escrowed_txn.expires_at + timedelta(minutes=1)):
            result = EscrowService.execute(ExpireUnaccepted(actor=system_actor, transaction_id=escrowed_txn.id))

        assert result.success
        assert result.data.instruction.kind == InstructionKind.REFUND
        assert _reload(escrowed_txn).status == TransactionStatus.CANCELLED


# =============================================================================
# Delivery & Release
# =============================================================================


class TestAutoDeliver:
    def test_refused_before_deadline(self, shipped_txn, system_actor):
        result = EscrowService.execute(AutoDeliver(actor=system_actor, transaction_id=shipped_txn.id))

        assert result.details["reason"] == "deadline"

    def test_delivers_and_invalidates_code(self, shipped_with_code, system_actor):
        txn, code = shipped_with_code

        with freeze_time(txn.auto_deliver_at + timedelta(minutes=1)):
            result = EscrowService.execute(AutoDeliver(actor=system_actor, transaction_id=txn.id))

        assert result.success
        assert _reload(txn).status == TransactionStatus.DELIVERED
        assert DeliveryOtp.objects.get(transaction=txn).code_hash == ""

    def test_dispute_window_never_shorter_than_minimum(self, shipped_txn, system_actor):
        deliver_time = shipped_txn.auto_deliver_at + timedelta(hours=47)

        with freeze_time(deliver_time):
            EscrowService.execute(AutoDeliver(actor=system_actor, transaction_id=shipped_txn.id))

        assert _reload(shipped_txn).auto_release_at >= deliver_time + timedelta(hours=48)


class TestRelease:
    def test_buyer_release_pays_seller(self, delivered_txn, buyer_actor, payout_method):
        result = EscrowService.execute(Release(actor=buyer_actor, transaction_id=delivered_txn.id))

        assert result.success
        instruction = result.data.instruction
        assert instruction.kind == InstructionKind.PAYOUT
        assert instruction.destination == "254722000002"
        assert instruction.payout_method == payout_method
        txn = _reload(delivered_txn)
        assert txn.status == TransactionStatus.COMPLETED
        assert txn.payout_method == payout_method

    def test_release_without_payout_method_fails_cleanly(self, delivered_txn, buyer_actor):
        result = EscrowService.execute(Release(actor=buyer_actor, transaction_id=delivered_txn.id))

        assert result.error_code == "NO_PAYOUT_METHOD"
        assert _reload(delivered_txn).status == TransactionStatus.DELIVERED
        assert not PayoutInstruction.objects.exists()

    def test_system_release_waits_for_dispute_window(self, delivered_txn, system_actor, payout_method):
        result = EscrowService.execute(Release(actor=system_actor, transaction_id=delivered_txn.id))

        assert result.details["reason"] == "deadline"

    def test_auto_release_after_window(self, delivered_txn, system_actor, payout_method):
        with freeze_time(delivered_txn.auto_release_at + timedelta(seconds=1)):
            result = EscrowService.execute(AutoRelease(actor=system_actor, transaction_id=delivered_txn.id))

        assert result.success
        assert _reload(delivered_txn).status == TransactionStatus.COMPLETED

    def test_completed_transaction_accepts_no_triggers(self, delivered_txn, buyer_actor, payout_method):
        EscrowService.execute(Release(actor=buyer_actor, transaction_id=delivered_txn.id))

        again = EscrowService.execute(Release(actor=buyer_actor, transaction_id=delivered_txn.id))
        dispute = EscrowService.execute(OpenDispute(actor=buyer_actor, transaction_id=delivered_txn.id))

        assert again.details["reason"] == "state"
        assert dispute.details["reason"] == "state"
        assert PayoutInstruction.objects.filter(transaction=delivered_txn).count() == 1


# =============================================================================
# Disputes
# =============================================================================


class TestOpenDispute:
    def test_buyer_opens_dispute(self, delivered_txn, buyer_actor):
        result = EscrowService.execute(
            OpenDispute(actor=buyer_actor, transaction_id=delivered_txn.id, reason="Wrong colour")
        )

        assert result.success
        txn = _reload(delivered_txn)
        assert txn.status == TransactionStatus.DISPUTED
        assert txn.dispute_reason == "Wrong colour"
        # Frozen, not cleared
        assert txn.auto_release_at == delivered_txn.auto_release_at

    def test_fraud_signal_may_dispute(self, delivered_txn):
        result = EscrowService.execute(
            OpenDispute(actor=Actor(actor_id=None, role=ActorRole.FRAUD_SIGNAL), transaction_id=delivered_txn.id)
        )

        assert result.success

    def test_seller_cannot_dispute(self, delivered_txn, seller_actor):
        result = EscrowService.execute(OpenDispute(actor=seller_actor, transaction_id=delivered_txn.id))

        assert result.details["reason"] == "actor"

    def test_window_closed(self, delivered_txn, buyer_actor):
        with freeze_time(delivered_txn.auto_release_at):
            result = EscrowService.execute(OpenDispute(actor=buyer_actor, transaction_id=delivered_txn.id))

        assert result.details["reason"] == "deadline"

    def test_disputed_transaction_is_not_auto_released(self, disputed_txn, system_actor, payout_method):
        with freeze_time(disputed_txn.auto_release_at + timedelta(days=1)):
            result = EscrowService.execute(AutoRelease(actor=system_actor, transaction_id=disputed_txn.id))

        assert result.details["reason"] == "state"


class TestResolveDispute:
    def test_release_ruling_pays_seller(self, disputed_txn, adjudicator_actor, payout_method):
        result = EscrowService.execute(
            ResolveDisputeRelease(actor=adjudicator_actor, transaction_id=disputed_txn.id, notes="Photos match")
        )

        assert result.success
        assert result.data.instruction.kind == InstructionKind.PAYOUT
        assert _reload(disputed_txn).status == TransactionStatus.COMPLETED

    def test_refund_ruling_refunds_payer(self, disputed_txn, adjudicator_actor):
        result = EscrowService.execute(
            ResolveDisputeRefund(actor=adjudicator_actor, transaction_id=disputed_txn.id)
        )

        assert result.success
        instruction = result.data.instruction
        assert instruction.kind == InstructionKind.REFUND
        assert instruction.destination == "254711000001"
        txn = _reload(disputed_txn)
        assert txn.status == TransactionStatus.REFUNDED
        assert txn.refunded_at is not None

    def test_parties_cannot_resolve(self, disputed_txn, buyer_actor):
        result = EscrowService.execute(ResolveDisputeRefund(actor=buyer_actor, transaction_id=disputed_txn.id))

        assert result.details["reason"] == "actor"

    def test_audit_trail_records_every_step(self, disputed_txn, adjudicator_actor):
        EscrowService.execute(ResolveDisputeRefund(actor=adjudicator_actor, transaction_id=disputed_txn.id))

        entry = AuditEntry.objects.get(transaction=disputed_txn)
        assert entry.actor_role == ActorRole.ADJUDICATOR
        assert entry.from_status == TransactionStatus.DISPUTED
        assert entry.to_status == TransactionStatus.REFUNDED
        assert entry.details["instruction_kind"] == InstructionKind.REFUND


# =============================================================================
# PayoutMethodRegistry
# =============================================================================


class TestPayoutMethodRegistry:
    def test_first_method_becomes_default(self, seller):
        result = PayoutMethodRegistry.add_method(owner=seller, account_number="0722000002")

        assert result.success
        assert result.data.is_default is True
        assert result.data.account_number == "254722000002"

    def test_second_method_is_not_default_unless_asked(self, seller, payout_method):
        result = PayoutMethodRegistry.add_method(owner=seller, account_number="0733000003")

        assert result.data.is_default is False
        assert PayoutMethodRegistry.resolve_default(seller.pk) == payout_method

    def test_make_default_moves_the_flag(self, seller, payout_method):
        result = PayoutMethodRegistry.add_method(owner=seller, account_number="0733000003", make_default=True)

        assert PayoutMethodRegistry.resolve_default(seller.pk) == result.data
        assert PayoutMethod.objects.get(pk=payout_method.pk).is_default is False

    def test_invalid_mobile_number(self, seller):
        result = PayoutMethodRegistry.add_method(owner=seller, account_number="12345")

        assert result.error_code == "VALIDATION"
        assert "account_number" in result.errors

    def test_bank_account_needs_number(self, seller):
        result = PayoutMethodRegistry.add_method(
            owner=seller, account_number="", method_type=PayoutMethodType.BANK, provider="KCB"
        )

        assert result.error_code == "VALIDATION"

    def test_set_default(self, seller, payout_method):
        other = PayoutMethodFactory(owner=seller, is_default=False)

        result = PayoutMethodRegistry.set_default(seller, other.id)

        assert result.success
        assert PayoutMethodRegistry.resolve_default(seller.pk) == other

    def test_set_default_of_someone_else(self, seller, stranger):
        theirs = PayoutMethodFactory(owner=stranger)

        result = PayoutMethodRegistry.set_default(seller, theirs.id)

        assert result.error_code == "NOT_FOUND"

    def test_deactivated_default_cannot_be_resolved(self, seller, payout_method):
        PayoutMethodRegistry.deactivate(seller, payout_method.id)

        with pytest.raises(NoPayoutMethodError):
            PayoutMethodRegistry.resolve_default(seller.pk)


# =============================================================================
# PaymentGatewayService
# =============================================================================


@pytest.fixture
def mock_mpesa(mocker):
    adapter = mocker.patch("escrow.services.payment_gateway.MpesaAdapter")
    adapter.initiate_stk_push.return_value = StkPushResult(
        checkout_request_id="ws_CO_260101120000000001",
        merchant_request_id="29115-34620561-1",
        customer_message="Success. Request accepted for processing",
    )
    return adapter


class TestInitiate:
    def test_sends_stk_push_and_stores_reference(self, unpaid_txn, buyer_actor, mock_mpesa):
        result = PaymentGatewayService.initiate(unpaid_txn.id, actor=buyer_actor)

        assert result.success
        assert result.data.created is True
        txn = _reload(unpaid_txn)
        assert txn.provider_reference == "ws_CO_260101120000000001"
        assert txn.payment_initiated_at is not None
        params = mock_mpesa.initiate_stk_push.call_args[0][0]
        assert params.amount == 5000
        assert params.phone_number == "254711000001"
        assert params.account_reference == f"SWL-{unpaid_txn.id.hex[:8].upper()}"

    def test_second_call_returns_existing_reference(self, unpaid_txn, buyer_actor, mock_mpesa):
        PaymentGatewayService.initiate(unpaid_txn.id, actor=buyer_actor)

        result = PaymentGatewayService.initiate(unpaid_txn.id, actor=buyer_actor)

        assert result.data.created is False
        assert result.data.provider_reference == "ws_CO_260101120000000001"
        mock_mpesa.initiate_stk_push.assert_called_once()

    def test_payer_phone_override(self, unpaid_txn, buyer_actor, mock_mpesa):
        PaymentGatewayService.initiate(unpaid_txn.id, payer_phone="+254 700 000 111", actor=buyer_actor)

        assert _reload(unpaid_txn).payer_phone == "254700000111"

    def test_only_the_buyer_may_pay(self, unpaid_txn, seller_actor, mock_mpesa):
        result = PaymentGatewayService.initiate(unpaid_txn.id, actor=seller_actor)

        assert result.error_code == "GUARD_VIOLATION"
        mock_mpesa.initiate_stk_push.assert_not_called()

    def test_provider_error_is_surfaced(self, unpaid_txn, buyer_actor, mock_mpesa):
        mock_mpesa.initiate_stk_push.side_effect = GatewayRejectedError("Invalid PhoneNumber", provider_code="400.002.02")

        result = PaymentGatewayService.initiate(unpaid_txn.id, actor=buyer_actor)

        assert result.error_code == "GATEWAY_ERROR"
        assert result.details["provider_code"] == "400.002.02"
        assert _reload(unpaid_txn).provider_reference is None

    def test_concurrent_initiation_is_refused(self, unpaid_txn, buyer_actor, mock_mpesa, mock_redis, mocker):
        mocker.patch("escrow.services.payment_gateway.INITIATE_LOCK_TIMEOUT", 0.1)
        mock_redis.set.return_value = False

        result = PaymentGatewayService.initiate(unpaid_txn.id, actor=buyer_actor)

        assert result.error_code == "LOCK_ACQUISITION_FAILED"
        mock_mpesa.initiate_stk_push.assert_not_called()

    def test_not_found(self, db, mock_mpesa):
        result = PaymentGatewayService.initiate(uuid.uuid4())

        assert result.error_code == "NOT_FOUND"


class TestPoll:
    def test_pending_answer_changes_nothing(self, pending_txn, mock_mpesa):
        mock_mpesa.query_stk_status.return_value = StatusResult(
            checkout_request_id=pending_txn.provider_reference, outcome=PaymentOutcome.PENDING
        )

        result = PaymentGatewayService.poll(pending_txn.id)

        assert result.data.outcome is PaymentOutcome.PENDING
        assert _reload(pending_txn).status == TransactionStatus.PENDING

    def test_confirmed_answer_is_applied_through_ledger(self, pending_txn, mock_mpesa):
        mock_mpesa.query_stk_status.return_value = StatusResult(
            checkout_request_id=pending_txn.provider_reference,
            outcome=PaymentOutcome.CONFIRMED,
            result_code="0",
        )

        result = PaymentGatewayService.poll(pending_txn.id)

        assert result.data.ledger_outcome is LedgerOutcome.APPLIED
        assert result.data.transaction.status == TransactionStatus.ESCROWED

    def test_settled_transaction_is_not_queried_again(self, pending_txn, mock_mpesa):
        mock_mpesa.query_stk_status.return_value = StatusResult(
            checkout_request_id=pending_txn.provider_reference,
            outcome=PaymentOutcome.CONFIRMED,
            result_code="0",
        )
        PaymentGatewayService.poll(pending_txn.id)
        mock_mpesa.query_stk_status.reset_mock()

        result = PaymentGatewayService.poll(pending_txn.id)

        assert result.data.outcome is PaymentOutcome.CONFIRMED
        mock_mpesa.query_stk_status.assert_not_called()

    def test_failed_answer_cancels(self, pending_txn, mock_mpesa):
        mock_mpesa.query_stk_status.return_value = StatusResult(
            checkout_request_id=pending_txn.provider_reference,
            outcome=PaymentOutcome.FAILED,
            result_code="1032",
            result_description="Request cancelled by user",
        )

        result = PaymentGatewayService.poll(pending_txn.id)

        assert result.data.transaction.status == TransactionStatus.CANCELLED

    def test_provider_error(self, pending_txn, mock_mpesa):
        mock_mpesa.query_stk_status.side_effect = GatewayUnavailableError("down")

        result = PaymentGatewayService.poll(pending_txn.id)

        assert result.error_code == "GATEWAY_ERROR"

    def test_strangers_cannot_poll(self, pending_txn, stranger, mock_mpesa):
        actor = Actor.for_user(stranger, ActorRole.BUYER)

        result = PaymentGatewayService.poll(pending_txn.id, actor=actor)

        assert result.error_code == "GUARD_VIOLATION"
        mock_mpesa.query_stk_status.assert_not_called()
