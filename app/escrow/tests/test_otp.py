"""
Tests for delivery code issue and verification.

Covers OtpService directly (hashing, expiry, lockout, re-issue) and the
buyer_confirm_otp trigger that consumes a code.
"""

from datetime import timedelta

import pytest
from django.utils import timezone
from freezegun import freeze_time

from escrow.commands import Actor, BuyerConfirmOtp, ResendOtp
from escrow.exceptions import EscrowValidationError
from escrow.models import DeliveryOtp, EscrowTransaction
from escrow.services import EscrowService, OtpService
from escrow.services.otp_service import OtpVerification
from escrow.state_machines import ActorRole, TransactionStatus


def _wrong(code: str) -> str:
    return "000000" if code != "000000" else "111111"


# =============================================================================
# OtpService
# =============================================================================


class TestIssue:
    def test_code_is_six_digits(self, shipped_txn):
        code = OtpService.issue(shipped_txn)

        assert len(code) == 6
        assert code.isdigit()

    def test_only_hash_is_stored(self, shipped_txn):
        code = OtpService.issue(shipped_txn)

        otp = DeliveryOtp.objects.get(transaction=shipped_txn)
        assert otp.code_hash == OtpService.hash_code(code, otp.salt)
        assert code not in otp.code_hash
        assert otp.issued_count == 1
        assert otp.is_live

    def test_reissue_invalidates_previous_code(self, shipped_with_code):
        txn, first_code = shipped_with_code

        second_code = OtpService.issue(txn)

        if first_code != second_code:
            assert OtpService.verify(txn, first_code) is OtpVerification.INVALID
        assert OtpService.verify(txn, second_code) is OtpVerification.VALID
        assert DeliveryOtp.objects.get(transaction=txn).issued_count == 2

    def test_reissue_keeps_active_lockout(self, shipped_with_code):
        txn, code = shipped_with_code
        for _ in range(3):
            OtpService.verify(txn, _wrong(code))

        new_code = OtpService.issue(txn)

        assert OtpService.verify(txn, new_code) is OtpVerification.LOCKED

    def test_reissue_keeps_failed_attempts(self, shipped_with_code):
        txn, code = shipped_with_code
        for _ in range(2):
            OtpService.verify(txn, _wrong(code))

        new_code = OtpService.issue(txn)

        assert DeliveryOtp.objects.get(transaction=txn).failed_attempts == 2
        assert OtpService.verify(txn, _wrong(new_code)) is OtpVerification.INVALID
        assert OtpService.verify(txn, new_code) is OtpVerification.LOCKED

    def test_issue_does_not_bump_transaction_version(self, shipped_txn):
        version = shipped_txn.version

        OtpService.issue(shipped_txn)

        assert EscrowTransaction.objects.get(pk=shipped_txn.pk).version == version


class TestVerify:
    def test_correct_code_is_consumed(self, shipped_with_code):
        txn, code = shipped_with_code

        assert OtpService.verify(txn, code) is OtpVerification.VALID
        assert OtpService.verify(txn, code) is OtpVerification.EXPIRED

        otp = DeliveryOtp.objects.get(transaction=txn)
        assert otp.consumed_at is not None
        assert otp.code_hash == ""

    def test_no_code_issued_fails_closed(self, shipped_txn):
        assert OtpService.verify(shipped_txn, "123456") is OtpVerification.EXPIRED

    def test_expired_code_is_refused_and_cleared(self, shipped_with_code):
        txn, code = shipped_with_code
        later = timezone.now() + timedelta(hours=25)

        assert OtpService.verify(txn, code, now=later) is OtpVerification.EXPIRED
        assert DeliveryOtp.objects.get(transaction=txn).code_hash == ""

    def test_lockout_after_max_attempts(self, shipped_with_code):
        txn, code = shipped_with_code
        wrong = _wrong(code)

        outcomes = [OtpService.verify(txn, wrong) for _ in range(3)]

        assert outcomes == [OtpVerification.INVALID] * 3
        otp = DeliveryOtp.objects.get(transaction=txn)
        assert otp.locked_until is not None
        assert otp.failed_attempts == 0
        # Locked even for the right code
        assert OtpService.verify(txn, code) is OtpVerification.LOCKED

    def test_lockout_lifts_after_cooldown(self, shipped_with_code):
        txn, code = shipped_with_code
        for _ in range(3):
            OtpService.verify(txn, _wrong(code))

        after_cooldown = timezone.now() + timedelta(minutes=16)

        assert OtpService.verify(txn, code, now=after_cooldown) is OtpVerification.VALID

    def test_invalidate_drops_live_code(self, shipped_with_code):
        txn, code = shipped_with_code

        OtpService.invalidate(txn)

        assert OtpService.verify(txn, code) is OtpVerification.EXPIRED


class TestClearExpired:
    def test_expired_code_is_cleared_without_a_verify(self, shipped_with_code):
        txn, code = shipped_with_code
        later = timezone.now() + timedelta(hours=25)

        assert OtpService.clear_expired(later) == 1
        assert OtpService.clear_expired(later) == 0
        assert DeliveryOtp.objects.get(transaction=txn).code_hash == ""
        assert OtpService.verify(txn, code, now=later) is OtpVerification.EXPIRED

    def test_live_code_is_untouched(self, shipped_with_code):
        txn, code = shipped_with_code

        assert OtpService.clear_expired() == 0
        assert OtpService.verify(txn, code) is OtpVerification.VALID


class TestValidateFormat:
    @pytest.mark.parametrize("code", ["12345", "1234567", "12a456", "", None])
    def test_malformed_codes_rejected(self, code):
        with pytest.raises(EscrowValidationError):
            OtpService.validate_format(code)

    def test_leading_zeros_allowed(self):
        OtpService.validate_format("000123")


# =============================================================================
# buyer_confirm_otp trigger
# =============================================================================


class TestBuyerConfirmOtp:
    def test_correct_code_marks_delivered(self, shipped_with_code, buyer_actor):
        txn, code = shipped_with_code

        result = EscrowService.execute(BuyerConfirmOtp(actor=buyer_actor, transaction_id=txn.id, code=code))

        assert result.success
        txn = EscrowTransaction.objects.get(pk=txn.pk)
        assert txn.status == TransactionStatus.DELIVERED
        assert txn.delivered_at is not None

    def test_wrong_code_counts_attempt_without_transition(self, shipped_with_code, buyer_actor):
        txn, code = shipped_with_code

        result = EscrowService.execute(
            BuyerConfirmOtp(actor=buyer_actor, transaction_id=txn.id, code=_wrong(code))
        )

        assert result.success is False
        assert result.error_code == "OTP_INVALID"
        assert DeliveryOtp.objects.get(transaction=txn).failed_attempts == 1
        assert EscrowTransaction.objects.get(pk=txn.pk).status == TransactionStatus.SHIPPED

    def test_fourth_attempt_is_locked(self, shipped_with_code, buyer_actor):
        txn, code = shipped_with_code
        for _ in range(3):
            EscrowService.execute(BuyerConfirmOtp(actor=buyer_actor, transaction_id=txn.id, code=_wrong(code)))

        result = EscrowService.execute(BuyerConfirmOtp(actor=buyer_actor, transaction_id=txn.id, code=code))

        assert result.error_code == "OTP_LOCKED"
        assert EscrowTransaction.objects.get(pk=txn.pk).status == TransactionStatus.SHIPPED

    def test_expired_code(self, shipped_with_code, buyer_actor):
        txn, code = shipped_with_code

        with freeze_time(timezone.now() + timedelta(hours=25)):
            result = EscrowService.execute(BuyerConfirmOtp(actor=buyer_actor, transaction_id=txn.id, code=code))

        assert result.error_code == "OTP_EXPIRED"

    def test_malformed_code_is_validation_and_not_counted(self, shipped_with_code, buyer_actor):
        txn, _ = shipped_with_code

        result = EscrowService.execute(BuyerConfirmOtp(actor=buyer_actor, transaction_id=txn.id, code="12"))

        assert result.error_code == "VALIDATION"
        assert DeliveryOtp.objects.get(transaction=txn).failed_attempts == 0

    def test_seller_cannot_confirm(self, shipped_with_code, seller_actor):
        txn, code = shipped_with_code

        result = EscrowService.execute(BuyerConfirmOtp(actor=seller_actor, transaction_id=txn.id, code=code))

        assert result.error_code == "GUARD_VIOLATION"
        assert result.details["reason"] == "actor"


class TestResendOtp:
    def test_buyer_can_request_new_code(self, shipped_with_code, buyer_actor, mocker):
        txn, _ = shipped_with_code
        notify = mocker.patch("escrow.services.escrow_service.EscrowService._notify")

        result = EscrowService.execute(ResendOtp(actor=buyer_actor, transaction_id=txn.id))

        assert result.success
        assert result.data.changed is False
        assert DeliveryOtp.objects.get(transaction=txn).issued_count == 2
        notify.assert_called_once()
        assert notify.call_args[0][0] == "otp_reissued"
        assert len(notify.call_args[1]["code"]) == 6

    def test_resend_refused_outside_shipped(self, delivered_txn, buyer_actor):
        result = EscrowService.execute(ResendOtp(actor=buyer_actor, transaction_id=delivered_txn.id))

        assert result.error_code == "GUARD_VIOLATION"
        assert result.details["reason"] == "state"

    def test_stranger_cannot_resend(self, shipped_txn, stranger):
        actor = Actor.for_user(stranger, ActorRole.BUYER)

        result = EscrowService.execute(ResendOtp(actor=actor, transaction_id=shipped_txn.id))

        assert result.error_code == "GUARD_VIOLATION"

    def test_resending_between_misses_still_locks(self, shipped_with_code, buyer_actor, mocker):
        txn, code = shipped_with_code
        notify = mocker.patch("escrow.services.escrow_service.EscrowService._notify")
        for _ in range(2):
            EscrowService.execute(BuyerConfirmOtp(actor=buyer_actor, transaction_id=txn.id, code=_wrong(code)))
        EscrowService.execute(ResendOtp(actor=buyer_actor, transaction_id=txn.id))
        new_code = notify.call_args[1]["code"]

        miss = EscrowService.execute(
            BuyerConfirmOtp(actor=buyer_actor, transaction_id=txn.id, code=_wrong(new_code))
        )
        result = EscrowService.execute(BuyerConfirmOtp(actor=buyer_actor, transaction_id=txn.id, code=new_code))

        assert miss.error_code == "OTP_INVALID"
        assert result.error_code == "OTP_LOCKED"
        assert EscrowTransaction.objects.get(pk=txn.pk).status == TransactionStatus.SHIPPED
