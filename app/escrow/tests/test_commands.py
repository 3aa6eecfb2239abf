"""
Tests for typed commands and boundary parsing.

parse_command turns request bodies into commands; anything outside the
trigger set or with unexpected, missing or mistyped fields is rejected
with VALIDATION before the engine sees it.
"""

import uuid
from datetime import date

import pytest

from escrow.commands import (
    COMMANDS,
    Actor,
    CreateTransaction,
    SellerAccept,
    SellerShip,
    parse_command,
)
from escrow.exceptions import EscrowValidationError
from escrow.state_machines import ActorRole


@pytest.fixture
def actor():
    return Actor(actor_id="42", role=ActorRole.SELLER)


class TestActor:
    def test_system_actor_has_no_identity(self):
        actor = Actor.system()

        assert actor.actor_id is None
        assert actor.role == ActorRole.SYSTEM
        assert actor.is_user(None) is False

    def test_is_user_compares_as_strings(self):
        actor = Actor(actor_id="7", role=ActorRole.BUYER)

        assert actor.is_user(7) is True
        assert actor.is_user("8") is False


class TestCommandRegistry:
    def test_every_trigger_is_registered(self):
        assert set(COMMANDS) == {
            "create",
            "payment_confirmed",
            "payment_failed",
            "seller_accept",
            "seller_reject",
            "seller_ship",
            "buyer_confirm_otp",
            "resend_otp",
            "release",
            "open_dispute",
            "resolve_dispute_release",
            "resolve_dispute_refund",
            "auto_deliver",
            "auto_release",
            "expire_unaccepted",
            "expire_unpaid",
        }


class TestParseCommand:
    def test_builds_typed_command(self, actor):
        txn_id = uuid.uuid4()

        command = parse_command("seller_accept", {"transaction_id": str(txn_id), "expected_version": "3"}, actor)

        assert isinstance(command, SellerAccept)
        assert command.transaction_id == txn_id
        assert command.expected_version == 3
        assert command.actor == actor

    def test_ship_parses_date_and_url_list(self, actor):
        command = parse_command(
            "seller_ship",
            {
                "transaction_id": str(uuid.uuid4()),
                "tracking_number": " KE123 ",
                "estimated_delivery_date": "2026-11-02",
                "delivery_proof_urls": ["https://example.com/a.jpg"],
            },
            actor,
        )

        assert isinstance(command, SellerShip)
        assert command.tracking_number == "KE123"
        assert command.estimated_delivery_date == date(2026, 11, 2)
        assert command.delivery_proof_urls == ("https://example.com/a.jpg",)

    def test_create_accepts_integer_seller_id(self):
        command = parse_command(
            "create",
            {"seller_id": 12, "amount": 2500},
            Actor(actor_id="1", role=ActorRole.BUYER),
        )

        assert isinstance(command, CreateTransaction)
        assert command.seller_id == "12"
        assert command.currency == "KES"

    def test_unknown_trigger_is_rejected(self, actor):
        with pytest.raises(EscrowValidationError) as exc_info:
            parse_command("refund_everything", {}, actor)

        assert exc_info.value.error_code == "VALIDATION"

    def test_unexpected_field_is_rejected(self, actor):
        with pytest.raises(EscrowValidationError) as exc_info:
            parse_command("seller_accept", {"transaction_id": str(uuid.uuid4()), "status": "COMPLETED"}, actor)

        assert exc_info.value.details["fields"] == ["status"]

    def test_missing_required_field_is_rejected(self, actor):
        with pytest.raises(EscrowValidationError) as exc_info:
            parse_command("buyer_confirm_otp", {"transaction_id": str(uuid.uuid4())}, actor)

        assert exc_info.value.details["fields"] == ["code"]

    @pytest.mark.parametrize(
        "data",
        [
            {"transaction_id": "not-a-uuid"},
            {"transaction_id": str(uuid.uuid4()), "expected_version": "three"},
            {"transaction_id": str(uuid.uuid4()), "expected_version": True},
        ],
    )
    def test_malformed_values_are_rejected(self, actor, data):
        with pytest.raises(EscrowValidationError):
            parse_command("seller_accept", data, actor)

    def test_non_string_text_field_is_rejected(self, actor):
        with pytest.raises(EscrowValidationError):
            parse_command("seller_reject", {"transaction_id": str(uuid.uuid4()), "reason": 5}, actor)

    def test_bad_date_is_rejected(self, actor):
        with pytest.raises(EscrowValidationError):
            parse_command(
                "seller_ship",
                {"transaction_id": str(uuid.uuid4()), "estimated_delivery_date": "next week"},
                actor,
            )
