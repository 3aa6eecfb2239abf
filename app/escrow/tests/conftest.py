"""
Pytest fixtures for escrow tests.

Transactions are provided in every lifecycle state. Each state fixture is
built by running the model transitions from PENDING, so deadlines and
timestamps match what the engine would have set.

Usage:
    def test_accept(escrowed_txn, seller_actor):
        result = EscrowService.execute(
            SellerAccept(actor=seller_actor, transaction_id=escrowed_txn.id)
        )
        assert result.data.to_status == TransactionStatus.ACCEPTED

Note:
    ``status`` is a protected FSM field: re-read transactions with
    ``EscrowTransaction.objects.get(pk=...)``, never ``refresh_from_db()``.
"""

from datetime import timedelta

import pytest
from django.db import transaction
from django.utils import timezone
from rest_framework.test import APIClient
from rest_framework_simplejwt.tokens import RefreshToken

from authentication.tests.factories import UserFactory
from escrow.commands import Actor
from escrow.services import OtpService
from escrow.state_machines import ActorRole
from escrow.tests.factories import EscrowTransactionFactory, PayoutMethodFactory


# =============================================================================
# Mock Redis Fixture (distributed locks)
# =============================================================================


@pytest.fixture(autouse=True)
def mock_redis(mocker):
    """
    Mock Redis client behind every DistributedLock.

    Locks are always granted and released; tests that need contention set
    ``mock_redis.set.return_value = False``.
    """
    mock_client = mocker.MagicMock()
    mock_client.set.return_value = True
    mock_client.eval.return_value = 1

    mocker.patch("escrow.locks.get_redis_connection", return_value=mock_client)

    return mock_client


# =============================================================================
# Parties
# =============================================================================


@pytest.fixture
def buyer(db):
    return UserFactory(full_name="Amina Otieno", phone_number="254711000001")


@pytest.fixture
def seller(db):
    return UserFactory(full_name="Brian Kamau", phone_number="254722000002")


@pytest.fixture
def adjudicator(db):
    return UserFactory(full_name="Support Desk", is_staff=True)


@pytest.fixture
def stranger(db):
    """A user who is party to nothing."""
    return UserFactory()


@pytest.fixture
def payout_method(seller):
    """Seller's active default M-Pesa payout method."""
    return PayoutMethodFactory(owner=seller, account_number="254722000002")


# =============================================================================
# Actors
# =============================================================================


@pytest.fixture
def buyer_actor(buyer):
    return Actor.for_user(buyer, ActorRole.BUYER)


@pytest.fixture
def seller_actor(seller):
    return Actor.for_user(seller, ActorRole.SELLER)


@pytest.fixture
def adjudicator_actor(adjudicator):
    return Actor.for_user(adjudicator, ActorRole.ADJUDICATOR)


@pytest.fixture
def system_actor():
    return Actor.system()


# =============================================================================
# Transaction State Fixtures
# =============================================================================


@pytest.fixture
def pending_txn(buyer, seller):
    """PENDING transaction whose STK push has been sent."""
    return EscrowTransactionFactory(
        buyer=buyer,
        seller=seller,
        provider_reference="ws_CO_191220191020363925",
        provider_merchant_reference="29115-34620561-1",
        payment_initiated_at=timezone.now(),
    )


@pytest.fixture
def unpaid_txn(buyer, seller):
    """PENDING transaction with no STK push yet."""
    return EscrowTransactionFactory(buyer=buyer, seller=seller)


@pytest.fixture
def escrowed_txn(pending_txn):
    """ESCROWED transaction inside its acceptance window."""
    pending_txn.confirm_payment(
        receipt_number="QK12ABC345",
        acceptance_deadline=timezone.now() + timedelta(hours=48),
    )
    pending_txn.save()
    return pending_txn


@pytest.fixture
def accepted_txn(escrowed_txn):
    """ACCEPTED transaction inside its shipping window."""
    escrowed_txn.accept(shipping_deadline=timezone.now() + timedelta(hours=72))
    escrowed_txn.save()
    return escrowed_txn


@pytest.fixture
def shipped_txn(accepted_txn):
    """SHIPPED transaction with no delivery code issued."""
    now = timezone.now()
    accepted_txn.ship(
        auto_deliver_at=now + timedelta(hours=120),
        auto_release_at=now + timedelta(hours=168),
        courier_name="G4S",
        tracking_number="G4S-000123",
    )
    accepted_txn.save()
    return accepted_txn


@pytest.fixture
def shipped_with_code(shipped_txn):
    """SHIPPED transaction and the plaintext of its live delivery code."""
    with transaction.atomic():
        code = OtpService.issue(shipped_txn)
    return shipped_txn, code


@pytest.fixture
def delivered_txn(shipped_txn):
    """DELIVERED transaction inside its dispute window."""
    shipped_txn.mark_delivered(minimum_release_at=timezone.now() + timedelta(hours=48))
    shipped_txn.save()
    return shipped_txn


@pytest.fixture
def disputed_txn(delivered_txn):
    """DISPUTED transaction."""
    delivered_txn.open_dispute(reason="Screen cracked on arrival")
    delivered_txn.save()
    return delivered_txn


# =============================================================================
# API Clients
# =============================================================================


def _client_for(user):
    client = APIClient()
    refresh = RefreshToken.for_user(user)
    client.credentials(HTTP_AUTHORIZATION=f"Bearer {refresh.access_token}")
    return client


@pytest.fixture
def api_client():
    return APIClient()


@pytest.fixture
def buyer_client(buyer):
    return _client_for(buyer)


@pytest.fixture
def seller_client(seller):
    return _client_for(seller)


@pytest.fixture
def adjudicator_client(adjudicator):
    return _client_for(adjudicator)


@pytest.fixture
def stranger_client(stranger):
    return _client_for(stranger)
