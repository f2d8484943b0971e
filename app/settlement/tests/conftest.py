"""
Pytest fixtures for settlement tests.

Orders in later lifecycle stages are built by driving the real
EscrowOrchestrator with a mocked Stripe adapter, so every fixture carries
the ledger entries, status history and breakdown a live order would have.

Usage:
    def test_release(reviewed_order, payout_account, mock_stripe):
        entry = EscrowOrchestrator.release_funds(reviewed_order.id)
        assert entry.amount == Decimal("180.00")
"""

from decimal import Decimal
from unittest.mock import MagicMock

import pytest

from settlement.adapters import PaymentIntentResult, RefundResult, TransferResult
from settlement.models import Order
from settlement.services import EscrowOrchestrator, OrderService, ReconciliationService
from settlement.state_machines import MilestonePaymentStatus, MilestoneStage
from settlement.tests.factories import (
    MilestoneEntryFactory,
    OrderFactory,
    PayoutAccountFactory,
    UserFactory,
)


# =============================================================================
# Infrastructure Mocks
# =============================================================================


@pytest.fixture(autouse=True)
def mock_redis(mocker):
    """
    Replace the Redis connection behind the per-order lock.

    Every SET NX succeeds and every release script reports ownership.
    """
    mock_client = mocker.MagicMock()
    mock_client.set.return_value = True
    mock_client.get.return_value = None
    mock_client.delete.return_value = 1
    mock_client.eval.return_value = 1

    mocker.patch("settlement.locks.get_redis_connection", return_value=mock_client)
    return mock_client


@pytest.fixture
def mock_stripe():
    """
    Mocked StripeAdapter installed on every service that calls Stripe.

    Default results describe a 200.00 EUR order: a full authorization, a
    50% capture on charge ch_test_123, a transfer and a refund.
    """
    adapter = MagicMock()
    adapter.create_payment_intent.return_value = PaymentIntentResult(
        id="pi_checkout_123",
        status="requires_payment_method",
        amount_cents=12495,
        currency="eur",
        client_secret="pi_checkout_123_secret_abc",
    )
    adapter.authorize_payment_intent.return_value = PaymentIntentResult(
        id="pi_test_authorized",
        status="requires_capture",
        amount_cents=20000,
        currency="eur",
        amount_capturable=20000,
    )
    adapter.capture_payment_intent.return_value = PaymentIntentResult(
        id="pi_test_authorized",
        status="succeeded",
        amount_cents=20000,
        currency="eur",
        amount_received=10000,
        charge_id="ch_test_123",
    )
    adapter.create_transfer.return_value = TransferResult(
        id="tr_test_123",
        amount_cents=18000,
        currency="eur",
        destination_account="acct_test",
    )
    adapter.create_refund.return_value = RefundResult(
        id="re_test_123",
        amount_cents=10000,
        currency="eur",
        status="succeeded",
        charge_id="ch_test_123",
    )

    EscrowOrchestrator.set_stripe_adapter(adapter)
    OrderService.set_stripe_adapter(adapter)
    ReconciliationService.set_stripe_adapter(adapter)
    yield adapter
    EscrowOrchestrator.set_stripe_adapter(None)
    OrderService.set_stripe_adapter(None)
    ReconciliationService.set_stripe_adapter(None)


# =============================================================================
# Parties
# =============================================================================


@pytest.fixture
def buyer(db):
    return UserFactory()


@pytest.fixture
def seller(db):
    return UserFactory()


@pytest.fixture
def staff_user(db):
    return UserFactory(is_staff=True)


@pytest.fixture
def payout_account(db, seller):
    """Seller payout destination, ready for transfers."""
    return PayoutAccountFactory(seller=seller)


# =============================================================================
# Orders by Stage
# =============================================================================


def reload(order):
    """Fresh instance (status is FSM-protected, so refresh_from_db is not used)."""
    return Order.objects.get(pk=order.pk)


@pytest.fixture
def placed_order(db, buyer, seller):
    """PENDING order for 200.00 with its order_placed ledger entry."""
    order = OrderFactory(buyer=buyer, seller=seller)
    MilestoneEntryFactory(
        order=order,
        sequence=1,
        stage=MilestoneStage.ORDER_PLACED,
        amount=Decimal("0.00"),
        payment_status=MilestonePaymentStatus.PENDING,
    )
    return order


@pytest.fixture
def accepted_order(placed_order, seller, mock_stripe):
    """ACCEPTED: 10% authorized."""
    EscrowOrchestrator.authorize(placed_order.id, actor=seller)
    return reload(placed_order)


@pytest.fixture
def escrowed_order(accepted_order, buyer, mock_stripe):
    """ACCEPTED with 50% captured into escrow."""
    EscrowOrchestrator.capture_escrow(accepted_order.id, actor=buyer)
    return reload(accepted_order)


@pytest.fixture
def started_order(escrowed_order, seller):
    """STARTED: escrow held, work in progress."""
    EscrowOrchestrator.advance_status(escrowed_order.id, "start", actor=seller)
    return reload(escrowed_order)


@pytest.fixture
def delivered_order(started_order, seller):
    """DELIVERED: delivery share pending release."""
    EscrowOrchestrator.record_delivery(started_order.id, actor=seller)
    return reload(started_order)


@pytest.fixture
def reviewed_order(delivered_order, buyer):
    """READY_FOR_PAYMENT: review share pending release."""
    EscrowOrchestrator.record_review(delivered_order.id, actor=buyer)
    return reload(delivered_order)


@pytest.fixture
def completed_order(reviewed_order, payout_account, mock_stripe):
    """COMPLETED: everything held or pending released to the seller."""
    EscrowOrchestrator.release_funds(reviewed_order.id)
    return reload(reviewed_order)
