"""
Tests for settlement Celery tasks.

This module tests the background tasks for:
- send_settlement_notification: Hands one notification to the backend
- reconcile_open_settlements: Periodic sweep of partial commits
- extend_stalled_deadlines: Periodic one-time deadline extension

Tasks are called synchronously; the services they delegate to run for
real against the test database with Stripe and Redis mocked.
"""

from datetime import timedelta

import pytest
from django.utils import timezone
from freezegun import freeze_time

from settlement.adapters import PaymentIntentResult
from settlement.models import Order, OrderStatusEvent
from settlement.state_machines import OrderStatus, ReconciliationStatus
from settlement.tasks import (
    extend_stalled_deadlines,
    reconcile_open_settlements,
    send_settlement_notification,
)
from settlement.tests.factories import OrderFactory, SettlementReconciliationFactory


# =============================================================================
# Task Infrastructure Tests
# =============================================================================


class TestCeleryTaskConfiguration:
    @pytest.mark.parametrize(
        "task",
        [send_settlement_notification, reconcile_open_settlements, extend_stalled_deadlines],
    )
    def test_is_shared_task(self, task):
        assert hasattr(task, "delay")
        assert callable(task.apply_async)


# =============================================================================
# send_settlement_notification
# =============================================================================


class TestSendSettlementNotification:
    def test_delivers_to_backend(self, mocker):
        backend = mocker.MagicMock()
        mocker.patch(
            "settlement.services.notifications.get_notification_backend",
            return_value=backend,
        )

        result = send_settlement_notification("user-1", "milestone.accepted", {"amount": "20.00"})

        assert result is True
        backend.notify.assert_called_once_with(
            "user-1", "milestone.accepted", {"amount": "20.00"}
        )

    def test_backend_failure_is_dropped(self, mocker):
        backend = mocker.MagicMock()
        backend.notify.side_effect = ConnectionError("smtp down")
        mocker.patch(
            "settlement.services.notifications.get_notification_backend",
            return_value=backend,
        )

        assert send_settlement_notification("user-1", "order.disputed", {}) is False

    def test_default_backend_logs(self, mocker):
        logger = mocker.patch("settlement.services.notifications.logger")

        assert send_settlement_notification("user-1", "order.disputed", {"x": 1}) is True

        logger.info.assert_called_once()
        assert logger.info.call_args.kwargs["extra"]["event"] == "order.disputed"


# =============================================================================
# reconcile_open_settlements
# =============================================================================


class TestReconcileOpenSettlements:
    def test_returns_counts(self, accepted_order, mock_stripe):
        mock_stripe.retrieve_payment_intent.return_value = PaymentIntentResult(
            id="pi_test_authorized",
            status="requires_capture",
            amount_cents=20000,
            currency="eur",
            amount_received=10000,
            charge_id="ch_test_123",
        )
        record = SettlementReconciliationFactory(order=accepted_order)

        counts = reconcile_open_settlements()

        assert counts == {"resolved": 1, "abandoned": 0, "open": 0}
        record.refresh_from_db()
        assert record.status == ReconciliationStatus.RESOLVED

    def test_nothing_open(self, db):
        assert reconcile_open_settlements() == {"resolved": 0, "abandoned": 0, "open": 0}


# =============================================================================
# extend_stalled_deadlines
# =============================================================================


@pytest.fixture
def stalled_order(db):
    return OrderFactory(
        status=OrderStatus.STARTED,
        deadline=timezone.now() - timedelta(hours=2),
    )


class TestExtendStalledDeadlines:
    def test_extends_once(self, stalled_order, settings):
        settings.SETTLEMENT_DEADLINE_EXTENSION_DAYS = 3
        previous = stalled_order.deadline

        result = extend_stalled_deadlines()

        assert result == {"checked": 1, "extended": 1, "failed": 0}
        order = Order.objects.get(pk=stalled_order.pk)
        assert order.deadline == previous + timedelta(days=3)
        assert order.deadline_extended is True
        assert order.status == OrderStatus.STARTED
        event = OrderStatusEvent.objects.get(order=order)
        assert event.transition == "extend_deadline"
        assert event.from_status == event.to_status == OrderStatus.STARTED

    def test_second_run_skips_extended_order(self, stalled_order):
        extend_stalled_deadlines()

        with freeze_time(timezone.now() + timedelta(days=30)):
            result = extend_stalled_deadlines()

        assert result == {"checked": 0, "extended": 0, "failed": 0}

    def test_ignores_orders_within_deadline(self, db):
        OrderFactory(status=OrderStatus.STARTED, deadline=timezone.now() + timedelta(days=1))

        assert extend_stalled_deadlines()["checked"] == 0

    @pytest.mark.parametrize(
        "status",
        [OrderStatus.PENDING, OrderStatus.DELIVERED, OrderStatus.COMPLETED, OrderStatus.DISPUTED],
    )
    def test_ignores_inactive_orders(self, db, status):
        OrderFactory(status=status, deadline=timezone.now() - timedelta(days=1))

        assert extend_stalled_deadlines()["checked"] == 0

    def test_failure_is_counted(self, stalled_order, mocker):
        mocker.patch(
            "settlement.services.EscrowOrchestrator.extend_deadline",
            side_effect=RuntimeError("lock backend down"),
        )

        result = extend_stalled_deadlines()

        assert result == {"checked": 1, "extended": 0, "failed": 1}

    def test_notifies_both_parties(
        self, stalled_order, mocker, django_capture_on_commit_callbacks
    ):
        delay = mocker.patch("settlement.tasks.send_settlement_notification.delay")

        with django_capture_on_commit_callbacks(execute=True):
            extend_stalled_deadlines()

        assert [call.args[1] for call in delay.call_args_list] == [
            "order.deadline_extended",
            "order.deadline_extended",
        ]
