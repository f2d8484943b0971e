"""
Tests for NotificationDispatcher.
"""

from decimal import Decimal

import pytest

from settlement.services import LoggingNotificationBackend, NotificationDispatcher
from settlement.services.notifications import get_notification_backend
from settlement.state_machines import MilestoneStage
from settlement.tests.factories import OrderFactory


class RecordingBackend:
    sent = []

    def notify(self, user_id, event, payload):
        self.sent.append((user_id, event, payload))


@pytest.fixture
def delay(mocker):
    return mocker.patch("settlement.tasks.send_settlement_notification.delay")


class TestNotify:
    def test_enqueued_only_after_commit(self, db, delay, django_capture_on_commit_callbacks):
        with django_capture_on_commit_callbacks(execute=False) as callbacks:
            NotificationDispatcher.notify(42, "order.disputed", {"reason": "late"})

        assert len(callbacks) == 1
        delay.assert_not_called()

        callbacks[0]()

        delay.assert_called_once_with("42", "order.disputed", {"reason": "late"})

    def test_milestone_notifies_both_parties(
        self, db, delay, django_capture_on_commit_callbacks
    ):
        order = OrderFactory()

        with django_capture_on_commit_callbacks(execute=True):
            NotificationDispatcher.notify_milestone(
                order, MilestoneStage.DELIVERED, Decimal("40.00")
            )

        calls = {call.args[2]["recipient_role"]: call.args for call in delay.call_args_list}
        assert calls["buyer"][0] == str(order.buyer_id)
        assert calls["seller"][0] == str(order.seller_id)
        payload = calls["seller"][2]
        assert calls["seller"][1] == "milestone.delivered"
        assert payload["amount"] == "40.00"
        assert payload["percentage"] == "80"
        assert payload["currency"] == "EUR"
        assert payload["total_amount"] == "200.00"


class TestDeliver:
    def test_default_backend(self):
        assert isinstance(get_notification_backend(), LoggingNotificationBackend)

    def test_configured_backend(self, settings):
        settings.SETTLEMENT_NOTIFICATION_BACKEND = (
            "settlement.tests.test_notifications.RecordingBackend"
        )
        RecordingBackend.sent.clear()

        assert NotificationDispatcher.deliver("7", "order.deadline_extended", {}) is True
        assert RecordingBackend.sent == [("7", "order.deadline_extended", {})]

    def test_unknown_backend_is_logged_not_raised(self, settings):
        settings.SETTLEMENT_NOTIFICATION_BACKEND = "settlement.tests.NoSuchBackend"

        assert NotificationDispatcher.deliver("7", "order.disputed", {}) is False
