"""
Out-of-band notification dispatch for settlement events.

NotificationDispatcher.notify() never blocks or fails a settlement
operation: delivery is scheduled with transaction.on_commit, runs in a
Celery task, and any failure is logged and dropped.

The delivery backend is pluggable through SETTLEMENT_NOTIFICATION_BACKEND
(dotted path to a class with notify(user_id, event, payload)).

Usage:
    NotificationDispatcher.notify_milestone(order, MilestoneStage.IN_ESCROW, amount)
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Protocol

from django.conf import settings
from django.db import transaction
from django.utils.module_loading import import_string

from core.services import BaseService

from settlement.ledger import cumulative_percentage

if TYPE_CHECKING:
    from decimal import Decimal
    from typing import Any

    from settlement.models import Order

logger = logging.getLogger(__name__)


class NotificationBackend(Protocol):
    def notify(self, user_id: str, event: str, payload: dict[str, Any]) -> None: ...


class LoggingNotificationBackend:
    """Default backend: records the notification in the settlement log."""

    def notify(self, user_id: str, event: str, payload: dict[str, Any]) -> None:
        logger.info(
            "Settlement notification",
            extra={"user_id": user_id, "event": event, "payload": payload},
        )


def get_notification_backend() -> NotificationBackend:
    return import_string(settings.SETTLEMENT_NOTIFICATION_BACKEND)()


class NotificationDispatcher(BaseService):
    """Fire-and-forget notify(user_id, event, payload)."""

    @classmethod
    def notify(cls, user_id: Any, event: str, payload: dict[str, Any]) -> None:
        """Schedule delivery after the current transaction commits."""
        user_id = str(user_id)

        def _enqueue() -> None:
            from settlement.tasks import send_settlement_notification

            try:
                send_settlement_notification.delay(user_id, event, payload)
            except Exception:
                cls.get_logger().warning(
                    "Failed to enqueue settlement notification",
                    extra={"user_id": user_id, "event": event},
                    exc_info=True,
                )

        transaction.on_commit(_enqueue)

    @classmethod
    def deliver(cls, user_id: str, event: str, payload: dict[str, Any]) -> bool:
        """Hand one notification to the backend. Returns False on failure."""
        try:
            get_notification_backend().notify(user_id, event, payload)
        except Exception:
            cls.get_logger().warning(
                "Settlement notification delivery failed",
                extra={"user_id": user_id, "event": event},
                exc_info=True,
            )
            return False
        return True

    @classmethod
    def notify_milestone(cls, order: Order, stage: str, amount: Decimal) -> None:
        """Tell both parties that a settlement step was committed."""
        base = {
            "order_id": str(order.id),
            "stage": stage,
            "amount": str(amount),
            "currency": order.currency,
            "percentage": str(cumulative_percentage(stage)),
            "total_amount": str(order.total_amount),
        }
        event = f"milestone.{stage}"
        cls.notify(order.buyer_id, event, {**base, "recipient_role": "buyer"})
        cls.notify(order.seller_id, event, {**base, "recipient_role": "seller"})
