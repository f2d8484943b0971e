"""
Celery tasks for settlement.

This module provides async tasks for:
- Delivering settlement notifications (enqueued after commit)
- Sweeping open partial-commit reconciliation records
- Extending deadlines of stalled orders (one-time, no money movement)

Usage:
    from settlement.tasks import send_settlement_notification

    send_settlement_notification.delay(str(user.id), "milestone.in_escrow", payload)

    # Periodic (celery-beat, scheduled by migration 0002)
    from settlement.tasks import reconcile_open_settlements, extend_stalled_deadlines
"""

from __future__ import annotations

import logging
import time
from typing import TYPE_CHECKING

from celery import shared_task
from django.conf import settings
from django.utils import timezone

from settlement.models import Order
from settlement.state_machines import ACTIVE_STATUSES

if TYPE_CHECKING:
    from typing import Any

logger = logging.getLogger(__name__)


# =============================================================================
# Constants
# =============================================================================

RECONCILIATION_BATCH_SIZE = 100
DEADLINE_BATCH_SIZE = 500


# =============================================================================
# Notifications
# =============================================================================


@shared_task(bind=True, acks_late=True, ignore_result=True)
def send_settlement_notification(self, user_id: str, event: str, payload: dict[str, Any]) -> bool:
    """
    Hand one settlement notification to the configured backend.

    Failures are logged by the dispatcher and dropped; settlement never
    waits on or retries a notification.
    """
    from settlement.services.notifications import NotificationDispatcher

    return NotificationDispatcher.deliver(user_id, event, payload)


# =============================================================================
# Reconciliation
# =============================================================================


@shared_task(bind=True, acks_late=True)
def reconcile_open_settlements(self, limit: int = RECONCILIATION_BATCH_SIZE) -> dict:
    """
    Resolve open SettlementReconciliation records against processor state.

    Runs every 15 minutes. Each record is decided under its order's lock;
    undecidable records stay open for the next run.

    Returns:
        Dict with resolved/abandoned/open counts
    """
    from settlement.services import ReconciliationService

    start_time = time.monotonic()
    result = ReconciliationService.sweep_open(limit=limit)
    counts = result.data or {}

    logger.info(
        "Reconciliation sweep completed",
        extra={**counts, "duration_ms": int((time.monotonic() - start_time) * 1000)},
    )
    return counts


# =============================================================================
# Deadlines
# =============================================================================


@shared_task(bind=True, acks_late=True)
def extend_stalled_deadlines(self) -> dict:
    """
    Extend the deadline of active orders that ran past it, once.

    Runs hourly. The extension goes through the orchestrator under the
    order lock, so an order finished in the meantime is skipped.

    Returns:
        Dict with checked/extended/failed counts
    """
    from settlement.services import EscrowOrchestrator

    days = settings.SETTLEMENT_DEADLINE_EXTENSION_DAYS
    order_ids = list(
        Order.objects.filter(
            status__in=ACTIVE_STATUSES,
            deadline__lt=timezone.now(),
            deadline_extended=False,
        )
        .order_by("deadline")
        .values_list("id", flat=True)[:DEADLINE_BATCH_SIZE]
    )

    extended = 0
    failed = 0
    for order_id in order_ids:
        try:
            if EscrowOrchestrator.extend_deadline(order_id, days=days) is not None:
                extended += 1
        except Exception:
            failed += 1
            logger.exception(
                "Failed to extend order deadline",
                extra={"order_id": str(order_id)},
            )

    logger.info(
        "Deadline sweep completed",
        extra={"checked": len(order_ids), "extended": extended, "failed": failed},
    )
    return {"checked": len(order_ids), "extended": extended, "failed": failed}
