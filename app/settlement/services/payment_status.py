"""
Read-only payment status projection for buyers, sellers and support.

Built from the ledger on every call (never from the cached
Order.payment_breakdown), so it is always consistent with the entries.
"""

from __future__ import annotations

from decimal import Decimal
from typing import TYPE_CHECKING

from core.exceptions import NotFoundError
from core.services import BaseService

from settlement.ledger import cumulative_percentage, project_breakdown, stage_index
from settlement.models import MilestoneEntry, Order
from settlement.state_machines import (
    MILESTONE_PERCENTAGES,
    PAYMENT_STAGE_ORDER,
    MilestonePaymentStatus,
    MilestoneStage,
    OrderStatus,
)

if TYPE_CHECKING:
    from typing import Any


STAGE_DESCRIPTIONS = {
    MilestoneStage.ORDER_PLACED: "Order placed, awaiting acceptance",
    MilestoneStage.ACCEPTED: "10% payment authorized",
    MilestoneStage.IN_ESCROW: "50% captured and secured",
    MilestoneStage.DELIVERED: "20% pending release",
    MilestoneStage.REVIEWED: "Final 20% pending",
    MilestoneStage.COMPLETED: "100% released to seller",
}


class StageStatus:
    COMPLETED = "completed"
    CURRENT = "current"
    PENDING = "pending"
    CANCELLED = "cancelled"


def stage_status(stage: str, current_stage: str | None, cancelled: bool = False) -> str:
    """
    Display status of one table stage relative to the latest recorded stage.

    For cancelled orders every stage reached before cancellation shows as
    cancelled and the rest as pending.
    """
    if current_stage is None:
        return StageStatus.PENDING
    index, current = stage_index(stage), stage_index(current_stage)
    if cancelled:
        return StageStatus.CANCELLED if index <= current else StageStatus.PENDING
    if index < current:
        return StageStatus.COMPLETED
    if index == current:
        # The final stage has nothing after it to wait for
        if stage == MilestoneStage.COMPLETED:
            return StageStatus.COMPLETED
        return StageStatus.CURRENT
    return StageStatus.PENDING


class PaymentStatusService(BaseService):
    """get_payment_status(order_id) -> {order, stages, totals, milestones}"""

    @classmethod
    def get_payment_status(cls, order_id: Any) -> dict[str, Any]:
        """
        Raises:
            NotFoundError: Unknown order
        """
        order = Order.objects.filter(pk=order_id).first()
        if order is None:
            raise NotFoundError(
                f"Order {order_id} not found",
                error_code="ORDER_NOT_FOUND",
                details={"order_id": str(order_id)},
            )

        entries = list(MilestoneEntry.objects.for_order(order))
        table_stages = [
            entry.stage
            for entry in entries
            if entry.stage in MILESTONE_PERCENTAGES
            and entry.payment_status != MilestonePaymentStatus.FAILED
        ]
        current_stage = max(table_stages, key=stage_index) if table_stages else None
        cancelled = order.status == OrderStatus.CANCELLED

        breakdown = project_breakdown(order)
        return {
            "order": {
                "id": str(order.id),
                "status": order.status,
                "progress": order.progress,
                "payment_milestone_stage": order.payment_milestone_stage,
                "escrow_status": order.escrow_status,
                "payment_status": order.payment_status,
                "payment_intent_id": order.payment_intent_id,
                "charge_id": order.charge_id,
                "transfer_id": order.transfer_id,
            },
            "stages": [
                {
                    "id": stage,
                    "label": MilestoneStage(stage).label,
                    "percentage": str(MILESTONE_PERCENTAGES[stage])
                    if stage != MilestoneStage.COMPLETED
                    else "100",
                    "cumulative_percentage": str(cumulative_percentage(stage)),
                    "description": STAGE_DESCRIPTIONS[stage],
                    "status": stage_status(stage, current_stage, cancelled),
                }
                for stage in PAYMENT_STAGE_ORDER
            ],
            "totals": {
                "order_total": str(order.total_amount),
                "currency": order.currency,
                "authorized": breakdown["authorized_amount"],
                "in_escrow": breakdown["escrow_amount"],
                "pending_release": breakdown["pending_release_amount"],
                "released": breakdown["total_released_amount"],
                "refunded": breakdown["refunded_amount"],
                "processed_percentage": breakdown["processed_percentage"],
                "current_stage": current_stage,
            },
            "milestones": [
                {
                    "id": str(entry.id),
                    "sequence": entry.sequence,
                    "stage": entry.stage,
                    "amount": str(entry.amount),
                    "display_amount": _display_amount(entry.amount, entry.currency),
                    "percentage": str(entry.percentage_of_total),
                    "status": entry.payment_status,
                    "created_at": entry.created_at.isoformat(),
                    "processor_reference": (
                        entry.transfer_id
                        or entry.refund_id
                        or entry.charge_id
                        or entry.payment_intent_id
                    ),
                }
                for entry in entries
            ],
        }


def _display_amount(amount: Decimal, currency: str) -> str:
    return f"{amount:,.2f} {currency}"
