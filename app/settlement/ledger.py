"""
Milestone ledger rules: stage amounts, entry appends, breakdown projection.

The ledger (MilestoneEntry rows) is the source of truth for an order's
money. Order.payment_breakdown is a versioned cache rebuilt from the
ledger by refresh_breakdown() every time an entry is written or settled.

Breakdown keys:
    authorized_amount       entries authorized but not captured
    escrow_amount           entries captured / held in escrow
    delivery_amount         the delivered entry, while pending release
    review_amount           the reviewed entry, while pending release
    pending_release_amount  delivery + review reservations
    total_released_amount   terminal release entries
    refunded_amount         terminal refund entries
    processed_percentage    cumulative table percentage of the latest stage
"""

from __future__ import annotations

import logging
from decimal import ROUND_HALF_UP, Decimal
from typing import TYPE_CHECKING

from django.db.models import Max

from settlement.models import MilestoneEntry
from settlement.state_machines import (
    MILESTONE_PERCENTAGES,
    PAYMENT_STAGE_ORDER,
    MilestonePaymentStatus,
    MilestoneStage,
)

if TYPE_CHECKING:
    from typing import Any

    from settlement.models import Order

logger = logging.getLogger(__name__)

ZERO = Decimal("0.00")
CENT = Decimal("0.01")


def amount_for_stage(total_amount: Decimal, stage: str) -> Decimal:
    """
    Share of the order total booked by one stage, rounded half-up to cents.

    COMPLETED has no percentage of its own; its amount is computed from
    the entries it settles.
    """
    percentage = MILESTONE_PERCENTAGES.get(stage, Decimal("0"))
    return (Decimal(total_amount) * percentage / Decimal("100")).quantize(
        CENT, rounding=ROUND_HALF_UP
    )


def booked_amount_for_stage(order: Order, stage: str) -> Decimal:
    """
    Stage share for this order, capped at what the table stages left unbooked.

    Per-stage half-up rounding can overshoot the total by a cent; the cap
    keeps the sum of stage amounts within the order total.
    """
    amount = amount_for_stage(order.total_amount, stage)
    booked = (
        MilestoneEntry.objects.for_order(order)
        .effective()
        .filter(stage__in=PAYMENT_STAGE_ORDER)
        .exclude(stage__in=(stage, MilestoneStage.COMPLETED))
        .total()
    )
    return max(ZERO, min(amount, order.total_amount - booked))


def cumulative_percentage(stage: str) -> Decimal:
    """Prefix sum of the percentage table up to and including stage."""
    if stage not in MILESTONE_PERCENTAGES:
        return Decimal("0")
    index = PAYMENT_STAGE_ORDER.index(stage)
    return sum(
        (MILESTONE_PERCENTAGES[s] for s in PAYMENT_STAGE_ORDER[: index + 1]),
        Decimal("0"),
    )


def stage_index(stage: str) -> int:
    return PAYMENT_STAGE_ORDER.index(stage)


def recorded_stages(order: Order) -> dict[str, MilestoneEntry]:
    """Non-failed entries of the order, keyed by stage."""
    return {
        entry.stage: entry
        for entry in MilestoneEntry.objects.for_order(order).effective()
    }


def failed_attempts(order: Order, stage: str) -> int:
    return (
        MilestoneEntry.objects.for_order(order)
        .filter(stage=stage, payment_status=MilestonePaymentStatus.FAILED)
        .count()
    )


def append_entry(
    order: Order,
    stage: str,
    amount: Decimal,
    payment_status: str,
    **fields: Any,
) -> MilestoneEntry:
    """
    Insert the next ledger entry for the order.

    Must run inside the transaction holding the order's row lock, so the
    sequence number cannot be taken twice.
    """
    last = MilestoneEntry.objects.filter(order=order).aggregate(last=Max("sequence"))[
        "last"
    ]
    entry = MilestoneEntry.objects.create(
        order=order,
        sequence=(last or 0) + 1,
        stage=stage,
        percentage_of_total=MILESTONE_PERCENTAGES.get(stage, Decimal("0")),
        amount=amount,
        currency=order.currency,
        payment_status=payment_status,
        **fields,
    )
    logger.info(
        "Ledger entry recorded",
        extra={
            "order_id": str(order.id),
            "entry_id": str(entry.id),
            "stage": stage,
            "amount": str(amount),
            "payment_status": payment_status,
        },
    )
    return entry


def project_breakdown(order: Order) -> dict[str, Any]:
    """
    Derive the payment breakdown of an order from its ledger.

    Amounts are strings so the result is JSON-safe and exact.
    """
    totals = {
        "authorized_amount": ZERO,
        "escrow_amount": ZERO,
        "delivery_amount": ZERO,
        "review_amount": ZERO,
        "pending_release_amount": ZERO,
        "total_released_amount": ZERO,
        "refunded_amount": ZERO,
    }
    latest_stage = None

    for entry in MilestoneEntry.objects.for_order(order).effective():
        status = entry.payment_status
        if entry.stage in MILESTONE_PERCENTAGES:
            if latest_stage is None or stage_index(entry.stage) > stage_index(latest_stage):
                latest_stage = entry.stage

        if status == MilestonePaymentStatus.AUTHORIZED:
            totals["authorized_amount"] += entry.amount
        elif status in (
            MilestonePaymentStatus.CAPTURED,
            MilestonePaymentStatus.HELD_IN_ESCROW,
        ):
            totals["escrow_amount"] += entry.amount
        elif status == MilestonePaymentStatus.PENDING_RELEASE:
            totals["pending_release_amount"] += entry.amount
            if entry.stage == MilestoneStage.DELIVERED:
                totals["delivery_amount"] += entry.amount
            elif entry.stage == MilestoneStage.REVIEWED:
                totals["review_amount"] += entry.amount
        elif status == MilestonePaymentStatus.RELEASED and entry.settled_by_id is None:
            totals["total_released_amount"] += entry.amount
        elif status == MilestonePaymentStatus.REFUNDED and entry.settled_by_id is None:
            totals["refunded_amount"] += entry.amount

    outstanding = (
        totals["authorized_amount"]
        + totals["escrow_amount"]
        + totals["pending_release_amount"]
        + totals["total_released_amount"]
    )
    if outstanding > order.total_amount:
        logger.error(
            "Ledger exceeds order total",
            extra={
                "order_id": str(order.id),
                "ledger_amount": str(outstanding),
                "total_amount": str(order.total_amount),
            },
        )

    breakdown: dict[str, Any] = {key: str(value) for key, value in totals.items()}
    breakdown["processed_percentage"] = str(
        cumulative_percentage(latest_stage) if latest_stage else Decimal("0")
    )
    breakdown["currency"] = order.currency
    return breakdown


def refresh_breakdown(order: Order) -> dict[str, Any]:
    """
    Rebuild the cached breakdown on the (unsaved) order instance.

    The caller saves the order in the same transaction as the ledger write.
    """
    order.payment_breakdown = project_breakdown(order)
    order.breakdown_version = (order.breakdown_version or 0) + 1
    return order.payment_breakdown


def released_total(order: Order) -> Decimal:
    """Sum of terminal release entries; never exceeds the order total."""
    return (
        MilestoneEntry.objects.for_order(order)
        .with_status(MilestonePaymentStatus.RELEASED)
        .filter(settled_by__isnull=True)
        .total()
    )


__all__ = [
    "amount_for_stage",
    "booked_amount_for_stage",
    "cumulative_percentage",
    "stage_index",
    "recorded_stages",
    "failed_attempts",
    "append_entry",
    "project_breakdown",
    "refresh_breakdown",
    "released_total",
]
