"""
Fixed tables consulted by the settlement orchestrator.

MILESTONE_PERCENTAGES splits one order total across the payment stages.
COMPLETED carries no percentage of its own: its amount is the literal sum
of the entries it settles.

STAGE_PREREQUISITES and STAGE_ALLOWED_STATUSES are checked in that order:
a stage requested out of table order is an ordering error even when the
order status would also reject it.
"""

from decimal import Decimal

from settlement.state_machines.states import MilestoneStage, OrderStatus

MILESTONE_PERCENTAGES: dict[str, Decimal] = {
    MilestoneStage.ORDER_PLACED: Decimal("0"),
    MilestoneStage.ACCEPTED: Decimal("10"),
    MilestoneStage.IN_ESCROW: Decimal("50"),
    MilestoneStage.DELIVERED: Decimal("20"),
    MilestoneStage.REVIEWED: Decimal("20"),
    MilestoneStage.COMPLETED: Decimal("0"),
}

PAYMENT_STAGE_ORDER: tuple[str, ...] = tuple(MILESTONE_PERCENTAGES)

# Stage -> stage that must already be recorded
STAGE_PREREQUISITES: dict[str, str] = {
    MilestoneStage.ACCEPTED: MilestoneStage.ORDER_PLACED,
    MilestoneStage.IN_ESCROW: MilestoneStage.ACCEPTED,
    MilestoneStage.DELIVERED: MilestoneStage.IN_ESCROW,
    MilestoneStage.REVIEWED: MilestoneStage.DELIVERED,
    # Delivery and review are optional before release (disputes settle early)
    MilestoneStage.COMPLETED: MilestoneStage.IN_ESCROW,
}

# Stage -> order statuses from which the stage may be recorded
STAGE_ALLOWED_STATUSES: dict[str, frozenset[str]] = {
    MilestoneStage.ACCEPTED: frozenset({OrderStatus.PENDING}),
    MilestoneStage.IN_ESCROW: frozenset(
        {
            OrderStatus.ACCEPTED,
            OrderStatus.REQUIREMENTS_SUBMITTED,
            OrderStatus.STARTED,
        }
    ),
    MilestoneStage.DELIVERED: frozenset(
        {
            OrderStatus.STARTED,
            OrderStatus.HALFWAY_DONE,
            OrderStatus.REQUESTED_REVISION,
        }
    ),
    MilestoneStage.REVIEWED: frozenset(
        {
            OrderStatus.DELIVERED,
            OrderStatus.WAITING_REVIEW,
        }
    ),
    MilestoneStage.COMPLETED: frozenset(
        {
            OrderStatus.WAITING_REVIEW,
            OrderStatus.READY_FOR_PAYMENT,
            OrderStatus.DISPUTED,
        }
    ),
}

TERMINAL_STATUSES: frozenset[str] = frozenset(
    {OrderStatus.COMPLETED, OrderStatus.CANCELLED}
)

# Orders with work in progress (deadline sweep scope)
ACTIVE_STATUSES: frozenset[str] = frozenset(
    {
        OrderStatus.ACCEPTED,
        OrderStatus.REQUIREMENTS_SUBMITTED,
        OrderStatus.STARTED,
        OrderStatus.HALFWAY_DONE,
        OrderStatus.REQUESTED_REVISION,
    }
)

ORDER_PROGRESS: dict[str, int] = {
    OrderStatus.PENDING: 0,
    OrderStatus.ACCEPTED: 20,
    OrderStatus.REQUIREMENTS_SUBMITTED: 30,
    OrderStatus.STARTED: 40,
    OrderStatus.HALFWAY_DONE: 60,
    OrderStatus.DELIVERED: 70,
    OrderStatus.REQUESTED_REVISION: 70,
    OrderStatus.WAITING_REVIEW: 90,
    OrderStatus.READY_FOR_PAYMENT: 95,
    OrderStatus.COMPLETED: 100,
    OrderStatus.CANCELLED: 0,
    OrderStatus.DISPUTED: 0,
}
