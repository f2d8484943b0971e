"""
State machine enums and transition tables for settlement models.

The order status machine itself lives on Order (django-fsm transitions);
this package holds the closed enums and the tables the orchestrator
consults before any money moves.
"""

from settlement.state_machines.states import (
    ActorRole,
    EscrowStatus,
    MilestonePaymentStatus,
    MilestoneStage,
    OnboardingStatus,
    OrderPaymentStatus,
    OrderStatus,
    OrderType,
    ReconciliationStatus,
)
from settlement.state_machines.tables import (
    ACTIVE_STATUSES,
    MILESTONE_PERCENTAGES,
    ORDER_PROGRESS,
    PAYMENT_STAGE_ORDER,
    STAGE_ALLOWED_STATUSES,
    STAGE_PREREQUISITES,
    TERMINAL_STATUSES,
)

__all__ = [
    "ActorRole",
    "EscrowStatus",
    "MilestonePaymentStatus",
    "MilestoneStage",
    "OnboardingStatus",
    "OrderPaymentStatus",
    "OrderStatus",
    "OrderType",
    "ReconciliationStatus",
    "ACTIVE_STATUSES",
    "MILESTONE_PERCENTAGES",
    "ORDER_PROGRESS",
    "PAYMENT_STAGE_ORDER",
    "STAGE_ALLOWED_STATUSES",
    "STAGE_PREREQUISITES",
    "TERMINAL_STATUSES",
]
