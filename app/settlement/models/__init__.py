"""
Settlement models package.

Re-exports all models for convenient importing:
    from settlement.models import Order, MilestoneEntry
"""

from settlement.models.milestone import MilestoneEntry
from settlement.models.order import Order, OrderStatusEvent
from settlement.models.payout import PayoutAccount, SellerEarnings
from settlement.models.reconciliation import (
    ReconciliationOperation,
    SettlementReconciliation,
)
from settlement.models.vat_rate import VatRate

__all__ = [
    "Order",
    "OrderStatusEvent",
    "MilestoneEntry",
    "PayoutAccount",
    "SellerEarnings",
    "SettlementReconciliation",
    "ReconciliationOperation",
    "VatRate",
]
