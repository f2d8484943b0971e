"""
Settlement services.

This module provides:
- OrderService: Order creation, pricing snapshot, checkout PaymentIntent
- EscrowOrchestrator: The only mutation entry points of the settlement engine
- PaymentStatusService: Read-only payment status projection
- ReconciliationService: Resolves partial commits against processor state

Usage:
    from settlement.services import OrderService, EscrowOrchestrator

    checkout = OrderService.create_order(
        buyer=buyer,
        seller=seller,
        gig_id=gig_id,
        base_price=Decimal("100.00"),
        buyer_country="DE",
    )

    EscrowOrchestrator.authorize(checkout.order.id, actor=seller)
    EscrowOrchestrator.capture_escrow(checkout.order.id)

    # Query
    from settlement.services import PaymentStatusService

    status = PaymentStatusService.get_payment_status(order_id)
"""

from settlement.services.earnings import EarningsService
from settlement.services.notifications import (
    LoggingNotificationBackend,
    NotificationDispatcher,
)
from settlement.services.orchestrator import EscrowOrchestrator, SettlementStep
from settlement.services.orders import CheckoutResult, OrderService
from settlement.services.payment_status import PaymentStatusService
from settlement.services.payouts import PayoutDestinationResolver
from settlement.services.reconciliation import ReconciliationService

__all__ = [
    "CheckoutResult",
    "EarningsService",
    "EscrowOrchestrator",
    "LoggingNotificationBackend",
    "NotificationDispatcher",
    "OrderService",
    "PaymentStatusService",
    "PayoutDestinationResolver",
    "ReconciliationService",
    "SettlementStep",
]
