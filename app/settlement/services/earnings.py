"""
Seller earnings ledger.

Called by the orchestrator inside its local commit:
    accrue  - escrow captured, amount becomes pending for the seller
    release - funds transferred, pending moves to available
    reverse - escrow refunded, pending (and lifetime total) reduced

Balances never go below zero; a reversal larger than what was accrued is
clamped and logged.
"""

from __future__ import annotations

from decimal import Decimal
from typing import TYPE_CHECKING

from core.services import BaseService

from settlement.models import SellerEarnings

if TYPE_CHECKING:
    from typing import Any

ZERO = Decimal("0.00")


class EarningsService(BaseService):
    """Maintains SellerEarnings balances. Must run inside a transaction."""

    @classmethod
    def _locked_balance(cls, seller_id: Any, currency: str | None = None) -> SellerEarnings:
        defaults = {"currency": currency} if currency else {}
        SellerEarnings.objects.get_or_create(seller_id=seller_id, defaults=defaults)
        return SellerEarnings.objects.select_for_update().get(seller_id=seller_id)

    @classmethod
    def accrue(cls, seller_id: Any, amount: Decimal, currency: str | None = None) -> SellerEarnings:
        earnings = cls._locked_balance(seller_id, currency)
        earnings.pending_amount += amount
        earnings.save()
        cls.get_logger().info(
            "Seller earnings accrued",
            extra={"seller_id": str(seller_id), "amount": str(amount)},
        )
        return earnings

    @classmethod
    def release(cls, seller_id: Any, amount: Decimal) -> SellerEarnings:
        earnings = cls._locked_balance(seller_id)
        earnings.pending_amount = max(ZERO, earnings.pending_amount - amount)
        earnings.available_amount += amount
        earnings.total_earned += amount
        earnings.save()
        cls.get_logger().info(
            "Seller earnings released",
            extra={"seller_id": str(seller_id), "amount": str(amount)},
        )
        return earnings

    @classmethod
    def reverse(cls, seller_id: Any, amount: Decimal) -> SellerEarnings:
        earnings = cls._locked_balance(seller_id)
        if amount > earnings.pending_amount:
            cls.get_logger().warning(
                "Earnings reversal exceeds pending balance, clamping at zero",
                extra={
                    "seller_id": str(seller_id),
                    "amount": str(amount),
                    "pending_amount": str(earnings.pending_amount),
                },
            )
        earnings.pending_amount = max(ZERO, earnings.pending_amount - amount)
        earnings.save()
        cls.get_logger().info(
            "Seller earnings reversed",
            extra={"seller_id": str(seller_id), "amount": str(amount)},
        )
        return earnings
