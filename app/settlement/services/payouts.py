"""
Payout destination resolver.

Given a seller, return the Stripe Connect account funds may be released
to, or None when the seller has not finished onboarding.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from core.services import BaseService

from settlement.models import PayoutAccount

if TYPE_CHECKING:
    from typing import Any


class PayoutDestinationResolver(BaseService):
    """Resolves sellers to verified payout destinations."""

    @classmethod
    def resolve(cls, seller_id: Any) -> str | None:
        account = PayoutAccount.objects.filter(seller_id=seller_id).first()
        if account is None:
            cls.get_logger().info(
                "Seller has no payout account",
                extra={"seller_id": str(seller_id)},
            )
            return None
        if not account.is_ready_for_payouts:
            cls.get_logger().info(
                "Payout account not ready",
                extra={
                    "seller_id": str(seller_id),
                    "stripe_account_id": account.stripe_account_id,
                    "onboarding_status": account.onboarding_status,
                    "payouts_enabled": account.payouts_enabled,
                },
            )
            return None
        return account.stripe_account_id
