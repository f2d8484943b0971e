"""
Order creation: price, persist, open the checkout PaymentIntent.

The pricing snapshot is computed once here and stored on the order; it is
frozen (pricing_locked_at) at the first successful authorization.

Usage:
    from settlement.services import OrderService

    checkout = OrderService.create_order(
        buyer=buyer,
        seller=seller,
        gig_id=gig.id,
        base_price=Decimal("100.00"),
        buyer_country="DE",
    )
    checkout.order.total_amount   # Decimal("124.95")
    checkout.client_secret        # handed to the frontend
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import TYPE_CHECKING

from core.services import BaseService

from settlement.adapters import (
    CreatePaymentIntentParams,
    IdempotencyKeyGenerator,
    StripeAdapter,
)
from settlement.ledger import append_entry, refresh_breakdown
from settlement.locks import lock_order
from settlement.models import Order
from settlement.pricing import DatabaseVatRateProvider, compute_breakdown
from settlement.state_machines import (
    ActorRole,
    MilestonePaymentStatus,
    MilestoneStage,
    OrderType,
)

if TYPE_CHECKING:
    from datetime import datetime
    from typing import Any

    from django.contrib.auth.models import User

    from settlement.pricing import PriceBreakdown


@dataclass
class CheckoutResult:
    """Created order plus the secret the buyer confirms payment with."""

    order: Order
    client_secret: str | None = None


class OrderService(BaseService):
    """Creates orders with a priced snapshot and a payment reference."""

    _stripe_adapter: type | None = None

    @classmethod
    def get_stripe_adapter(cls) -> type:
        return cls._stripe_adapter or StripeAdapter

    @classmethod
    def set_stripe_adapter(cls, adapter: type | None) -> None:
        cls._stripe_adapter = adapter

    @classmethod
    def preview(
        cls,
        base_price: Any,
        buyer_country: str | None,
        buyer_vat_id: str | None = None,
        is_business_client: bool = False,
    ) -> PriceBreakdown:
        """Checkout estimate. No side effects."""
        return compute_breakdown(
            base_price,
            buyer_country,
            buyer_vat_id,
            is_business_client,
            rate_provider=DatabaseVatRateProvider(),
        )

    @classmethod
    def create_order(
        cls,
        buyer: User,
        seller: User,
        gig_id: Any,
        base_price: Any,
        buyer_country: str | None,
        buyer_vat_id: str | None = None,
        is_business_client: bool = False,
        order_type: str = OrderType.SIMPLE,
        deadline: datetime | None = None,
        create_payment_intent: bool = True,
    ) -> CheckoutResult:
        """
        Create an order in PENDING with its ORDER_PLACED ledger entry.

        Raises:
            PricingValidationError: Base price unusable (nothing is written)
            StripeError: Checkout intent could not be created (the order
                exists without a payment reference and can be retried)
        """
        breakdown = cls.preview(base_price, buyer_country, buyer_vat_id, is_business_client)

        with cls.atomic():
            order = Order.objects.create(
                buyer=buyer,
                seller=seller,
                gig_id=gig_id,
                order_type=order_type,
                base_amount=breakdown.base_amount,
                platform_fee=breakdown.platform_fee,
                vat_rate=breakdown.vat_rate,
                vat_amount=breakdown.vat_amount,
                total_amount=breakdown.total_amount,
                seller_earnings=breakdown.seller_earnings,
                currency=breakdown.currency,
                client_country=breakdown.client_country,
                vat_id=breakdown.vat_id,
                reverse_charge_applied=breakdown.reverse_charge_applied,
                pricing_details=breakdown.to_dict(),
                deadline=deadline,
            )
            append_entry(
                order,
                MilestoneStage.ORDER_PLACED,
                Decimal("0.00"),
                MilestonePaymentStatus.PENDING,
                triggered_by_user=buyer,
                triggered_by_role=ActorRole.BUYER,
                triggered_by_action="place_order",
            )
            refresh_breakdown(order)
            order.save()

        cls.get_logger().info(
            "Order created",
            extra={
                "order_id": str(order.id),
                "total_amount": str(order.total_amount),
                "currency": order.currency,
                "reverse_charge_applied": order.reverse_charge_applied,
            },
        )

        if not create_payment_intent:
            return CheckoutResult(order=order)
        return cls.open_checkout(order, breakdown)

    @classmethod
    def open_checkout(cls, order: Order, breakdown: PriceBreakdown) -> CheckoutResult:
        """Create the manual-capture PaymentIntent for the order total."""
        adapter = cls.get_stripe_adapter()
        intent = adapter.create_payment_intent(
            CreatePaymentIntentParams(
                amount_cents=breakdown.total_minor_units,
                currency=order.currency,
                idempotency_key=IdempotencyKeyGenerator.generate("create_intent", order.id),
                metadata={
                    **breakdown.to_stripe_metadata(),
                    "order_id": str(order.id),
                    "buyer_id": str(order.buyer_id),
                    "seller_id": str(order.seller_id),
                },
                transfer_group=f"ORDER_{order.id}",
            )
        )

        with cls.atomic():
            order = lock_order(order.id)
            order.payment_intent_id = intent.id
            order.save(update_fields=["payment_intent_id", "version", "updated_at"])

        cls.get_logger().info(
            "Checkout payment intent attached",
            extra={"order_id": str(order.id), "payment_intent_id": intent.id},
        )
        return CheckoutResult(order=order, client_secret=intent.client_secret)
