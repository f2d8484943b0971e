"""
Serializers for settlement API.

Serializer Hierarchy:
    PricingPreviewRequestSerializer: Checkout estimate input
    OrderSerializer: Order summary with pricing snapshot
    MilestoneEntrySerializer: One ledger entry
    OrderStatusEventSerializer: One timeline row
    RequiredReasonSerializer: Body of cancel/dispute actions

Design Decisions:
    - Amounts are rendered as strings (DecimalField coerce_to_string)
    - Settlement actions take no body except the cancel/dispute reason
"""

from __future__ import annotations

from decimal import Decimal

from rest_framework import serializers

from settlement.models import MilestoneEntry, Order, OrderStatusEvent


class PricingPreviewRequestSerializer(serializers.Serializer):
    """Input of the unauthenticated checkout estimate."""

    base_price = serializers.DecimalField(
        max_digits=12,
        decimal_places=2,
        min_value=Decimal("0.01"),
    )
    buyer_country = serializers.CharField(
        max_length=2,
        min_length=2,
        required=False,
        allow_null=True,
        allow_blank=True,
    )
    buyer_vat_id = serializers.CharField(
        max_length=32,
        required=False,
        allow_null=True,
        allow_blank=True,
    )
    is_business_client = serializers.BooleanField(default=False)

    def validate_buyer_country(self, value: str | None) -> str | None:
        return value.upper() if value else None


class RequiredReasonSerializer(serializers.Serializer):
    reason = serializers.CharField(max_length=2000)


class MilestoneEntrySerializer(serializers.ModelSerializer):
    class Meta:
        model = MilestoneEntry
        fields = [
            "id",
            "sequence",
            "stage",
            "percentage_of_total",
            "amount",
            "currency",
            "payment_status",
            "payment_intent_id",
            "charge_id",
            "transfer_id",
            "refund_id",
            "authorized_at",
            "captured_at",
            "released_at",
            "refunded_at",
            "failed_at",
            "failure_reason",
            "triggered_by_role",
            "triggered_by_action",
            "created_at",
        ]
        read_only_fields = fields


class OrderStatusEventSerializer(serializers.ModelSerializer):
    class Meta:
        model = OrderStatusEvent
        fields = [
            "from_status",
            "to_status",
            "transition",
            "actor_role",
            "reason",
            "created_at",
        ]
        read_only_fields = fields


class OrderSerializer(serializers.ModelSerializer):
    """Order summary returned by lifecycle actions."""

    progress = serializers.IntegerField(read_only=True)
    timeline = OrderStatusEventSerializer(source="status_events", many=True, read_only=True)

    class Meta:
        model = Order
        fields = [
            "id",
            "buyer",
            "seller",
            "gig_id",
            "order_type",
            "status",
            "progress",
            "base_amount",
            "platform_fee",
            "vat_rate",
            "vat_amount",
            "total_amount",
            "seller_earnings",
            "currency",
            "reverse_charge_applied",
            "pricing_locked_at",
            "payment_milestone_stage",
            "escrow_status",
            "payment_status",
            "payment_breakdown",
            "breakdown_version",
            "deadline",
            "deadline_extended",
            "cancellation_reason",
            "timeline",
            "created_at",
            "updated_at",
        ]
        read_only_fields = fields
