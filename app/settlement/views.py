"""
DRF views for settlement API.

This module provides a thin HTTP surface over the settlement services:
- OrderViewSet: order summary, payment status and lifecycle actions
- PricingPreviewView: unauthenticated checkout estimate

URL Structure:
    /api/v1/settlement/orders/{id}/                   GET
    /api/v1/settlement/orders/{id}/payment-status/    GET
    /api/v1/settlement/orders/{id}/accept/            POST (seller)
    /api/v1/settlement/orders/{id}/capture-escrow/    POST (buyer)
    /api/v1/settlement/orders/{id}/deliver/           POST (seller)
    /api/v1/settlement/orders/{id}/review/            POST (buyer)
    /api/v1/settlement/orders/{id}/release/           POST (buyer)
    /api/v1/settlement/orders/{id}/cancel/            POST (buyer or seller)
    /api/v1/settlement/orders/{id}/dispute/           POST (buyer or seller)
    /api/v1/settlement/pricing/preview/               POST (anonymous)

Design Decisions:
    - Views never touch the ledger; every mutation goes through EscrowOrchestrator
    - Domain exceptions propagate to core.views.api_exception_handler
    - The actor and their role are derived from the authenticated user
"""

from __future__ import annotations

from django.db.models import Q
from drf_spectacular.utils import OpenApiResponse, extend_schema, extend_schema_view
from rest_framework import mixins, status, viewsets
from rest_framework.decorators import action
from rest_framework.permissions import AllowAny, IsAuthenticated
from rest_framework.response import Response
from rest_framework.views import APIView

from settlement.models import Order
from settlement.permissions import IsOrderBuyer, IsOrderParty, IsOrderSeller, actor_role
from settlement.serializers import (
    MilestoneEntrySerializer,
    OrderSerializer,
    PricingPreviewRequestSerializer,
    RequiredReasonSerializer,
)
from settlement.services import EscrowOrchestrator, OrderService, PaymentStatusService

BUYER_ACTIONS = ("capture_escrow", "review", "release")
SELLER_ACTIONS = ("accept", "deliver")


@extend_schema_view(
    retrieve=extend_schema(
        operation_id="get_order",
        summary="Get order",
        tags=["Settlement - Orders"],
    ),
)
class OrderViewSet(mixins.RetrieveModelMixin, viewsets.GenericViewSet):
    """
    Order settlement operations.

    retrieve:
        Order summary with pricing snapshot and cached breakdown.

    payment_status:
        Stages, totals and ledger entries, projected from the ledger.

    accept / capture_escrow / deliver / review / release:
        One settlement step each; returns the ledger entry written.

    cancel / dispute:
        Require a reason.
    """

    serializer_class = OrderSerializer
    permission_classes = [IsAuthenticated]

    def get_queryset(self):
        """Orders the user is a party to (all orders for staff)."""
        user = self.request.user
        if not user.is_authenticated:
            return Order.objects.none()
        queryset = Order.objects.all()
        if not user.is_staff:
            queryset = queryset.filter(Q(buyer=user) | Q(seller=user))
        return queryset

    def get_permissions(self):
        """Return permissions based on action."""
        if self.action in BUYER_ACTIONS:
            return [IsAuthenticated(), IsOrderBuyer()]
        if self.action in SELLER_ACTIONS:
            return [IsAuthenticated(), IsOrderSeller()]
        return [IsAuthenticated(), IsOrderParty()]

    def _step_response(self, entry, order_id) -> Response:
        order = Order.objects.get(pk=order_id)
        return Response(
            {
                "entry": MilestoneEntrySerializer(entry).data,
                "order": OrderSerializer(order).data,
            }
        )

    @extend_schema(
        operation_id="get_order_payment_status",
        summary="Get payment status",
        description=(
            "Six payment stages with their status, ledger totals and every "
            "ledger entry of the order."
        ),
        tags=["Settlement - Orders"],
    )
    @action(detail=True, methods=["get"], url_path="payment-status")
    def payment_status(self, request, pk=None):
        order = self.get_object()
        return Response(PaymentStatusService.get_payment_status(order.id))

    @extend_schema(
        operation_id="accept_order",
        summary="Accept order (authorize payment)",
        request=None,
        responses={
            200: OpenApiResponse(description="Authorized entry and updated order"),
            402: OpenApiResponse(description="Payment declined"),
            409: OpenApiResponse(description="Already processed or status conflict"),
        },
        tags=["Settlement - Lifecycle"],
    )
    @action(detail=True, methods=["post"])
    def accept(self, request, pk=None):
        order = self.get_object()
        entry = EscrowOrchestrator.authorize(
            order.id, actor=request.user, role=actor_role(request.user, order)
        )
        return self._step_response(entry, order.id)

    @extend_schema(
        operation_id="capture_order_escrow",
        summary="Capture escrow",
        request=None,
        tags=["Settlement - Lifecycle"],
    )
    @action(detail=True, methods=["post"], url_path="capture-escrow")
    def capture_escrow(self, request, pk=None):
        order = self.get_object()
        entry = EscrowOrchestrator.capture_escrow(
            order.id, actor=request.user, role=actor_role(request.user, order)
        )
        return self._step_response(entry, order.id)

    @extend_schema(
        operation_id="deliver_order",
        summary="Deliver work",
        request=None,
        tags=["Settlement - Lifecycle"],
    )
    @action(detail=True, methods=["post"])
    def deliver(self, request, pk=None):
        order = self.get_object()
        entry = EscrowOrchestrator.record_delivery(
            order.id, actor=request.user, role=actor_role(request.user, order)
        )
        return self._step_response(entry, order.id)

    @extend_schema(
        operation_id="review_order",
        summary="Review delivery",
        request=None,
        tags=["Settlement - Lifecycle"],
    )
    @action(detail=True, methods=["post"])
    def review(self, request, pk=None):
        order = self.get_object()
        entry = EscrowOrchestrator.record_review(
            order.id, actor=request.user, role=actor_role(request.user, order)
        )
        return self._step_response(entry, order.id)

    @extend_schema(
        operation_id="release_order_funds",
        summary="Release funds to seller",
        request=None,
        responses={
            200: OpenApiResponse(description="Completed entry and updated order"),
            409: OpenApiResponse(description="Payout destination missing or status conflict"),
        },
        tags=["Settlement - Lifecycle"],
    )
    @action(detail=True, methods=["post"])
    def release(self, request, pk=None):
        order = self.get_object()
        entry = EscrowOrchestrator.release_funds(
            order.id, actor=request.user, role=actor_role(request.user, order)
        )
        return self._step_response(entry, order.id)

    @extend_schema(
        operation_id="cancel_order",
        summary="Cancel order",
        request=RequiredReasonSerializer,
        tags=["Settlement - Lifecycle"],
    )
    @action(detail=True, methods=["post"])
    def cancel(self, request, pk=None):
        order = self.get_object()
        serializer = RequiredReasonSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        entry = EscrowOrchestrator.cancel(
            order.id,
            reason=serializer.validated_data["reason"],
            actor=request.user,
            role=actor_role(request.user, order),
        )
        return self._step_response(entry, order.id)

    @extend_schema(
        operation_id="dispute_order",
        summary="Open dispute",
        request=RequiredReasonSerializer,
        responses={200: OrderSerializer},
        tags=["Settlement - Lifecycle"],
    )
    @action(detail=True, methods=["post"])
    def dispute(self, request, pk=None):
        order = self.get_object()
        serializer = RequiredReasonSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        order = EscrowOrchestrator.open_dispute(
            order.id,
            reason=serializer.validated_data["reason"],
            actor=request.user,
            role=actor_role(request.user, order),
        )
        return Response(OrderSerializer(order).data)


class PricingPreviewView(APIView):
    """
    Checkout estimate.

    POST /api/v1/settlement/pricing/preview/

    Request body:
        {"base_price": "100.00", "buyer_country": "DE", "is_business_client": false}

    Returns:
        Full price breakdown (amounts as strings). No side effects.
    """

    permission_classes = [AllowAny]
    authentication_classes = []

    @extend_schema(
        operation_id="preview_pricing",
        summary="Preview order pricing",
        request=PricingPreviewRequestSerializer,
        tags=["Settlement - Pricing"],
    )
    def post(self, request):
        serializer = PricingPreviewRequestSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data

        breakdown = OrderService.preview(
            base_price=data["base_price"],
            buyer_country=data.get("buyer_country"),
            buyer_vat_id=data.get("buyer_vat_id") or None,
            is_business_client=data["is_business_client"],
        )
        return Response(breakdown.to_dict(), status=status.HTTP_200_OK)
