"""
Permission classes for settlement API.

- IsOrderParty: buyer, seller or staff of the order
- IsOrderBuyer / IsOrderSeller: one side of the order (staff always allowed)

Object-level checks run against the Order returned by get_object().
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from rest_framework import permissions

from settlement.state_machines import ActorRole

if TYPE_CHECKING:
    from rest_framework.request import Request
    from rest_framework.views import APIView

    from settlement.models import Order


def actor_role(user, order: Order) -> str:
    """Role the user acts in on this order."""
    if user.pk == order.buyer_id:
        return ActorRole.BUYER
    if user.pk == order.seller_id:
        return ActorRole.SELLER
    if user.is_staff:
        return ActorRole.ADMIN
    return ActorRole.SYSTEM


class IsOrderParty(permissions.BasePermission):
    message = "You are not a party to this order."

    def has_object_permission(self, request: Request, view: APIView, obj: Order) -> bool:
        user = request.user
        return user.is_staff or user.pk in (obj.buyer_id, obj.seller_id)


class IsOrderBuyer(permissions.BasePermission):
    message = "Only the buyer can perform this action."

    def has_object_permission(self, request: Request, view: APIView, obj: Order) -> bool:
        return request.user.is_staff or request.user.pk == obj.buyer_id


class IsOrderSeller(permissions.BasePermission):
    message = "Only the seller can perform this action."

    def has_object_permission(self, request: Request, view: APIView, obj: Order) -> bool:
        return request.user.is_staff or request.user.pk == obj.seller_id
