"""
Django signals for settlement.

This module defines signal handlers for:
- Writing OrderStatusEvent rows for every Order FSM transition

Related files:
    - models/order.py: Order transitions (actor/role/reason keyword arguments)
    - apps.py: Signal import in ready()

Usage:
    Signals are automatically connected when the app is ready.
    See apps.py for the import that triggers connection.
"""

import inspect
import logging

from django.dispatch import receiver

from django_fsm.signals import post_transition

from settlement.models import Order, OrderStatusEvent
from settlement.state_machines import ActorRole

logger = logging.getLogger(__name__)


def _default_role(name: str) -> str:
    method = getattr(Order, name, None)
    if method is None:
        return ActorRole.SYSTEM
    parameter = inspect.signature(method).parameters.get("role")
    if parameter is None or parameter.default is inspect.Parameter.empty:
        return ActorRole.SYSTEM
    return parameter.default


@receiver(post_transition, sender=Order)
def record_status_event(sender, instance, name, source, target, **kwargs):
    """
    Append one status history row per transition.

    Runs inside the caller's transaction, so the row commits or rolls back
    together with the order save.

    Args:
        sender: Order model class
        instance: Order that transitioned
        name: Transition method name
        source: Status before
        target: Status after
        **kwargs: method_args / method_kwargs of the transition call
    """
    method_kwargs = kwargs.get("method_kwargs") or {}
    actor = method_kwargs.get("actor")
    role = method_kwargs.get("role") or _default_role(name)

    OrderStatusEvent.objects.create(
        order=instance,
        from_status=source,
        to_status=target,
        transition=name,
        actor=actor,
        actor_role=role,
        reason=method_kwargs.get("reason") or "",
    )
    logger.info(
        "Order status changed",
        extra={
            "order_id": str(instance.id),
            "transition": name,
            "from_status": source,
            "to_status": target,
            "actor_role": role,
        },
    )
